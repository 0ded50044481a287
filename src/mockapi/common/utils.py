"""
MockAPI Common Utilities

Shared helpers for loading mock API definition files.
"""

import json
from pathlib import Path
from typing import Any, Dict, List

import yaml


class DefinitionLoader:
    """
    Loader for mock API definition files.

    Handles JSON and YAML files in three shapes:
    - {"apis": [...]}
    - {"mockApis": [...]}
    - [...]

    Example:
        loader = DefinitionLoader("apis.yaml")
        for definition in loader.load():
            print(definition['id'])
    """

    def __init__(self, file_path: str):
        """
        Initialize definition loader.

        Args:
            file_path: Path to a .json, .yaml or .yml definition file
        """
        self.file_path = Path(file_path)

    def load(self) -> List[Dict[str, Any]]:
        """
        Load raw definitions from the file.

        Returns:
            List of definition dictionaries

        Raises:
            FileNotFoundError: If the definition file doesn't exist
            ValueError: If the file format is invalid or unrecognized
        """
        if not self.file_path.exists():
            raise FileNotFoundError(f"Definition file not found: {self.file_path}")

        with open(self.file_path, 'r', encoding='utf-8') as f:
            if self.file_path.suffix.lower() in ('.yaml', '.yml'):
                try:
                    data = yaml.safe_load(f)
                except yaml.YAMLError as e:
                    raise ValueError(f"Invalid YAML in {self.file_path}: {e}") from e
            else:
                try:
                    data = json.load(f)
                except json.JSONDecodeError as e:
                    raise ValueError(f"Invalid JSON in {self.file_path}: {e}") from e

        if isinstance(data, dict):
            if 'apis' in data:
                definitions = data['apis']
            elif 'mockApis' in data:
                definitions = data['mockApis']
            else:
                raise ValueError(
                    f"Unexpected format in {self.file_path}. "
                    f"Expected dict with 'apis' or 'mockApis' key, "
                    f"or a list of definitions. Found keys: {list(data.keys())}"
                )
        elif isinstance(data, list):
            definitions = data
        else:
            raise ValueError(
                f"Unexpected format in {self.file_path}. "
                f"Expected dict or list, found {type(data).__name__}"
            )

        if not all(isinstance(d, dict) for d in definitions or []):
            raise ValueError(f"Every mock API definition in {self.file_path} must be a mapping")

        return definitions or []
