"""
MockAPI Runtime Settings

YAML-based settings for the supervisor, port allocator and health monitor,
with MOCKAPI_* environment variable overrides.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml


ENV_PREFIX = "MOCKAPI_"
LAUNCHERS = ('subprocess', 'inprocess')
LOG_LEVELS = ('debug', 'info', 'warning', 'error')


class ConfigurationError(Exception):
    """Raised when settings cannot be loaded or are invalid."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


@dataclass
class RuntimeSettings:
    """Settings for the mock server runtime."""

    # Port allocation
    port_range_start: int = 3001
    port_range_end: int = 9999
    reserved_ports: List[int] = field(default_factory=lambda: [5000])

    # Instance lifecycle (seconds)
    startup_timeout: float = 10.0
    startup_poll_interval: float = 0.5
    stop_timeout: float = 5.0

    # Health monitoring
    health_check_interval: float = 30.0
    health_check_timeout: float = 5.0
    health_failure_threshold: int = 3

    # Restart policy
    max_restart_attempts: int = 3
    restart_backoff: float = 1.0  # base seconds, doubled per restart (0 = none)

    # Instances
    instance_host: str = "127.0.0.1"
    launcher: str = "subprocess"
    cors_enabled: bool = True

    # Management API
    control_host: str = "127.0.0.1"
    control_port: int = 3000
    management_url: Optional[str] = None

    log_level: str = "info"

    @property
    def effective_management_url(self) -> str:
        return self.management_url or f"http://{self.control_host}:{self.control_port}"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'RuntimeSettings':
        """Create settings from a dictionary; unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown settings: {', '.join(unknown)}", unknown)
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_yaml(cls, yaml_path: str) -> 'RuntimeSettings':
        """Load settings from a YAML file."""
        path = Path(yaml_path)
        if not path.exists():
            raise ConfigurationError(f"Settings file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings file {path} must contain a mapping")

        # Allow settings nested under a top-level "mockapi" key
        return cls.from_dict(data.get('mockapi', data))

    @classmethod
    def load(cls, yaml_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> 'RuntimeSettings':
        """
        Load settings with priority: environment > YAML file > defaults.

        Args:
            yaml_path: Optional path to a YAML settings file
            environ: Environment mapping (defaults to os.environ)

        Returns:
            Validated RuntimeSettings
        """
        settings = cls.from_yaml(yaml_path) if yaml_path else cls()
        settings.apply_env(environ if environ is not None else os.environ)
        settings.validate()
        return settings

    def apply_env(self, environ: Mapping[str, str]):
        """Override fields from MOCKAPI_<FIELD> environment variables."""
        for f in fields(self):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            current = getattr(self, f.name)
            try:
                setattr(self, f.name, _coerce(raw, current, f.name))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}") from e

    def validate(self):
        """Raise ConfigurationError listing every invalid setting."""
        errors = []
        if self.port_range_start < 1024:
            errors.append(f"port_range_start must be >= 1024 (got {self.port_range_start})")
        if self.port_range_start >= self.port_range_end:
            errors.append("port_range_start must be less than port_range_end")
        if self.port_range_end > 65535:
            errors.append(f"port_range_end must be <= 65535 (got {self.port_range_end})")
        for name in ('startup_timeout', 'stop_timeout', 'health_check_interval', 'health_check_timeout',
                     'startup_poll_interval'):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")
        if self.restart_backoff < 0:
            errors.append("restart_backoff must not be negative")
        if self.health_failure_threshold < 1:
            errors.append("health_failure_threshold must be at least 1")
        if self.max_restart_attempts < 0:
            errors.append("max_restart_attempts must not be negative")
        if self.launcher not in LAUNCHERS:
            errors.append(f"launcher must be one of {', '.join(LAUNCHERS)}")
        if self.log_level.lower() not in LOG_LEVELS:
            errors.append(f"log_level must be one of {', '.join(LOG_LEVELS)}")

        if errors:
            raise ConfigurationError("Invalid runtime settings: " + "; ".join(errors), errors)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _coerce(raw: str, current: Any, name: str) -> Any:
    """Convert an environment string to the type of the current value."""
    if isinstance(current, bool):
        lowered = raw.strip().lower()
        if lowered in ('1', 'true', 'yes', 'on'):
            return True
        if lowered in ('0', 'false', 'no', 'off'):
            return False
        raise ValueError(raw)
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, list):
        return [int(p) for p in raw.split(',') if p.strip()]
    if current is None and name == 'management_url':
        return raw or None
    return raw
