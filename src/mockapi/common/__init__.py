"""
MockAPI Common Utilities

Settings, persistence collaborator and shared helpers used across MockAPI modules.
"""

from .config import RuntimeSettings, ConfigurationError
from .repository import (
    MockApiRepository,
    InMemoryMockApiRepository,
    FileMockApiRepository,
    STATUS_ACTIVE,
    STATUS_INACTIVE
)
from .utils import DefinitionLoader

__all__ = [
    'RuntimeSettings',
    'ConfigurationError',
    'MockApiRepository',
    'InMemoryMockApiRepository',
    'FileMockApiRepository',
    'STATUS_ACTIVE',
    'STATUS_INACTIVE',
    'DefinitionLoader'
]
