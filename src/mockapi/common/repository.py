"""
MockAPI Persistence Collaborator

The runtime never queries storage directly; it only calls the operations of
MockApiRepository. Two implementations ship with the package:

- InMemoryMockApiRepository: dictionaries, for embedding and tests
- FileMockApiRepository: definitions from a JSON/YAML file, with status and
  port assignments persisted to a sidecar state file
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional

from ..server.models import MockApiConfig, RequestLogRecord
from .utils import DefinitionLoader


logger = logging.getLogger("mockapi.repository")

STATUS_ACTIVE = 'active'
STATUS_INACTIVE = 'inactive'
STATUSES = (STATUS_ACTIVE, STATUS_INACTIVE)


class MockApiRepository(ABC):
    """Operations the runtime needs from record storage."""

    @abstractmethod
    async def find_mock_api_with_endpoints_and_scenarios(self, api_id: str) -> Optional[MockApiConfig]:
        """Return the full definition of one mock API, or None."""

    @abstractmethod
    async def set_status(self, api_id: str, status: str) -> None:
        """Persist 'active' or 'inactive' for a mock API."""

    @abstractmethod
    async def list_active_mock_apis(self) -> List[MockApiConfig]:
        """Mock APIs whose persisted status is active."""

    @abstractmethod
    async def find_port_assignment(self, api_id: str) -> Optional[int]:
        """Persisted port of a mock API, or None."""

    @abstractmethod
    async def list_port_assignments(self) -> Dict[str, int]:
        """All persisted port assignments, keyed by mock API id."""

    @abstractmethod
    async def save_port_assignment(self, api_id: str, port: int) -> None:
        """Persist the port allocated to a mock API."""

    @abstractmethod
    async def insert_request_log(self, record: RequestLogRecord) -> None:
        """Store one request log record."""

    async def get_status(self, api_id: str) -> Optional[str]:
        """Persisted status of a mock API (None if unknown)."""
        return None


class InMemoryMockApiRepository(MockApiRepository):
    """
    Dictionary-backed repository.

    Example:
        repository = InMemoryMockApiRepository()
        repository.add(MockApiConfig.from_dict(definition), port=3001)
    """

    def __init__(self, apis: Optional[Iterable[MockApiConfig]] = None, log_limit: int = 10000):
        self.apis: Dict[str, MockApiConfig] = {}
        self.statuses: Dict[str, str] = {}
        self.ports: Dict[str, int] = {}
        self.request_logs: Deque[RequestLogRecord] = deque(maxlen=log_limit or None)
        self._lock = asyncio.Lock()

        for api in apis or []:
            self.add(api)

    def add(self, api: MockApiConfig, status: str = STATUS_INACTIVE, port: Optional[int] = None):
        """Register a mock API definition."""
        if status not in STATUSES:
            raise ValueError(f"Invalid status '{status}'")
        self.apis[api.id] = api
        self.statuses.setdefault(api.id, status)
        if port is not None:
            self.ports[api.id] = port

    def remove(self, api_id: str):
        self.apis.pop(api_id, None)
        self.statuses.pop(api_id, None)
        self.ports.pop(api_id, None)

    async def find_mock_api_with_endpoints_and_scenarios(self, api_id: str) -> Optional[MockApiConfig]:
        return self.apis.get(api_id)

    async def get_status(self, api_id: str) -> Optional[str]:
        return self.statuses.get(api_id)

    async def set_status(self, api_id: str, status: str) -> None:
        if status not in STATUSES:
            raise ValueError(f"Invalid status '{status}'")
        async with self._lock:
            if api_id not in self.apis:
                logger.warning(f"Status update for unknown API {api_id}")
            self.statuses[api_id] = status
            self._persist()

    async def list_active_mock_apis(self) -> List[MockApiConfig]:
        return [api for api_id, api in self.apis.items() if self.statuses.get(api_id) == STATUS_ACTIVE]

    async def find_port_assignment(self, api_id: str) -> Optional[int]:
        return self.ports.get(api_id)

    async def list_port_assignments(self) -> Dict[str, int]:
        return dict(self.ports)

    async def save_port_assignment(self, api_id: str, port: int) -> None:
        async with self._lock:
            self.ports[api_id] = port
            self._persist()

    async def insert_request_log(self, record: RequestLogRecord) -> None:
        self.request_logs.append(record)

    def _persist(self):
        """Hook for subclasses that write state somewhere durable."""


class FileMockApiRepository(InMemoryMockApiRepository):
    """
    Definitions loaded from a JSON/YAML file.

    Status and port assignments are written to ``<definitions>.state.json``
    so a later run restores the same APIs on the same ports. Request logs
    are appended as JSON lines when ``log_path`` is given.

    Example:
        repository = FileMockApiRepository('apis.yaml', log_path='requests.jsonl')
    """

    def __init__(self, definitions_path: str, log_path: Optional[str] = None, log_limit: int = 10000):
        """
        Initialize file repository.

        Args:
            definitions_path: Path to the mock API definition file
            log_path: Optional JSON-lines file receiving request logs
            log_limit: Maximum request logs kept in memory

        Raises:
            FileNotFoundError: If the definition file doesn't exist
            ValueError: If a definition is invalid
        """
        super().__init__(log_limit=log_limit)
        self.definitions_path = Path(definitions_path)
        self.state_path = self.definitions_path.with_name(self.definitions_path.name + '.state.json')
        self.log_path = Path(log_path) if log_path else None

        for definition in DefinitionLoader(str(self.definitions_path)).load():
            api = MockApiConfig.from_dict(definition)
            if api.id in self.apis:
                raise ValueError(f"Duplicate mock API id '{api.id}' in {self.definitions_path}")
            status = definition.get('status', STATUS_INACTIVE)
            self.add(api, status=status if status in STATUSES else STATUS_INACTIVE, port=definition.get('port'))

        self._load_state()
        logger.info(f"Loaded {len(self.apis)} mock APIs from {self.definitions_path}")

    def _load_state(self):
        if not self.state_path.exists():
            return
        try:
            with open(self.state_path, 'r', encoding='utf-8') as f:
                state = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable state file {self.state_path}: {e}")
            return

        for api_id, entry in state.get('apis', {}).items():
            if api_id not in self.apis:
                continue
            if entry.get('status') in STATUSES:
                self.statuses[api_id] = entry['status']
            if entry.get('port'):
                self.ports[api_id] = int(entry['port'])

    def _persist(self):
        state = {
            'apis': {
                api_id: {'status': self.statuses.get(api_id, STATUS_INACTIVE), 'port': self.ports.get(api_id)}
                for api_id in self.apis
            }
        }
        tmp_path = self.state_path.with_suffix('.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(state, f, indent=2)
        tmp_path.replace(self.state_path)

    async def insert_request_log(self, record: RequestLogRecord) -> None:
        await super().insert_request_log(record)
        if self.log_path:
            line = json.dumps(record.to_dict(), default=_json_default)
            await asyncio.to_thread(self._append_log_line, line)

    def _append_log_line(self, line: str):
        with open(self.log_path, 'a', encoding='utf-8') as f:
            f.write(line + '\n')


def _json_default(value: Any) -> str:
    return str(value)
