"""
MockAPI Data Model

Immutable configuration snapshots handed to a running mock server instance,
plus the request log record each instance emits.

Dictionaries are accepted in the camelCase wire form used by the management
layer (``statusCode``, ``responseBody``...) as well as in snake_case.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


HTTP_METHODS = ('GET', 'POST', 'PUT', 'DELETE', 'PATCH', 'HEAD', 'OPTIONS')
CONDITION_TYPES = ('header', 'query', 'body')
CONDITION_OPERATORS = ('equals', 'contains', 'exists')
MAX_SCENARIOS_PER_ENDPOINT = 3


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first key present in data (camelCase / snake_case aliases)."""
    for key in keys:
        if key in data:
            return data[key]
    return default


@dataclass(frozen=True)
class ScenarioCondition:
    """Predicate over one request attribute."""

    type: str
    key: str
    operator: str
    value: Optional[str] = None

    def __post_init__(self):
        if self.type not in CONDITION_TYPES:
            raise ValueError(f"Unsupported condition type '{self.type}' (expected one of {', '.join(CONDITION_TYPES)})")
        if self.operator not in CONDITION_OPERATORS:
            raise ValueError(
                f"Unsupported condition operator '{self.operator}' "
                f"(expected one of {', '.join(CONDITION_OPERATORS)})"
            )
        if not self.key:
            raise ValueError("Condition key must not be empty")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScenarioCondition':
        """Create condition from dictionary."""
        value = data.get('value')
        return cls(
            type=str(data.get('type', '')).lower(),
            key=str(data.get('key', '')),
            operator=str(data.get('operator', '')).lower(),
            value=str(value) if value is not None else None
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = {'type': self.type, 'key': self.key, 'operator': self.operator}
        if self.value is not None:
            data['value'] = self.value
        return data


@dataclass(frozen=True)
class ScenarioConfig:
    """One canned response an endpoint can return."""

    id: str
    name: str
    status_code: int = 200
    response_headers: Dict[str, str] = field(default_factory=dict)
    response_body: Any = None
    conditions: Tuple[ScenarioCondition, ...] = ()
    is_default: bool = False

    def __post_init__(self):
        if not 100 <= self.status_code <= 599:
            raise ValueError(f"Scenario '{self.name}' has invalid status code {self.status_code}")

    @property
    def is_conditional(self) -> bool:
        return len(self.conditions) > 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScenarioConfig':
        """Create scenario from dictionary."""
        headers = _pick(data, 'responseHeaders', 'response_headers', default=None) or {}
        conditions = _pick(data, 'conditions', default=None) or []
        name = str(data.get('name', ''))
        return cls(
            id=str(data.get('id') or name),
            name=name,
            status_code=int(_pick(data, 'statusCode', 'status_code', 'status', default=200)),
            response_headers={str(k): str(v) for k, v in headers.items()},
            response_body=_pick(data, 'responseBody', 'response_body', 'body'),
            conditions=tuple(ScenarioCondition.from_dict(c) for c in conditions),
            is_default=bool(_pick(data, 'isDefault', 'is_default', default=False))
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to camelCase wire dictionary."""
        return {
            'id': self.id,
            'name': self.name,
            'statusCode': self.status_code,
            'responseHeaders': dict(self.response_headers),
            'responseBody': self.response_body,
            'conditions': [c.to_dict() for c in self.conditions],
            'isDefault': self.is_default
        }


@dataclass(frozen=True)
class EndpointConfig:
    """A (method, path) route holding up to three scenarios."""

    id: str
    method: str
    path: str
    scenarios: Tuple[ScenarioConfig, ...] = ()
    default_scenario_id: Optional[str] = None
    description: str = ""

    def __post_init__(self):
        if self.method not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method '{self.method}' for endpoint {self.path}")
        if not self.path.startswith('/'):
            raise ValueError(f"Endpoint path must start with '/': {self.path}")
        if len(self.scenarios) > MAX_SCENARIOS_PER_ENDPOINT:
            raise ValueError(
                f"Endpoint {self.method} {self.path} has {len(self.scenarios)} scenarios "
                f"(maximum is {MAX_SCENARIOS_PER_ENDPOINT})"
            )
        defaults = [s.name for s in self.scenarios if s.is_default]
        if len(defaults) > 1:
            raise ValueError(
                f"Endpoint {self.method} {self.path} flags more than one default scenario: {', '.join(defaults)}"
            )

    @property
    def route(self) -> str:
        return f"{self.method} {self.path}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EndpointConfig':
        """Create endpoint from dictionary."""
        method = str(data.get('method', 'GET')).upper()
        path = str(data.get('path', '/'))
        return cls(
            id=str(data.get('id') or f"{method} {path}"),
            method=method,
            path=path,
            scenarios=tuple(ScenarioConfig.from_dict(s) for s in data.get('scenarios') or []),
            default_scenario_id=_pick(data, 'defaultScenarioId', 'default_scenario_id'),
            description=data.get('description') or ''
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to camelCase wire dictionary."""
        return {
            'id': self.id,
            'method': self.method,
            'path': self.path,
            'description': self.description,
            'scenarios': [s.to_dict() for s in self.scenarios],
            'defaultScenarioId': self.default_scenario_id
        }


@dataclass(frozen=True)
class MockApiConfig:
    """
    Snapshot of one mock API handed to a running instance.

    A running instance never mutates its config; changing the definition
    requires a stop/start cycle.
    """

    id: str
    name: str
    endpoints: Tuple[EndpointConfig, ...] = ()
    description: str = ""

    def __post_init__(self):
        seen = set()
        for endpoint in self.endpoints:
            key = (endpoint.method, endpoint.path)
            if key in seen:
                raise ValueError(f"Duplicate endpoint {endpoint.route} in mock API '{self.name}'")
            seen.add(key)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MockApiConfig':
        """Create mock API config from dictionary."""
        if not data.get('id'):
            raise ValueError("Mock API definition is missing an 'id'")
        return cls(
            id=str(data['id']),
            name=str(data.get('name') or data['id']),
            endpoints=tuple(EndpointConfig.from_dict(e) for e in data.get('endpoints') or []),
            description=data.get('description') or ''
        )

    @classmethod
    def from_json(cls, payload: str) -> 'MockApiConfig':
        return cls.from_dict(json.loads(payload))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to camelCase wire dictionary."""
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'endpoints': [e.to_dict() for e in self.endpoints]
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def route_summary(self) -> List[str]:
        """List configured routes as 'METHOD /path' strings."""
        return [endpoint.route for endpoint in self.endpoints]


@dataclass
class RequestLogRecord:
    """Request/response pair emitted by an instance for every handled request."""

    api_id: str
    method: str
    path: str
    response_status: int
    endpoint_id: Optional[str] = None
    scenario_id: Optional[str] = None
    request_headers: Dict[str, str] = field(default_factory=dict)
    request_body: Any = None
    response_headers: Dict[str, str] = field(default_factory=dict)
    response_body: Any = None
    duration_ms: float = 0.0
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the internal log wire format."""
        return {
            'timestamp': self.timestamp,
            'apiId': self.api_id,
            'endpointId': self.endpoint_id,
            'scenarioId': self.scenario_id,
            'method': self.method,
            'path': self.path,
            'requestHeaders': self.request_headers,
            'requestBody': self.request_body,
            'responseStatus': self.response_status,
            'responseHeaders': self.response_headers,
            'responseBody': self.response_body,
            'duration': round(self.duration_ms, 3)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RequestLogRecord':
        """Create record from the internal log wire format."""
        record = cls(
            api_id=str(_pick(data, 'apiId', 'api_id', default='')),
            method=str(data.get('method', '')),
            path=str(data.get('path', '')),
            response_status=int(_pick(data, 'responseStatus', 'response_status', default=0)),
            endpoint_id=_pick(data, 'endpointId', 'endpoint_id'),
            scenario_id=_pick(data, 'scenarioId', 'scenario_id'),
            request_headers=_pick(data, 'requestHeaders', 'request_headers', default=None) or {},
            request_body=_pick(data, 'requestBody', 'request_body'),
            response_headers=_pick(data, 'responseHeaders', 'response_headers', default=None) or {},
            response_body=_pick(data, 'responseBody', 'response_body'),
            duration_ms=float(_pick(data, 'duration', 'duration_ms', default=0.0))
        )
        if data.get('timestamp'):
            record.timestamp = str(data['timestamp'])
        return record
