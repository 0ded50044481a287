"""
MockAPI Server Module

Per-instance side of MockAPI: everything that runs inside one mock server.

This module provides:
- Mock API data model
- Route table with parameterized paths
- Condition-based scenario matcher
- FastAPI-based mock server
- Request log sinks
"""

from .models import (
    MockApiConfig,
    EndpointConfig,
    ScenarioConfig,
    ScenarioCondition,
    RequestLogRecord,
    HTTP_METHODS,
    MAX_SCENARIOS_PER_ENDPOINT
)
from .routes import RouteTable, RouteMatch
from .matcher import ScenarioMatcher, RequestContext
from .log_sink import RequestLogSink, NullLogSink, MemoryLogSink, RepositoryLogSink, HttpLogSink
from .server import MockServer, MockServerConfig, MockMetrics, create_mock_server

__all__ = [
    # Model
    'MockApiConfig',
    'EndpointConfig',
    'ScenarioConfig',
    'ScenarioCondition',
    'RequestLogRecord',
    'HTTP_METHODS',
    'MAX_SCENARIOS_PER_ENDPOINT',

    # Routing
    'RouteTable',
    'RouteMatch',
    'ScenarioMatcher',
    'RequestContext',

    # Logging
    'RequestLogSink',
    'NullLogSink',
    'MemoryLogSink',
    'RepositoryLogSink',
    'HttpLogSink',

    # Server
    'MockServer',
    'MockServerConfig',
    'MockMetrics',
    'create_mock_server',
]
