"""
MockAPI Mock Server

FastAPI-based HTTP server that serves one mock API definition on its own port.

Features:
- Method+path routing over the configured endpoints
- Condition-based scenario selection
- Fixed /health and /info endpoints
- Structured 404 / 500 errors for unmatched routes and misconfigured endpoints
- Request log records emitted after the response is sent

Known limitation: /health and /info are registered before the user routes,
so a user endpoint configured as GET /health or GET /info is shadowed by
them. Other methods on those paths still reach the user endpoints.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask

from .log_sink import NullLogSink, RequestLogSink
from .matcher import RequestContext, ScenarioMatcher
from .models import HTTP_METHODS, MockApiConfig, RequestLogRecord, ScenarioConfig
from .routes import RouteTable


HEADERS_TO_SKIP = {'content-length', 'transfer-encoding', 'connection'}
NO_BODY_STATUSES = {204, 304}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class MockServerConfig:
    """Configuration for a single mock server instance."""

    host: str = "127.0.0.1"
    port: int = 3001
    log_level: str = "info"
    cors_enabled: bool = True
    access_log: bool = False


@dataclass
class MockMetrics:
    """Per-instance request counters."""

    total_requests: int = 0
    matched_requests: int = 0
    unmatched_requests: int = 0
    error_responses: int = 0
    log_failures: int = 0
    start_time: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        uptime_seconds = (datetime.now() - datetime.fromisoformat(self.start_time)).total_seconds()
        return {
            'total_requests': self.total_requests,
            'matched_requests': self.matched_requests,
            'unmatched_requests': self.unmatched_requests,
            'error_responses': self.error_responses,
            'log_failures': self.log_failures,
            'uptime_seconds': round(uptime_seconds, 2),
            'start_time': self.start_time
        }


class MockServer:
    """
    FastAPI mock server for one mock API.

    Example:
        api = MockApiConfig.from_dict(definition)
        server = MockServer(api, config=MockServerConfig(port=3001))
        server.start()

        # Embedded in a running event loop
        uvicorn_server = server.build_uvicorn_server()
        await uvicorn_server.serve()
    """

    def __init__(
        self,
        api: MockApiConfig,
        config: Optional[MockServerConfig] = None,
        log_sink: Optional[RequestLogSink] = None,
        scenario_matcher: Optional[ScenarioMatcher] = None
    ):
        """
        Initialize mock server.

        Args:
            api: Mock API definition to serve
            config: Optional MockServerConfig for host/port and behaviour
            log_sink: Where request log records go (discarded if None)
            scenario_matcher: Optional ScenarioMatcher (will create if None)
        """
        self.api = api
        self.config = config or MockServerConfig()
        self.metrics = MockMetrics()
        self.log_sink = log_sink or NullLogSink()
        self.matcher = scenario_matcher or ScenarioMatcher()
        self.routes = RouteTable(list(api.endpoints))

        self.logger = logging.getLogger("mockapi.server")

        self.app = self._create_app()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application with routes."""
        app = FastAPI(
            title=f"MockAPI - {self.api.name}",
            description=self.api.description or "Mock API served by MockAPI",
            docs_url=None,
            redoc_url=None,
            openapi_url=None
        )

        if self.config.cors_enabled:
            app.add_middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=list(HTTP_METHODS),
                allow_headers=["*"]
            )

        @app.get("/health")
        async def health():
            """Liveness probe used by the supervisor."""
            return JSONResponse(content={
                'status': 'ok',
                'apiId': self.api.id,
                'apiName': self.api.name,
                'port': self.config.port,
                'timestamp': _now()
            })

        @app.get("/info")
        async def info():
            """Summary of the configured endpoints."""
            return JSONResponse(content={
                'api': {
                    'id': self.api.id,
                    'name': self.api.name,
                    'description': self.api.description,
                    'endpointCount': len(self.api.endpoints)
                },
                'endpoints': [
                    {
                        'id': endpoint.id,
                        'method': endpoint.method,
                        'path': endpoint.path,
                        'description': endpoint.description,
                        'scenarioCount': len(endpoint.scenarios)
                    }
                    for endpoint in self.api.endpoints
                ],
                'metrics': self.metrics.to_dict(),
                'timestamp': _now()
            })

        @app.api_route("/{path:path}", methods=list(HTTP_METHODS))
        async def mock_request(request: Request, path: str):
            """Serve configured endpoints."""
            return await self._handle_request(request)

        return app

    async def _handle_request(self, request: Request) -> Response:
        """
        Route a request to its endpoint and answer with the selected scenario.

        Args:
            request: FastAPI Request object

        Returns:
            Response carrying the scenario, or a structured 404/500 error
        """
        start_time = time.perf_counter()
        self.metrics.total_requests += 1

        method = request.method
        path = request.url.path
        body = await request.body()

        query: Dict[str, str] = {}
        for key, value in request.query_params.multi_items():
            query.setdefault(key, value)

        context = RequestContext(
            method=method,
            path=path,
            headers=dict(request.headers),
            query=query,
            body=body
        )

        route = self.routes.resolve(method, path)
        if route is None:
            self.metrics.unmatched_requests += 1
            self.logger.warning(f"No endpoint configured for {method} {path}")
            payload = {
                'error': 'Endpoint not found',
                'message': f"No endpoint configured for {method} {path}",
                'method': method,
                'path': path,
                'apiId': self.api.id,
                'availableEndpoints': self.routes.describe(),
                'timestamp': _now()
            }
            response = JSONResponse(content=payload, status_code=404)
            return self._attach_log(response, context, start_time, payload)

        endpoint = route.endpoint
        try:
            scenario = self.matcher.match(endpoint, context)

            if scenario is None:
                self.metrics.error_responses += 1
                self.logger.error(f"No scenario available for {endpoint.route} (endpoint {endpoint.id})")
                payload = {
                    'error': 'No matching scenario',
                    'message': 'No scenario found for this request',
                    'endpointId': endpoint.id,
                    'timestamp': _now()
                }
                response = JSONResponse(content=payload, status_code=500)
                return self._attach_log(response, context, start_time, payload, endpoint_id=endpoint.id)

            self.metrics.matched_requests += 1
            head_only = method == 'HEAD'
            response = self._create_response(scenario, head_only=head_only)
            self.logger.debug(f"{method} {path} -> {endpoint.route} [{scenario.name}] {scenario.status_code}")
            return self._attach_log(
                response,
                context,
                start_time,
                scenario.response_body,
                endpoint_id=endpoint.id,
                scenario_id=scenario.id,
                response_headers=self._scenario_headers(scenario)
            )

        except Exception:
            self.metrics.error_responses += 1
            self.logger.exception(f"Error processing request for {method} {path}")
            payload = {
                'error': 'Internal server error',
                'message': 'An error occurred while processing the request',
                'endpointId': endpoint.id,
                'timestamp': _now()
            }
            response = JSONResponse(content=payload, status_code=500)
            return self._attach_log(response, context, start_time, payload, endpoint_id=endpoint.id)

    def _scenario_headers(self, scenario: ScenarioConfig) -> Dict[str, str]:
        """Scenario headers minus hop-by-hop ones, with a JSON content type by default."""
        headers = {
            k: v for k, v in scenario.response_headers.items()
            if k.lower() not in HEADERS_TO_SKIP
        }
        if not any(k.lower() == 'content-type' for k in headers):
            headers['Content-Type'] = 'application/json'
        return headers

    def _create_response(self, scenario: ScenarioConfig, head_only: bool = False) -> Response:
        """
        Create Response from a scenario.

        Args:
            scenario: Selected scenario
            head_only: Drop the body (HEAD request)

        Returns:
            Response with the scenario's status, headers and body
        """
        headers = self._scenario_headers(scenario)

        if head_only or scenario.status_code in NO_BODY_STATUSES or scenario.status_code < 200:
            content = b''
        else:
            content = self._render_body(scenario, headers)

        return Response(content=content, status_code=scenario.status_code, headers=headers)

    def _render_body(self, scenario: ScenarioConfig, headers: Dict[str, str]) -> bytes:
        body = scenario.response_body
        content_type = next((v for k, v in headers.items() if k.lower() == 'content-type'), '')

        if isinstance(body, bytes):
            return body
        if isinstance(body, str) and 'json' not in content_type.lower():
            return body.encode('utf-8')
        return json.dumps(body if body is not None else {}).encode('utf-8')

    def _attach_log(
        self,
        response: Response,
        context: RequestContext,
        start_time: float,
        response_body: Any,
        endpoint_id: Optional[str] = None,
        scenario_id: Optional[str] = None,
        response_headers: Optional[Dict[str, str]] = None
    ) -> Response:
        """Schedule the log record to be emitted once the response is sent."""
        elapsed_ms = (time.perf_counter() - start_time) * 1000

        request_body: Any = context.json_body
        if request_body is None and context.body:
            request_body = context.body.decode('utf-8', errors='replace')

        record = RequestLogRecord(
            api_id=self.api.id,
            endpoint_id=endpoint_id,
            scenario_id=scenario_id,
            method=context.method,
            path=context.path,
            request_headers=dict(context.headers),
            request_body=request_body,
            response_status=response.status_code,
            response_headers=response_headers if response_headers is not None else {
                k: v for k, v in response.headers.items() if k.lower() not in HEADERS_TO_SKIP
            },
            response_body=response_body,
            duration_ms=elapsed_ms
        )
        response.background = BackgroundTask(self._emit_log, record)
        return response

    async def _emit_log(self, record: RequestLogRecord):
        """Send a record to the log sink; failures are logged, never raised."""
        try:
            await self.log_sink.emit(record)
        except Exception as e:
            self.metrics.log_failures += 1
            self.logger.error(f"Failed to log request {record.method} {record.path}: {e}")

    def route_summary(self) -> str:
        """Console summary of the served routes."""
        lines = [f"Mock server for API \"{self.api.name}\" on http://{self.config.host}:{self.config.port}"]
        if self.api.endpoints:
            for endpoint in self.api.endpoints:
                lines.append(f"   {endpoint.route} ({len(endpoint.scenarios)} scenarios)")
        else:
            lines.append("   (no endpoints configured)")
        return "\n".join(lines)

    def build_uvicorn_server(self, server_class: type = uvicorn.Server) -> uvicorn.Server:
        """Build a uvicorn server for this app without starting it."""
        config = uvicorn.Config(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level,
            access_log=self.config.access_log,
            lifespan="off"
        )
        return server_class(config)

    def start(self):
        """Start the mock server (blocking)."""
        self.logger.info(self.route_summary())
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level,
            access_log=self.config.access_log
        )

    def get_app(self) -> FastAPI:
        """
        Get the FastAPI app instance for testing or custom deployment.

        Returns:
            FastAPI application instance
        """
        return self.app


def create_mock_server(
    definition: Dict[str, Any],
    host: str = "127.0.0.1",
    port: int = 3001,
    log_sink: Optional[RequestLogSink] = None,
    cors_enabled: bool = True,
    log_level: str = "info"
) -> MockServer:
    """
    Convenience function to create a mock server from a definition dictionary.

    Args:
        definition: Mock API definition (camelCase or snake_case keys)
        host: Host to bind to
        port: Port to bind to
        log_sink: Where request log records go
        cors_enabled: Enable permissive CORS middleware
        log_level: uvicorn log level

    Returns:
        Configured MockServer instance
    """
    config = MockServerConfig(host=host, port=port, cors_enabled=cors_enabled, log_level=log_level)
    return MockServer(MockApiConfig.from_dict(definition), config=config, log_sink=log_sink)
