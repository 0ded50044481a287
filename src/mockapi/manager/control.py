"""
MockAPI Control API

FastAPI application through which a management layer drives the supervisor:
start/stop/restart mock servers, inspect their status and port usage, and
ingest request logs posted by mock server processes.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..common.repository import MockApiRepository
from ..server.log_sink import LOG_INGEST_PATH
from ..server.models import RequestLogRecord
from .exceptions import (
    AlreadyRunningError,
    MockApiNotFoundError,
    NoPortsAvailableError,
    PortUnavailableError,
)
from .supervisor import MockServerSupervisor


logger = logging.getLogger("mockapi.manager.control")

ERROR_STATUS = (
    (AlreadyRunningError, 409),
    (MockApiNotFoundError, 404),
    (PortUnavailableError, 409),
    (NoPortsAvailableError, 503),
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _status_for(error: Exception) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


def _error_response(error: Exception, action: str) -> JSONResponse:
    status_code = _status_for(error)
    if status_code == 500:
        logger.error(f"Failed to {action}: {error}")
    return JSONResponse(
        status_code=status_code,
        content={
            'success': False,
            'error': f"Failed to {action}",
            'message': str(error)
        }
    )


async def _json_body(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        data = await request.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def create_control_app(
    supervisor: MockServerSupervisor,
    repository: MockApiRepository,
    manage_lifecycle: bool = True
) -> FastAPI:
    """
    Build the control API around a supervisor.

    Args:
        supervisor: Supervisor owning the mock server instances
        repository: Repository receiving ingested request logs
        manage_lifecycle: Initialize the supervisor on startup and shut it
            down on exit

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await supervisor.initialize()
        try:
            yield
        finally:
            if manage_lifecycle:
                await supervisor.shutdown_all(preserve_status=True)

    app = FastAPI(
        title="MockAPI Control",
        description="Lifecycle control for MockAPI mock servers",
        lifespan=lifespan
    )

    @app.get("/health")
    async def health():
        stats = supervisor.get_statistics()
        return {'status': 'ok', 'runningServers': stats['runningServers'], 'timestamp': _now()}

    @app.get("/api/mock-servers")
    async def list_servers():
        return {
            'success': True,
            'data': {
                'servers': [instance.to_dict() for instance in supervisor.get_all_instances()],
                'statistics': supervisor.get_statistics()
            }
        }

    @app.post("/api/mock-servers/{api_id}/start")
    async def start_server(api_id: str, request: Request):
        body = await _json_body(request)
        try:
            instance = await supervisor.start(api_id, force=bool(body.get('force', False)))
        except Exception as e:
            return _error_response(e, "start mock server")
        return {
            'success': True,
            'message': 'Mock server started successfully',
            'data': instance.to_dict()
        }

    @app.post("/api/mock-servers/{api_id}/stop")
    async def stop_server(api_id: str, request: Request):
        body = await _json_body(request)
        try:
            await supervisor.stop(api_id, graceful=bool(body.get('graceful', True)))
        except Exception as e:
            return _error_response(e, "stop mock server")
        return {'success': True, 'message': 'Mock server stopped successfully'}

    @app.post("/api/mock-servers/{api_id}/restart")
    async def restart_server(api_id: str):
        try:
            instance = await supervisor.restart(api_id)
        except Exception as e:
            return _error_response(e, "restart mock server")
        return {
            'success': True,
            'message': 'Mock server restarted successfully',
            'data': instance.to_dict()
        }

    @app.get("/api/mock-servers/{api_id}/status")
    async def server_status(api_id: str):
        instance = supervisor.get_instance(api_id)
        if instance is None:
            allocation = supervisor.ports.get_allocation(api_id)
            return {
                'success': True,
                'data': {
                    'apiId': api_id,
                    'status': 'stopped',
                    'port': allocation.port if allocation else None,
                    'pid': None
                }
            }
        return {'success': True, 'data': instance.to_dict()}

    @app.get("/api/ports")
    async def ports():
        return {
            'success': True,
            'data': {
                'statistics': supervisor.ports.get_statistics(),
                'allocations': [a.to_dict() for a in supervisor.ports.get_all_allocations()]
            }
        }

    @app.post(LOG_INGEST_PATH)
    async def ingest_log(request: Request):
        body = await _json_body(request)
        try:
            record = RequestLogRecord.from_dict(body)
            if not record.api_id:
                raise ValueError("apiId is required")
        except (KeyError, TypeError, ValueError) as e:
            return JSONResponse(
                status_code=400,
                content={'success': False, 'error': 'Invalid request log', 'message': str(e)}
            )
        try:
            await repository.insert_request_log(record)
        except Exception as e:
            return _error_response(e, "store request log")
        return JSONResponse(status_code=201, content={'success': True})

    return app
