"""
MockAPI Request Log Sinks

Destinations for the request log records a mock server instance emits.
Emission is best-effort: a sink failure is logged and never reaches the
client whose request produced the record.
"""

import logging
from typing import Any, List, Optional

import httpx

from .models import RequestLogRecord


logger = logging.getLogger("mockapi.server.logs")

LOG_INGEST_PATH = "/api/logs/internal/create"


class RequestLogSink:
    """Base sink. Subclasses implement emit()."""

    async def emit(self, record: RequestLogRecord) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release any resources held by the sink."""


class NullLogSink(RequestLogSink):
    """Discards every record."""

    async def emit(self, record: RequestLogRecord) -> None:
        return None


class MemoryLogSink(RequestLogSink):
    """Keeps records in a bounded list; handy for embedding and tests."""

    def __init__(self, limit: int = 1000):
        self.limit = limit
        self.records: List[RequestLogRecord] = []

    async def emit(self, record: RequestLogRecord) -> None:
        if self.limit and len(self.records) >= self.limit:
            self.records.pop(0)
        self.records.append(record)


class RepositoryLogSink(RequestLogSink):
    """Hands records straight to the persistence collaborator."""

    def __init__(self, repository: Any):
        self.repository = repository

    async def emit(self, record: RequestLogRecord) -> None:
        await self.repository.insert_request_log(record)


class HttpLogSink(RequestLogSink):
    """
    Posts records to the management API's internal log endpoint.

    Example:
        sink = HttpLogSink('http://localhost:3000')
        await sink.emit(record)
    """

    def __init__(
        self,
        management_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize HTTP log sink.

        Args:
            management_url: Base URL of the management API
            timeout: Per-request timeout in seconds
            client: Optional pre-built httpx client (will create if None)
        """
        self.url = management_url.rstrip('/') + LOG_INGEST_PATH
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def emit(self, record: RequestLogRecord) -> None:
        try:
            response = await self.client.post(self.url, json=record.to_dict())
        except httpx.HTTPError as e:
            logger.error(f"Error logging request {record.method} {record.path}: {e}")
            return

        if response.is_error:
            logger.error(f"Failed to log request: {response.status_code} {response.reason_phrase}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
