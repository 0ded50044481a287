"""
MockAPI Server Launchers

Start one mock server for a mock API and hand back a handle the supervisor
uses to watch and stop it.

- SubprocessLauncher: a separate ``python -m mockapi.server`` process per
  mock API, configured through environment variables
- InProcessLauncher: a uvicorn server running as an asyncio task, isolated
  so a crash or bind failure ends only that task
"""

import asyncio
import contextlib
import logging
import os
import signal
import sys
from typing import Dict, List, Optional

import uvicorn

from ..server.log_sink import RequestLogSink
from ..server.models import MockApiConfig
from ..server.server import MockServer, MockServerConfig


logger = logging.getLogger("mockapi.manager.launcher")


class ServerHandle:
    """Handle on a launched mock server."""

    pid: Optional[int] = None

    @property
    def returncode(self) -> Optional[int]:
        """Exit code once the server has exited, None while it runs."""
        raise NotImplementedError

    def terminate(self):
        """Ask the server to shut down gracefully."""
        raise NotImplementedError

    def kill(self):
        """Stop the server immediately."""
        raise NotImplementedError

    async def wait(self) -> int:
        """Wait for the server to exit and return its exit code."""
        raise NotImplementedError


class ServerLauncher:
    """Starts mock servers. Subclasses implement launch()."""

    async def launch(self, api: MockApiConfig, port: int) -> ServerHandle:
        raise NotImplementedError

    async def aclose(self):
        """Release launcher resources."""


class SubprocessHandle(ServerHandle):
    """Handle on a mock server child process."""

    def __init__(self, process: asyncio.subprocess.Process, api_id: str):
        self.process = process
        self.api_id = api_id
        self.pid = process.pid
        self._relays: List[asyncio.Task] = []

        if process.stdout is not None:
            self._relays.append(asyncio.create_task(self._relay(process.stdout, logging.INFO)))
        if process.stderr is not None:
            self._relays.append(asyncio.create_task(self._relay(process.stderr, logging.ERROR)))

    async def _relay(self, stream: asyncio.StreamReader, level: int):
        """Forward child output lines into the supervisor log."""
        while True:
            line = await stream.readline()
            if not line:
                break
            logger.log(level, f"[{self.api_id}] {line.decode('utf-8', errors='replace').rstrip()}")

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def terminate(self):
        self._send(signal.SIGTERM)

    def kill(self):
        self._send(signal.SIGKILL if hasattr(signal, 'SIGKILL') else signal.SIGTERM)

    def _send(self, sig: int):
        if self.process.returncode is not None:
            return
        try:
            self.process.send_signal(sig)
        except ProcessLookupError:
            # Already gone
            pass

    async def wait(self) -> int:
        code = await self.process.wait()
        if self._relays:
            await asyncio.gather(*self._relays, return_exceptions=True)
        return code


class SubprocessLauncher(ServerLauncher):
    """
    Launch each mock API as ``python -m mockapi.server``.

    The child receives PORT, API_ID, API_CONFIG and MANAGEMENT_API_URL in its
    environment, plus MOCKAPI_HOST, MOCKAPI_LOG_LEVEL and MOCKAPI_CORS, and
    reports liveness only through its /health endpoint.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        management_url: Optional[str] = None,
        log_level: str = "info",
        python_executable: Optional[str] = None,
        extra_env: Optional[Dict[str, str]] = None,
        cors_enabled: bool = True
    ):
        self.host = host
        self.management_url = management_url
        self.log_level = log_level
        self.cors_enabled = cors_enabled
        self.python_executable = python_executable or sys.executable
        self.extra_env = extra_env or {}

    def build_env(self, api: MockApiConfig, port: int) -> Dict[str, str]:
        """Environment handed to the child process."""
        env = dict(os.environ)
        env.update(self.extra_env)
        env.update({
            'PORT': str(port),
            'API_ID': api.id,
            'API_CONFIG': api.to_json(),
            'MOCKAPI_HOST': self.host,
            'MOCKAPI_LOG_LEVEL': self.log_level,
            'MOCKAPI_CORS': 'true' if self.cors_enabled else 'false',
            'PYTHONUNBUFFERED': '1'
        })
        if self.management_url:
            env['MANAGEMENT_API_URL'] = self.management_url
        return env

    async def launch(self, api: MockApiConfig, port: int) -> ServerHandle:
        process = await asyncio.create_subprocess_exec(
            self.python_executable, '-m', 'mockapi.server',
            env=self.build_env(api, port),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
        logger.info(f"Mock server process spawned for API {api.id} (PID: {process.pid})")
        return SubprocessHandle(process, api.id)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host."""

    def install_signal_handlers(self):
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class TaskHandle(ServerHandle):
    """Handle on a mock server running as an asyncio task."""

    def __init__(self, server: uvicorn.Server, api_id: str):
        self.server = server
        self.api_id = api_id
        self.pid = os.getpid()
        self._exit_code: Optional[int] = None
        self.task = asyncio.create_task(self._serve(), name=f"mockapi-{api_id}")

    async def _serve(self):
        try:
            await self.server.serve()
            code = 0
        except SystemExit as e:
            # uvicorn exits the "process" when it cannot bind
            code = e.code if isinstance(e.code, int) and e.code else 1
            logger.error(f"Mock server task for API {self.api_id} exited with code {code}")
        except asyncio.CancelledError:
            code = -9
        except Exception:
            logger.exception(f"Mock server task for API {self.api_id} crashed")
            code = 1
        if self._exit_code is None:
            self._exit_code = code

    @property
    def returncode(self) -> Optional[int]:
        if not self.task.done():
            return None
        return self._exit_code if self._exit_code is not None else 0

    def terminate(self):
        self.server.should_exit = True

    def kill(self):
        self.server.should_exit = True
        self.server.force_exit = True
        if not self.task.done():
            self._exit_code = -9
            self.task.cancel()

    async def wait(self) -> int:
        await asyncio.wait({self.task})
        return self.returncode


class InProcessLauncher(ServerLauncher):
    """
    Launch each mock API as a uvicorn server task inside this event loop.

    Request logs go straight to the given sink instead of over HTTP.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        log_sink: Optional[RequestLogSink] = None,
        log_level: str = "warning",
        cors_enabled: bool = True
    ):
        self.host = host
        self.log_sink = log_sink
        self.log_level = log_level
        self.cors_enabled = cors_enabled

    async def launch(self, api: MockApiConfig, port: int) -> ServerHandle:
        config = MockServerConfig(
            host=self.host,
            port=port,
            log_level=self.log_level,
            cors_enabled=self.cors_enabled
        )
        mock_server = MockServer(api, config=config, log_sink=self.log_sink)
        handle = TaskHandle(mock_server.build_uvicorn_server(server_class=_EmbeddedServer), api.id)
        logger.info(f"Mock server task started for API {api.id} on port {port}")
        return handle
