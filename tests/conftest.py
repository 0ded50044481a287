"""
Shared fixtures for supervisor and control API tests.

The launcher and /health endpoint are faked so lifecycle tests never spawn
processes or open sockets.
"""

import asyncio

import httpx
import pytest

from mockapi.common.config import RuntimeSettings
from mockapi.common.repository import InMemoryMockApiRepository
from mockapi.manager.launcher import ServerHandle, ServerLauncher
from mockapi.manager.supervisor import MockServerSupervisor
from mockapi.server.models import MockApiConfig


class FakeHandle(ServerHandle):
    """Process stand-in whose exit is driven by the test."""

    def __init__(self, pid, ignore_terminate=False):
        self.pid = pid
        self.ignore_terminate = ignore_terminate
        self.terminated = False
        self.killed = False
        self._code = None
        self._exited = asyncio.Event()

    @property
    def returncode(self):
        return self._code

    def exit(self, code):
        if self._code is None:
            self._code = code
            self._exited.set()

    def terminate(self):
        self.terminated = True
        if not self.ignore_terminate:
            self.exit(0)

    def kill(self):
        self.killed = True
        self.exit(-9)

    async def wait(self):
        await self._exited.wait()
        return self._code


class FakeLauncher(ServerLauncher):
    """Hands out FakeHandles and remembers every launch."""

    def __init__(self):
        self.launches = []
        self.handles = []
        self.exit_codes = []
        self.ignore_terminate = False
        self.fail_for = set()

    async def launch(self, api, port):
        if api.id in self.fail_for:
            raise OSError(f"cannot spawn {api.id}")
        self.launches.append((api.id, port))
        handle = FakeHandle(pid=1000 + len(self.launches), ignore_terminate=self.ignore_terminate)
        if self.exit_codes:
            handle.exit(self.exit_codes.pop(0))
        self.handles.append(handle)
        return handle


class FakeHealth:
    """httpx transport answering /health probes."""

    def __init__(self):
        self.failures_left = 0
        self.down = False
        self.probes = []

    def __call__(self, request):
        self.probes.append(request.url.port)
        if self.down:
            return httpx.Response(503)
        if self.failures_left > 0:
            self.failures_left -= 1
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={'status': 'ok'})


FAST_SETTINGS = dict(
    startup_timeout=0.3,
    startup_poll_interval=0.01,
    stop_timeout=0.2,
    health_check_interval=3600,
    health_check_timeout=0.1,
    restart_backoff=0
)


def api(api_id, name=None):
    return MockApiConfig.from_dict({
        'id': api_id,
        'name': name or api_id,
        'endpoints': [{'method': 'GET', 'path': '/ping', 'scenarios': [{'id': 's', 'name': 'pong'}]}]
    })


@pytest.fixture
def repository():
    return InMemoryMockApiRepository([api('users-api'), api('orders-api')])


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def health():
    return FakeHealth()


@pytest.fixture
def make_supervisor(repository, launcher, health):
    """Build a supervisor wired to the fakes (call inside the event loop)."""

    def factory(port_probe=lambda host, port: False, **overrides):
        settings = RuntimeSettings(**{**FAST_SETTINGS, **overrides})
        return MockServerSupervisor(
            repository,
            launcher=launcher,
            settings=settings,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(health)),
            port_probe=port_probe
        )

    return factory


async def wait_until(predicate, timeout=1.0):
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def eventually():
    return wait_until


@pytest.fixture
def make_api():
    return api
