"""
MockAPI Supervisor

Owns every mock server instance: starts and stops them, watches their
processes, probes their /health endpoints and restarts the ones that die.

Instances are only touched from the event loop, and start/stop/restart for
one mock API are serialized through a per-API lock. Different mock APIs
proceed concurrently.
"""

import asyncio
import contextlib
import logging
from typing import Any, Callable, Dict, List, Optional, Set

import httpx

from ..common.config import RuntimeSettings
from ..common.repository import STATUS_ACTIVE, STATUS_INACTIVE, MockApiRepository
from .exceptions import (
    AllocationNotFoundError,
    AlreadyRunningError,
    InstanceExitedError,
    InstanceStartupError,
    MockApiNotFoundError,
    StartupTimeoutError,
)
from .instance import InstanceState, MockServerInstance
from .launcher import ServerLauncher, SubprocessLauncher
from .ports import PortAllocator, port_in_use


logger = logging.getLogger("mockapi.manager.supervisor")


class MockServerSupervisor:
    """
    Lifecycle manager for mock server instances.

    Example:
        supervisor = MockServerSupervisor(repository, settings=settings)
        await supervisor.initialize()
        instance = await supervisor.start('users-api')
        ...
        await supervisor.shutdown_all()
    """

    def __init__(
        self,
        repository: MockApiRepository,
        port_allocator: Optional[PortAllocator] = None,
        launcher: Optional[ServerLauncher] = None,
        settings: Optional[RuntimeSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        port_probe: Callable[[str, int], bool] = port_in_use
    ):
        """
        Initialize supervisor.

        Args:
            repository: Persistence collaborator for definitions, status and ports
            port_allocator: Port table (built from settings if omitted)
            launcher: Starts server processes (subprocess launcher if omitted)
            settings: Timeouts, thresholds and ranges
            http_client: Client used for /health probes (created lazily if omitted)
            port_probe: Tells whether a port is held by someone else after a failed bind
        """
        self.settings = settings or RuntimeSettings()
        self.repository = repository
        self.ports = port_allocator or PortAllocator(
            repository,
            range_start=self.settings.port_range_start,
            range_end=self.settings.port_range_end,
            reserved_ports=self.settings.reserved_ports
        )
        self.launcher = launcher or SubprocessLauncher(
            host=self.settings.instance_host,
            management_url=self.settings.effective_management_url,
            log_level=self.settings.log_level,
            cors_enabled=self.settings.cors_enabled
        )
        self.port_probe = port_probe

        self._http_client = http_client
        self._owns_client = http_client is None
        self._instances: Dict[str, MockServerInstance] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._monitor_task: Optional[asyncio.Task] = None
        self._shutting_down = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> int:
        """
        Reconcile ports, start health monitoring and restore active APIs.

        Returns:
            Number of mock servers restored
        """
        self._shutting_down = False
        await self.ports.initialize()
        self.start_health_monitoring()
        restored = await self.restore_active_servers()
        logger.info(f"Mock server supervisor initialized ({restored} servers restored)")
        return restored

    async def start(self, api_id: str, force: bool = False) -> MockServerInstance:
        """
        Start the mock server of one mock API and wait until it is healthy.

        Args:
            api_id: Mock API identifier
            force: Stop a running instance first instead of refusing

        Returns:
            The running instance

        Raises:
            AlreadyRunningError: An instance is running and force is False
            MockApiNotFoundError: The repository doesn't know the API
            PortAllocationError: No usable port
            InstanceStartupError: The server died or timed out before becoming healthy
        """
        async with self._lock_for(api_id):
            return await self._start_unlocked(api_id, force=force)

    async def stop(self, api_id: str, graceful: bool = True):
        """
        Stop the mock server of one mock API.

        Stopping an API without a live instance only logs a warning.
        """
        async with self._lock_for(api_id):
            await self._stop_unlocked(api_id, graceful=graceful)

    async def restart(self, api_id: str) -> MockServerInstance:
        """Stop then start a mock API, counting the restart."""
        async with self._lock_for(api_id):
            return await self._restart_unlocked(api_id)

    async def shutdown_all(self, preserve_status: bool = True):
        """
        Stop every instance and release supervisor resources.

        Args:
            preserve_status: Keep the persisted 'active' status so the next
                initialize() brings the same APIs back
        """
        logger.info("Shutting down all mock servers...")
        self._shutting_down = True
        await self.stop_health_monitoring()

        api_ids = list(self._instances)
        results = await asyncio.gather(
            *(self._stop_for_shutdown(api_id, not preserve_status) for api_id in api_ids),
            return_exceptions=True
        )
        for api_id, result in zip(api_ids, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to stop mock server for API {api_id}: {result}")

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        await self.launcher.aclose()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

        logger.info("All mock servers shut down")

    async def _stop_for_shutdown(self, api_id: str, persist_status: bool):
        async with self._lock_for(api_id):
            await self._stop_unlocked(api_id, graceful=True, persist_status=persist_status)

    async def restore_active_servers(self) -> int:
        """
        Start every mock API whose persisted status is active.

        A failing API is marked inactive and never blocks the others.

        Returns:
            Number of servers restored
        """
        try:
            active_apis = await self.repository.list_active_mock_apis()
        except Exception as e:
            logger.error(f"Failed to list active mock APIs: {e}")
            return 0

        restored = 0
        for api in active_apis:
            try:
                logger.info(f"Restoring mock server for API {api.id}")
                await self.start(api.id, force=True)
                restored += 1
            except Exception as e:
                logger.error(f"Failed to restore mock server for API {api.id}: {e}")
                try:
                    await self.repository.set_status(api.id, STATUS_INACTIVE)
                except Exception as persist_error:
                    logger.error(f"Failed to mark API {api.id} inactive: {persist_error}")

        return restored

    # ------------------------------------------------------------------
    # Start / stop internals (caller holds the API lock)
    # ------------------------------------------------------------------

    async def _start_unlocked(
        self,
        api_id: str,
        force: bool = False,
        restart_count: Optional[int] = None,
        auto_restarts: int = 0
    ) -> MockServerInstance:
        existing = self._instances.get(api_id)
        if existing is not None and existing.status == InstanceState.RUNNING and not force:
            raise AlreadyRunningError(api_id, existing.port)

        if existing is not None and existing.status in (
            InstanceState.STARTING, InstanceState.RUNNING, InstanceState.ERROR
        ):
            logger.info(f"Stopping existing mock server for API {api_id} before starting")
            await self._stop_unlocked(api_id, graceful=True)

        if restart_count is None:
            restart_count = existing.restart_count if existing else 0

        api = await self.repository.find_mock_api_with_endpoints_and_scenarios(api_id)
        if api is None:
            raise MockApiNotFoundError(api_id)

        logger.info(f"Starting mock server for API {api_id} ({api.name})")

        try:
            port = await self._obtain_port(api_id)
            try:
                instance = await self._launch(api, port, restart_count, auto_restarts)
            except InstanceExitedError:
                if not self.port_probe(self.settings.instance_host, port):
                    raise
                new_port = await self.ports.resolve_conflict(api_id, port)
                await self.repository.save_port_assignment(api_id, new_port)
                instance = await self._launch(api, new_port, restart_count, auto_restarts)

            await self.ports.mark_active(api_id)
            await self.repository.set_status(api_id, STATUS_ACTIVE)
        except Exception as e:
            logger.error(f"Failed to start mock server for API {api_id}: {e}")
            failed = self._instances.get(api_id)
            if failed is not None and failed.status != InstanceState.STOPPED:
                failed.fail(str(e))
                await self._reap(failed)
            await self._rollback_start(api_id)
            raise

        logger.info(
            f"Mock server started for API {api_id} on port {instance.port} (PID: {instance.pid})"
        )
        return instance

    async def _obtain_port(self, api_id: str) -> int:
        allocation = self.ports.get_allocation(api_id)
        if allocation is not None:
            return allocation.port

        preferred = await self.repository.find_port_assignment(api_id)
        if preferred is not None and not self.ports.is_available(preferred, api_id):
            logger.warning(f"Persisted port {preferred} for API {api_id} is no longer usable, allocating a new one")
            preferred = None
        port = await self.ports.allocate(api_id, preferred)
        if port != preferred:
            await self.repository.save_port_assignment(api_id, port)
        return port

    async def _launch(self, api, port: int, restart_count: int, auto_restarts: int) -> MockServerInstance:
        instance = MockServerInstance(
            api_id=api.id,
            port=port,
            restart_count=restart_count,
            auto_restarts=auto_restarts
        )
        self._instances[api.id] = instance

        try:
            instance.handle = await self.launcher.launch(api, port)
            self._spawn(self._watch_exit(instance))
            await self._wait_for_running(instance)
        except Exception as e:
            instance.fail(str(e))
            await self._reap(instance)
            raise

        return instance

    async def _wait_for_running(self, instance: MockServerInstance):
        """Poll /health until it answers 200, the process exits or the timeout passes."""
        loop = asyncio.get_running_loop()
        timeout = self.settings.startup_timeout
        deadline = loop.time() + timeout

        while True:
            returncode = instance.handle.returncode
            if returncode is not None:
                raise InstanceExitedError(instance.api_id, returncode)

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise StartupTimeoutError(instance.api_id, timeout)

            if await self._probe(instance.port, min(self.settings.health_check_timeout, remaining)):
                instance.transition(InstanceState.RUNNING)
                instance.record_health(True)
                return

            remaining = deadline - loop.time()
            if remaining > 0:
                await asyncio.sleep(min(self.settings.startup_poll_interval, remaining))

    async def _stop_unlocked(self, api_id: str, graceful: bool = True, persist_status: bool = True):
        instance = self._instances.get(api_id)
        if instance is None:
            logger.warning(f"No mock server instance for API {api_id}")
            return
        if instance.status in (InstanceState.STOPPING, InstanceState.STOPPED):
            logger.warning(f"Mock server for API {api_id} is already {instance.status.value}")
            return

        logger.info(f"Stopping mock server for API {api_id}")
        instance.stop_requested = True

        try:
            instance.transition(InstanceState.STOPPING)
            await self._terminate(instance, graceful)
            instance.transition(InstanceState.STOPPED)
            await self._mark_port_inactive(api_id)
            if persist_status:
                await self.repository.set_status(api_id, STATUS_INACTIVE)
        except Exception as e:
            logger.error(f"Failed to stop mock server for API {api_id}: {e}")
            instance.fail(str(e))
            raise

        logger.info(f"Mock server stopped for API {api_id}")

    async def _terminate(self, instance: MockServerInstance, graceful: bool):
        handle = instance.handle
        if handle is None or handle.returncode is not None:
            return

        timeout = self.settings.stop_timeout
        if graceful:
            handle.terminate()
            try:
                await asyncio.wait_for(handle.wait(), timeout=timeout)
                return
            except asyncio.TimeoutError:
                logger.warning(f"Mock server for API {instance.api_id} ignored shutdown after {timeout:g}s, killing it")

        handle.kill()
        await asyncio.wait_for(handle.wait(), timeout=timeout)

    async def _reap(self, instance: MockServerInstance):
        """Kill whatever is left of a failed instance."""
        instance.stop_requested = True
        try:
            await self._terminate(instance, graceful=False)
        except asyncio.TimeoutError:
            logger.error(f"Mock server for API {instance.api_id} (PID: {instance.pid}) did not exit after kill")

    async def _rollback_start(self, api_id: str):
        await self._mark_port_inactive(api_id)
        try:
            await self.repository.set_status(api_id, STATUS_INACTIVE)
        except Exception as e:
            logger.error(f"Failed to mark API {api_id} inactive: {e}")

    async def _mark_port_inactive(self, api_id: str):
        try:
            await self.ports.mark_inactive(api_id)
        except AllocationNotFoundError:
            pass

    async def _restart_unlocked(self, api_id: str, automatic: bool = False) -> MockServerInstance:
        instance = self._instances.get(api_id)
        restart_count = 0
        auto_restarts = 0
        if instance is not None:
            instance.restart_count += 1
            restart_count = instance.restart_count
            if automatic:
                auto_restarts = instance.auto_restarts + 1

        logger.info(f"Restarting mock server for API {api_id}")
        await self._stop_unlocked(api_id, graceful=True)
        return await self._start_unlocked(
            api_id, force=True, restart_count=restart_count, auto_restarts=auto_restarts
        )

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _watch_exit(self, instance: MockServerInstance):
        """Turn an exit nobody asked for into a failure."""
        code = await instance.handle.wait()
        if instance.stop_requested:
            return

        was_running = instance.status == InstanceState.RUNNING
        if not instance.is_active:
            return

        reason = f"process exited unexpectedly with code {code}"
        logger.warning(f"Mock server for API {instance.api_id} {reason}")
        instance.error_count += 1
        instance.fail(reason)

        # Exits during startup are reported by the pending start() call
        if was_running:
            await self._handle_failure(instance, reason)

    async def _handle_failure(self, instance: MockServerInstance, reason: str):
        """Restart a failed instance with backoff, up to max_restart_attempts in a row."""
        api_id = instance.api_id
        async with self._lock_for(api_id):
            if self._shutting_down or instance.stop_requested or self._instances.get(api_id) is not instance:
                return

            instance.fail(reason)
            if instance.auto_restarts >= self.settings.max_restart_attempts:
                logger.error(
                    f"Max restart attempts ({self.settings.max_restart_attempts}) reached for API {api_id}, "
                    f"leaving it in error"
                )
                await self._reap(instance)
                await self._rollback_start(api_id)
                return

            delay = self.settings.restart_backoff * (2 ** instance.auto_restarts)
            logger.warning(f"Restarting mock server for API {api_id} in {delay:g}s ({reason})")
            if delay > 0:
                await asyncio.sleep(delay)
                if self._shutting_down:
                    return

            try:
                await self._restart_unlocked(api_id, automatic=True)
            except Exception as e:
                logger.error(f"Failed to restart mock server for API {api_id}: {e}")

    # ------------------------------------------------------------------
    # Health checks
    # ------------------------------------------------------------------

    def start_health_monitoring(self):
        """Run run_health_checks() every health_check_interval seconds."""
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._monitor_task = asyncio.create_task(self._monitor_loop(), name="mockapi-health-monitor")
        logger.debug(f"Health monitoring every {self.settings.health_check_interval:g}s")

    async def stop_health_monitoring(self):
        if self._monitor_task is None:
            return
        self._monitor_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._monitor_task
        self._monitor_task = None

    async def _monitor_loop(self):
        while True:
            await asyncio.sleep(self.settings.health_check_interval)
            try:
                await self.run_health_checks()
            except Exception:
                logger.exception("Health check pass failed")

    async def run_health_checks(self):
        """Probe every running instance once and react to repeated failures."""
        instances = self.get_running_instances()
        if not instances:
            return
        results = await asyncio.gather(
            *(self._check_and_react(instance) for instance in instances),
            return_exceptions=True
        )
        for instance, result in zip(instances, results):
            if isinstance(result, Exception):
                logger.error(f"Health check failed for API {instance.api_id}: {result}")

    async def _check_and_react(self, instance: MockServerInstance):
        healthy = await self.check_health(instance.api_id)
        if healthy:
            return
        if instance.consecutive_failures >= self.settings.health_failure_threshold:
            await self._handle_failure(
                instance, f"{instance.consecutive_failures} consecutive health checks failed"
            )

    async def check_health(self, api_id: str) -> bool:
        """
        Probe one instance's /health endpoint.

        Returns:
            True if the instance is running and answered 200 in time
        """
        instance = self._instances.get(api_id)
        if instance is None or instance.status != InstanceState.RUNNING:
            return False

        healthy = await self._probe(instance.port, self.settings.health_check_timeout)
        instance.record_health(healthy)
        if not healthy:
            logger.warning(
                f"Health check failed for API {api_id} "
                f"({instance.consecutive_failures}/{self.settings.health_failure_threshold})"
            )
        return healthy

    async def _probe(self, port: int, timeout: float) -> bool:
        url = f"http://{self._probe_host()}:{port}/health"
        try:
            response = await self._client().get(url, timeout=timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Health probe {url} failed: {e}")
            return False
        return response.status_code == 200

    def _probe_host(self) -> str:
        host = self.settings.instance_host
        return "127.0.0.1" if host in ("0.0.0.0", "") else host

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.settings.health_check_timeout)
        return self._http_client

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_instance(self, api_id: str) -> Optional[MockServerInstance]:
        return self._instances.get(api_id)

    def get_all_instances(self) -> List[MockServerInstance]:
        return list(self._instances.values())

    def get_running_instances(self) -> List[MockServerInstance]:
        return [i for i in self._instances.values() if i.status == InstanceState.RUNNING]

    def get_statistics(self) -> Dict[str, Any]:
        """Instance counts per state, restart and error totals, port usage."""
        instances = self.get_all_instances()
        counts = {state: 0 for state in InstanceState}
        for instance in instances:
            counts[instance.status] += 1

        return {
            'totalServers': len(instances),
            'runningServers': counts[InstanceState.RUNNING],
            'startingServers': counts[InstanceState.STARTING],
            'stoppedServers': counts[InstanceState.STOPPED],
            'errorServers': counts[InstanceState.ERROR],
            'totalRestarts': sum(i.restart_count for i in instances),
            'totalErrors': sum(i.error_count for i in instances),
            'ports': self.ports.get_statistics()
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_for(self, api_id: str) -> asyncio.Lock:
        lock = self._locks.get(api_id)
        if lock is None:
            lock = self._locks[api_id] = asyncio.Lock()
        return lock

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
