"""
Tests for MockAPI Supervisor

Tests instance lifecycle management including:
- Start / stop / restart and their persisted side effects
- Startup failures and rollback
- Port conflicts
- Health checks and automatic restarts
- Restoring active APIs and shutdown
"""

import asyncio

import pytest

from mockapi.common.repository import STATUS_ACTIVE, STATUS_INACTIVE
from mockapi.manager.exceptions import (
    AlreadyRunningError,
    InstanceExitedError,
    MockApiNotFoundError,
    StartupTimeoutError
)
from mockapi.manager.instance import InstanceState
from mockapi.manager.ports import ACTIVE, INACTIVE


class TestStart:
    """Test MockServerSupervisor.start."""

    @pytest.mark.asyncio
    async def test_start(self, make_supervisor, repository, launcher):
        """Test a healthy start marks the API active everywhere."""
        supervisor = make_supervisor()

        instance = await supervisor.start('users-api')

        assert instance.status == InstanceState.RUNNING
        assert instance.port == 3001
        assert instance.pid == 1001
        assert launcher.launches == [('users-api', 3001)]
        assert repository.statuses['users-api'] == STATUS_ACTIVE
        assert repository.ports['users-api'] == 3001
        assert supervisor.ports.get_allocation('users-api').status == ACTIVE

    @pytest.mark.asyncio
    async def test_persisted_port_reused(self, make_supervisor, repository, launcher):
        """Test the persisted port assignment is the preferred port."""
        repository.ports['users-api'] = 4100

        instance = await make_supervisor().start('users-api')

        assert instance.port == 4100
        assert launcher.launches == [('users-api', 4100)]

    @pytest.mark.asyncio
    async def test_reserved_persisted_port_replaced(self, make_supervisor, repository, launcher):
        """Test a persisted port that is now reserved is swapped for a free one."""
        repository.ports['users-api'] = 5000

        instance = await make_supervisor().start('users-api')

        assert instance.status == InstanceState.RUNNING
        assert instance.port == 3001
        assert launcher.launches == [('users-api', 3001)]
        assert repository.ports['users-api'] == 3001
        assert repository.statuses['users-api'] == STATUS_ACTIVE

    @pytest.mark.asyncio
    async def test_shared_persisted_port_replaced(self, make_supervisor, repository):
        """Test the API that lost a doubly persisted port starts on a fresh one."""
        repository.ports['users-api'] = 4100
        repository.ports['orders-api'] = 4100
        supervisor = make_supervisor()
        await supervisor.ports.initialize()

        orders = await supervisor.start('orders-api')
        users = await supervisor.start('users-api')

        assert users.port == 4100
        assert orders.port == 3001
        assert repository.ports['orders-api'] == 3001
        assert repository.ports['users-api'] == 4100

    @pytest.mark.asyncio
    async def test_already_running(self, make_supervisor, launcher):
        """Test a second start without force is refused."""
        supervisor = make_supervisor()
        await supervisor.start('users-api')

        with pytest.raises(AlreadyRunningError, match='already running on port 3001'):
            await supervisor.start('users-api')
        assert len(launcher.launches) == 1

    @pytest.mark.asyncio
    async def test_force_replaces_instance(self, make_supervisor, launcher):
        """Test force stops the running instance first."""
        supervisor = make_supervisor()

        first = await supervisor.start('users-api')
        second = await supervisor.start('users-api', force=True)

        assert first.status == InstanceState.STOPPED
        assert second.status == InstanceState.RUNNING
        assert launcher.handles[0].terminated is True
        assert launcher.launches == [('users-api', 3001), ('users-api', 3001)]

    @pytest.mark.asyncio
    async def test_unknown_api(self, make_supervisor, launcher):
        """Test starting an API the repository doesn't know."""
        supervisor = make_supervisor()

        with pytest.raises(MockApiNotFoundError, match='API ghost-api not found'):
            await supervisor.start('ghost-api')
        assert supervisor.ports.get_allocation('ghost-api') is None
        assert launcher.launches == []

    @pytest.mark.asyncio
    async def test_concurrent_starts_get_distinct_ports(self, make_supervisor):
        """Test different APIs start concurrently on different ports."""
        supervisor = make_supervisor()

        first, second = await asyncio.gather(supervisor.start('users-api'), supervisor.start('orders-api'))

        assert {first.port, second.port} == {3001, 3002}

    @pytest.mark.asyncio
    async def test_concurrent_starts_same_api(self, make_supervisor, launcher):
        """Test overlapping starts of one API never run two instances."""
        supervisor = make_supervisor()

        results = await asyncio.gather(
            supervisor.start('users-api'),
            supervisor.start('users-api'),
            return_exceptions=True
        )

        assert sum(isinstance(r, AlreadyRunningError) for r in results) == 1
        assert len(launcher.launches) == 1


class TestStartupFailures:
    """Test rollback when an instance never becomes healthy."""

    @pytest.mark.asyncio
    async def test_startup_timeout(self, make_supervisor, repository, launcher, health):
        """Test a silent instance is killed and the API reverted to inactive."""
        health.down = True
        supervisor = make_supervisor()

        with pytest.raises(StartupTimeoutError, match='timeout'):
            await supervisor.start('users-api')

        assert supervisor.get_instance('users-api').status == InstanceState.ERROR
        allocation = supervisor.ports.get_allocation('users-api')
        assert allocation is not None
        assert allocation.status == INACTIVE
        assert launcher.handles[0].killed is True
        assert repository.statuses['users-api'] == STATUS_INACTIVE
        assert len(health.probes) > 1

    @pytest.mark.asyncio
    async def test_exit_during_startup(self, make_supervisor, repository, launcher):
        """Test an instance that dies before becoming healthy."""
        launcher.exit_codes = [1]

        with pytest.raises(InstanceExitedError) as exc_info:
            await make_supervisor().start('users-api')

        assert exc_info.value.exit_code == 1
        assert len(launcher.launches) == 1
        assert repository.statuses['users-api'] == STATUS_INACTIVE

    @pytest.mark.asyncio
    async def test_launch_failure(self, make_supervisor, repository, launcher):
        """Test a launcher error is propagated after rollback."""
        launcher.fail_for.add('users-api')

        with pytest.raises(OSError, match='cannot spawn'):
            await make_supervisor().start('users-api')
        assert repository.statuses['users-api'] == STATUS_INACTIVE

    @pytest.mark.asyncio
    async def test_port_conflict_moves_api(self, make_supervisor, repository, launcher):
        """Test a port taken by another process is retired and the start retried."""
        launcher.exit_codes = [1]
        supervisor = make_supervisor(port_probe=lambda host, port: port == 3001)

        instance = await supervisor.start('users-api')

        assert instance.port == 3002
        assert instance.status == InstanceState.RUNNING
        assert launcher.launches == [('users-api', 3001), ('users-api', 3002)]
        assert repository.ports['users-api'] == 3002
        assert 3001 in supervisor.ports.reserved_ports


class TestStop:
    """Test MockServerSupervisor.stop."""

    @pytest.mark.asyncio
    async def test_stop(self, make_supervisor, repository, launcher):
        """Test a graceful stop."""
        supervisor = make_supervisor()
        instance = await supervisor.start('users-api')

        await supervisor.stop('users-api')

        assert instance.status == InstanceState.STOPPED
        assert launcher.handles[0].terminated is True
        assert launcher.handles[0].killed is False
        assert repository.statuses['users-api'] == STATUS_INACTIVE
        assert supervisor.ports.get_allocation('users-api').status == INACTIVE

    @pytest.mark.asyncio
    async def test_stop_twice_and_unknown(self, make_supervisor):
        """Test redundant stops are harmless."""
        supervisor = make_supervisor()
        await supervisor.start('users-api')

        await supervisor.stop('users-api')
        await supervisor.stop('users-api')
        await supervisor.stop('orders-api')

        assert supervisor.get_instance('users-api').status == InstanceState.STOPPED
        assert supervisor.get_instance('orders-api') is None

    @pytest.mark.asyncio
    async def test_kill_after_grace_period(self, make_supervisor, launcher):
        """Test an instance ignoring shutdown is killed."""
        launcher.ignore_terminate = True
        supervisor = make_supervisor()
        instance = await supervisor.start('users-api')

        await supervisor.stop('users-api')

        assert launcher.handles[0].terminated is True
        assert launcher.handles[0].killed is True
        assert instance.status == InstanceState.STOPPED

    @pytest.mark.asyncio
    async def test_forced_stop(self, make_supervisor, launcher):
        """Test graceful=False kills immediately."""
        supervisor = make_supervisor()
        await supervisor.start('users-api')

        await supervisor.stop('users-api', graceful=False)

        assert launcher.handles[0].terminated is False
        assert launcher.handles[0].killed is True


class TestRestart:
    """Test MockServerSupervisor.restart."""

    @pytest.mark.asyncio
    async def test_restart(self, make_supervisor, launcher):
        """Test restart replaces the instance and counts the restart."""
        supervisor = make_supervisor()
        first = await supervisor.start('users-api')

        second = await supervisor.restart('users-api')
        count_after_first_restart = second.restart_count
        third = await supervisor.restart('users-api')

        assert first.status == InstanceState.STOPPED
        assert second.status == InstanceState.STOPPED
        assert count_after_first_restart == 1
        assert third.restart_count == 2
        assert third.status == InstanceState.RUNNING
        assert third.port == first.port
        assert third.pid != first.pid
        assert len(launcher.launches) == 3

    @pytest.mark.asyncio
    async def test_restart_count_survives_start(self, make_supervisor):
        """Test a later forced start keeps the restart total."""
        supervisor = make_supervisor()
        await supervisor.start('users-api')
        await supervisor.restart('users-api')

        instance = await supervisor.start('users-api', force=True)

        assert instance.restart_count == 1


class TestHealthChecks:
    """Test health probing and automatic restarts."""

    @pytest.mark.asyncio
    async def test_healthy_check(self, make_supervisor):
        """Test a healthy probe updates the instance."""
        supervisor = make_supervisor()
        instance = await supervisor.start('users-api')

        assert await supervisor.check_health('users-api') is True
        assert await supervisor.check_health('ghost') is False
        assert instance.consecutive_failures == 0
        assert instance.last_health_check is not None

    @pytest.mark.asyncio
    async def test_three_failures_trigger_one_restart(self, make_supervisor, launcher, health):
        """Test the failure threshold restarts the instance exactly once."""
        supervisor = make_supervisor()
        first = await supervisor.start('users-api')
        health.failures_left = 3

        await supervisor.run_health_checks()
        await supervisor.run_health_checks()
        assert len(launcher.launches) == 1
        await supervisor.run_health_checks()
        await supervisor.run_health_checks()

        assert len(launcher.launches) == 2
        assert first.status == InstanceState.STOPPED
        assert first.error_count == 3
        current = supervisor.get_instance('users-api')
        assert current is not first
        assert current.status == InstanceState.RUNNING
        assert current.restart_count == 1

    @pytest.mark.asyncio
    async def test_intermittent_failures_tolerated(self, make_supervisor, launcher, health):
        """Test non-consecutive failures never reach the threshold."""
        supervisor = make_supervisor()
        await supervisor.start('users-api')

        for _ in range(3):
            health.failures_left = 2
            for _ in range(3):
                await supervisor.run_health_checks()

        assert len(launcher.launches) == 1

    @pytest.mark.asyncio
    async def test_monitor_loop(self, make_supervisor, launcher, health, eventually):
        """Test the periodic monitor drives restarts on its own."""
        supervisor = make_supervisor(health_check_interval=0.01)
        await supervisor.initialize()
        await supervisor.start('users-api')
        health.failures_left = 3

        await eventually(lambda: len(launcher.launches) == 2)
        await eventually(lambda: supervisor.get_instance('users-api').status == InstanceState.RUNNING)
        await supervisor.shutdown_all()

    @pytest.mark.asyncio
    async def test_unexpected_exit_restarts(self, make_supervisor, launcher, eventually):
        """Test a crash while running is restarted."""
        supervisor = make_supervisor()
        first = await supervisor.start('users-api')

        launcher.handles[0].exit(1)
        await eventually(lambda: supervisor.get_instance('users-api') is not first)
        await eventually(lambda: supervisor.get_instance('users-api').status == InstanceState.RUNNING)

        current = supervisor.get_instance('users-api')
        assert first.last_error == 'process exited unexpectedly with code 1'
        assert current.restart_count == 1
        assert current.port == first.port

    @pytest.mark.asyncio
    async def test_restart_limit(self, make_supervisor, repository, launcher, eventually):
        """Test automatic restarts stop after max_restart_attempts in a row."""
        supervisor = make_supervisor(max_restart_attempts=2)
        await supervisor.start('users-api')

        for expected_launches in (2, 3):
            launcher.handles[-1].exit(1)
            await eventually(
                lambda: len(launcher.launches) == expected_launches
                and supervisor.get_instance('users-api').status == InstanceState.RUNNING
            )

        last = supervisor.get_instance('users-api')
        launcher.handles[-1].exit(1)
        await eventually(lambda: repository.statuses['users-api'] == STATUS_INACTIVE)
        await asyncio.sleep(0.05)

        assert len(launcher.launches) == 3
        assert last.status == InstanceState.ERROR

        # An operator restart brings it back with a fresh budget
        revived = await supervisor.restart('users-api')

        assert revived.status == InstanceState.RUNNING
        assert revived.auto_restarts == 0
        assert revived.restart_count == 3

    @pytest.mark.asyncio
    async def test_no_restart_after_shutdown_during_backoff(self, make_supervisor, launcher, eventually):
        """Test a shutdown arriving during the restart backoff cancels the restart."""
        supervisor = make_supervisor(restart_backoff=0.1)
        first = await supervisor.start('users-api')

        launcher.handles[0].exit(1)
        await eventually(lambda: first.status == InstanceState.ERROR)
        await supervisor.shutdown_all()

        assert len(launcher.launches) == 1
        assert supervisor.get_instance('users-api') is first
        assert first.status == InstanceState.STOPPED


class TestRestoreAndShutdown:
    """Test initialize() restoration and shutdown_all()."""

    @pytest.mark.asyncio
    async def test_restore_isolates_failures(self, make_supervisor, make_api, repository, launcher):
        """Test one failing API doesn't block the others."""
        repository.add(make_api('billing-api'))
        for api_id in ('users-api', 'orders-api', 'billing-api'):
            repository.statuses[api_id] = STATUS_ACTIVE
        launcher.fail_for.add('orders-api')
        supervisor = make_supervisor()

        restored = await supervisor.initialize()
        running = sorted(i.api_id for i in supervisor.get_running_instances())
        await supervisor.shutdown_all()

        assert restored == 2
        assert running == ['billing-api', 'users-api']
        assert repository.statuses['orders-api'] == STATUS_INACTIVE
        assert repository.statuses['users-api'] == STATUS_ACTIVE

    @pytest.mark.asyncio
    async def test_restore_with_reserved_persisted_port(self, make_supervisor, repository):
        """Test an active API persisted on a now-reserved port is restored elsewhere."""
        repository.statuses['users-api'] = STATUS_ACTIVE
        repository.ports['users-api'] = 5000
        supervisor = make_supervisor()

        restored = await supervisor.initialize()
        instance = supervisor.get_instance('users-api')
        await supervisor.shutdown_all()

        assert restored == 1
        assert instance.port == 3001
        assert repository.ports['users-api'] == 3001
        assert repository.statuses['users-api'] == STATUS_ACTIVE

    @pytest.mark.asyncio
    async def test_shutdown_preserves_status(self, make_supervisor, repository, launcher):
        """Test a shutdown keeps APIs active so the next boot restores them."""
        supervisor = make_supervisor()
        await supervisor.start('users-api')
        await supervisor.start('orders-api')
        await supervisor.shutdown_all()
        stopped = [i.status for i in supervisor.get_all_instances()]

        successor = make_supervisor()
        restored = await successor.initialize()
        ports = {i.api_id: i.port for i in successor.get_running_instances()}
        await successor.shutdown_all()

        assert stopped == [InstanceState.STOPPED, InstanceState.STOPPED]
        assert all(handle.terminated for handle in launcher.handles[:2])
        assert repository.statuses['users-api'] == STATUS_ACTIVE
        assert restored == 2
        assert ports == {'users-api': 3001, 'orders-api': 3002}

    @pytest.mark.asyncio
    async def test_shutdown_without_preserving_status(self, make_supervisor, repository):
        """Test preserve_status=False marks everything inactive."""
        supervisor = make_supervisor()
        await supervisor.start('users-api')

        await supervisor.shutdown_all(preserve_status=False)

        assert repository.statuses['users-api'] == STATUS_INACTIVE

    @pytest.mark.asyncio
    async def test_statistics(self, make_supervisor, launcher):
        """Test counts per state."""
        launcher.fail_for.add('orders-api')
        supervisor = make_supervisor()
        await supervisor.start('users-api')
        await supervisor.restart('users-api')
        with pytest.raises(OSError):
            await supervisor.start('orders-api')

        stats = supervisor.get_statistics()

        assert stats['totalServers'] == 2
        assert stats['runningServers'] == 1
        assert stats['errorServers'] == 1
        assert stats['totalRestarts'] == 1
        assert stats['ports']['totalAllocations'] == 2
