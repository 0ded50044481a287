"""
MockAPI Server Instance

Runtime record of one launched mock server and its lifecycle:

    starting -> running -> stopping -> stopped

with ``error`` reachable from starting, running or stopping. ``stopped`` is
terminal for an instance object; a later start creates a new instance.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .exceptions import InvalidStateTransitionError


class InstanceState(str, Enum):
    """Lifecycle states of a mock server instance."""

    STARTING = 'starting'
    RUNNING = 'running'
    STOPPING = 'stopping'
    STOPPED = 'stopped'
    ERROR = 'error'


ALLOWED_TRANSITIONS = {
    InstanceState.STARTING: {InstanceState.RUNNING, InstanceState.STOPPING, InstanceState.ERROR},
    InstanceState.RUNNING: {InstanceState.STOPPING, InstanceState.ERROR},
    InstanceState.STOPPING: {InstanceState.STOPPED, InstanceState.ERROR},
    # An errored instance is still stopped before it is replaced
    InstanceState.ERROR: {InstanceState.STOPPING, InstanceState.STOPPED},
    InstanceState.STOPPED: set(),
}


@dataclass
class MockServerInstance:
    """
    One running (or formerly running) mock server.

    Attributes:
        api_id: Mock API served by this instance
        port: Bound port
        handle: Process/task handle returned by the launcher
        status: Current lifecycle state
        error_count: Failed health checks and process errors over the lifetime
        consecutive_failures: Failed health checks since the last healthy one
        restart_count: Restarts that led to this instance
        auto_restarts: Consecutive automatic restarts (reset by an operator start)
        stop_requested: True once the supervisor asked the instance to stop
    """

    api_id: str
    port: int
    handle: Any = None
    status: InstanceState = InstanceState.STARTING
    started_at: datetime = field(default_factory=datetime.now)
    last_health_check: Optional[datetime] = None
    error_count: int = 0
    consecutive_failures: int = 0
    restart_count: int = 0
    auto_restarts: int = 0
    stop_requested: bool = False
    last_error: Optional[str] = None

    def transition(self, target: InstanceState):
        """Move to target, enforcing the lifecycle."""
        target = InstanceState(target)
        if target == self.status:
            return
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateTransitionError(self.api_id, self.status.value, target.value)
        self.status = target

    def fail(self, reason: str):
        """Move to error from any non-terminal state and remember why."""
        self.last_error = reason
        if self.status != InstanceState.STOPPED:
            self.transition(InstanceState.ERROR)

    def record_health(self, healthy: bool):
        """Update health counters after one health check."""
        if healthy:
            self.last_health_check = datetime.now()
            self.consecutive_failures = 0
        else:
            self.error_count += 1
            self.consecutive_failures += 1

    @property
    def is_active(self) -> bool:
        return self.status in (InstanceState.STARTING, InstanceState.RUNNING)

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.handle, 'pid', None)

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now() - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'apiId': self.api_id,
            'port': self.port,
            'pid': self.pid,
            'status': self.status.value,
            'startedAt': self.started_at.isoformat(),
            'lastHealthCheck': self.last_health_check.isoformat() if self.last_health_check else None,
            'errorCount': self.error_count,
            'restartCount': self.restart_count,
            'uptime': round(self.uptime_seconds, 2),
            'lastError': self.last_error
        }
