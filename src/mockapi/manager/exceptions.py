"""
MockAPI Manager Exceptions

Typed failures surfaced to callers of the port allocator and supervisor.
"""

from typing import Optional


class MockApiError(Exception):
    """Base exception for all runtime management errors."""

    def __init__(self, message: str, api_id: Optional[str] = None):
        """
        Initialize error.

        Args:
            message: Human-readable error message
            api_id: Mock API the error relates to, if any
        """
        super().__init__(message)
        self.api_id = api_id


class PortAllocationError(MockApiError):
    """Base exception for port allocation failures."""


class PortUnavailableError(PortAllocationError):
    """A requested port is out of range, reserved or already allocated."""

    def __init__(self, port: int, api_id: Optional[str] = None, reason: str = "not available"):
        super().__init__(f"Preferred port {port} is {reason}", api_id)
        self.port = port
        self.reason = reason


class NoPortsAvailableError(PortAllocationError):
    """Every port in the configured range is taken."""

    def __init__(self, range_start: int, range_end: int, api_id: Optional[str] = None):
        super().__init__(f"No available ports in range {range_start}-{range_end}", api_id)
        self.range_start = range_start
        self.range_end = range_end


class AllocationNotFoundError(PortAllocationError):
    """The mock API has no port allocation."""

    def __init__(self, api_id: str):
        super().__init__(f"No port allocation found for API {api_id}", api_id)


class MockApiNotFoundError(MockApiError):
    """The persistence collaborator does not know the mock API."""

    def __init__(self, api_id: str):
        super().__init__(f"API {api_id} not found", api_id)


class AlreadyRunningError(MockApiError):
    """A start was requested for an instance that is already running."""

    def __init__(self, api_id: str, port: int):
        super().__init__(f"Mock server for API {api_id} is already running on port {port}", api_id)
        self.port = port


class InstanceStartupError(MockApiError):
    """An instance failed before it became healthy."""


class InstanceExitedError(InstanceStartupError):
    """The server exited before it became healthy."""

    def __init__(self, api_id: str, exit_code: Optional[int]):
        super().__init__(f"Server failed to start for API {api_id}: exited with code {exit_code}", api_id)
        self.exit_code = exit_code


class StartupTimeoutError(InstanceStartupError):
    """An instance did not become healthy within the startup timeout."""

    def __init__(self, api_id: str, timeout: float):
        super().__init__(f"Server startup timeout for API {api_id} after {timeout:g}s", api_id)
        self.timeout = timeout


class InvalidStateTransitionError(MockApiError):
    """An instance was asked to move to a state its lifecycle forbids."""

    def __init__(self, api_id: str, current: str, target: str):
        super().__init__(f"Instance for API {api_id} cannot move from {current} to {target}", api_id)
        self.current = current
        self.target = target
