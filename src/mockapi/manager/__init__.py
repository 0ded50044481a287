"""
MockAPI Manager Module

Supervisor side of MockAPI: everything that owns mock server instances.

This module provides:
- Port allocation over a configured range
- Instance lifecycle state machine
- Subprocess and in-process launchers
- Supervisor with health monitoring and automatic restarts
- FastAPI control API
"""

from .exceptions import (
    MockApiError,
    PortAllocationError,
    PortUnavailableError,
    NoPortsAvailableError,
    AllocationNotFoundError,
    MockApiNotFoundError,
    AlreadyRunningError,
    InstanceStartupError,
    InstanceExitedError,
    StartupTimeoutError,
    InvalidStateTransitionError
)
from .ports import PortAllocator, PortAllocation, port_in_use
from .instance import InstanceState, MockServerInstance
from .launcher import ServerLauncher, ServerHandle, SubprocessLauncher, InProcessLauncher
from .supervisor import MockServerSupervisor
from .control import create_control_app

__all__ = [
    # Errors
    'MockApiError',
    'PortAllocationError',
    'PortUnavailableError',
    'NoPortsAvailableError',
    'AllocationNotFoundError',
    'MockApiNotFoundError',
    'AlreadyRunningError',
    'InstanceStartupError',
    'InstanceExitedError',
    'StartupTimeoutError',
    'InvalidStateTransitionError',

    # Ports
    'PortAllocator',
    'PortAllocation',
    'port_in_use',

    # Instances
    'InstanceState',
    'MockServerInstance',
    'ServerLauncher',
    'ServerHandle',
    'SubprocessLauncher',
    'InProcessLauncher',

    # Supervision
    'MockServerSupervisor',
    'create_control_app',
]
