"""
MockAPI Port Allocator

Tracks which port belongs to which mock API. Ports come from a configured
range (3001-9999 by default) minus reserved ports (5000, a common
platform-service conflict). Ports below 1024 are never handed out.

All mutations go through a single asyncio lock, so concurrent
allocate/deallocate calls for different APIs cannot corrupt the table.
"""

import asyncio
import logging
import socket
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..common.config import ConfigurationError
from ..common.repository import STATUS_ACTIVE, MockApiRepository
from .exceptions import AllocationNotFoundError, NoPortsAvailableError, PortUnavailableError


logger = logging.getLogger("mockapi.manager.ports")

PORT_RANGE_START = 3001
PORT_RANGE_END = 9999
RESERVED_PORTS = frozenset({5000})
MIN_ELIGIBLE_PORT = 1024

ALLOCATED = 'allocated'
ACTIVE = 'active'
INACTIVE = 'inactive'


@dataclass
class PortAllocation:
    """Port assigned to one mock API."""

    api_id: str
    port: int
    status: str = ALLOCATED
    allocated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'apiId': self.api_id,
            'port': self.port,
            'status': self.status,
            'allocatedAt': self.allocated_at.isoformat()
        }


class PortAllocator:
    """
    Owner of the mock API -> port table.

    Example:
        allocator = PortAllocator(repository)
        await allocator.initialize()
        port = await allocator.allocate('users-api')
        await allocator.mark_active('users-api')
    """

    def __init__(
        self,
        repository: Optional[MockApiRepository] = None,
        range_start: int = PORT_RANGE_START,
        range_end: int = PORT_RANGE_END,
        reserved_ports: Optional[Iterable[int]] = None
    ):
        """
        Initialize port allocator.

        Args:
            repository: Persistence collaborator used to reconcile known ports
            range_start: First port of the allocation range (>= 1024)
            range_end: Last port of the allocation range
            reserved_ports: Ports never handed out (defaults to {5000})
        """
        self.repository = repository
        self.range_start = range_start
        self.range_end = range_end
        self.reserved_ports = frozenset(RESERVED_PORTS if reserved_ports is None else reserved_ports)
        self._allocations: Dict[str, PortAllocation] = {}
        self._lock = asyncio.Lock()

        self.validate_configuration()

    def validate_configuration(self):
        """Reject ranges that are empty or reach into privileged ports."""
        if self.range_start >= self.range_end:
            raise ConfigurationError("Invalid port range: start port must be less than end port")
        if self.range_start < MIN_ELIGIBLE_PORT:
            raise ConfigurationError(
                f"Invalid port range: ports below {MIN_ELIGIBLE_PORT} are never eligible "
                f"(range starts at {self.range_start})"
            )
        logger.debug(
            f"Port allocator configured for range {self.range_start}-{self.range_end}, "
            f"reserved: {sorted(self.reserved_ports)}"
        )

    async def initialize(self):
        """
        Reconcile the table with persisted port assignments.

        Ports the persistence layer already knows about are never handed out
        to another API afterwards.
        """
        if self.repository is None:
            return

        assignments = await self.repository.list_port_assignments()
        async with self._lock:
            for api_id, port in assignments.items():
                if port is None or api_id in self._allocations:
                    continue
                port = int(port)
                reason = self._unavailable_reason(port)
                if reason:
                    logger.warning(f"Ignoring port {port} persisted for API {api_id}: {reason}")
                    continue
                status = await self.repository.get_status(api_id)
                self._allocations[api_id] = PortAllocation(
                    api_id=api_id,
                    port=port,
                    status=ACTIVE if status == STATUS_ACTIVE else INACTIVE
                )

        logger.info(f"Port allocator initialized with {len(self._allocations)} existing allocations")

    async def allocate(self, api_id: str, preferred_port: Optional[int] = None) -> int:
        """
        Allocate a port for a mock API.

        Args:
            api_id: Mock API identifier
            preferred_port: Port to use instead of the first free one

        Returns:
            Allocated port (the existing one if the API already has a port)

        Raises:
            PortUnavailableError: preferred_port is out of range, reserved or taken
            NoPortsAvailableError: The range is exhausted
        """
        async with self._lock:
            existing = self._allocations.get(api_id)
            if existing:
                return existing.port

            if preferred_port is not None:
                reason = self._unavailable_reason(preferred_port, api_id)
                if reason:
                    raise PortUnavailableError(preferred_port, api_id, reason)
                port = preferred_port
            else:
                port = self._find_next_available_port(api_id)

            self._allocations[api_id] = PortAllocation(api_id=api_id, port=port)

        logger.info(f"Allocated port {port} for API {api_id}")
        return port

    async def deallocate(self, api_id: str):
        """Remove the allocation of a mock API (no-op with a warning if none)."""
        async with self._lock:
            allocation = self._allocations.pop(api_id, None)

        if allocation is None:
            logger.warning(f"No port allocation found for API {api_id}")
            return
        logger.info(f"Deallocated port {allocation.port} for API {api_id}")

    async def mark_active(self, api_id: str):
        """Mark a port active (instance is running)."""
        await self._set_status(api_id, ACTIVE)

    async def mark_inactive(self, api_id: str):
        """Mark a port inactive (instance is stopped)."""
        await self._set_status(api_id, INACTIVE)

    async def _set_status(self, api_id: str, status: str):
        async with self._lock:
            allocation = self._allocations.get(api_id)
            if allocation is None:
                raise AllocationNotFoundError(api_id)
            if status == ACTIVE:
                # Only one allocation may be active per port
                clash = self._owner_of(allocation.port, exclude=api_id, status=ACTIVE)
                if clash is not None:
                    raise PortUnavailableError(allocation.port, api_id, f"already active for API {clash}")
            allocation.status = status

        logger.info(f"Port {allocation.port} marked as {status} for API {api_id}")

    async def resolve_conflict(self, api_id: str, conflicted_port: int) -> int:
        """
        Move a mock API off a port the OS refused to bind.

        The conflicted port stays out of circulation for this run.

        Returns:
            Newly allocated port
        """
        logger.warning(f"Port conflict detected for API {api_id} on port {conflicted_port}")

        async with self._lock:
            self._allocations.pop(api_id, None)
            self.reserved_ports = self.reserved_ports | {conflicted_port}
            port = self._find_next_available_port(api_id)
            self._allocations[api_id] = PortAllocation(api_id=api_id, port=port)

        logger.info(f"Resolved port conflict for API {api_id}: {conflicted_port} -> {port}")
        return port

    def is_available(self, port: int, api_id: Optional[str] = None) -> bool:
        """False if the port is out of range, reserved or allocated to a different API."""
        return self._unavailable_reason(port, api_id) is None

    def _unavailable_reason(self, port: int, api_id: Optional[str] = None) -> Optional[str]:
        if port < MIN_ELIGIBLE_PORT or port < self.range_start or port > self.range_end:
            return f"outside the range {self.range_start}-{self.range_end}"
        if port in self.reserved_ports:
            return "reserved"
        owner = self._owner_of(port, exclude=api_id)
        if owner is not None:
            return f"already allocated to API {owner}"
        return None

    def _owner_of(self, port: int, exclude: Optional[str] = None, status: Optional[str] = None) -> Optional[str]:
        for allocation in self._allocations.values():
            if allocation.port != port or allocation.api_id == exclude:
                continue
            if status is None or allocation.status == status:
                return allocation.api_id
        return None

    def _find_next_available_port(self, api_id: str) -> int:
        used = {a.port for a in self._allocations.values()}
        for port in range(self.range_start, self.range_end + 1):
            if port not in used and port not in self.reserved_ports:
                return port
        raise NoPortsAvailableError(self.range_start, self.range_end, api_id)

    def get_allocation(self, api_id: str) -> Optional[PortAllocation]:
        return self._allocations.get(api_id)

    def get_all_allocations(self) -> List[PortAllocation]:
        return list(self._allocations.values())

    def get_active_ports(self) -> List[int]:
        return [a.port for a in self._allocations.values() if a.status == ACTIVE]

    def get_statistics(self) -> Dict[str, Any]:
        """Allocation counts per state plus range configuration."""
        allocations = self.get_all_allocations()
        return {
            'totalAllocations': len(allocations),
            'activeServers': sum(1 for a in allocations if a.status == ACTIVE),
            'inactiveServers': sum(1 for a in allocations if a.status == INACTIVE),
            'pendingAllocations': sum(1 for a in allocations if a.status == ALLOCATED),
            'availablePortsRange': f"{self.range_start}-{self.range_end}",
            'reservedPorts': sorted(self.reserved_ports)
        }


def port_in_use(host: str, port: int) -> bool:
    """True if something on this host already holds the port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return True
    return False
