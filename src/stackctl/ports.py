"""Port allocation helpers for stackctl.

Ports are not tracked in a registry: the highest port persisted in any
instance ``config.yml`` is the high-water mark, and the next candidate above
it is checked against the live host before being handed out. Allocation is
advisory; no lock is held between choosing a port and persisting it.
"""
from __future__ import annotations

import logging
import socket
from collections.abc import Callable
from dataclasses import dataclass, field

from .instances import InstanceStore

LOGGER = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"


class PortAllocationError(RuntimeError):
    """Raised when no free port can be found."""


def port_in_use(port: int, host: str = LOCALHOST) -> bool:
    """Return ``True`` when *port* accepts connections or cannot be bound."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.settimeout(0.5)
        if probe.connect_ex((host, port)) == 0:
            return True
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        try:
            listener.bind(("", port))
        except OSError:
            return True
    return False


@dataclass(slots=True)
class PortAllocator:
    """Pick the next free host port above the fleet's high-water mark."""

    store: InstanceStore
    base_port: int = 61000
    max_port: int = 65535
    max_retries: int = 25
    is_bound: Callable[[int], bool] = field(default=port_in_use)

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if self.base_port < 1:
            raise PortAllocationError("Base port must be a positive integer.")
        if self.max_port > 65535 or self.max_port <= self.base_port:
            raise PortAllocationError("Maximum port must be above the base port and at most 65535.")
        if self.max_retries < 0:
            raise PortAllocationError("Retry limit must be non-negative.")

    def high_water_mark(self) -> int:
        """Return the highest persisted port, or the base port for an empty fleet."""
        return max([self.base_port, *self.store.known_ports()])

    def next_free_port(self) -> int:
        """Return the first unbound port above the high-water mark."""
        candidate = self.high_water_mark() + 1
        for _ in range(self.max_retries + 1):
            if candidate > self.max_port:
                raise PortAllocationError("Ran out of ports.")
            if not self.is_bound(candidate):
                return candidate
            LOGGER.debug("Port %d is in use, trying the next one.", candidate)
            candidate += 1
        raise PortAllocationError("Could not find free port.")


__all__ = ["PortAllocationError", "PortAllocator", "port_in_use"]
