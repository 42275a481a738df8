"""
Port allocation service for local deployments.

Hands out ports from a configurable range (default 20000-61000) so that no
two running deployments are ever given the same port.
"""
import logging
import socket
import threading
from typing import Optional, Set

from local_deployer.core.config import PortRange
from local_deployer.core.exceptions import ConfigurationError, PortExhaustedError

logger = logging.getLogger(__name__)


class PortAllocator:
    """
    Thread-safe port allocation.

    Keeps the set of ports currently held by deployments. Allocation scans a
    range from its lower bound and returns the first port that is not held
    and, when ``check_availability`` is set, that can be bound on the host.
    """

    def __init__(
        self,
        port_range: Optional[PortRange] = None,
        check_availability: bool = True,
    ):
        """
        Initialize the port allocator.

        Args:
            port_range: Default range used when ``allocate`` gets none
            check_availability: Skip ports some other process is listening on

        Raises:
            ConfigurationError: If the range is not a valid PortRange
        """
        if port_range is None:
            port_range = PortRange()
        if not isinstance(port_range, PortRange):
            raise ConfigurationError("port_range", f"expected a PortRange, got {port_range!r}")
        self.port_range = port_range
        self.check_availability = check_availability
        self._held: Set[int] = set()
        self._lock = threading.Lock()

    @staticmethod
    def is_bindable(port: int) -> bool:
        """Check whether a TCP port can currently be bound on the host."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind(("", port))
            except OSError:
                return False
        return True

    def allocate(self, port_range: Optional[PortRange] = None) -> int:
        """
        Allocate the lowest available port from the range.

        Args:
            port_range: Range to allocate from (default: the allocator's range)

        Returns:
            Allocated port number

        Raises:
            PortExhaustedError: If no port in the range is available
        """
        port_range = port_range or self.port_range

        with self._lock:
            for port in range(port_range.low, port_range.high + 1):
                if port in self._held:
                    continue
                if self.check_availability and not self.is_bindable(port):
                    logger.debug(f"Port {port} is in use on the host, skipping")
                    continue
                self._held.add(port)
                logger.info(f"Allocated port {port}")
                return port

        raise PortExhaustedError(port_range.low, port_range.high)

    def reserve(self, port: int, port_range: Optional[PortRange] = None) -> int:
        """
        Claim a specific port.

        Args:
            port: Port number requested by the application
            port_range: Range the port must lie in (default: the allocator's range)

        Returns:
            The reserved port

        Raises:
            ConfigurationError: If the port is outside the range
            PortExhaustedError: If the port is already held or not bindable
        """
        port_range = port_range or self.port_range
        if port not in port_range:
            raise ConfigurationError("port", f"port {port} is outside the port range {port_range}")

        with self._lock:
            if port in self._held or (self.check_availability and not self.is_bindable(port)):
                raise PortExhaustedError(port, port)
            self._held.add(port)
        logger.info(f"Reserved port {port}")
        return port

    def release(self, port: Optional[int]) -> None:
        """
        Return a port to the pool. Releasing an unheld port is a no-op.

        Args:
            port: Port number to release
        """
        if port is None:
            return
        with self._lock:
            if port not in self._held:
                return
            self._held.discard(port)
        logger.info(f"Port {port} released")

    def is_held(self, port: int) -> bool:
        with self._lock:
            return port in self._held

    def held_ports(self) -> Set[int]:
        """Snapshot of the ports currently held."""
        with self._lock:
            return set(self._held)
