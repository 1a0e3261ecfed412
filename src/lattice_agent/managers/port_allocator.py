"""Host port allocation for workload containers."""

import threading
from typing import FrozenSet, List

from lattice_agent.utils import get_logger
from lattice_agent.utils.exceptions import ResourceExhaustedError

logger = get_logger(__name__)


class PortAllocator:
    """
    Hands out host ports from a closed range.

    Allocation is a linear scan for the lowest free port. The used set is
    guarded by a lock that is only held for the scan and mutation, so it is
    safe to call from the event loop and from worker threads alike.
    """

    def __init__(self, range_min: int, range_max: int) -> None:
        """
        Initialize port allocator.

        Args:
            range_min: Lowest port that may be allocated
            range_max: Highest port that may be allocated
        """
        if range_min > range_max:
            raise ValueError(f"Invalid port range {range_min}-{range_max}")

        self.range_min = range_min
        self.range_max = range_max
        self._used: set[int] = set()
        self._lock = threading.Lock()

    def _in_range(self, port: int) -> bool:
        return self.range_min <= port <= self.range_max

    def allocate(self) -> int:
        """
        Allocate the lowest free port.

        Returns:
            Allocated port

        Raises:
            ResourceExhaustedError: If every port in the range is in use
        """
        return self.allocate_many(1)[0]

    def allocate_many(self, count: int) -> List[int]:
        """
        Allocate ``count`` ports at once; either all are allocated or none.

        Args:
            count: Number of ports needed

        Returns:
            Allocated ports in ascending order

        Raises:
            ResourceExhaustedError: If fewer than ``count`` ports are free
        """
        if count < 1:
            raise ValueError("count must be at least 1")

        with self._lock:
            found: List[int] = []
            for port in range(self.range_min, self.range_max + 1):
                if port not in self._used:
                    found.append(port)
                    if len(found) == count:
                        break

            if len(found) < count:
                logger.warning(
                    "Port range exhausted",
                    extra={
                        "range_min": self.range_min,
                        "range_max": self.range_max,
                        "requested": count,
                        "in_use": len(self._used),
                    },
                )
                raise ResourceExhaustedError(self.range_min, self.range_max)

            self._used.update(found)

        logger.debug("Ports allocated", extra={"ports": found})
        return found

    def release(self, port: int) -> None:
        """
        Return a port to the pool. Releasing a free port is a no-op.

        Args:
            port: Port to release
        """
        with self._lock:
            was_used = port in self._used
            self._used.discard(port)

        if was_used:
            logger.debug("Port released", extra={"port": port})

    def mark_used(self, port: int) -> bool:
        """
        Record a port found in use by a pre-existing container.

        Args:
            port: Port to mark

        Returns:
            True if the port is inside the range and is now tracked
        """
        if not self._in_range(port):
            logger.debug("Ignoring port outside managed range", extra={"port": port})
            return False

        with self._lock:
            self._used.add(port)
        return True

    def is_allocated(self, port: int) -> bool:
        with self._lock:
            return port in self._used

    @property
    def allocated(self) -> FrozenSet[int]:
        """Snapshot of the ports currently in use."""
        with self._lock:
            return frozenset(self._used)

    @property
    def available(self) -> int:
        """Number of ports still free."""
        with self._lock:
            return (self.range_max - self.range_min + 1) - len(self._used)
