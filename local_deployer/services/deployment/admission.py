"""
Admission control for deployments.

Bounds the number of deployments that may be in a non-terminal state at the
same time (``maximum_concurrent_tasks``).
"""
import logging
import threading

from local_deployer.core.exceptions import AdmissionRejectedError, ConfigurationError

logger = logging.getLogger(__name__)


class AdmissionToken:
    """A claimed admission slot. Releasing it twice has no effect."""

    def __init__(self, controller: "AdmissionController"):
        self._controller = controller
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._controller._release_slot()


class AdmissionController:
    """Thread-safe counter of admitted deployments."""

    def __init__(self, maximum_concurrent_tasks: int):
        """
        Args:
            maximum_concurrent_tasks: Upper bound of active deployments (>= 1)

        Raises:
            ConfigurationError: If the bound is lower than 1
        """
        if not isinstance(maximum_concurrent_tasks, int) or maximum_concurrent_tasks < 1:
            raise ConfigurationError(
                "maximum_concurrent_tasks", f"must be an integer >= 1, got {maximum_concurrent_tasks!r}"
            )
        self.maximum_concurrent_tasks = maximum_concurrent_tasks
        self._active = 0
        self._lock = threading.Lock()

    @property
    def active(self) -> int:
        """Number of slots currently held."""
        with self._lock:
            return self._active

    def try_admit(self) -> AdmissionToken:
        """
        Claim a slot.

        Returns:
            Token to release once the deployment reaches a terminal state

        Raises:
            AdmissionRejectedError: If all slots are taken
        """
        with self._lock:
            if self._active >= self.maximum_concurrent_tasks:
                logger.warning(
                    f"Admission rejected: {self._active}/{self.maximum_concurrent_tasks} deployments active"
                )
                raise AdmissionRejectedError(self.maximum_concurrent_tasks)
            self._active += 1
            logger.debug(f"Admitted deployment ({self._active}/{self.maximum_concurrent_tasks})")
        return AdmissionToken(self)

    def _release_slot(self) -> None:
        with self._lock:
            self._active = max(0, self._active - 1)
