"""
In-memory deployment record.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Set, Tuple

from local_deployer.schemas.deployment import DeploymentState

if TYPE_CHECKING:
    from local_deployer.core.config import FrozenDeployerProperties
    from local_deployer.schemas.deployment import DeploymentRequest
    from local_deployer.services.deployment.admission import AdmissionToken
    from local_deployer.services.deployment.launcher import ProcessHandle
    from local_deployer.services.deployment.port_allocator import PortAllocator
    from local_deployer.services.deployment.probe import ProbeResult


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class Deployment:
    """
    One admitted application instance.

    The process handle is private to the record: the supervisor signals and
    observes the process only through the methods below.
    """

    instance_id: str
    request: "DeploymentRequest"
    config: "FrozenDeployerProperties"
    working_dir: Path
    token: Optional["AdmissionToken"] = None

    state: DeploymentState = DeploymentState.ADMITTED
    port: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    last_probe_result: Optional["ProbeResult"] = None

    # State to enter once the process exit is observed, with its reason
    outcome: Optional[Tuple[DeploymentState, str]] = None
    probe_task: Optional[asyncio.Task] = field(default=None, repr=False)
    tasks: Set[asyncio.Task] = field(default_factory=set, repr=False)

    _handle: Optional["ProcessHandle"] = field(default=None, repr=False)
    _port_released: bool = field(default=False, repr=False)
    _changed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def app_name(self) -> str:
        return self.request.app_name

    # -------------------------------------------------------------------------
    # Process
    # -------------------------------------------------------------------------

    def attach(self, handle: "ProcessHandle") -> None:
        if self._handle is not None:
            raise RuntimeError(f"Deployment {self.instance_id} already has a process")
        self._handle = handle
        self.started_at = _utcnow()

    @property
    def has_process(self) -> bool:
        return self._handle is not None

    @property
    def pid(self) -> Optional[int]:
        return self._handle.pid if self._handle else None

    @property
    def stdout_path(self) -> Optional[Path]:
        return self._handle.stdout_path if self._handle else None

    @property
    def stderr_path(self) -> Optional[Path]:
        return self._handle.stderr_path if self._handle else None

    async def wait(self) -> int:
        return await self._handle.wait()

    def signal_terminate(self) -> None:
        if self._handle:
            self._handle.signal_terminate()

    def kill(self) -> None:
        if self._handle:
            self._handle.kill()

    async def wait_or_kill(self, timeout: int) -> Optional[int]:
        if self._handle is None:
            return None
        return await self._handle.wait_or_kill(timeout)

    # -------------------------------------------------------------------------
    # Resources
    # -------------------------------------------------------------------------

    def release_resources(self, port_allocator: "PortAllocator") -> None:
        """Release port, admission slot and log files. Safe to call repeatedly."""
        if self.port is not None and not self._port_released:
            port_allocator.release(self.port)
            self._port_released = True
        if self.token is not None:
            self.token.release()
        if self._handle is not None:
            self._handle.close()

    # -------------------------------------------------------------------------
    # State change notification
    # -------------------------------------------------------------------------

    def notify_changed(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    async def wait_changed(self) -> None:
        await self._changed.wait()
