"""
Deployment supervision.

Coordinates between:
- AdmissionController for the concurrent deployment limit
- CommandBuilder implementations, one per DeploymentKind
- PortAllocator for application ports
- ProcessLauncher for starting processes
- ProbeChecker for startup and health probing

Every launched process gets a waiter task and, when probes are configured, a
probe task. Those tasks never touch deployment state themselves: they post
events into a queue consumed by a single task that applies state transitions.
"""
import asyncio
import logging
import os
import re
import shutil
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Coroutine, Dict, Iterable, List, Mapping, Optional
from uuid import uuid4

from local_deployer.core.config import LocalDeployerProperties, PortRange, settings
from local_deployer.core.events import (
    DeploymentHealthChangedEvent,
    DeploymentStateChangedEvent,
    EventDispatcher,
)
from local_deployer.core.exceptions import (
    ConfigurationError,
    DeploymentNotFoundError,
    DeploymentStillActiveError,
    ProbeTimeoutError,
)
from local_deployer.models.deployment import Deployment
from local_deployer.schemas.deployment import (
    TERMINAL_STATES,
    DeploymentKind,
    DeploymentRequest,
    DeploymentState,
    DeploymentStatus,
    HealthStatus,
)
from local_deployer.services.deployment.admission import AdmissionController
from local_deployer.services.deployment.command_base import (
    SERVER_PORT_PROPERTY,
    CommandBuilder,
    LaunchContext,
)
from local_deployer.services.deployment.docker_command import DockerCommandBuilder
from local_deployer.services.deployment.janitor import schedule_cleanup
from local_deployer.services.deployment.java_command import JavaCommandBuilder
from local_deployer.services.deployment.launcher import ProcessLauncher
from local_deployer.services.deployment.port_allocator import PortAllocator
from local_deployer.services.deployment.probe import (
    DEFAULT_HOST,
    ProbeChecker,
    ProbeResult,
    probe_url,
)

S = DeploymentState

TRANSITIONS = {
    S.ADMITTED: {S.LAUNCHING, S.UNDEPLOYING, S.FAILED},
    S.LAUNCHING: {S.STARTING, S.RUNNING, S.UNDEPLOYING, S.FAILED},
    S.STARTING: {S.RUNNING, S.UNDEPLOYING, S.FAILED},
    S.RUNNING: {S.UNDEPLOYING, S.CRASHED, S.FAILED, S.TERMINATED},
    S.UNDEPLOYING: {S.TERMINATED, S.FAILED},
}

_UNSAFE_DIR_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


# =============================================================================
# Messages posted by waiter and probe tasks
# =============================================================================

@dataclass(frozen=True)
class ProcessExited:
    instance_id: str
    exit_code: int


@dataclass(frozen=True)
class StartupProbePassed:
    instance_id: str
    result: ProbeResult


@dataclass(frozen=True)
class StartupProbeFailed:
    instance_id: str
    reason: str


@dataclass(frozen=True)
class HealthProbed:
    instance_id: str
    result: ProbeResult


def default_command_builders() -> Dict[DeploymentKind, CommandBuilder]:
    return {
        DeploymentKind.JAVA: JavaCommandBuilder(),
        DeploymentKind.DOCKER: DockerCommandBuilder(),
    }


class DeploymentSupervisor:
    """
    Admits, launches and supervises local deployments.

    Use as an async context manager, or call ``start`` and ``shutdown``.
    """

    def __init__(
        self,
        properties: Optional[LocalDeployerProperties] = None,
        *,
        port_allocator: Optional[PortAllocator] = None,
        admission: Optional[AdmissionController] = None,
        launcher: Optional[ProcessLauncher] = None,
        probe_checker: Optional[ProbeChecker] = None,
        command_builders: Optional[Mapping[DeploymentKind, CommandBuilder]] = None,
        dispatcher: Optional[EventDispatcher] = None,
        parent_env: Optional[Mapping[str, str]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            properties: Shared deployer configuration (default from settings).
                        Each deployment works on its own snapshot of it.
            port_allocator: Allocator holding the ports of all deployments. Ports are
                            always taken from the range of the deployment's
                            configuration snapshot, not the allocator's default.
            admission: Admission controller (default from maximum_concurrent_tasks)
            launcher: Process launcher
            probe_checker: HTTP prober
            command_builders: Builders per deployment kind
            dispatcher: Dispatcher status events are published on
            parent_env: Environment children inherit from (default os.environ)
            logger: Logger to use (default this module's logger)

        Raises:
            ConfigurationError: If the port range or concurrency limit is invalid
        """
        self.properties = properties if properties is not None else settings.DEPLOYER
        self.logger = logger or logging.getLogger(__name__)
        self.port_allocator = port_allocator or PortAllocator(
            self.properties.port_range,
            check_availability=self.properties.check_port_availability,
        )
        self.admission = admission or AdmissionController(self.properties.maximum_concurrent_tasks)
        self.launcher = launcher or ProcessLauncher()
        self.probe_checker = probe_checker or ProbeChecker()
        self.command_builders = dict(command_builders or default_command_builders())
        self.events = dispatcher or EventDispatcher()
        self._parent_env = dict(parent_env) if parent_env is not None else None

        self._deployments: Dict[str, Deployment] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._scheduler = None

    async def __aenter__(self) -> "DeploymentSupervisor":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
        return False

    # =========================================================================
    # Lifecycle of the supervisor
    # =========================================================================

    async def start(self) -> None:
        """Start the event consumer and, if configured, the cleanup sweep."""
        if self._consumer is not None and not self._consumer.done():
            return
        self._queue = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume_events(), name="deployment-events")

        if self.properties.cleanup_interval > 0 and self._scheduler is None:
            self._scheduler = schedule_cleanup(
                self,
                interval=self.properties.cleanup_interval,
                max_age=self.properties.cleanup_after,
            )

    async def shutdown(self) -> None:
        """
        Undeploy everything still active, wait for the processes to exit and
        purge all deployments.
        """
        active = [d for d in self._deployments.values() if not d.state.is_terminal]
        for deployment in active:
            await self.undeploy(deployment.instance_id)
        if active and self._consumer is not None:
            await asyncio.gather(*(self.wait_for_terminal(d.instance_id) for d in active))

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

        for deployment in list(self._deployments.values()):
            self._purge(deployment)
        self.logger.info("Deployment supervisor shut down")

    # =========================================================================
    # Deployer operations
    # =========================================================================

    async def deploy(self, request: DeploymentRequest) -> str:
        """
        Admit and launch a deployment.

        Returns once the process is started; startup probing continues in the
        background. Configuration problems and a full admission controller are
        reported before anything is claimed. Any later setup failure releases
        the port, marks the deployment FAILED and is re-raised.

        Args:
            request: The deployment request

        Returns:
            Generated instance id

        Raises:
            ConfigurationError: Invalid configuration or request
            AdmissionRejectedError: Too many active deployments
            PortExhaustedError: No free port in the range
            LaunchFailedError: The process could not be started
        """
        await self.start()

        config = self.properties.snapshot(request.deployment_properties)
        builder = self._builder_for(request.kind)
        parent_env = self._parent_environment()
        builder.validate(request, config, parent_env)
        port_range = builder.port_range(config)
        explicit_port = self._explicit_port(request, port_range)

        token = self.admission.try_admit()

        instance_id = uuid4().hex
        app_dir = _UNSAFE_DIR_CHARS.sub("-", request.app_name)
        deployment = Deployment(
            instance_id=instance_id,
            request=request,
            config=config,
            working_dir=config.working_directories_root / f"{app_dir}-{instance_id}",
            token=token,
        )
        self._deployments[instance_id] = deployment
        self._publish_state(deployment, None, None)

        try:
            # Allocation and attachment to the record happen without yielding
            if explicit_port is not None:
                deployment.port = self.port_allocator.reserve(explicit_port, port_range)
            else:
                deployment.port = self.port_allocator.allocate(port_range)

            command = builder.build(
                request,
                config,
                LaunchContext(instance_id, deployment.port, deployment.working_dir, parent_env),
            )
            self._transition(deployment, S.LAUNCHING, f"launching on port {deployment.port}")
            handle = await self.launcher.launch(command, inherit_logging=config.inherit_logging)
        except BaseException as e:
            self._rollback(deployment, e)
            raise

        deployment.attach(handle)
        self._spawn(deployment, self._watch_exit(deployment), "exit-waiter")

        if deployment.state is S.UNDEPLOYING:
            # Undeploy arrived while the process was being started
            self._terminate(deployment)
        elif config.startup_probe.enabled:
            self._transition(deployment, S.STARTING, "waiting for startup probe")
            url = probe_url(config.startup_probe, deployment.port, config.hostname)
            deployment.probe_task = self._spawn(
                deployment, self._run_startup_probe(deployment, url), "startup-probe"
            )
        else:
            self._mark_running(deployment, "process started")

        return instance_id

    async def undeploy(self, instance_id: str) -> None:
        """
        Request termination of a deployment.

        The terminate signal is sent before returning; the move to TERMINATED
        and the port release happen once the exit is observed. Undeploying a
        deployment that already ended, or is ending, does nothing.

        Raises:
            DeploymentNotFoundError: Unknown instance id
        """
        deployment = self._get(instance_id)
        if deployment.state.is_terminal or deployment.state is S.UNDEPLOYING:
            return

        deployment.outcome = (S.TERMINATED, "undeployed")
        self._transition(deployment, S.UNDEPLOYING, "undeploy requested")
        if deployment.has_process:
            self._terminate(deployment)

    def status(self, instance_id: str) -> DeploymentState:
        """Current state of a deployment."""
        return self._get(instance_id).state

    def describe(self, instance_id: str) -> DeploymentStatus:
        """Detailed view of a deployment."""
        return self._to_status(self._get(instance_id))

    def list_deployments(self) -> List[DeploymentStatus]:
        return [self._to_status(d) for d in self._deployments.values()]

    async def logs(self, instance_id: str, stderr: bool = False) -> AsyncIterator[str]:
        """
        Stream the lines written so far to a deployment's log file.

        Yields nothing when the deployment inherits the deployer's streams.
        """
        deployment = self._get(instance_id)
        path = deployment.stderr_path if stderr else deployment.stdout_path
        if path is None or not path.exists():
            return
        with open(path, "r", encoding="utf-8", errors="replace") as log_file:
            for line in log_file:
                yield line.rstrip("\n")

    def get_logs(self, instance_id: str, tail: int = 100) -> str:
        """
        Last lines of a deployment's stdout and stderr.

        Args:
            instance_id: Deployment instance id
            tail: Number of lines to retrieve from each stream

        Returns:
            Log content as string
        """
        deployment = self._get(instance_id)
        if deployment.config.inherit_logging:
            return "Logs are written to the deployer's own output (inherit_logging enabled)"
        if not deployment.has_process:
            return "No process - deployment may not have started"

        parts = []
        for path in (deployment.stdout_path, deployment.stderr_path):
            if path is None or not path.exists():
                continue
            with open(path, "r", encoding="utf-8", errors="replace") as log_file:
                lines = deque(log_file, maxlen=tail)
            parts.append("".join(lines))
        return "".join(parts)

    async def wait_for_state(
        self,
        instance_id: str,
        states: Iterable[DeploymentState],
        timeout: Optional[float] = None,
    ) -> DeploymentState:
        """
        Wait until a deployment is in one of ``states`` or in a terminal state.

        Raises:
            asyncio.TimeoutError: If neither happens within ``timeout`` seconds
        """
        deployment = self._get(instance_id)
        wanted = set(states)

        async def _wait() -> DeploymentState:
            while deployment.state not in wanted and not deployment.state.is_terminal:
                await deployment.wait_changed()
            return deployment.state

        return await asyncio.wait_for(_wait(), timeout=timeout)

    async def wait_for_terminal(self, instance_id: str, timeout: Optional[float] = None) -> DeploymentState:
        """Wait until a deployment reaches TERMINATED, CRASHED or FAILED."""
        return await self.wait_for_state(instance_id, TERMINAL_STATES, timeout)

    def acknowledge(self, instance_id: str) -> None:
        """
        Forget a finished deployment and remove its files.

        Raises:
            DeploymentNotFoundError: Unknown instance id
            DeploymentStillActiveError: The deployment has not finished
        """
        deployment = self._get(instance_id)
        if not deployment.state.is_terminal:
            raise DeploymentStillActiveError(instance_id, deployment.state.value)
        self._purge(deployment)

    async def purge_stale(self, max_age: int) -> int:
        """
        Purge CRASHED and FAILED deployments that ended more than ``max_age``
        seconds ago.

        Returns:
            Number of deployments purged
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age)
        stale = [
            d for d in self._deployments.values()
            if d.state in (S.CRASHED, S.FAILED) and d.finished_at is not None and d.finished_at <= cutoff
        ]
        for deployment in stale:
            self._purge(deployment)
        if stale:
            self.logger.info(f"Purged {len(stale)} stale deployments")
        return len(stale)

    # =========================================================================
    # Event handling
    # =========================================================================

    def _post(self, message) -> None:
        self._queue.put_nowait(message)

    async def _consume_events(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                self._handle(message)
            except Exception as e:
                self.logger.error(f"Failed to handle {type(message).__name__}: {e}", exc_info=True)

    def _handle(self, message) -> None:
        deployment = self._deployments.get(message.instance_id)
        if deployment is None:
            return

        if isinstance(message, ProcessExited):
            self._on_process_exited(deployment, message.exit_code)
        elif isinstance(message, StartupProbePassed):
            if deployment.state is S.STARTING:
                deployment.last_probe_result = message.result
                self._mark_running(deployment, "startup probe succeeded")
        elif isinstance(message, StartupProbeFailed):
            if deployment.state is S.STARTING:
                self.logger.error(f"Deployment {deployment.instance_id} failed to start: {message.reason}")
                deployment.outcome = (S.FAILED, message.reason)
                self._terminate(deployment)
        elif isinstance(message, HealthProbed):
            if deployment.state is S.RUNNING:
                self._on_health_probed(deployment, message.result)

    def _on_process_exited(self, deployment: Deployment, exit_code: int) -> None:
        deployment.exit_code = exit_code
        if deployment.state.is_terminal:
            return

        if deployment.outcome is not None:
            new_state, reason = deployment.outcome
        elif deployment.state is S.STARTING:
            new_state, reason = S.FAILED, f"process exited with code {exit_code} before becoming ready"
        elif exit_code == 0:
            new_state, reason = S.TERMINATED, "process exited"
        else:
            new_state, reason = S.CRASHED, f"process exited unexpectedly with code {exit_code}"

        if new_state is not S.TERMINATED:
            deployment.error = reason
        self._transition(deployment, new_state, f"{reason} (exit code {exit_code})")

    def _on_health_probed(self, deployment: Deployment, result: ProbeResult) -> None:
        previous = deployment.last_probe_result
        deployment.last_probe_result = result
        if previous is not None and previous.healthy == result.healthy:
            return
        self.logger.info(
            f"Deployment {deployment.instance_id} is {'healthy' if result.healthy else 'unhealthy'}"
        )
        self.events.dispatch(DeploymentHealthChangedEvent(
            instance_id=deployment.instance_id,
            healthy=result.healthy,
            status_code=result.status_code,
        ))

    # =========================================================================
    # Background tasks
    # =========================================================================

    def _spawn(self, deployment: Deployment, coro: Coroutine, kind: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{kind}-{deployment.instance_id}")
        deployment.tasks.add(task)
        task.add_done_callback(lambda t: self._on_task_done(deployment, t))
        return task

    def _on_task_done(self, deployment: Deployment, task: asyncio.Task) -> None:
        deployment.tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(f"Task {task.get_name()} failed: {exc}")

    async def _watch_exit(self, deployment: Deployment) -> None:
        exit_code = await deployment.wait()
        self._post(ProcessExited(deployment.instance_id, exit_code))

    async def _run_startup_probe(self, deployment: Deployment, url: str) -> None:
        try:
            result = await self.probe_checker.wait_until_ready(url, deployment.config.startup_probe)
        except ProbeTimeoutError as e:
            self._post(StartupProbeFailed(deployment.instance_id, e.message))
        else:
            self._post(StartupProbePassed(deployment.instance_id, result))

    async def _run_health_probe(self, deployment: Deployment, url: str) -> None:
        probe = deployment.config.health_probe
        while True:
            await asyncio.sleep(probe.period)
            result = await self.probe_checker.check(url, probe.request_timeout)
            self._post(HealthProbed(deployment.instance_id, result))

    # =========================================================================
    # Transitions
    # =========================================================================

    def _transition(self, deployment: Deployment, new_state: DeploymentState, reason: str) -> bool:
        old_state = deployment.state
        if new_state not in TRANSITIONS.get(old_state, ()):
            self.logger.warning(
                f"Ignoring transition {old_state.value} -> {new_state.value} "
                f"for deployment {deployment.instance_id}"
            )
            return False

        deployment.state = new_state
        # Probes belong to the state that started them
        if deployment.probe_task is not None:
            deployment.probe_task.cancel()
            deployment.probe_task = None

        if new_state.is_terminal:
            deployment.finished_at = datetime.now(timezone.utc)
            deployment.release_resources(self.port_allocator)

        log = self.logger.error if new_state in (S.CRASHED, S.FAILED) else self.logger.info
        log(
            f"Deployment {deployment.instance_id} ({deployment.app_name}): "
            f"{old_state.value} -> {new_state.value}: {reason}"
        )
        self._publish_state(deployment, old_state, reason)
        deployment.notify_changed()
        return True

    def _publish_state(self, deployment: Deployment, old_state: Optional[DeploymentState], reason: Optional[str]) -> None:
        self.events.dispatch(DeploymentStateChangedEvent(
            instance_id=deployment.instance_id,
            app_name=deployment.app_name,
            old_state=old_state.value if old_state else None,
            new_state=deployment.state.value,
            reason=reason,
        ))

    def _mark_running(self, deployment: Deployment, reason: str) -> None:
        if not self._transition(deployment, S.RUNNING, reason):
            return
        probe = deployment.config.health_probe
        if probe.enabled:
            url = probe_url(probe, deployment.port, deployment.config.hostname)
            deployment.probe_task = self._spawn(
                deployment, self._run_health_probe(deployment, url), "health-probe"
            )

    def _terminate(self, deployment: Deployment) -> None:
        """Signal the process now and escalate in the background."""
        deployment.signal_terminate()
        self._spawn(
            deployment,
            deployment.wait_or_kill(deployment.config.shutdown_timeout),
            "terminator",
        )

    def _rollback(self, deployment: Deployment, error: BaseException) -> None:
        """Undo a deployment whose setup failed before its process started."""
        if isinstance(error, asyncio.CancelledError):
            reason = "deployment cancelled"
        else:
            reason = str(error) or type(error).__name__
        self.logger.warning(f"Rolling back deployment {deployment.instance_id}: {reason}")

        deployment.kill()
        deployment.error = reason
        if not self._transition(deployment, S.FAILED, reason):
            deployment.release_resources(self.port_allocator)
        shutil.rmtree(deployment.working_dir, ignore_errors=True)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _get(self, instance_id: str) -> Deployment:
        deployment = self._deployments.get(instance_id)
        if deployment is None:
            raise DeploymentNotFoundError(instance_id)
        return deployment

    def _purge(self, deployment: Deployment) -> None:
        for task in list(deployment.tasks):
            task.cancel()
        deployment.release_resources(self.port_allocator)
        self._deployments.pop(deployment.instance_id, None)
        if deployment.config.delete_files_on_exit:
            shutil.rmtree(deployment.working_dir, ignore_errors=True)

    def _builder_for(self, kind: DeploymentKind) -> CommandBuilder:
        builder = self.command_builders.get(kind)
        if builder is None:
            raise ConfigurationError("kind", f"no command builder registered for '{kind.value}'")
        return builder

    def _parent_environment(self) -> Dict[str, str]:
        if self._parent_env is not None:
            return dict(self._parent_env)
        return dict(os.environ)

    @staticmethod
    def _explicit_port(request: DeploymentRequest, port_range: PortRange) -> Optional[int]:
        """Port fixed by the ``server.port`` application property, 0 meaning none."""
        value = request.app_properties.get(SERVER_PORT_PROPERTY)
        if value is None:
            return None
        try:
            port = int(value)
        except ValueError:
            raise ConfigurationError(SERVER_PORT_PROPERTY, f"not a number: '{value}'") from None
        if port == 0:
            return None
        if port not in port_range:
            raise ConfigurationError(SERVER_PORT_PROPERTY, f"port {port} is outside the port range {port_range}")
        return port

    def _to_status(self, deployment: Deployment) -> DeploymentStatus:
        result = deployment.last_probe_result
        if result is None:
            health = HealthStatus.UNKNOWN
        else:
            health = HealthStatus.HEALTHY if result.healthy else HealthStatus.UNHEALTHY
        url = None
        if deployment.port is not None:
            url = f"http://{deployment.config.hostname or DEFAULT_HOST}:{deployment.port}"

        return DeploymentStatus(
            instance_id=deployment.instance_id,
            app_name=deployment.app_name,
            instance_index=deployment.request.instance_index,
            kind=deployment.request.kind,
            state=deployment.state,
            port=deployment.port,
            pid=deployment.pid,
            url=url,
            working_dir=str(deployment.working_dir),
            created_at=deployment.created_at,
            started_at=deployment.started_at,
            finished_at=deployment.finished_at,
            exit_code=deployment.exit_code,
            health_status=health,
            error=deployment.error,
        )
