"""
Process launching for local deployments.

Starts the assembled command as a child process and wraps it in a
``ProcessHandle`` that can be polled, awaited and terminated.
"""
import asyncio
import logging
from pathlib import Path
from typing import IO, List, Optional

from local_deployer.core.exceptions import LaunchFailedError
from local_deployer.services.deployment.command_base import Command

logger = logging.getLogger(__name__)

STDOUT_LOG = "stdout.log"
STDERR_LOG = "stderr.log"

# Bound on the stop command used when escalating termination
STOP_COMMAND_TIMEOUT = 30


class ProcessHandle:
    """
    A launched child process.

    The handle owns the process and its log files; ``close`` releases the
    files and may be called any number of times.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: Command,
        stdout_path: Optional[Path] = None,
        stderr_path: Optional[Path] = None,
        log_files: Optional[List[IO]] = None,
    ):
        self._process = process
        self.command = command
        self.stdout_path = stdout_path
        self.stderr_path = stderr_path
        self._log_files = log_files or []

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def exit_code(self) -> Optional[int]:
        """Exit code, or None while the process is running. Never blocks."""
        return self._process.returncode

    @property
    def has_exited(self) -> bool:
        return self._process.returncode is not None

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        return await self._process.wait()

    def signal_terminate(self) -> None:
        """Ask the process to stop (SIGTERM on POSIX)."""
        if self.has_exited:
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        """Force-kill the process."""
        if self.has_exited:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            pass

    async def terminate(self, timeout: int) -> int:
        """
        Stop the process gracefully, escalating to a forced stop.

        Args:
            timeout: Seconds to wait after the graceful signal; 0 or negative
                     waits indefinitely

        Returns:
            The exit code
        """
        if self.has_exited:
            return self.exit_code
        self.signal_terminate()
        return await self.wait_or_kill(timeout)

    async def wait_or_kill(self, timeout: int) -> int:
        """Wait up to ``timeout`` seconds for exit, then force the process down."""
        if timeout <= 0:
            return await self.wait()

        try:
            return await asyncio.wait_for(self.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Process {self.pid} did not exit {timeout}s after termination request, killing it"
            )

        if self.command.stop_args:
            await self._run_stop_command()
        self.kill()
        return await self.wait()

    async def _run_stop_command(self) -> None:
        cmd = self.command.stop_args
        logger.debug(f"Running stop command: {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=STOP_COMMAND_TIMEOUT)
            if process.returncode != 0:
                logger.warning(f"Stop command failed: {stderr.decode().strip() if stderr else 'unknown error'}")
        except asyncio.TimeoutError:
            logger.error(f"Stop command timed out: {' '.join(cmd)}")
        except OSError as e:
            logger.error(f"Stop command could not be run: {e}")

    def close(self) -> None:
        """Close the log files held by this handle."""
        for log_file in self._log_files:
            if not log_file.closed:
                log_file.close()


class ProcessLauncher:
    """
    Starts commands as child processes.

    Output either goes to the deployer's own stdout/stderr (inherited
    logging) or to ``stdout.log`` and ``stderr.log`` in the working directory.
    """

    async def launch(self, command: Command, *, inherit_logging: bool = False) -> ProcessHandle:
        """
        Launch a command.

        Args:
            command: The command to run
            inherit_logging: Send output to the deployer's own streams

        Returns:
            Handle of the running process

        Raises:
            LaunchFailedError: If the process could not be started. Log files
                               created for it are removed first.
        """
        log_files: List[IO] = []
        stdout_path = stderr_path = None

        try:
            command.working_dir.mkdir(parents=True, exist_ok=True)
            stdout = stderr = None
            if not inherit_logging:
                stdout_path = command.working_dir / STDOUT_LOG
                stderr_path = command.working_dir / STDERR_LOG
                stdout = open(stdout_path, "ab")
                log_files.append(stdout)
                stderr = open(stderr_path, "ab")
                log_files.append(stderr)

            logger.debug(f"Launching: {' '.join(command.argv)} (cwd={command.working_dir})")
            process = await asyncio.create_subprocess_exec(
                command.program,
                *command.args,
                cwd=str(command.working_dir),
                env=command.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
            )
        except OSError as e:
            _discard(log_files, stdout_path, stderr_path)
            logger.error(f"Failed to launch {command.program}: {e}")
            raise LaunchFailedError(command.program, str(e)) from e
        except BaseException:
            _discard(log_files, stdout_path, stderr_path)
            raise

        logger.info(f"Launched {command.program} with pid {process.pid}")
        return ProcessHandle(process, command, stdout_path, stderr_path, log_files)


def _discard(log_files: List[IO], *paths: Optional[Path]) -> None:
    for log_file in log_files:
        log_file.close()
    for path in paths:
        if path is not None:
            path.unlink(missing_ok=True)
