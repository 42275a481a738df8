"""
Tests for the process launcher.

Run with: pytest tests/test_launcher.py -v
"""
import asyncio
import os
import sys

import pytest

from conftest import SLEEPER, STUBBORN, exiting_after
from local_deployer.core.exceptions import LaunchFailedError
from local_deployer.services.deployment.command_base import Command
from local_deployer.services.deployment.launcher import STDERR_LOG, STDOUT_LOG, ProcessLauncher


def _python(script: str, working_dir, *args) -> Command:
    return Command(
        program=sys.executable,
        args=[script, *args],
        working_dir=working_dir,
        env={"PATH": os.environ.get("PATH", "")},
    )


async def _wait_for_output(path, text, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if path.exists() and text in path.read_text():
            return
        await asyncio.sleep(0.05)
    raise AssertionError(f"'{text}' never appeared in {path}")


class TestProcessLauncher:
    """Tests for ProcessLauncher.launch."""

    @pytest.mark.asyncio
    async def test_launch_writes_log_files(self, tmp_path, write_script):
        script = write_script("import sys\nprint('out')\nprint('err', file=sys.stderr)\n")
        work = tmp_path / "work"

        handle = await ProcessLauncher().launch(_python(script, work))
        exit_code = await handle.wait()
        handle.close()

        assert exit_code == 0
        assert handle.stdout_path == work / STDOUT_LOG
        assert (work / STDOUT_LOG).read_text().strip() == "out"
        assert (work / STDERR_LOG).read_text().strip() == "err"

    @pytest.mark.asyncio
    async def test_exit_code_is_reported(self, tmp_path, write_script):
        script = write_script(exiting_after(0, 7))

        handle = await ProcessLauncher().launch(_python(script, tmp_path / "work"))

        assert await handle.wait() == 7
        assert handle.exit_code == 7
        assert handle.has_exited
        handle.close()

    @pytest.mark.asyncio
    async def test_inherit_logging_creates_no_files(self, tmp_path, write_script):
        script = write_script(exiting_after(0, 0))
        work = tmp_path / "work"

        handle = await ProcessLauncher().launch(_python(script, work), inherit_logging=True)
        await handle.wait()

        assert handle.stdout_path is None
        assert not (work / STDOUT_LOG).exists()

    @pytest.mark.asyncio
    async def test_launch_failure_removes_log_files(self, tmp_path):
        work = tmp_path / "work"
        command = Command(program=str(tmp_path / "missing-binary"), args=[], working_dir=work, env={})

        with pytest.raises(LaunchFailedError) as exc_info:
            await ProcessLauncher().launch(command)

        assert exc_info.value.details["program"] == command.program
        assert not (work / STDOUT_LOG).exists()
        assert not (work / STDERR_LOG).exists()


class TestProcessTermination:
    """Tests for graceful and forced termination."""

    @pytest.mark.asyncio
    async def test_terminate_stops_process(self, tmp_path, write_script):
        script = write_script(SLEEPER)
        handle = await ProcessLauncher().launch(_python(script, tmp_path / "work"))

        exit_code = await handle.terminate(timeout=5)
        handle.close()

        assert handle.has_exited
        assert exit_code != 0

    @pytest.mark.skipif(os.name == "nt", reason="POSIX signals")
    @pytest.mark.asyncio
    async def test_terminate_escalates_to_kill(self, tmp_path, write_script):
        script = write_script(STUBBORN)
        work = tmp_path / "work"
        handle = await ProcessLauncher().launch(_python(script, work))
        await _wait_for_output(work / STDOUT_LOG, "ready")

        exit_code = await handle.terminate(timeout=1)
        handle.close()

        assert exit_code == -9

    @pytest.mark.asyncio
    async def test_terminate_after_exit_returns_exit_code(self, tmp_path, write_script):
        script = write_script(exiting_after(0, 3))
        handle = await ProcessLauncher().launch(_python(script, tmp_path / "work"))
        await handle.wait()

        assert await handle.terminate(timeout=1) == 3
        handle.close()
