"""
Pytest configuration and fixtures for deployer tests.

This file is automatically loaded by pytest before running tests.
It sets up necessary environment variables and common fixtures.

Deployments in tests run small Python scripts instead of jars: the
``ScriptCommandBuilder`` below launches ``<python> <script> <port>``.
"""
import os
import sys
import textwrap
from pathlib import Path
from typing import Mapping

import pytest

# Set environment variables BEFORE any local_deployer imports
os.environ.setdefault("LOG_LEVEL", "debug")

from local_deployer.core.config import LocalDeployerProperties, PortRange  # noqa: E402
from local_deployer.schemas.deployment import DeploymentKind, DeploymentRequest  # noqa: E402
from local_deployer.services.deployment.command_base import (  # noqa: E402
    Command,
    CommandBuilder,
    LaunchContext,
)
from local_deployer.services.deployment.environment import build_environment  # noqa: E402


# Sleeps until terminated
SLEEPER = """
import time
print("ready", flush=True)
time.sleep(60)
"""

# Ignores SIGTERM so only a kill stops it
STUBBORN = """
import signal, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print("ready", flush=True)
time.sleep(60)
"""

# Serves 200 on /health on the port passed as first argument
HTTP_APP = """
import sys
from http.server import BaseHTTPRequestHandler, HTTPServer

class Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        self.send_response(200 if self.path == "/health" else 404)
        self.end_headers()

    def log_message(self, *args):
        pass

HTTPServer(("127.0.0.1", int(sys.argv[1])), Handler).serve_forever()
"""


def exiting_after(seconds: float, code: int) -> str:
    """Script that exits with ``code`` after ``seconds``."""
    return f"import sys, time\ntime.sleep({seconds})\nsys.exit({code})\n"


class ScriptCommandBuilder(CommandBuilder):
    """Runs the request artifact as a Python script with the port as argument."""

    def __init__(self, program: str = sys.executable):
        self.program = program
        self.built = []

    def validate(self, request, config, parent_env: Mapping[str, str]) -> None:
        pass

    def port_range(self, config) -> PortRange:
        return config.port_range

    def build(self, request: DeploymentRequest, config, context: LaunchContext) -> Command:
        self.built.append((request, config, context))
        return Command(
            program=self.program,
            args=[request.artifact, str(context.port), *request.command_line_args],
            working_dir=context.working_dir,
            env=build_environment(context.parent_env, config.env_vars_to_inherit, request.environment_variables),
        )


@pytest.fixture
def write_script(tmp_path):
    """Write a Python script into the test directory and return its path."""
    scripts = tmp_path / "apps"
    scripts.mkdir()

    def _write(source: str, name: str = "app.py") -> str:
        path = scripts / name
        path.write_text(textwrap.dedent(source))
        return str(path)

    return _write


@pytest.fixture
def make_properties(tmp_path):
    """Build deployer properties rooted in the test directory."""
    def _make(**overrides) -> LocalDeployerProperties:
        values = dict(
            working_directories_root=tmp_path / "work",
            port_range=PortRange(low=20000, high=20001),
            check_port_availability=False,
            cleanup_interval=0,
            shutdown_timeout=5,
            hostname="127.0.0.1",
        )
        values.update(overrides)
        return LocalDeployerProperties(**values)

    return _make


@pytest.fixture
def script_builder():
    return ScriptCommandBuilder()


@pytest.fixture
def make_supervisor(make_properties, script_builder):
    """Create a supervisor that launches Python scripts."""
    from local_deployer.services.deployment.supervisor import DeploymentSupervisor

    def _make(properties=None, **kwargs) -> DeploymentSupervisor:
        kwargs.setdefault("command_builders", {DeploymentKind.JAVA: script_builder})
        kwargs.setdefault("parent_env", {"PATH": os.environ.get("PATH", "")})
        return DeploymentSupervisor(properties or make_properties(), **kwargs)

    return _make


def request_for(script: str, app_name: str = "app", **kwargs) -> DeploymentRequest:
    return DeploymentRequest(artifact=script, app_name=app_name, **kwargs)


def read_text(path: Path) -> str:
    return path.read_text() if path.exists() else ""
