"""
Tests for the java and docker command builders.

Tests cover:
- Java executable resolution (override, java home, JAVA_HOME, PATH)
- Debug agent flag
- Application properties as SPRING_APPLICATION_JSON or --key=value args
- docker run argument assembly

Run with: pytest tests/test_command_builders.py -v
"""
import json
import os
from pathlib import Path

import pytest

from local_deployer.core.config import SPRING_APPLICATION_JSON, LocalDeployerProperties, PortRange
from local_deployer.core.exceptions import ConfigurationError
from local_deployer.schemas.deployment import DeploymentKind, DeploymentRequest
from local_deployer.services.deployment.command_base import LaunchContext
from local_deployer.services.deployment.docker_command import DockerCommandBuilder
from local_deployer.services.deployment.java_command import JavaCommandBuilder


def _context(tmp_path, port=20000, parent_env=None):
    return LaunchContext(
        instance_id="0123456789abcdef",
        port=port,
        working_dir=tmp_path / "work",
        parent_env=parent_env if parent_env is not None else {"PATH": "/usr/bin", "SECRET": "x"},
    )


def _java_home(tmp_path, executable=True) -> Path:
    home = tmp_path / "jdk"
    (home / "bin").mkdir(parents=True)
    java = home / "bin" / "java"
    java.write_text("#!/bin/sh\n")
    java.chmod(0o755 if executable else 0o644)
    return home


class TestJavaCommandResolution:
    """Tests for resolve_java_command."""

    def test_defaults_to_java_on_path(self):
        builder = JavaCommandBuilder()

        assert builder.resolve_java_command(LocalDeployerProperties(), None, {}) == "java"

    def test_explicit_java_cmd_wins(self, tmp_path):
        builder = JavaCommandBuilder()
        config = LocalDeployerProperties(java_cmd="/opt/java/bin/java")

        result = builder.resolve_java_command(config, "17", {"JAVA_HOME": str(tmp_path)})

        assert result == "/opt/java/bin/java"

    def test_java_home_for_runtime_version(self, tmp_path):
        home = _java_home(tmp_path)
        config = LocalDeployerProperties(java_home_path={"17": str(home)})

        result = JavaCommandBuilder().resolve_java_command(config, "17", {})

        assert result == str((home / "bin" / "java").absolute())

    def test_falls_back_to_parent_java_home(self, tmp_path):
        home = _java_home(tmp_path)

        result = JavaCommandBuilder().resolve_java_command(
            LocalDeployerProperties(), "21", {"JAVA_HOME": str(home)}
        )

        assert result.endswith(os.path.join("bin", "java"))

    def test_missing_executable_raises(self, tmp_path):
        config = LocalDeployerProperties(java_home_path={"17": str(tmp_path / "nowhere")})

        with pytest.raises(ConfigurationError, match="does not exist"):
            JavaCommandBuilder().resolve_java_command(config, "17", {})

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_non_executable_raises(self, tmp_path):
        home = _java_home(tmp_path, executable=False)
        config = LocalDeployerProperties(java_home_path={"17": str(home)})

        with pytest.raises(ConfigurationError, match="not executable"):
            JavaCommandBuilder().resolve_java_command(config, "17", {})


class TestJavaDebugOption:
    """Tests for the JDWP debug flag."""

    def test_no_debug_by_default(self):
        assert JavaCommandBuilder().debug_option(LocalDeployerProperties(), 0) is None

    def test_debug_address_offset_by_instance_index(self):
        config = LocalDeployerProperties(debug_address="localhost:5005", debug_suspend="n")

        option = JavaCommandBuilder().debug_option(config, 2)

        assert option == "-agentlib:jdwp=transport=dt_socket,server=y,suspend=n,address=localhost:5007"

    def test_deprecated_debug_port(self):
        config = LocalDeployerProperties(debug_port=5005)

        option = JavaCommandBuilder().debug_option(config, 0)

        assert option.endswith("suspend=y,address=5005")

    def test_debug_port_out_of_range(self):
        config = LocalDeployerProperties(debug_address="65535")

        with pytest.raises(ConfigurationError):
            JavaCommandBuilder().debug_option(config, 1)

    def test_malformed_debug_address(self):
        config = LocalDeployerProperties(debug_address="localhost:abc")

        with pytest.raises(ConfigurationError):
            JavaCommandBuilder().debug_option(config, 0)


class TestJavaCommandBuild:
    """Tests for JavaCommandBuilder.build."""

    def test_properties_as_spring_application_json(self, tmp_path):
        request = DeploymentRequest(
            artifact="/apps/demo.jar",
            app_name="demo",
            app_properties={"greeting": "hi"},
            environment_variables={"EXTRA": "1"},
            command_line_args=["--verbose"],
        )
        config = LocalDeployerProperties(java_opts="-Xmx256m -Dfoo=bar")

        command = JavaCommandBuilder().build(request, config, _context(tmp_path))

        assert command.program == "java"
        assert command.args == ["-Xmx256m", "-Dfoo=bar", "-jar", "/apps/demo.jar", "--verbose"]
        assert json.loads(command.env[SPRING_APPLICATION_JSON]) == {"greeting": "hi", "server.port": "20000"}
        assert command.env["EXTRA"] == "1"
        assert command.env["PATH"] == "/usr/bin"
        assert "SECRET" not in command.env
        assert command.working_dir == tmp_path / "work"

    def test_properties_as_arguments(self, tmp_path):
        request = DeploymentRequest(
            artifact="/apps/demo.jar", app_name="demo", app_properties={"greeting": "hi"}
        )
        config = LocalDeployerProperties(use_spring_application_json=False)

        command = JavaCommandBuilder().build(request, config, _context(tmp_path, port=20001))

        assert command.args == ["-jar", "/apps/demo.jar", "--greeting=hi", "--server.port=20001"]
        assert SPRING_APPLICATION_JSON not in command.env

    def test_debug_flag_comes_first(self, tmp_path):
        request = DeploymentRequest(artifact="/apps/demo.jar", app_name="demo")
        config = LocalDeployerProperties(debug_address="5005", java_opts="-Xmx1g")

        command = JavaCommandBuilder().build(request, config, _context(tmp_path))

        assert command.args[0].startswith("-agentlib:jdwp=")
        assert command.args[1] == "-Xmx1g"

    def test_unbalanced_java_opts_rejected(self):
        request = DeploymentRequest(artifact="/apps/demo.jar", app_name="demo")
        config = LocalDeployerProperties(java_opts="-Dname='unterminated")

        with pytest.raises(ConfigurationError):
            JavaCommandBuilder().validate(request, config, {})


class TestDockerCommandBuild:
    """Tests for DockerCommandBuilder."""

    def test_request_kind_from_scheme(self):
        request = DeploymentRequest(artifact="docker:nginx:1.25", app_name="web")

        assert request.kind == DeploymentKind.DOCKER
        assert request.image == "nginx:1.25"

    def test_run_arguments(self, tmp_path):
        request = DeploymentRequest(
            artifact="docker:demo/app:latest",
            app_name="My App",
            instance_index=1,
            environment_variables={"EXTRA": "1"},
            command_line_args=["--debug"],
        )
        config = LocalDeployerProperties()
        config.docker.port_mappings = "9090:9090"
        config.docker.volume_mounts = "/tmp:/data"

        command = DockerCommandBuilder().build(request, config, _context(tmp_path))

        name = "My-App-1-01234567"
        assert command.program == "docker"
        assert command.args[:6] == ["run", "--network", "bridge", "--rm", "--name", name]
        assert ["-e", "EXTRA=1"] == command.args[6:8]
        assert command.args[8] == "-e"
        assert command.args[9].startswith(f"{SPRING_APPLICATION_JSON}=")
        assert command.args[10:] == [
            "-p", "9090:9090",
            "-p", "20000:20000",
            "-v", "/tmp:/data",
            "demo/app:latest",
            "--debug",
        ]
        assert command.stop_args == ["docker", "rm", "-f", name]

    def test_host_network_does_not_publish_port(self, tmp_path):
        request = DeploymentRequest(artifact="docker:demo", app_name="demo")
        config = LocalDeployerProperties(use_spring_application_json=False)
        config.docker.network = "host"
        config.docker.delete_container_on_exit = False

        command = DockerCommandBuilder().build(request, config, _context(tmp_path))

        assert "-p" not in command.args
        assert "--rm" not in command.args
        assert command.args[-2:] == ["demo", "--server.port=20000"]

    def test_docker_port_range_preferred(self):
        config = LocalDeployerProperties()
        config.docker.port_range = PortRange(low=30000, high=30010)

        assert DockerCommandBuilder().port_range(config) == PortRange(low=30000, high=30010)

    def test_invalid_port_mapping_rejected(self):
        request = DeploymentRequest(artifact="docker:demo", app_name="demo")
        config = LocalDeployerProperties()
        config.docker.port_mappings = "9090"

        with pytest.raises(ConfigurationError):
            DockerCommandBuilder().validate(request, config, {})

    def test_empty_image_rejected(self):
        request = DeploymentRequest(artifact="docker:", app_name="demo")

        with pytest.raises(ConfigurationError):
            DockerCommandBuilder().validate(request, LocalDeployerProperties(), {})
