"""
Command builder for container images run through the docker CLI.

The container runs in the foreground (``docker run`` without ``-d``) so the
launched process lives exactly as long as the container and its exit code is
the container's exit code.
"""
import json
import re
from typing import List, Mapping, Optional

from local_deployer.core.config import SPRING_APPLICATION_JSON, LocalDeployerProperties, PortRange
from local_deployer.core.exceptions import ConfigurationError
from local_deployer.schemas.deployment import DeploymentRequest
from local_deployer.services.deployment.command_base import (
    Command,
    CommandBuilder,
    LaunchContext,
    with_server_port,
)
from local_deployer.services.deployment.environment import build_environment

DOCKER_COMMAND = "docker"

# Variables the docker CLI itself needs on top of the configured patterns
DOCKER_CLI_ENV_PATTERNS = ["HOME", "DOCKER_*"]

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


def split_specs(value: Optional[str]) -> List[str]:
    """Split a comma separated list of docker -p / -v specs."""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


class DockerCommandBuilder(CommandBuilder):
    """Builds ``docker run`` invocations. JVM settings are ignored."""

    def container_name(self, request: DeploymentRequest, instance_id: str) -> str:
        """Generate a container name from app name, index and instance id."""
        app = _INVALID_NAME_CHARS.sub("-", request.app_name).lstrip("-_.") or "app"
        return f"{app}-{request.instance_index}-{instance_id[:8]}"

    def validate(
        self,
        request: DeploymentRequest,
        config: LocalDeployerProperties,
        parent_env: Mapping[str, str],
    ) -> None:
        if not request.image:
            raise ConfigurationError("artifact", f"no image in '{request.artifact}'")
        for field, value in (
            ("docker.port_mappings", config.docker.port_mappings),
            ("docker.volume_mounts", config.docker.volume_mounts),
        ):
            for spec in split_specs(value):
                if ":" not in spec:
                    raise ConfigurationError(field, f"expected 'source:target', got '{spec}'")

    def port_range(self, config: LocalDeployerProperties) -> PortRange:
        return config.docker.port_range or config.port_range

    def build(
        self,
        request: DeploymentRequest,
        config: LocalDeployerProperties,
        context: LaunchContext,
    ) -> Command:
        docker = config.docker
        name = self.container_name(request, context.instance_id)
        properties = with_server_port(request.app_properties, context.port)

        args = ["run"]
        if docker.network:
            args.extend(["--network", docker.network])
        if docker.delete_container_on_exit:
            args.append("--rm")
        args.extend(["--name", name])

        container_env = dict(request.environment_variables)
        if config.use_spring_application_json:
            container_env[SPRING_APPLICATION_JSON] = json.dumps(properties)
        for key, value in container_env.items():
            args.extend(["-e", f"{key}={value}"])

        for mapping in split_specs(docker.port_mappings):
            args.extend(["-p", mapping])
        # Publishing is meaningless on the host network
        if docker.network != "host":
            args.extend(["-p", f"{context.port}:{context.port}"])
        for mount in split_specs(docker.volume_mounts):
            args.extend(["-v", mount])

        args.append(request.image)
        if not config.use_spring_application_json:
            args.extend(f"--{key}={value}" for key, value in properties.items())
        args.extend(request.command_line_args)

        env = build_environment(
            context.parent_env,
            [*config.env_vars_to_inherit, *DOCKER_CLI_ENV_PATTERNS],
        )
        return Command(
            program=DOCKER_COMMAND,
            args=args,
            working_dir=context.working_dir,
            env=env,
            stop_args=[DOCKER_COMMAND, "rm", "-f", name],
        )
