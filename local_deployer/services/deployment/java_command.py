"""
Command builder for executable jars run by a local JVM.
"""
import json
import logging
import os
import shlex
from pathlib import Path
from typing import List, Mapping, Optional

from local_deployer.core.config import (
    JAVA_COMMAND,
    SPRING_APPLICATION_JSON,
    LocalDeployerProperties,
    PortRange,
)
from local_deployer.core.exceptions import ConfigurationError
from local_deployer.schemas.deployment import DeploymentRequest
from local_deployer.services.deployment.command_base import (
    Command,
    CommandBuilder,
    LaunchContext,
    with_server_port,
)
from local_deployer.services.deployment.environment import build_environment

logger = logging.getLogger(__name__)


class JavaCommandBuilder(CommandBuilder):
    """
    Builds ``java [debug] [java_opts] -jar <artifact> [args]`` invocations.

    Application properties are passed either as ``--key=value`` arguments or,
    when ``use_spring_application_json`` is enabled, as a JSON document in the
    SPRING_APPLICATION_JSON environment variable.
    """

    def resolve_java_command(
        self,
        config: LocalDeployerProperties,
        runtime_version: Optional[str],
        parent_env: Mapping[str, str],
    ) -> str:
        """
        Resolve the java executable.

        Resolution order: explicit ``java_cmd`` override, then
        ``<home>/bin/java`` where home comes from ``java_home_path`` for the
        runtime version or the parent's JAVA_HOME, then the bare command
        looked up on the child's PATH.

        Raises:
            ConfigurationError: If a home is set but has no usable executable
        """
        if config.java_cmd and config.java_cmd != JAVA_COMMAND:
            return config.java_cmd

        java_home = config.java_home_path.get(runtime_version) if runtime_version else None
        java_home = java_home or parent_env.get("JAVA_HOME")

        if not java_home:
            logger.warning(
                f"Neither JAVA_HOME nor java_home_path[{runtime_version}] is set. "
                f"Defaulting to '{JAVA_COMMAND}' assuming it's in PATH."
            )
            return JAVA_COMMAND

        executable = Path(java_home) / "bin" / JAVA_COMMAND
        if not executable.is_file():
            raise ConfigurationError(
                "java_home_path", f"Java executable '{executable}' discovered via '{java_home}' does not exist"
            )
        if not os.access(executable, os.X_OK):
            raise ConfigurationError(
                "java_home_path", f"Java executable '{executable}' discovered via '{java_home}' is not executable"
            )
        return str(executable.absolute())

    def debug_option(self, config: LocalDeployerProperties, instance_index: int) -> Optional[str]:
        """
        Build the JDWP agent flag, if debugging is configured.

        The debug port is offset by the instance index so that several
        instances of one app can be debugged side by side.

        Raises:
            ConfigurationError: If the debug address or port is malformed
        """
        if config.debug_address:
            host, sep, port_text = config.debug_address.rpartition(":")
            try:
                base_port = int(port_text)
            except ValueError:
                raise ConfigurationError(
                    "debug_address", f"expected [host:]port, got '{config.debug_address}'"
                ) from None
            port = self._check_debug_port("debug_address", base_port + instance_index)
            address = f"{host}:{port}" if sep else str(port)
        elif config.debug_port is not None:
            address = str(self._check_debug_port("debug_port", config.debug_port + instance_index))
        else:
            return None

        return (
            "-agentlib:jdwp=transport=dt_socket,server=y,"
            f"suspend={config.debug_suspend.value},address={address}"
        )

    @staticmethod
    def _check_debug_port(field: str, port: int) -> int:
        if not 0 < port <= 65535:
            raise ConfigurationError(field, f"debug port {port} is out of range")
        return port

    @staticmethod
    def _java_opts(config: LocalDeployerProperties) -> List[str]:
        if not config.java_opts:
            return []
        try:
            return shlex.split(config.java_opts)
        except ValueError as e:
            raise ConfigurationError("java_opts", str(e)) from e

    def validate(
        self,
        request: DeploymentRequest,
        config: LocalDeployerProperties,
        parent_env: Mapping[str, str],
    ) -> None:
        self.resolve_java_command(config, request.runtime_version, parent_env)
        self.debug_option(config, request.instance_index)
        self._java_opts(config)

    def port_range(self, config: LocalDeployerProperties) -> PortRange:
        return config.port_range

    def build(
        self,
        request: DeploymentRequest,
        config: LocalDeployerProperties,
        context: LaunchContext,
    ) -> Command:
        program = self.resolve_java_command(config, request.runtime_version, context.parent_env)
        properties = with_server_port(request.app_properties, context.port)

        args = []
        debug = self.debug_option(config, request.instance_index)
        if debug:
            args.append(debug)
        args.extend(self._java_opts(config))
        args.extend(["-jar", request.artifact])

        overrides = dict(request.environment_variables)
        if config.use_spring_application_json:
            overrides[SPRING_APPLICATION_JSON] = json.dumps(properties)
        else:
            args.extend(f"--{key}={value}" for key, value in properties.items())
        args.extend(request.command_line_args)

        env = build_environment(context.parent_env, config.env_vars_to_inherit, overrides)
        return Command(program=program, args=args, working_dir=context.working_dir, env=env)
