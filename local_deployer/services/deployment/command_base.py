"""
Abstract base class for command builders.

A command builder turns a deployment request and a configuration snapshot
into the command line, environment and working directory of the process to
launch. There is one implementation per ``DeploymentKind``.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from local_deployer.core.config import LocalDeployerProperties, PortRange
from local_deployer.schemas.deployment import DeploymentRequest

SERVER_PORT_PROPERTY = "server.port"


@dataclass(frozen=True)
class Command:
    """A fully assembled process invocation."""

    program: str
    args: List[str]
    working_dir: Path
    env: Dict[str, str] = field(default_factory=dict)
    # Command that force-stops whatever the program started (e.g. a container)
    stop_args: Optional[List[str]] = None

    @property
    def argv(self) -> List[str]:
        return [self.program, *self.args]


@dataclass(frozen=True)
class LaunchContext:
    """Per-instance values known only after admission."""

    instance_id: str
    port: int
    working_dir: Path
    parent_env: Mapping[str, str]


def with_server_port(app_properties: Mapping[str, str], port: int) -> Dict[str, str]:
    """Copy application properties and pin the server port to ``port``."""
    properties = dict(app_properties)
    properties[SERVER_PORT_PROPERTY] = str(port)
    return properties


class CommandBuilder(ABC):
    """
    Abstract base class for command builders.

    Implementations must provide methods for:
    - Validating a request before any resource is claimed
    - Selecting the port range to allocate from
    - Building the command to launch
    """

    @abstractmethod
    def validate(
        self,
        request: DeploymentRequest,
        config: LocalDeployerProperties,
        parent_env: Mapping[str, str],
    ) -> None:
        """
        Check everything that can be checked before admission.

        Args:
            request: The deployment request
            config: Configuration snapshot for the request
            parent_env: Environment of the deployer process

        Raises:
            ConfigurationError: If the request cannot be turned into a command
        """
        pass

    @abstractmethod
    def port_range(self, config: LocalDeployerProperties) -> PortRange:
        """Return the range the application port is allocated from."""
        pass

    @abstractmethod
    def build(
        self,
        request: DeploymentRequest,
        config: LocalDeployerProperties,
        context: LaunchContext,
    ) -> Command:
        """
        Build the command for one application instance.

        Args:
            request: The deployment request
            config: Configuration snapshot for the request
            context: Instance id, allocated port, working directory and parent env

        Returns:
            Command ready to be launched
        """
        pass
