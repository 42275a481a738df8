"""
Local deployment services.

This package provides everything needed to run applications as local
processes: either an executable jar on a local JVM or a container image
through the docker CLI.
"""
from local_deployer.services.deployment.admission import AdmissionController, AdmissionToken
from local_deployer.services.deployment.command_base import (
    Command,
    CommandBuilder,
    LaunchContext,
)
from local_deployer.services.deployment.docker_command import DockerCommandBuilder
from local_deployer.services.deployment.environment import build_environment
from local_deployer.services.deployment.java_command import JavaCommandBuilder
from local_deployer.services.deployment.launcher import ProcessHandle, ProcessLauncher
from local_deployer.services.deployment.port_allocator import PortAllocator
from local_deployer.services.deployment.probe import ProbeChecker, ProbeResult
from local_deployer.services.deployment.supervisor import DeploymentSupervisor

__all__ = [
    "AdmissionController",
    "AdmissionToken",
    "Command",
    "CommandBuilder",
    "LaunchContext",
    "DockerCommandBuilder",
    "build_environment",
    "JavaCommandBuilder",
    "ProcessHandle",
    "ProcessLauncher",
    "PortAllocator",
    "ProbeChecker",
    "ProbeResult",
    "DeploymentSupervisor",
]
