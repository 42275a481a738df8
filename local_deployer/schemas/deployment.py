"""
Pydantic schemas for Deployment.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

DOCKER_SCHEME = "docker:"


class DeploymentKind(str, Enum):
    """How an artifact is launched."""
    JAVA = "java"      # Executable jar run by a local JVM
    DOCKER = "docker"  # Container image run by the docker CLI


class DeploymentState(str, Enum):
    """Lifecycle state of a deployment."""
    ADMITTED = "admitted"
    LAUNCHING = "launching"
    STARTING = "starting"
    RUNNING = "running"
    UNDEPLOYING = "undeploying"
    CRASHED = "crashed"
    FAILED = "failed"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    DeploymentState.TERMINATED,
    DeploymentState.CRASHED,
    DeploymentState.FAILED,
})


class HealthStatus(str, Enum):
    """Result of the last probe of a deployment."""
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class DeploymentRequest(BaseModel):
    """A resolved artifact plus everything needed to run one instance of it."""
    artifact: str = Field(..., min_length=1)  # jar path, or docker:<image>
    app_name: str = Field(..., min_length=1, max_length=255)
    instance_index: int = Field(default=0, ge=0)
    kind: Optional[DeploymentKind] = None

    # Application properties, passed as --key=value or SPRING_APPLICATION_JSON
    app_properties: Dict[str, str] = Field(default_factory=dict)
    # Deployer properties; deployer.local.* keys override settings per request
    deployment_properties: Dict[str, str] = Field(default_factory=dict)
    environment_variables: Dict[str, str] = Field(default_factory=dict)
    command_line_args: List[str] = Field(default_factory=list)
    # Key into java_home_path, e.g. "17"
    runtime_version: Optional[str] = None

    @model_validator(mode="after")
    def resolve_kind(self) -> "DeploymentRequest":
        if self.kind is None:
            is_image = self.artifact.startswith(DOCKER_SCHEME)
            self.kind = DeploymentKind.DOCKER if is_image else DeploymentKind.JAVA
        return self

    @property
    def image(self) -> str:
        """Image reference for docker artifacts, without the scheme."""
        if self.artifact.startswith(DOCKER_SCHEME):
            return self.artifact[len(DOCKER_SCHEME):]
        return self.artifact


class DeploymentStatus(BaseModel):
    """Point-in-time view of a deployment."""
    instance_id: str
    app_name: str
    instance_index: int
    kind: DeploymentKind
    state: DeploymentState
    port: Optional[int] = None
    pid: Optional[int] = None
    url: Optional[str] = None
    working_dir: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    health_status: HealthStatus = HealthStatus.UNKNOWN
    error: Optional[str] = None
