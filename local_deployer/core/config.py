"""
Application configuration using Pydantic Settings.

``Settings`` is the process-wide, environment-bound configuration. The
deployer-specific part lives in ``LocalDeployerProperties`` so that it can be
snapshotted per deployment request: the supervisor never reads the shared
instance after admission.
"""
import logging
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from local_deployer.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Environment variable used to hand application properties to a Spring Boot
# style application as a single JSON document.
SPRING_APPLICATION_JSON = "SPRING_APPLICATION_JSON"

# Prefix of deployment properties that override deployer settings per request,
# e.g. ``deployer.local.inherit-logging=true``.
OVERRIDE_PREFIX = "deployer.local."

# Validation context flag set while building per-deployment snapshots
SNAPSHOT_CONTEXT = "snapshot"

JAVA_COMMAND = "java.exe" if os.name == "nt" else "java"

# Some Windows systems use 'Path' while the process environment reports 'PATH'
ENV_VARS_TO_INHERIT_DEFAULTS_WIN = ["TMP", "TEMP", "PATH", "Path", SPRING_APPLICATION_JSON]
ENV_VARS_TO_INHERIT_DEFAULTS_OTHER = ["TMP", "LANG", "LANGUAGE", "LC_.*", "PATH", SPRING_APPLICATION_JSON]

# Scalar settings a request may override through its deployment properties.
OVERRIDABLE_FIELDS = frozenset({
    "inherit_logging",
    "java_cmd",
    "java_opts",
    "debug_port",
    "debug_address",
    "debug_suspend",
    "use_spring_application_json",
    "shutdown_timeout",
    "delete_files_on_exit",
})


def default_env_vars_to_inherit() -> List[str]:
    """Return the platform default inherit patterns."""
    if os.name == "nt":
        return list(ENV_VARS_TO_INHERIT_DEFAULTS_WIN)
    return list(ENV_VARS_TO_INHERIT_DEFAULTS_OTHER)


class DebugSuspendType(str, Enum):
    """Whether the JVM waits for a debugger to attach before starting."""
    y = "y"
    n = "n"


class PortRange(BaseModel):
    """Inclusive range of ports handed out to deployed applications."""

    model_config = ConfigDict(frozen=True)

    low: int = 20000
    high: int = 61000

    @model_validator(mode="after")
    def check_bounds(self) -> "PortRange":
        if self.low <= 0 or self.high <= 0:
            raise ValueError(f"port range bounds must be positive: {self}")
        if self.high > 65535:
            raise ValueError(f"port range upper bound exceeds 65535: {self}")
        if self.low >= self.high:
            raise ValueError(f"port range low must be lower than high: {self}")
        return self

    def __contains__(self, port: int) -> bool:
        return self.low <= port <= self.high

    def __str__(self) -> str:
        return f"{{ low={self.low}, high={self.high} }}"


class DockerOptions(BaseModel):
    """Settings for container deployments."""

    model_config = ConfigDict(validate_assignment=True)

    network: Optional[str] = "bridge"
    delete_container_on_exit: bool = True
    # Dedicated range for containers; the global range is used when unset
    port_range: Optional[PortRange] = None
    port_mappings: Optional[str] = None  # e.g. "9090:9090,9091:9091"
    volume_mounts: Optional[str] = None  # e.g. "/tmp:/tmp,/opt/data:/data"


class HttpProbe(BaseModel):
    """HTTP probe settings. A probe without a path is disabled."""

    model_config = ConfigDict(validate_assignment=True)

    path: Optional[str] = None
    scheme: str = "http"
    initial_delay: float = Field(default=0.0, ge=0)
    period: float = Field(default=2.0, gt=0)
    request_timeout: float = Field(default=2.0, gt=0)
    timeout: float = Field(default=120.0, gt=0)  # overall bound for startup probing
    max_attempts: Optional[int] = Field(default=None, ge=1)

    @property
    def enabled(self) -> bool:
        return bool(self.path)


class LocalDeployerProperties(BaseModel):
    """Configuration properties for the local deployer."""

    model_config = ConfigDict(validate_assignment=True)

    # Directory in which all created processes run and write their log files
    working_directories_root: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()))
    delete_files_on_exit: bool = True
    env_vars_to_inherit: List[str] = Field(default_factory=default_env_vars_to_inherit)

    java_cmd: str = JAVA_COMMAND
    java_opts: Optional[str] = None
    # Runtime version key -> java home directory
    java_home_path: Dict[str, str] = Field(default_factory=dict)

    # Seconds to wait for graceful shutdown; 0 or negative waits forever
    shutdown_timeout: int = 30
    use_spring_application_json: bool = True

    port_range: PortRange = Field(default_factory=PortRange)
    check_port_availability: bool = True
    maximum_concurrent_tasks: int = Field(default=20, ge=1)

    debug_port: Optional[int] = None  # deprecated, use debug_address
    debug_address: Optional[str] = None
    debug_suspend: DebugSuspendType = DebugSuspendType.y

    inherit_logging: bool = False
    docker: DockerOptions = Field(default_factory=DockerOptions)
    hostname: Optional[str] = None

    startup_probe: HttpProbe = Field(default_factory=HttpProbe)
    health_probe: HttpProbe = Field(default_factory=HttpProbe)

    cleanup_interval: int = Field(default=60, ge=0)  # seconds, 0 disables the sweep
    cleanup_after: int = Field(default=3600, ge=0)   # age of CRASHED/FAILED deployments to purge

    @field_validator("debug_port")
    @classmethod
    def warn_debug_port(cls, v: Optional[int], info: ValidationInfo) -> Optional[int]:
        # Already warned when the shared properties were validated
        if info.context and info.context.get(SNAPSHOT_CONTEXT):
            return v
        if v is not None:
            logger.warning(
                "The debug_port is deprecated! It supports only pre Java 9 environments. "
                "Please use the debug_address property instead!"
            )
        return v

    def snapshot(
        self, deployment_properties: Optional[Mapping[str, str]] = None
    ) -> "FrozenDeployerProperties":
        """
        Take an immutable copy of these properties for a single deployment.

        Deployment properties prefixed with ``deployer.local.`` override the
        matching setting (kebab-case or snake_case names are accepted).

        Raises:
            ConfigurationError: If an override does not validate
        """
        data = self.model_dump()
        for key, value in (deployment_properties or {}).items():
            if not key.startswith(OVERRIDE_PREFIX):
                continue
            name = key[len(OVERRIDE_PREFIX):].replace("-", "_")
            if name not in OVERRIDABLE_FIELDS:
                logger.warning(f"Ignoring unsupported deployment property override: {key}")
                continue
            data[name] = value

        try:
            # An overridden debug_port still gets its deprecation warning
            context = {SNAPSHOT_CONTEXT: data.get("debug_port") == self.debug_port}
            return FrozenDeployerProperties.model_validate(data, context=context)
        except PydanticValidationError as e:
            raise ConfigurationError("deployment_properties", str(e)) from e


class FrozenDeployerProperties(LocalDeployerProperties):
    """Per-deployment snapshot of ``LocalDeployerProperties``."""

    model_config = ConfigDict(frozen=True)


class Settings(BaseSettings):
    """Application settings."""

    APP_NAME: str = "Local Deployer"
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "info"

    # Nested values can be set as DEPLOYER__port_range__low=30000
    DEPLOYER: LocalDeployerProperties = Field(default_factory=LocalDeployerProperties)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
        env_nested_delimiter="__",
    )


settings = Settings()
