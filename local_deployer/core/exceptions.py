"""
Custom exception hierarchy for domain-specific errors.

Services raise these exceptions; callers (a REST or CLI front end) decide how
to present them. Each exception carries a human readable message and a
``details`` mapping with the values that caused it.
"""
from typing import Any, Dict, Optional


class DomainException(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# =============================================================================
# Not Found Errors
# =============================================================================

class NotFoundError(DomainException):
    """Base class for resource not found errors."""
    pass


class DeploymentNotFoundError(NotFoundError):
    """Deployment does not exist."""

    def __init__(self, identifier: str):
        super().__init__(f"Deployment not found: {identifier}", {"identifier": identifier})


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(DomainException):
    """Base class for validation errors."""
    pass


class ConfigurationError(ValidationError):
    """Configuration is invalid. Raised before any resource is claimed."""

    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid configuration for {field}: {reason}", {"field": field, "reason": reason})


class DeploymentStillActiveError(ValidationError):
    """Deployment has not reached a terminal state yet."""

    def __init__(self, deployment_id: str, current_state: str):
        super().__init__(
            f"Deployment {deployment_id} is still active (state: {current_state})",
            {"deployment_id": deployment_id, "current_state": current_state}
        )


# =============================================================================
# Capacity Errors (retriable)
# =============================================================================

class CapacityError(DomainException):
    """Base class for errors the caller may retry later."""
    pass


class AdmissionRejectedError(CapacityError):
    """Maximum number of concurrent deployments reached."""

    def __init__(self, maximum_concurrent_tasks: int):
        super().__init__(
            f"Cannot deploy: maximum concurrent deployments ({maximum_concurrent_tasks}) reached",
            {"maximum_concurrent_tasks": maximum_concurrent_tasks}
        )


class PortExhaustedError(CapacityError):
    """No available ports in range."""

    def __init__(self, port_range_start: int, port_range_end: int):
        super().__init__(
            f"No available ports in range {port_range_start}-{port_range_end}",
            {"port_range_start": port_range_start, "port_range_end": port_range_end}
        )


# =============================================================================
# Operation Errors
# =============================================================================

class OperationError(DomainException):
    """Base class for operation failures."""
    pass


class LaunchFailedError(OperationError):
    """The application process could not be started."""

    def __init__(self, program: str, reason: str):
        super().__init__(
            f"Failed to launch {program}: {reason}",
            {"program": program, "reason": reason}
        )


class ProbeTimeoutError(OperationError):
    """Startup probe did not succeed in time."""

    def __init__(self, url: str, attempts: int, reason: str):
        super().__init__(
            f"Probe {url} did not succeed after {attempts} attempt(s): {reason}",
            {"url": url, "attempts": attempts, "reason": reason}
        )
