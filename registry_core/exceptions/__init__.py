"""
Exception hierarchy for the service registry.

Only ``ValidationError`` is raised out of ``ServiceRegistry.register``.
Discovery and health-check errors are recorded on the registry state and
logged; the selector raises ``NotFoundError`` / ``NoHealthyInstanceError``.

Usage:
    from registry_core.exceptions import (
        ServiceRegistryError,
        ValidationError,
        NotFoundError,
        NoHealthyInstanceError,
    )
"""
from typing import Optional, Dict, Any


class ServiceRegistryError(Exception):
    """Base exception for all registry errors"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code or "INTERNAL_ERROR"
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


# ============================================================================
# Registration
# ============================================================================

class ValidationError(ServiceRegistryError):
    """Malformed registration input"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, "VALIDATION_ERROR", {"field": field})
        self.field = field


# ============================================================================
# Discovery & Health
# ============================================================================

class DiscoveryError(ServiceRegistryError):
    """Instance resolution failed for a service"""

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message, "DISCOVERY_ERROR", {"service": service})
        self.service = service


class HealthCheckError(ServiceRegistryError):
    """Health-check predicate failed for an instance"""

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        host: Optional[str] = None
    ):
        super().__init__(
            message,
            "HEALTH_CHECK_ERROR",
            {"service": service, "host": host}
        )
        self.service = service
        self.host = host


class OperationTimeout(ServiceRegistryError):
    """Bounded operation did not finish in time"""

    def __init__(self, message: str = "Operation timed out", timeout: Optional[float] = None):
        super().__init__(message, "TIMEOUT_ERROR", {"timeout": timeout})
        self.timeout = timeout


# ============================================================================
# Selection
# ============================================================================

class NotFoundError(ServiceRegistryError):
    """Service name is not registered"""

    def __init__(self, service: str):
        super().__init__(
            f"Service '{service}' not found",
            "NOT_FOUND",
            {"service": service}
        )
        self.service = service


class NoHealthyInstanceError(ServiceRegistryError):
    """Service is registered but has no healthy instance"""

    def __init__(self, service: str, instance_count: int = 0):
        super().__init__(
            f"No healthy instances found for service '{service}'",
            "NO_HEALTHY_INSTANCE",
            {"service": service, "instance_count": instance_count}
        )
        self.service = service
        self.instance_count = instance_count


__all__ = [
    "ServiceRegistryError",
    "ValidationError",
    "DiscoveryError",
    "HealthCheckError",
    "OperationTimeout",
    "NotFoundError",
    "NoHealthyInstanceError",
]
