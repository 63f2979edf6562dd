"""
Service Discovery and Health Monitoring

Registry of named services whose instances are resolved through DNS, a
static list or the process environment, health-checked in the background
and selected on demand.
"""

from registry_core.service_discovery.health import (
    HealthCheck,
    HealthMonitor,
    NoHealthCheck,
    http_health_check
)
from registry_core.service_discovery.models import (
    DiscoveryType,
    Instance,
    InstanceStatus,
    ResolvedInstance,
    ServiceDescriptor,
    ServiceStatus,
    ServiceSummary
)
from registry_core.service_discovery.registry import (
    ServiceRegistry,
    validate_service_details
)
from registry_core.service_discovery.scheduler import PeriodicScheduler, WorkerPool
from registry_core.service_discovery.strategies import (
    DnsDiscovery,
    EnvDiscovery,
    Resolver,
    StaticDiscovery,
    SystemResolver
)

__all__ = [
    "ServiceRegistry",
    "validate_service_details",
    "DiscoveryType",
    "Instance",
    "InstanceStatus",
    "ResolvedInstance",
    "ServiceDescriptor",
    "ServiceStatus",
    "ServiceSummary",
    "HealthCheck",
    "HealthMonitor",
    "NoHealthCheck",
    "http_health_check",
    "PeriodicScheduler",
    "WorkerPool",
    "DnsDiscovery",
    "EnvDiscovery",
    "Resolver",
    "StaticDiscovery",
    "SystemResolver"
]
