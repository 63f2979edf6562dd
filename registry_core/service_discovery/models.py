"""
Registry data model.

``Instance`` and ``ServiceDescriptor`` hold the live, in-memory state.
``ServiceSummary`` and ``ResolvedInstance`` are the read-side views handed
to callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Tuple, Union

from pydantic import BaseModel

if TYPE_CHECKING:
    from registry_core.service_discovery.health import HealthCheck, NoHealthCheck


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DiscoveryType(str, Enum):
    """How a service's instance list is resolved"""
    DNS = "dns"
    STATIC = "static"
    ENV = "env"


class ServiceStatus(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    ERROR = "error"


class InstanceStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class Instance:
    """One network-reachable endpoint backing a service"""
    host: str
    status: InstanceStatus = InstanceStatus.UNKNOWN
    last_check: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_healthy(self) -> bool:
        return self.status == InstanceStatus.HEALTHY


@dataclass
class ServiceDescriptor:
    """
    Registered service and its current state.

    ``name``, ``discovery_type`` and the discovery parameters are fixed at
    registration. ``instances`` is only ever replaced as a whole list,
    never edited in place.
    """
    name: str
    discovery_type: DiscoveryType
    health_check: Union["HealthCheck", "NoHealthCheck"]
    domain: Optional[str] = None
    env_prefix: Optional[str] = None
    static_hosts: Tuple[str, ...] = ()
    instances: List[Instance] = field(default_factory=list)
    status: ServiceStatus = ServiceStatus.INITIALIZING
    last_update: datetime = field(default_factory=utcnow)
    last_error: Optional[str] = None

    @property
    def healthy_instances(self) -> List[Instance]:
        return [instance for instance in self.instances if instance.is_healthy]

    def summary(self) -> ServiceSummary:
        instances = self.instances
        return ServiceSummary(
            name=self.name,
            instance_count=len(instances),
            healthy_instance_count=sum(1 for i in instances if i.is_healthy),
            last_update=self.last_update,
            status=self.status,
        )


class ServiceSummary(BaseModel):
    """Aggregate view of one registered service"""
    name: str
    instance_count: int
    healthy_instance_count: int
    last_update: datetime
    status: ServiceStatus


class ResolvedInstance(BaseModel):
    """Instance picked by the selector, tagged with its service"""
    host: str
    status: InstanceStatus
    last_check: Optional[datetime] = None
    error: Optional[str] = None
    service_name: str
    timestamp: datetime

    @classmethod
    def from_instance(cls, instance: Instance, service_name: str) -> "ResolvedInstance":
        return cls(
            host=instance.host,
            status=instance.status,
            last_check=instance.last_check,
            error=instance.error,
            service_name=service_name,
            timestamp=utcnow(),
        )
