"""
Instance Health Monitoring

A service is registered either with ``NoHealthCheck`` (its instances stay
``unknown``) or with a ``HealthCheck`` wrapping a caller-supplied predicate
``Instance -> bool``. The ``HealthMonitor`` runs one pass for a service:
every current instance is checked concurrently, each call bounded by the
check's timeout, and the results replace the instance list in one step.
"""

import asyncio
import inspect
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, List, Optional, Union

import httpx
import structlog

from registry_core.exceptions import HealthCheckError, OperationTimeout
from registry_core.resilience import with_timeout
from registry_core.service_discovery.models import (
    Instance,
    InstanceStatus,
    ServiceDescriptor,
    utcnow,
)

logger = structlog.get_logger("health-monitor")

HealthPredicate = Callable[[Instance], Union[bool, Awaitable[bool]]]


@dataclass(frozen=True)
class NoHealthCheck:
    """Service is never health-checked"""


@dataclass(frozen=True)
class HealthCheck:
    """
    Caller-supplied health predicate.

    Args:
        predicate: Async (or plain) callable taking an ``Instance``
        timeout: Max seconds for one call, ``None`` for the registry default
    """
    predicate: HealthPredicate
    timeout: Optional[float] = None

    async def _call(self, instance: Instance) -> Any:
        result = self.predicate(instance)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def run(self, instance: Instance, timeout: Optional[float] = None) -> Instance:
        """
        Check one instance and return its updated value.

        Never raises for predicate failures: a raised error or a timeout
        yields ``unhealthy`` with the reason in ``error``.
        """
        limit = self.timeout if self.timeout is not None else timeout
        try:
            healthy = bool(await with_timeout(self._call, limit, instance))
        except OperationTimeout:
            return replace(
                instance,
                status=InstanceStatus.UNHEALTHY,
                last_check=utcnow(),
                error=f"Health check timed out after {limit}s",
            )
        except Exception as e:
            return replace(
                instance,
                status=InstanceStatus.UNHEALTHY,
                last_check=utcnow(),
                error=str(e) or e.__class__.__name__,
            )

        return replace(
            instance,
            status=InstanceStatus.HEALTHY if healthy else InstanceStatus.UNHEALTHY,
            last_check=utcnow(),
            error=None,
        )


HealthPolicy = Union[HealthCheck, NoHealthCheck]


class HealthMonitor:
    """
    Runs health passes for registered services.

    Args:
        default_timeout: Bound for predicates registered without their own
    """

    def __init__(self, default_timeout: Optional[float] = 5.0):
        self.default_timeout = default_timeout

    async def check_service(self, descriptor: ServiceDescriptor) -> bool:
        """
        Run one health pass for ``descriptor``.

        Returns True if results were applied. Services with
        ``NoHealthCheck`` are skipped, and results are dropped when
        discovery replaced the instance list while the pass was running.
        """
        policy = descriptor.health_check
        if not isinstance(policy, HealthCheck):
            return False

        snapshot = descriptor.instances
        if not snapshot:
            return False

        checked: List[Instance] = await asyncio.gather(
            *[policy.run(instance, self.default_timeout) for instance in snapshot]
        )

        for instance in checked:
            if instance.status == InstanceStatus.UNHEALTHY and instance.error:
                error = HealthCheckError(
                    instance.error, service=descriptor.name, host=instance.host
                )
                logger.warning(
                    "Health check failed",
                    service=descriptor.name,
                    instance=instance.host,
                    error=error.message,
                )

        if descriptor.instances is not snapshot:
            logger.debug(
                "Instance list replaced during health pass, discarding results",
                service=descriptor.name,
            )
            return False

        descriptor.instances = checked
        return True


def http_health_check(
    path: str = "/health",
    scheme: str = "http",
    port: Optional[int] = None,
    timeout: Optional[float] = None,
    client: Optional[httpx.AsyncClient] = None
) -> HealthPredicate:
    """
    Build a predicate that GETs ``scheme://host[:port]path``.

    A 2xx response means healthy; any other status is unhealthy and
    transport errors propagate so the monitor records them.

    Usage:
        await registry.register("auth-service", {
            "discovery_type": "dns",
            "domain": "auth.service.local",
            "health_check": http_health_check("/health", port=8080),
        })
    """
    if not path.startswith("/"):
        path = f"/{path}"
    # httpx treats timeout=None as "no timeout", so only pass an explicit one
    request_options = {} if timeout is None else {"timeout": timeout}

    async def predicate(instance: Instance) -> bool:
        authority = instance.host if port is None else f"{instance.host}:{port}"
        url = f"{scheme}://{authority}{path}"
        if client is not None:
            response = await client.get(url, **request_options)
        else:
            async with httpx.AsyncClient(**request_options) as session:
                response = await session.get(url)
        return response.is_success

    return predicate
