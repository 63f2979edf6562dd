"""
Service Registry

In-memory registry of named services. Each service resolves its instances
through a discovery strategy (``dns``, ``static`` or ``env``), optionally has
its instances health-checked, and hands out one healthy instance on demand.

Two background loops keep the state fresh once the registry is started:
discovery every ``DISCOVERY_INTERVAL`` seconds and health checks every
``HEALTH_CHECK_INTERVAL`` seconds. Reads (``get_service``,
``get_all_services``) never perform I/O.

Usage:
    async with ServiceRegistry() as registry:
        await registry.register("auth-service", {
            "discovery_type": "dns",
            "domain": "auth.service.local",
            "health_check": http_health_check("/health"),
        })

        instance = registry.get_service("auth-service")
"""

import asyncio
import random
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import structlog

from registry_core.config.settings import Settings, get_settings
from registry_core.exceptions import (
    DiscoveryError,
    NoHealthyInstanceError,
    NotFoundError,
    ValidationError,
)
from registry_core.service_discovery.health import (
    HealthCheck,
    HealthMonitor,
    HealthPolicy,
    NoHealthCheck,
)
from registry_core.service_discovery.models import (
    DiscoveryType,
    Instance,
    ResolvedInstance,
    ServiceDescriptor,
    ServiceStatus,
    ServiceSummary,
    utcnow,
)
from registry_core.service_discovery.scheduler import PeriodicScheduler, WorkerPool
from registry_core.service_discovery.strategies import (
    DiscoveryStrategy,
    Resolver,
    build_strategies,
)

logger = structlog.get_logger("service-registry")

DNS_POOL = "dns"
DISCOVERY_POOL = "discovery"
HEALTH_POOL = "health"


def _parse_static_hosts(raw: Any) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, (str, bytes)) or not isinstance(raw, (list, tuple)):
        raise ValidationError("instances must be a list of hosts", field="instances")

    hosts = []
    for entry in raw:
        if isinstance(entry, Instance):
            host = entry.host
        elif isinstance(entry, Mapping):
            host = entry.get("host")
        else:
            host = entry
        if not isinstance(host, str) or not host:
            raise ValidationError(f"Invalid static instance: {entry!r}", field="instances")
        hosts.append(host)
    return tuple(hosts)


def _parse_health_check(details: Mapping[str, Any]) -> HealthPolicy:
    timeout = details.get("health_check_timeout")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValidationError(
                "health_check_timeout must be a positive number of seconds",
                field="health_check_timeout"
            )

    check = details.get("health_check")
    if check is None or isinstance(check, NoHealthCheck):
        return NoHealthCheck()
    if isinstance(check, HealthCheck):
        return check if timeout is None else HealthCheck(check.predicate, timeout=timeout)
    if callable(check):
        return HealthCheck(check, timeout=timeout)
    raise ValidationError("health_check must be callable", field="health_check")


def validate_service_details(name: Any, details: Any) -> ServiceDescriptor:
    """
    Validate registration input and build a fresh descriptor.

    Raises:
        ValidationError: On any malformed field; nothing is stored
    """
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Service name must be a non-empty string", field="name")
    if not isinstance(details, Mapping):
        raise ValidationError("Service details must be a mapping", field="details")

    raw_type = details.get("discovery_type")
    if not raw_type:
        raise ValidationError("Missing required field: discovery_type", field="discovery_type")
    try:
        discovery_type = DiscoveryType(raw_type)
    except ValueError:
        raise ValidationError(
            f"Invalid discovery type: {raw_type!r} (expected dns, static or env)",
            field="discovery_type"
        )

    domain = details.get("domain")
    env_prefix = details.get("env_prefix")

    if discovery_type == DiscoveryType.DNS and not domain:
        raise ValidationError("DNS discovery requires domain field", field="domain")
    if discovery_type == DiscoveryType.ENV and not env_prefix:
        raise ValidationError("Environment discovery requires env_prefix field", field="env_prefix")
    for field, value in (("domain", domain), ("env_prefix", env_prefix)):
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{field} must be a string, got {type(value).__name__}", field=field)

    return ServiceDescriptor(
        name=name,
        discovery_type=discovery_type,
        health_check=_parse_health_check(details),
        domain=domain,
        env_prefix=env_prefix,
        static_hosts=_parse_static_hosts(details.get("instances")),
    )


class ServiceRegistry:
    """
    Registry of services, their instances and instance health.

    Args:
        settings: Intervals, timeouts and pool limits (defaults to get_settings())
        resolver: DNS resolver override
        environ: Environment mapping scanned by ``env`` discovery (defaults to os.environ)
        rng: Random source for instance selection
        strategies: Full strategy table override
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        resolver: Optional[Resolver] = None,
        environ: Optional[Mapping[str, str]] = None,
        rng: Optional[random.Random] = None,
        strategies: Optional[Dict[DiscoveryType, DiscoveryStrategy]] = None
    ):
        self.settings = settings or get_settings()
        self._services: Dict[str, ServiceDescriptor] = {}
        self._strategies = strategies or build_strategies(self.settings, resolver, environ)
        self._health_monitor = HealthMonitor(default_timeout=self.settings.HEALTH_CHECK_TIMEOUT)
        self._rng = rng or random.Random()

        # DNS lookups, I/O-free discovery and health passes never share slots
        self._pools: Dict[str, WorkerPool] = {
            kind: WorkerPool(f"{kind}-jobs", max_concurrent=self.settings.MAX_CONCURRENT_JOBS)
            for kind in (DNS_POOL, DISCOVERY_POOL, HEALTH_POOL)
        }
        self._scheduler = PeriodicScheduler()
        self._scheduler.add_job("discovery", self.settings.DISCOVERY_INTERVAL, self._dispatch_discovery)
        self._scheduler.add_job("health", self.settings.HEALTH_CHECK_INTERVAL, self._dispatch_health_checks)

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def start(self) -> None:
        """Start the discovery and health-check loops"""
        await self._scheduler.start()
        logger.info(
            "Service registry started",
            discovery_interval=self.settings.DISCOVERY_INTERVAL,
            health_check_interval=self.settings.HEALTH_CHECK_INTERVAL,
        )

    async def stop(self) -> None:
        """Stop the loops and cancel any in-flight passes"""
        await self._scheduler.stop()
        for pool in self._pools.values():
            await pool.shutdown()
        logger.info("Service registry stopped")

    async def __aenter__(self) -> "ServiceRegistry":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ------------------------------------------------------------------ #
    # Registration                                                         #
    # ------------------------------------------------------------------ #

    async def register(self, name: str, details: Mapping[str, Any]) -> None:
        """
        Register (or replace) a service and run its first discovery pass.

        Args:
            name: Unique service name
            details: ``discovery_type`` plus ``domain`` / ``env_prefix`` /
                ``instances`` as the type requires, and optionally
                ``health_check`` and ``health_check_timeout``

        Raises:
            ValidationError: Input rejected, the registry is unchanged
        """
        try:
            descriptor = validate_service_details(name, details)
        except ValidationError as e:
            logger.error("Error registering service", service=name, error=e.message, field=e.field)
            raise

        replaced = name in self._services
        self._services[name] = descriptor

        await self.discover(name)

        logger.info(
            "Service registered successfully",
            service=name,
            discovery_type=descriptor.discovery_type.value,
            health_checked=isinstance(descriptor.health_check, HealthCheck),
            replaced=replaced,
            status=descriptor.status.value,
            instances=len(descriptor.instances),
        )

    # ------------------------------------------------------------------ #
    # Reads                                                                #
    # ------------------------------------------------------------------ #

    def __contains__(self, name: object) -> bool:
        return name in self._services

    def __len__(self) -> int:
        return len(self._services)

    def get_descriptor(self, name: str) -> ServiceDescriptor:
        """Return the live descriptor for ``name``"""
        try:
            return self._services[name]
        except KeyError:
            raise NotFoundError(name) from None

    def get_service(self, name: str) -> ResolvedInstance:
        """
        Pick one healthy instance of ``name`` uniformly at random.

        Raises:
            NotFoundError: ``name`` is not registered
            NoHealthyInstanceError: No instance is currently healthy
        """
        descriptor = self.get_descriptor(name)
        instances = descriptor.instances
        healthy = [instance for instance in instances if instance.is_healthy]

        if not healthy:
            raise NoHealthyInstanceError(name, instance_count=len(instances))

        # TODO: decide with consumers whether selection should become true round-robin
        instance = self._rng.choice(healthy)
        return ResolvedInstance.from_instance(instance, name)

    def get_all_services(self) -> List[ServiceSummary]:
        """Summaries for every registered service"""
        return [descriptor.summary() for descriptor in list(self._services.values())]

    def get_stats(self) -> dict:
        return {
            "services": len(self._services),
            "running": self.running,
            "pools": {kind: pool.get_stats() for kind, pool in self._pools.items()},
        }

    # ------------------------------------------------------------------ #
    # Discovery & health passes                                            #
    # ------------------------------------------------------------------ #

    async def discover(self, name: str) -> bool:
        """
        Run one discovery pass for ``name``.

        On success the instance list is replaced and the service becomes
        ``active``; on failure the old list is kept and the service is
        marked ``error``. Returns whether the pass succeeded.
        """
        descriptor = self._services.get(name)
        if descriptor is None:
            return False

        strategy = self._strategies[descriptor.discovery_type]
        try:
            instances = await strategy.discover(descriptor)
        except Exception as e:
            error = e if isinstance(e, DiscoveryError) else DiscoveryError(str(e), service=name)
            descriptor.status = ServiceStatus.ERROR
            descriptor.last_update = utcnow()
            descriptor.last_error = error.message
            logger.error(
                "Error discovering service instances",
                service=name,
                discovery_type=descriptor.discovery_type.value,
                error=error.message,
            )
            return False

        descriptor.instances = instances
        descriptor.last_update = utcnow()
        descriptor.status = ServiceStatus.ACTIVE
        descriptor.last_error = None
        logger.debug("Discovered instances", service=name, instances=[i.host for i in instances])
        return True

    async def check_health(self, name: str) -> bool:
        """Run one health pass for ``name``; False if skipped or discarded"""
        descriptor = self._services.get(name)
        if descriptor is None:
            return False
        return await self._health_monitor.check_service(descriptor)

    async def refresh(self, name: str) -> bool:
        """
        Discovery pass followed, on success, by a health pass.

        Re-discovered instances start out ``unknown``; checking them right
        away keeps the window without a selectable instance short. The
        health pass runs on the health pool, so it queues with the other
        health work rather than holding a discovery slot for its own sake.
        """
        discovered = await self.discover(name)
        if discovered:
            await self._follow_up_health_check(name)
        return discovered

    async def _follow_up_health_check(self, name: str) -> None:
        pool = self._pools[HEALTH_POOL]
        key = f"health:{name}"
        job = partial(self.check_health, name)

        task = pool.submit(key, job)
        while task is None:
            # A pass over the replaced list is still running; its results get discarded
            await asyncio.wait({pool.running_task(key)})
            task = pool.submit(key, job)
        await asyncio.wait({task})

    async def discover_all(self) -> Dict[str, bool]:
        """Refresh every service and wait for all of them; maps name -> discovery outcome"""
        return await self._gather(self._dispatch_discovery())

    async def check_all(self) -> Dict[str, bool]:
        """Run a health pass for every service and wait for all of them"""
        return await self._gather(self._dispatch_health_checks())

    def _dispatch_discovery(self) -> Dict[str, asyncio.Task]:
        def pool_for(descriptor: ServiceDescriptor) -> str:
            return DNS_POOL if descriptor.discovery_type == DiscoveryType.DNS else DISCOVERY_POOL

        return self._dispatch("discovery", pool_for, self.refresh)

    def _dispatch_health_checks(self) -> Dict[str, asyncio.Task]:
        return self._dispatch("health", lambda descriptor: HEALTH_POOL, self.check_health)

    def _dispatch(
        self,
        kind: str,
        pool_for: Callable[[ServiceDescriptor], str],
        run: Callable[[str], Awaitable[bool]]
    ) -> Dict[str, asyncio.Task]:
        tasks: Dict[str, asyncio.Task] = {}
        for name, descriptor in list(self._services.items()):
            pool = self._pools[pool_for(descriptor)]
            key = f"{kind}:{name}"
            task = pool.submit(key, partial(run, name)) or pool.running_task(key)
            if task is not None:
                tasks[name] = task
        return tasks

    @staticmethod
    async def _gather(tasks: Dict[str, asyncio.Task]) -> Dict[str, bool]:
        results = await asyncio.gather(*tasks.values(), return_exceptions=True)
        return {
            name: result is True
            for name, result in zip(tasks, results)
        }
