"""
Discovery Strategies

Each strategy turns a ``ServiceDescriptor`` into a fresh list of
``Instance`` values:

- ``dns``    -- resolve the descriptor's domain to IPv4 addresses
- ``static`` -- the hosts supplied at registration, no I/O
- ``env``    -- values of environment entries whose key starts with a prefix

Strategies raise ``DiscoveryError`` on failure and never touch the
descriptor; applying the result is the registry's job.
"""

import asyncio
import os
import socket
from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Optional, Protocol

import structlog

from registry_core.config.settings import Settings
from registry_core.exceptions import DiscoveryError, OperationTimeout
from registry_core.resilience import RetryExhausted, RetryPolicy, with_timeout
from registry_core.service_discovery.models import (
    DiscoveryType,
    Instance,
    ServiceDescriptor,
)

logger = structlog.get_logger("service-discovery")

# Resolver failures (socket.gaierror is an OSError) and per-lookup timeouts
DNS_RETRYABLE_ERRORS = (OSError, OperationTimeout)


class Resolver(Protocol):
    """Name -> addresses lookup used by DNS discovery"""

    async def resolve(self, domain: str) -> List[str]:
        ...


class SystemResolver:
    """
    Resolve A records through the event loop's ``getaddrinfo``.

    Addresses are de-duplicated and keep the order the system resolver
    returned them in.
    """

    def __init__(self, family: int = socket.AF_INET):
        self.family = family

    async def resolve(self, domain: str) -> List[str]:
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(
            domain, None, family=self.family, type=socket.SOCK_STREAM
        )

        addresses: List[str] = []
        for _, _, _, _, sockaddr in infos:
            address = sockaddr[0]
            if address not in addresses:
                addresses.append(address)
        return addresses


class DiscoveryStrategy(ABC):
    """Resolves the current instance list for one kind of descriptor"""

    discovery_type: DiscoveryType

    @abstractmethod
    async def discover(self, descriptor: ServiceDescriptor) -> List[Instance]:
        """Return freshly built instances or raise ``DiscoveryError``"""


class DnsDiscovery(DiscoveryStrategy):
    """DNS-based discovery with a per-lookup timeout and bounded retries"""

    discovery_type = DiscoveryType.DNS

    def __init__(
        self,
        resolver: Optional[Resolver] = None,
        timeout: Optional[float] = 5.0,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.resolver = resolver or SystemResolver()
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=1, retry_on=DNS_RETRYABLE_ERRORS)

    async def _lookup(self, domain: str) -> List[str]:
        return await with_timeout(self.resolver.resolve, self.timeout, domain)

    async def discover(self, descriptor: ServiceDescriptor) -> List[Instance]:
        domain = descriptor.domain
        try:
            addresses = await self.retry_policy.execute(self._lookup, domain)
        except RetryExhausted as e:
            raise self._failure(descriptor, e.__cause__ or e) from e.__cause__
        except Exception as e:
            raise self._failure(descriptor, e) from e

        return [Instance(host=address) for address in addresses]

    def _failure(self, descriptor: ServiceDescriptor, cause: BaseException) -> DiscoveryError:
        domain = descriptor.domain
        if isinstance(cause, OperationTimeout):
            reason = f"DNS lookup for '{domain}' timed out after {self.timeout}s"
        else:
            reason = f"DNS lookup for '{domain}' failed: {cause}"
        logger.error("DNS discovery error", service=descriptor.name, domain=domain, error=str(cause))
        return DiscoveryError(reason, service=descriptor.name)


class StaticDiscovery(DiscoveryStrategy):
    """Instances are exactly the hosts given at registration"""

    discovery_type = DiscoveryType.STATIC

    async def discover(self, descriptor: ServiceDescriptor) -> List[Instance]:
        return [Instance(host=host) for host in descriptor.static_hosts]


class EnvDiscovery(DiscoveryStrategy):
    """
    Scan an environment mapping by key prefix.

    The mapping is read on every pass so changes made after registration
    are picked up. Keys are visited in sorted order.
    """

    discovery_type = DiscoveryType.ENV

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = environ

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    async def discover(self, descriptor: ServiceDescriptor) -> List[Instance]:
        prefix = descriptor.env_prefix
        environ = dict(self.environ)
        return [
            Instance(host=environ[key])
            for key in sorted(environ)
            if key.startswith(prefix)
        ]


def build_strategies(
    settings: Settings,
    resolver: Optional[Resolver] = None,
    environ: Optional[Mapping[str, str]] = None
) -> Dict[DiscoveryType, DiscoveryStrategy]:
    """Wire the three strategies from settings"""
    retry_policy = RetryPolicy(
        max_attempts=settings.DISCOVERY_RETRIES,
        base_delay=settings.DISCOVERY_RETRY_DELAY,
        max_delay=max(settings.DISCOVERY_RETRY_DELAY, settings.DNS_TIMEOUT),
        retry_on=DNS_RETRYABLE_ERRORS,
    )
    strategies: List[DiscoveryStrategy] = [
        DnsDiscovery(resolver=resolver, timeout=settings.DNS_TIMEOUT, retry_policy=retry_policy),
        StaticDiscovery(),
        EnvDiscovery(environ=environ),
    ]
    return {strategy.discovery_type: strategy for strategy in strategies}
