"""
Shared fixtures for registry tests
"""
import asyncio
import socket

import pytest

from registry_core.config.settings import Settings


class FakeResolver:
    """In-memory DNS resolver with switchable failure and latency"""

    def __init__(self, records=None):
        self.records = dict(records or {})
        self.error = None
        self.delay = 0.0
        self.calls = []

    async def resolve(self, domain):
        self.calls.append(domain)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if domain not in self.records:
            raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        return list(self.records[domain])


@pytest.fixture
def settings():
    """Fast settings: no retries, short timeouts"""
    return Settings(
        DNS_TIMEOUT=0.5,
        DISCOVERY_RETRIES=1,
        DISCOVERY_RETRY_DELAY=0,
        HEALTH_CHECK_TIMEOUT=0.5,
    )


@pytest.fixture
def resolver():
    return FakeResolver({"billing.service.local": ["10.0.0.1", "10.0.0.2"]})


@pytest.fixture
def environ():
    return {}
