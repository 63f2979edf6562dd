"""
Tests for the worker pool, periodic scheduler and registry lifecycle
"""
import asyncio
from functools import partial

import pytest

from registry_core.config.settings import Settings
from registry_core.resilience import Bulkhead
from registry_core.service_discovery import (
    InstanceStatus,
    PeriodicScheduler,
    ServiceRegistry,
    WorkerPool,
)


# ============================================================================
# WorkerPool
# ============================================================================

@pytest.mark.asyncio
async def test_pool_skips_job_still_in_flight():
    pool = WorkerPool("test")
    release = asyncio.Event()
    runs = []

    async def job():
        runs.append(1)
        await release.wait()
        return True

    first = pool.submit("discovery:billing", job)
    second = pool.submit("discovery:billing", job)
    other = pool.submit("discovery:orders", job)

    assert first is not None
    assert second is None
    assert other is not None
    assert pool.running_task("discovery:billing") is first

    release.set()
    await pool.join()

    stats = pool.get_stats()
    assert len(runs) == 2
    assert stats["skipped"] == 1
    assert stats["completed"] == 2
    assert stats["in_flight"] == 0
    assert not pool.is_running("discovery:billing")


@pytest.mark.asyncio
async def test_pool_bounds_concurrency():
    pool = WorkerPool("test", max_concurrent=2)
    active = {"now": 0, "peak": 0}

    async def job():
        active["now"] += 1
        active["peak"] = max(active["peak"], active["now"])
        await asyncio.sleep(0.01)
        active["now"] -= 1

    for i in range(6):
        pool.submit(f"job:{i}", job)
    await pool.join()

    assert active["peak"] == 2
    assert pool.get_stats()["completed"] == 6


@pytest.mark.asyncio
async def test_pool_isolates_failing_jobs():
    pool = WorkerPool("test")

    async def boom():
        raise RuntimeError("boom")

    async def fine():
        return "ok"

    failed = pool.submit("a", boom)
    succeeded = pool.submit("b", fine)
    await pool.join()

    assert failed.result() is None
    assert succeeded.result() == "ok"
    stats = pool.get_stats()
    assert stats["failed"] == 1
    assert stats["completed"] == 1


@pytest.mark.asyncio
async def test_pool_runs_every_waiting_job():
    """A saturated pool queues work instead of dropping it"""
    pool = WorkerPool("test", max_concurrent=1)
    release = asyncio.Event()
    done = []

    async def job(i):
        await release.wait()
        done.append(i)

    for i in range(250):
        pool.submit(f"job:{i}", partial(job, i))
    for _ in range(3):
        await asyncio.sleep(0)

    assert pool.bulkhead.get_stats()["waiting"] == 249

    release.set()
    await pool.join()

    assert sorted(done) == list(range(250))
    assert pool.get_stats()["completed"] == 250


@pytest.mark.asyncio
async def test_pool_shutdown_cancels_jobs():
    pool = WorkerPool("test")

    async def forever():
        await asyncio.Event().wait()

    task = pool.submit("a", forever)
    await asyncio.sleep(0)
    await pool.shutdown()

    assert task.cancelled()
    assert pool.get_stats()["in_flight"] == 0


@pytest.mark.asyncio
async def test_bulkhead_releases_slot_of_cancelled_waiter():
    bulkhead = Bulkhead("test", max_concurrent=1)
    release = asyncio.Event()

    async def hold():
        await release.wait()
        return "held"

    holder = asyncio.create_task(bulkhead.execute(hold))
    waiter = asyncio.create_task(bulkhead.execute(hold))
    await asyncio.sleep(0)
    assert bulkhead.get_stats()["waiting"] == 1

    waiter.cancel()
    await asyncio.gather(waiter, return_exceptions=True)
    release.set()

    assert await holder == "held"
    assert await bulkhead.execute(hold) == "held"
    stats = bulkhead.get_stats()
    assert stats["waiting"] == 0
    assert stats["active"] == 0
    assert stats["peak_active"] == 1
    assert stats["max_concurrent"] == 1


def test_bulkhead_needs_a_slot():
    with pytest.raises(ValueError):
        Bulkhead("test", max_concurrent=0)


# ============================================================================
# PeriodicScheduler
# ============================================================================

@pytest.mark.asyncio
async def test_scheduler_ticks_until_stopped():
    scheduler = PeriodicScheduler()
    ticks = []
    scheduler.add_job("fast", 0.01, lambda: ticks.append(1))

    await scheduler.start()
    await asyncio.sleep(0.1)
    await scheduler.stop()
    count = len(ticks)
    await asyncio.sleep(0.05)

    assert count >= 2
    assert len(ticks) == count
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_scheduler_survives_failing_tick():
    scheduler = PeriodicScheduler()
    ticks = []

    def tick():
        ticks.append(1)
        if len(ticks) == 1:
            raise RuntimeError("first tick fails")

    scheduler.add_job("flaky", 0.01, tick)
    await scheduler.start()
    await asyncio.sleep(0.1)
    await scheduler.stop()

    assert len(ticks) >= 2


def test_scheduler_rejects_non_positive_interval():
    scheduler = PeriodicScheduler()

    with pytest.raises(ValueError):
        scheduler.add_job("bad", 0, lambda: None)


# ============================================================================
# Registry lifecycle
# ============================================================================

@pytest.fixture
def fast_settings():
    return Settings(
        DISCOVERY_INTERVAL=0.02,
        HEALTH_CHECK_INTERVAL=0.02,
        HEALTH_CHECK_TIMEOUT=0.5,
        DNS_TIMEOUT=30,
        DISCOVERY_RETRIES=1,
        DISCOVERY_RETRY_DELAY=0,
    )


@pytest.mark.asyncio
async def test_registry_loops_run_health_checks(fast_settings):
    async def always_up(instance):
        return True

    registry = ServiceRegistry(settings=fast_settings)
    await registry.register("billing", {
        "discovery_type": "static",
        "instances": ["a"],
        "health_check": always_up,
    })

    async with registry:
        assert registry.running
        for _ in range(100):
            if registry.get_descriptor("billing").instances[0].status == InstanceStatus.HEALTHY:
                break
            await asyncio.sleep(0.01)
        assert registry.get_service("billing").host == "a"

    assert registry.running is False
    assert _in_flight(registry) == 0


@pytest.mark.asyncio
async def test_slow_dns_does_not_block_other_services(fast_settings, resolver, environ):
    registry = ServiceRegistry(settings=fast_settings, resolver=resolver, environ=environ)
    await registry.register("billing", {"discovery_type": "dns", "domain": "billing.service.local"})
    await registry.register("chat", {"discovery_type": "env", "env_prefix": "CHAT_"})

    resolver.delay = 30
    environ["CHAT_1"] = "chat-1"

    async with registry:
        for _ in range(100):
            if registry.get_descriptor("chat").instances:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.1)

        assert [i.host for i in registry.get_descriptor("chat").instances] == ["chat-1"]
        # The hung lookup is never stacked up behind itself
        assert registry.get_stats()["pools"]["dns"]["skipped"] >= 1
        assert [i.host for i in registry.get_descriptor("billing").instances] == ["10.0.0.1", "10.0.0.2"]

    assert _in_flight(registry) == 0


def _in_flight(registry):
    return sum(pool["in_flight"] for pool in registry.get_stats()["pools"].values())


@pytest.mark.asyncio
async def test_every_service_checked_beyond_pool_limits(settings):
    """Many more services than pool slots are all checked on a single pass"""
    async def always_up(instance):
        await asyncio.sleep(0)
        return True

    registry = ServiceRegistry(settings=settings)
    count = settings.MAX_CONCURRENT_JOBS * 15
    for i in range(count):
        await registry.register(f"svc{i}", {
            "discovery_type": "static",
            "instances": [f"10.0.{i // 250}.{i % 250}"],
            "health_check": always_up,
        })

    health = await registry.check_all()

    assert len(health) == count
    assert all(health.values())
    unchecked = [
        summary.name for summary in registry.get_all_services()
        if summary.healthy_instance_count != 1
    ]
    assert unchecked == []
    assert registry.get_stats()["pools"]["health"]["completed"] == count

    discovery = await registry.discover_all()

    assert len(discovery) == count
    assert all(discovery.values())
    assert all(summary.healthy_instance_count == 1 for summary in registry.get_all_services())


@pytest.mark.asyncio
async def test_hung_dns_does_not_delay_health_or_other_discovery(resolver):
    settings = Settings(
        DNS_TIMEOUT=30,
        DISCOVERY_RETRIES=1,
        DISCOVERY_RETRY_DELAY=0,
        HEALTH_CHECK_TIMEOUT=0.5,
        MAX_CONCURRENT_JOBS=4,
    )

    async def always_up(instance):
        return True

    registry = ServiceRegistry(settings=settings, resolver=resolver)
    hung = [f"dns{i}" for i in range(settings.MAX_CONCURRENT_JOBS + 2)]
    for name in hung:
        await registry.register(name, {"discovery_type": "dns", "domain": "billing.service.local"})
    await registry.register("web", {
        "discovery_type": "static",
        "instances": ["web-1"],
        "health_check": always_up,
    })
    registry.get_descriptor("web").instances = []

    resolver.delay = 30
    discovery = asyncio.create_task(registry.discover_all())
    for _ in range(3):
        await asyncio.sleep(0)

    health = await asyncio.wait_for(registry.check_all(), timeout=1)

    assert health["web"] is True
    assert [i.host for i in registry.get_descriptor("web").instances] == ["web-1"]
    assert registry.get_service("web").host == "web-1"
    dns_stats = registry.get_stats()["pools"]["dns"]["bulkhead"]
    assert dns_stats["active"] == settings.MAX_CONCURRENT_JOBS
    assert dns_stats["waiting"] == 2

    await registry.stop()
    outcome = await asyncio.wait_for(discovery, timeout=1)

    assert outcome["web"] is True
    assert not any(outcome[name] for name in hung)
    assert _in_flight(registry) == 0
