"""Tests for environment health checks."""

import asyncio
from collections import namedtuple
from datetime import datetime, timezone

import pytest

from devenv.health import (
    LOW_DISK,
    MISSING_PLUGIN,
    PROBE_FAILED,
    SLOW_PROBE,
    SYSTEM,
    UNPARSED_VERSION,
    VERSION_DRIFT,
    HealthMonitor,
    aggregate_score,
    aggregate_status,
    issues_for,
)
from devenv.types import Environment, EnvironmentStatus, HealthStatus, PluginContext, ProbeResult

DiskUsage = namedtuple("DiskUsage", "total used free percent")
GB = 1024 * 1024 * 1024


def make_env(languages, tools=None):
    return Environment(
        name="web",
        id="abc",
        status=EnvironmentStatus.ACTIVE,
        languages=languages,
        tools=tools or {},
        created_at=datetime.now(timezone.utc),
    )


def context_factory(tmp_path):
    def context(env, version=None, timeout=None):
        return PluginContext(env.name, version, tmp_path / env.name, None, None, timeout=timeout)

    return context


def probe_returning(result):
    async def probe(ctx):
        return result

    return probe


@pytest.fixture
def monitor(registry, tmp_path):
    return HealthMonitor(registry, context_factory(tmp_path), probe_timeout=1.0)


@pytest.mark.asyncio
async def test_healthy_environment(monitor):
    record = await monitor.check(make_env({"python": "3.11.0", "node": "20.10.0"}))

    assert record.status == HealthStatus.HEALTHY
    assert record.score == 100.0
    assert record.issues == ()
    assert record.recommendations == ()
    assert [name for name, _ in record.probes] == ["node", "python"]
    assert dict(record.probes)["python"].installed_version == "3.11.0"
    assert record.checked_at is not None


@pytest.mark.asyncio
async def test_default_version_probed_when_unpinned(monitor):
    record = await monitor.check(make_env({"python": None}))
    assert dict(record.probes)["python"].installed_version == "3.12"


@pytest.mark.asyncio
async def test_missing_plugin_is_an_issue(monitor):
    record = await monitor.check(make_env({"python": "3.11.0", "cobol": "85"}))

    assert record.status == HealthStatus.UNHEALTHY
    assert record.score == 0.0
    assert [(i.language, i.kind) for i in record.issues] == [("cobol", MISSING_PLUGIN)]
    assert dict(record.probes)["python"].status == HealthStatus.HEALTHY
    assert record.recommendations == ("Register a plugin that provides cobol",)


@pytest.mark.asyncio
async def test_version_drift(registry, make_plugin, tmp_path):
    registry.register(
        make_plugin("ruby", probe=probe_returning(ProbeResult(HealthStatus.HEALTHY, installed_version="3.2.2")))
    )
    monitor = HealthMonitor(registry, context_factory(tmp_path))

    record = await monitor.check(make_env({"ruby": ">=3.3"}))

    assert record.status == HealthStatus.DEGRADED
    assert [i.kind for i in record.issues] == [VERSION_DRIFT]
    assert "3.2.2 does not satisfy >=3.3" in record.issues[0].message


@pytest.mark.asyncio
async def test_failing_and_raising_probes(registry, make_plugin, tmp_path):
    async def explode(ctx):
        raise OSError("permission denied")

    registry.register(make_plugin("ruby", probe=explode))
    registry.register(
        make_plugin("go", probe=probe_returning(ProbeResult(HealthStatus.UNHEALTHY, score=0.0, message="go missing")))
    )
    monitor = HealthMonitor(registry, context_factory(tmp_path))

    record = await monitor.check(make_env({"ruby": "3.3", "go": "1.22", "python": "3.12"}))

    assert record.status == HealthStatus.UNHEALTHY
    assert [(i.language, i.kind) for i in record.issues] == [("go", PROBE_FAILED), ("ruby", PROBE_FAILED)]
    assert "permission denied" in dict(record.probes)["ruby"].message
    assert dict(record.probes)["python"].status == HealthStatus.HEALTHY


@pytest.mark.asyncio
async def test_probe_timeout(registry, make_plugin, tmp_path):
    async def hang(ctx):
        await asyncio.sleep(10)

    registry.register(make_plugin("ruby", probe=hang))
    monitor = HealthMonitor(registry, context_factory(tmp_path), probe_timeout=0.05)

    record = await monitor.check(make_env({"ruby": "3.3"}))

    probe = dict(record.probes)["ruby"]
    assert probe.status == HealthStatus.UNHEALTHY
    assert probe.score == 0.0
    assert record.issues[0].kind == PROBE_FAILED


@pytest.mark.asyncio
async def test_slow_and_unparsed_probes_degrade(registry, make_plugin, tmp_path):
    registry.register(
        make_plugin("ruby", probe=probe_returning(ProbeResult(HealthStatus.HEALTHY, "3.3.0", score=70.0)))
    )
    registry.register(make_plugin("go", probe=probe_returning(ProbeResult(HealthStatus.DEGRADED))))
    monitor = HealthMonitor(registry, context_factory(tmp_path))

    record = await monitor.check(make_env({"ruby": "3.3", "go": None}))

    assert record.status == HealthStatus.DEGRADED
    assert record.score == 70.0
    assert [(i.language, i.kind) for i in record.issues] == [("go", UNPARSED_VERSION), ("ruby", SLOW_PROBE)]


@pytest.mark.asyncio
async def test_low_disk(registry, tmp_path):
    monitor = HealthMonitor(
        registry,
        context_factory(tmp_path),
        disk_root=tmp_path / "not" / "created",
        min_free_disk_mb=1024,
        disk_usage=lambda path: DiskUsage(100 * GB, 99.5 * GB, 0.5 * GB, 99.5),
    )

    record = await monitor.check(make_env({"python": "3.12"}))

    assert record.status == HealthStatus.DEGRADED
    assert [(i.language, i.kind) for i in record.issues] == [(SYSTEM, LOW_DISK)]
    assert "512 MB free" in record.issues[0].message


@pytest.mark.asyncio
async def test_disk_check_disabled(registry, tmp_path):
    monitor = HealthMonitor(
        registry,
        context_factory(tmp_path),
        disk_root=tmp_path,
        performance_monitoring=False,
        disk_usage=lambda path: DiskUsage(1, 1, 0, 100.0),
    )
    record = await monitor.check(make_env({"python": "3.12"}))
    assert record.status == HealthStatus.HEALTHY


@pytest.mark.asyncio
async def test_empty_environment(monitor):
    record = await monitor.check(make_env({}))
    assert record.status == HealthStatus.HEALTHY
    assert record.score == 100.0
    assert record.probes == ()


@pytest.mark.asyncio
async def test_probe_concurrency_is_bounded(registry, make_plugin, tmp_path):
    running = {"now": 0, "max": 0}

    async def probe(ctx):
        running["now"] += 1
        running["max"] = max(running["max"], running["now"])
        await asyncio.sleep(0.01)
        running["now"] -= 1
        return ProbeResult(HealthStatus.HEALTHY, "1.0.0")

    names = [f"tool{i}" for i in range(5)]
    for name in names:
        registry.register(make_plugin(name, probe=probe))
    monitor = HealthMonitor(registry, context_factory(tmp_path), concurrency=2)

    await monitor.check(make_env({}, {name: None for name in names}))

    assert running["max"] == 2


def test_issues_for_unparseable_request():
    probe = ProbeResult(HealthStatus.HEALTHY, installed_version="3.12.0")
    assert issues_for("python", "not a range", probe) == []


@pytest.mark.parametrize(
    "statuses,expected",
    [
        ([], HealthStatus.HEALTHY),
        ([HealthStatus.HEALTHY, HealthStatus.HEALTHY], HealthStatus.HEALTHY),
        ([HealthStatus.HEALTHY, HealthStatus.DEGRADED], HealthStatus.DEGRADED),
        ([HealthStatus.DEGRADED, HealthStatus.UNHEALTHY, HealthStatus.HEALTHY], HealthStatus.UNHEALTHY),
    ],
)
def test_aggregate_status_is_worst(statuses, expected):
    assert aggregate_status(statuses) == expected
    assert aggregate_status(reversed(statuses)) == expected


@pytest.mark.parametrize(
    "scores,expected",
    [([], 100.0), ([100.0, 80.0], 80.0), ([90.5, 0.0, 100.0], 0.0)],
)
def test_aggregate_score_is_minimum(scores, expected):
    assert aggregate_score(scores) == expected
