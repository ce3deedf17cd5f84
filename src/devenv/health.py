"""Environment health checks.

Every plugin backing an environment's languages and tools is probed
concurrently. Probe failures become issues, never aborts.

Aggregation: the overall status is the worst status among probes and
issues (healthy < degraded < unhealthy); the performance score is the
lowest probe score, or 100.0 when there is nothing to probe.
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import psutil

from devenv.errors import HealthCheckIssue, PluginNotFound, VersionUnsupported, log_error
from devenv.logging import get_logger
from devenv.plugins.registry import PluginRegistry
from devenv.plugins.plugin import SLOW_PROBE_SECONDS
from devenv.types import (
    Environment,
    HealthIssue,
    HealthRecord,
    HealthStatus,
    PluginContext,
    ProbeResult,
)
from devenv.versions import satisfies

logger = get_logger(__name__)

SYSTEM = "(system)"

MISSING_PLUGIN = "missing_plugin"
PROBE_FAILED = "probe_failed"
UNPARSED_VERSION = "unparsed_version"
VERSION_DRIFT = "version_drift"
SLOW_PROBE = "slow_probe"
LOW_DISK = "low_disk"

RECOMMENDATIONS = {
    MISSING_PLUGIN: "Register a plugin that provides {language}",
    PROBE_FAILED: "Re-run setup to reinstall {language}",
    UNPARSED_VERSION: "Check the {language} installation; its version could not be read",
    VERSION_DRIFT: "Re-run setup to bring {language} back to the declared version",
    SLOW_PROBE: "Investigate slow {language} startup",
    LOW_DISK: "Free disk space for the environments directory",
}

ContextFactory = Callable[[Environment, Optional[str], Optional[float]], PluginContext]


def aggregate_status(statuses: Iterable[HealthStatus]) -> HealthStatus:
    return max(statuses, key=lambda s: s.severity, default=HealthStatus.HEALTHY)


def aggregate_score(scores: Iterable[float]) -> float:
    return min(scores, default=100.0)


def recommendations_for(issues: Sequence[HealthIssue]) -> Tuple[str, ...]:
    seen: List[str] = []
    for issue in issues:
        text = RECOMMENDATIONS[issue.kind].format(language=issue.language)
        if text not in seen:
            seen.append(text)
    return tuple(seen)


def issues_for(
    language: str, requested: Optional[str], probe: ProbeResult
) -> List[HealthIssue]:
    """Issues implied by one probe result."""
    if probe.status == HealthStatus.UNHEALTHY:
        return [HealthIssue(language, PROBE_FAILED, HealthStatus.UNHEALTHY, probe.message or "probe failed")]

    issues = []
    if probe.installed_version is None:
        issues.append(
            HealthIssue(language, UNPARSED_VERSION, HealthStatus.DEGRADED, probe.message or "version unknown")
        )
    elif requested:
        try:
            drifted = not satisfies(probe.installed_version, requested)
        except ValueError:
            drifted = False
        if drifted:
            issues.append(
                HealthIssue(
                    language,
                    VERSION_DRIFT,
                    HealthStatus.DEGRADED,
                    f"Installed {probe.installed_version} does not satisfy {requested}",
                )
            )
    if probe.score < 100.0:
        issues.append(
            HealthIssue(
                language,
                SLOW_PROBE,
                HealthStatus.DEGRADED,
                probe.message or f"Probe took longer than {SLOW_PROBE_SECONDS}s",
            )
        )
    return issues


class HealthMonitor:
    """Probes environments and aggregates the results into a HealthRecord"""

    def __init__(
        self,
        registry: PluginRegistry,
        context: ContextFactory,
        concurrency: int = 4,
        probe_timeout: Optional[float] = None,
        disk_root: Optional[Path] = None,
        min_free_disk_mb: int = 1024,
        performance_monitoring: bool = True,
        disk_usage: Callable = psutil.disk_usage,
    ):
        self.registry = registry
        self.context = context
        self.concurrency = concurrency
        self.probe_timeout = probe_timeout
        self.disk_root = disk_root
        self.min_free_disk_mb = min_free_disk_mb
        self.performance_monitoring = performance_monitoring
        self._disk_usage = disk_usage

    async def _probe(
        self,
        env: Environment,
        language: str,
        requested: Optional[str],
        semaphore: asyncio.Semaphore,
    ) -> ProbeResult:
        try:
            descriptor = self.registry.resolve(language, requested)
        except (PluginNotFound, VersionUnsupported) as e:
            raise HealthCheckIssue(language, str(e)) from e

        ctx = self.context(env, requested or descriptor.default_version, self.probe_timeout)
        async with semaphore:
            try:
                return await asyncio.wait_for(descriptor.probe(ctx), timeout=self.probe_timeout)
            except asyncio.TimeoutError as e:
                return ProbeResult(
                    HealthStatus.UNHEALTHY, score=0.0,
                    message=str(e) or f"Probe timed out after {self.probe_timeout}s",
                )
            except Exception as e:
                log_error(e, {"environment": env.name, "language": language})
                return ProbeResult(HealthStatus.UNHEALTHY, score=0.0, message=f"Probe raised: {e}")

    def _disk_issue(self) -> Optional[HealthIssue]:
        if not self.performance_monitoring or self.disk_root is None:
            return None
        root = self.disk_root
        while not root.exists() and root != root.parent:
            root = root.parent
        free_mb = self._disk_usage(str(root)).free / (1024 * 1024)
        if free_mb < self.min_free_disk_mb:
            return HealthIssue(
                SYSTEM,
                LOW_DISK,
                HealthStatus.DEGRADED,
                f"{free_mb:.0f} MB free under {self.disk_root}, below {self.min_free_disk_mb} MB",
            )
        return None

    async def check(self, env: Environment) -> HealthRecord:
        """Probe every language and tool of ``env`` and aggregate the results."""
        semaphore = asyncio.Semaphore(self.concurrency)
        requirements = env.requirements()

        outcomes = await asyncio.gather(
            *(self._probe(env, name, version, semaphore) for name, version in requirements),
            return_exceptions=True,
        )

        probes: Dict[str, ProbeResult] = {}
        issues: List[HealthIssue] = []
        for (name, version), outcome in zip(requirements, outcomes):
            if isinstance(outcome, HealthCheckIssue):
                probes[name] = ProbeResult(HealthStatus.UNHEALTHY, score=0.0, message=str(outcome))
                issues.append(HealthIssue(name, MISSING_PLUGIN, HealthStatus.UNHEALTHY, str(outcome)))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                probes[name] = outcome
                issues.extend(issues_for(name, version, outcome))

        disk_issue = self._disk_issue()
        if disk_issue:
            issues.append(disk_issue)

        issues.sort(key=lambda i: (i.language, i.kind))
        record = HealthRecord(
            status=aggregate_status(
                [p.status for p in probes.values()] + [i.severity for i in issues]
            ),
            score=aggregate_score(p.score for p in probes.values()),
            issues=tuple(issues),
            recommendations=recommendations_for(issues),
            probes=tuple(sorted(probes.items())),
            checked_at=datetime.now(timezone.utc),
        )

        logger.info(
            "health_checked",
            environment=env.name,
            status=record.status.value,
            score=record.score,
            issues=len(record.issues),
        )
        return record
