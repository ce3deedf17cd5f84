"""Install task planning and scheduling.

``plan`` turns project requirements into a dependency-ordered set of
plugin installs; ``run`` executes them concurrently, a task starting only
once every plugin it depends on has succeeded.
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

import aiohttp

from devenv.config import Settings
from devenv.errors import CommandTimeout, InstallFailed, log_error
from devenv.logging import get_logger
from devenv.plugins.registry import PluginRegistry
from devenv.types import (
    InstallProcedure,
    InstallReport,
    InstallTask,
    PluginContext,
    PluginDescriptor,
    ProjectProfile,
    TaskStatus,
)

logger = get_logger(__name__)

Requirements = Union[ProjectProfile, Iterable[Tuple[str, Optional[str]]]]


def is_transient(error: BaseException) -> bool:
    """Whether a failed attempt is worth retrying."""
    if isinstance(error, InstallFailed):
        return error.transient
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status >= 500 or error.status == 429
    return isinstance(
        error,
        (CommandTimeout, asyncio.TimeoutError, TimeoutError, ConnectionError, aiohttp.ClientError),
    )


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Exponential backoff for the given attempt number, with up to 30% jitter."""
    delay = min(base * (2 ** (attempt - 1)), maximum)
    return delay + random.uniform(0, delay * 0.3)


def topological_order(descriptors: Dict[str, PluginDescriptor]) -> List[str]:
    """Kahn's algorithm over edges inside ``descriptors``; ties broken by name."""
    in_degree = {name: 0 for name in descriptors}
    dependants: Dict[str, List[str]] = {name: [] for name in descriptors}
    for name, descriptor in descriptors.items():
        for dep in descriptor.depends_on:
            if dep in descriptors:
                in_degree[name] += 1
                dependants[dep].append(name)

    ready = sorted(name for name, degree in in_degree.items() if degree == 0)
    order = []
    while ready:
        name = ready.pop(0)
        order.append(name)
        for successor in dependants[name]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                ready.append(successor)
        ready.sort()

    if len(order) < len(descriptors):
        raise ValueError("Dependency cycle detected in install plan")
    return order


def resolve_plugins(
    registry: PluginRegistry, requirements: Requirements
) -> Dict[str, Tuple[PluginDescriptor, Optional[str]]]:
    """Map each requirement to its plugin, adding transitive dependencies at their default version.

    Raises:
        PluginNotFound: If a requirement or dependency has no plugin.
        VersionUnsupported: If no plugin supports a requested version.
    """
    if isinstance(requirements, ProjectProfile):
        requirements = requirements.requirements()

    selected: Dict[str, Tuple[PluginDescriptor, Optional[str]]] = {}
    for name, version in requirements:
        descriptor = registry.resolve(name, version)
        selected[descriptor.name] = (descriptor, version or descriptor.default_version)

    pending = list(selected)
    while pending:
        descriptor = selected[pending.pop()][0]
        for dep in descriptor.depends_on:
            if dep not in selected:
                dep_descriptor = registry.lookup(dep)
                selected[dep] = (dep_descriptor, dep_descriptor.default_version)
                pending.append(dep)
    return selected


@dataclass(frozen=True)
class InstallPlan:
    """Plugins to install, in dependency order, with their target versions"""
    steps: Tuple[Tuple[PluginDescriptor, Optional[str]], ...]

    @property
    def names(self) -> List[str]:
        return [descriptor.name for descriptor, _ in self.steps]

    def descriptor(self, name: str) -> PluginDescriptor:
        for descriptor, _ in self.steps:
            if descriptor.name == name:
                return descriptor
        raise KeyError(name)

    def tasks(self) -> List[InstallTask]:
        """Fresh PENDING tasks for one run of this plan."""
        names = set(self.names)
        return [
            InstallTask(
                plugin=descriptor.name,
                version=version,
                depends_on=tuple(d for d in descriptor.depends_on if d in names),
            )
            for descriptor, version in self.steps
        ]


class DependencyInstaller:
    """Schedules plugin installs with bounded concurrency, retries and fallbacks"""

    def __init__(
        self,
        registry: PluginRegistry,
        concurrency: int = 4,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        task_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.registry = registry
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.task_timeout = task_timeout
        self._sleep = sleep
        self._stop_requested = False

    @classmethod
    def from_settings(cls, registry: PluginRegistry, settings: Settings) -> "DependencyInstaller":
        return cls(
            registry,
            concurrency=settings.concurrency,
            max_attempts=settings.max_attempts,
            backoff_base=settings.backoff_base,
            backoff_max=settings.backoff_max,
            task_timeout=settings.task_timeout,
        )

    def plan(self, requirements: Requirements) -> InstallPlan:
        """Resolve requirements to plugins and close over their dependencies.

        Raises:
            PluginNotFound: If a requirement or dependency has no plugin.
            VersionUnsupported: If no plugin supports a requested version.
        """
        selected = resolve_plugins(self.registry, requirements)
        order = topological_order({name: d for name, (d, _) in selected.items()})
        plan = InstallPlan(steps=tuple(selected[name] for name in order))
        logger.info("install_planned", plugins=plan.names)
        return plan

    def request_stop(self) -> None:
        """Let running tasks finish but start no new ones."""
        if not self._stop_requested:
            logger.warning("install_stop_requested")
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    async def run(
        self, plan: InstallPlan, ctx: PluginContext, install_dependencies: bool = True
    ) -> InstallReport:
        """Execute ``plan`` and report the outcome of every task.

        Failures are recorded on their task and never abort independent
        branches; dependants of a failed task fail without running.
        """
        self._stop_requested = False
        tasks = plan.tasks()
        by_name = {task.plugin: task for task in tasks}
        finished = {task.plugin: asyncio.Event() for task in tasks}
        semaphore = asyncio.Semaphore(self.concurrency)

        logger.info(
            "install_started",
            environment=ctx.environment,
            plugins=plan.names,
            concurrency=self.concurrency,
        )

        async def schedule(task: InstallTask) -> None:
            try:
                for dep in task.depends_on:
                    await finished[dep].wait()
                if self._stop_requested:
                    return

                failed = [d for d in task.depends_on if by_name[d].status != TaskStatus.SUCCEEDED]
                if failed:
                    task.last_error = f"dependency {failed[0]} failed"
                    task.transition(TaskStatus.FAILED)
                    task.finished_at = datetime.now(timezone.utc)
                    logger.warning("task_blocked", plugin=task.plugin, dependency=failed[0])
                    return

                async with semaphore:
                    if self._stop_requested:
                        return
                    await self._execute(
                        task, plan.descriptor(task.plugin), ctx.with_version(task.version),
                        install_dependencies,
                    )
            finally:
                finished[task.plugin].set()

        await asyncio.gather(*(schedule(task) for task in tasks))

        report = InstallReport(
            tasks=tasks,
            cancelled=self._stop_requested and any(t.status == TaskStatus.PENDING for t in tasks),
        )
        self._prune_cache(ctx)

        logger.info(
            "install_complete",
            environment=ctx.environment,
            succeeded=[t.plugin for t in report.succeeded],
            failed=[t.plugin for t in report.failed],
            cancelled=report.cancelled,
        )
        return report

    async def _attempt(
        self,
        procedure: InstallProcedure,
        descriptor: PluginDescriptor,
        ctx: PluginContext,
        install_dependencies: bool,
    ) -> None:
        async def install() -> None:
            await procedure(ctx)
            if install_dependencies and ctx.project_path and descriptor.install_dependencies:
                await descriptor.install_dependencies(ctx)

        await asyncio.wait_for(install(), timeout=self.task_timeout)

    async def _execute(
        self,
        task: InstallTask,
        descriptor: PluginDescriptor,
        ctx: PluginContext,
        install_dependencies: bool,
    ) -> None:
        task.started_at = datetime.now(timezone.utc)
        while True:
            task.attempts += 1
            task.transition(TaskStatus.RUNNING)
            logger.info(
                "task_started", plugin=task.plugin, version=task.version, attempt=task.attempts
            )
            try:
                await self._attempt(descriptor.install, descriptor, ctx, install_dependencies)
                break
            except Exception as e:
                task.last_error = str(e) or e.__class__.__name__
                transient = is_transient(e)

                if transient and task.attempts < self.max_attempts:
                    delay = backoff_delay(task.attempts, self.backoff_base, self.backoff_max)
                    task.transition(TaskStatus.RETRYING)
                    logger.warning(
                        "task_retrying",
                        plugin=task.plugin,
                        attempt=task.attempts,
                        delay=round(delay, 2),
                        error=task.last_error,
                    )
                    await self._sleep(delay)
                    continue

                if not transient and descriptor.fallback is not None:
                    task.used_fallback = True
                    logger.warning("task_fallback", plugin=task.plugin, error=task.last_error)
                    try:
                        await self._attempt(descriptor.fallback, descriptor, ctx, install_dependencies)
                        break
                    except Exception as fallback_error:
                        task.last_error = str(fallback_error) or fallback_error.__class__.__name__
                        e = fallback_error

                task.transition(TaskStatus.FAILED)
                task.finished_at = datetime.now(timezone.utc)
                log_error(e, {"plugin": task.plugin, "version": task.version, "attempts": task.attempts})
                return

        task.transition(TaskStatus.SUCCEEDED)
        task.finished_at = datetime.now(timezone.utc)
        logger.info(
            "task_succeeded",
            plugin=task.plugin,
            version=task.version,
            attempts=task.attempts,
            used_fallback=task.used_fallback,
        )

    def _prune_cache(self, ctx: PluginContext) -> None:
        prune = getattr(ctx.cache, "prune", None)
        if prune is None:
            return
        freed = prune()
        if freed:
            logger.info("cache_pruned", bytes_freed=freed)
