"""Environment lifecycle management.

``EnvironmentStateMachine`` owns every Environment and the process-wide
active pointer. Status changes follow ``TRANSITIONS`` and are persisted as
they happen; switching runs inside a critical section so the process never
ends up with zero or two active environments.
"""

import asyncio
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from fuuid import b58_fuuid

from devenv.errors import (
    ActivationFailed,
    DevEnvError,
    EnvironmentNotFound,
    InvalidTransition,
    NameConflict,
    SwitchInProgress,
    log_error,
)
from devenv.environments.store import EnvironmentStore, validate_name
from devenv.installer import DependencyInstaller, resolve_plugins
from devenv.logging import get_logger
from devenv.types import (
    Environment,
    EnvironmentStatus,
    HealthRecord,
    InstallReport,
    PluginContext,
    ProjectProfile,
)

logger = get_logger(__name__)

Status = EnvironmentStatus

TRANSITIONS = {
    Status.UNINITIALIZED: {Status.CREATING},
    Status.CREATING: {Status.ACTIVE, Status.DEGRADED},
    Status.ACTIVE: {Status.INACTIVE, Status.CREATING, Status.REMOVED},
    Status.INACTIVE: {Status.ACTIVE, Status.CREATING, Status.REMOVED},
    Status.DEGRADED: {Status.CREATING, Status.REMOVED},
    Status.REMOVED: set(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _failure_summary(report: InstallReport) -> str:
    if report.cancelled:
        pending = [t.plugin for t in report.tasks if not t.status.terminal]
        return f"Setup interrupted; not installed: {', '.join(pending)}"
    return "; ".join(f"{t.plugin}: {t.last_error}" for t in report.failed)


class EnvironmentStateMachine:
    """Creates, activates, switches and removes named environments"""

    def __init__(
        self,
        store: EnvironmentStore,
        installer: DependencyInstaller,
        cache: Any = None,
        base_env: Optional[Mapping[str, str]] = None,
        task_timeout: Optional[float] = None,
    ):
        self.store = store
        self.installer = installer
        self.registry = installer.registry
        self.cache = cache
        self.task_timeout = task_timeout
        self._base_env = dict(os.environ if base_env is None else base_env)
        self._environments: Dict[str, Environment] = {}
        self._active: Optional[str] = None
        self._switch_lock = asyncio.Lock()
        self._reports: Dict[str, InstallReport] = {}

    def restore(self) -> List[Environment]:
        """Load persisted environments, repairing states a crash can leave behind."""
        environments = self.store.load_all()
        self._environments = {env.name: env for env in environments}
        self._active = None

        for env in environments:
            if env.status == Status.CREATING:
                env.last_error = "Setup did not finish"
                self._transition(env, Status.DEGRADED)

        active = [env for env in environments if env.status == Status.ACTIVE]
        if active:
            keep = max(active, key=lambda e: e.activated_at or e.created_at)
            for env in active:
                if env is not keep:
                    logger.warning("duplicate_active_environment", environment=env.name, kept=keep.name)
                    self._transition(env, Status.INACTIVE)
            self._active = keep.name

        logger.info(
            "environments_restored", count=len(environments), active=self._active
        )
        return environments

    def get(self, name: str) -> Environment:
        env = self._environments.get(name)
        if env is None or env.status == Status.REMOVED:
            raise EnvironmentNotFound(name)
        return env

    def list(self) -> List[Environment]:
        return sorted(
            (e for e in self._environments.values() if e.status != Status.REMOVED),
            key=lambda e: e.name,
        )

    @property
    def active(self) -> Optional[Environment]:
        return self._environments.get(self._active) if self._active else None

    def environ(self) -> Dict[str, str]:
        """Base process environment with the active environment's variables applied."""
        active = self.active
        return {**self._base_env, **(active.env_vars if active else {})}

    def last_report(self, name: str) -> Optional[InstallReport]:
        return self._reports.get(name)

    def record_health(self, env: Environment, record: HealthRecord) -> None:
        env.health = record
        self.store.save(env)

    def context(
        self, env: Environment, version: Optional[str] = None, timeout: Optional[float] = None
    ) -> PluginContext:
        return PluginContext(
            environment=env.name,
            version=version,
            env_dir=self.store.env_dir(env.name),
            project_path=env.project_path,
            cache=self.cache,
            env_vars={},
            timeout=timeout,
        )

    def _transition(self, env: Environment, target: Status) -> None:
        if target not in TRANSITIONS[env.status]:
            raise InvalidTransition(env.name, env.status.value, target.value)
        previous = env.status
        env.status = target
        if target != Status.REMOVED:
            self.store.save(env)
        logger.info(
            "environment_transition",
            environment=env.name,
            from_status=previous.value,
            to_status=target.value,
        )

    def init(
        self,
        name: str,
        profile: Union[ProjectProfile, Mapping[str, Any], None] = None,
    ) -> Environment:
        """Register a new UNINITIALIZED environment.

        ``profile`` is a detected ProjectProfile or a mapping with
        ``languages``, ``tools`` and ``project_path``.

        Raises:
            NameConflict: If a non-removed environment already has this name.
        """
        validate_name(name)
        existing = self._environments.get(name)
        if existing is not None and existing.status != Status.REMOVED:
            raise NameConflict(name)

        if isinstance(profile, ProjectProfile):
            languages = profile.language_versions
            tools = profile.tool_versions
            project_path = profile.root
        else:
            profile = profile or {}
            languages = dict(profile.get("languages") or {})
            tools = dict(profile.get("tools") or {})
            project_path = profile.get("project_path")

        env = Environment(
            name=name,
            id=b58_fuuid(),
            status=Status.UNINITIALIZED,
            languages=languages,
            tools=tools,
            created_at=_now(),
            project_path=project_path,
        )
        self._environments[name] = env
        self.store.save(env)
        logger.info("environment_created", environment=name, id=env.id, languages=languages)
        return env

    async def setup(
        self, name: str, profile: Optional[ProjectProfile] = None
    ) -> InstallReport:
        """Install everything ``name`` needs and activate it on success.

        Creates the environment first when ``profile`` is given and the name
        is new; a profile for an existing environment replaces its
        requirements. On any failed task the environment ends DEGRADED.

        Raises:
            PluginNotFound, VersionUnsupported: Before any task runs; the
                environment is left DEGRADED.
            ActivationFailed: If promotion fails; the previous environment
                stays active.
        """
        env = self._environments.get(name)
        if env is None or env.status == Status.REMOVED:
            if profile is None:
                raise EnvironmentNotFound(name)
            env = self.init(name, profile)

        if self._active == name:
            async with self._switch_lock:
                self._transition(env, Status.CREATING)
                self._active = None
        else:
            self._transition(env, Status.CREATING)
        if profile is not None:
            env.languages = profile.language_versions
            env.tools = profile.tool_versions
            env.project_path = profile.root
        env.last_error = None

        try:
            plan = self.installer.plan(env.requirements())
        except DevEnvError as e:
            env.last_error = str(e)
            self._transition(env, Status.DEGRADED)
            raise

        report = await self.installer.run(
            plan, self.context(env, timeout=self.task_timeout)
        )
        self._reports[name] = report

        if not report.ok:
            env.last_error = _failure_summary(report)
            self._transition(env, Status.DEGRADED)
            logger.warning("environment_degraded", environment=name, error=env.last_error)
            return report

        async with self._switch_lock:
            await self._activate(env)
        return report

    def interrupt(self) -> None:
        self.installer.request_stop()

    async def switch(self, name: str) -> Environment:
        """Make ``name`` the active environment.

        Raises:
            SwitchInProgress: If another switch is running.
            InvalidTransition: If ``name`` is not INACTIVE or ACTIVE.
            ActivationFailed: After rolling back to the previous environment.
        """
        if self._switch_lock.locked():
            raise SwitchInProgress(name)

        async with self._switch_lock:
            target = self.get(name)
            if target.status == Status.ACTIVE and self._active == name:
                return target
            if Status.ACTIVE not in TRANSITIONS[target.status]:
                raise InvalidTransition(name, target.status.value, Status.ACTIVE.value)
            await self._activate(target)
            return target

    async def deactivate(self) -> Optional[Environment]:
        """Deactivate the active environment, leaving none active."""
        if self._switch_lock.locked():
            raise SwitchInProgress("(none)")

        async with self._switch_lock:
            env = self.active
            if env is None:
                return None
            await self._run_deactivation(env)
            self._transition(env, Status.INACTIVE)
            self._active = None
            return env

    async def remove(self, name: str) -> Environment:
        """Tear down ``name``: deactivate it if active, then delete its files."""
        env = self.get(name)
        if Status.REMOVED not in TRANSITIONS[env.status]:
            raise InvalidTransition(name, env.status.value, Status.REMOVED.value)

        if self._active == name:
            if self._switch_lock.locked():
                raise SwitchInProgress(name)
            async with self._switch_lock:
                await self._run_deactivation(env)
                self._active = None

        self._transition(env, Status.REMOVED)
        self.store.delete(name)
        self._reports.pop(name, None)
        return env

    def descriptors(self, env: Environment) -> List[tuple]:
        """(descriptor, version) pairs backing ``env``, ordered by plugin name."""
        selected = resolve_plugins(self.registry, env.requirements())
        return [selected[name] for name in sorted(selected)]

    async def compose(self, env: Environment) -> Dict[str, str]:
        """Run activation hooks and merge their variables.

        ``PATH`` entries from every hook are prepended, in plugin-name order,
        to the PATH captured when the state machine was created.
        """
        variables: Dict[str, str] = {}
        path_dirs: List[str] = []
        for descriptor, version in self.descriptors(env):
            if descriptor.activate is None:
                continue
            values = await descriptor.activate(self.context(env, version))
            for key, value in values.items():
                if key == "PATH":
                    path_dirs.extend(p for p in value.split(os.pathsep) if p and p not in path_dirs)
                else:
                    variables[key] = value

        base_path = self._base_env.get("PATH", "")
        if path_dirs:
            variables["PATH"] = os.pathsep.join(path_dirs + ([base_path] if base_path else []))
        return variables

    async def _run_deactivation(self, env: Environment) -> None:
        for descriptor, version in self.descriptors(env):
            if descriptor.deactivate is not None:
                await descriptor.deactivate(self.context(env, version))

    async def _activate(self, target: Environment) -> None:
        """Move the active pointer to ``target``; call with the switch lock held."""
        previous = self.active
        if previous is target:
            previous = None

        if previous is not None:
            try:
                await self._run_deactivation(previous)
            except Exception as e:
                log_error(e, {"environment": previous.name, "phase": "deactivate"})
                await self._reactivate(previous)
                self._fail_promotion(target, e)
                raise ActivationFailed(
                    target.name, f"deactivation of {previous.name} failed: {e}",
                    rolled_back_to=previous.name,
                ) from e

        try:
            variables = await self.compose(target)
        except Exception as e:
            log_error(e, {"environment": target.name, "phase": "activate"})
            if previous is not None:
                await self._reactivate(previous)
                logger.warning(
                    "switch_rolled_back", environment=target.name, restored=previous.name
                )
            self._fail_promotion(target, e)
            raise ActivationFailed(
                target.name, str(e), rolled_back_to=previous.name if previous else None
            ) from e

        if previous is not None:
            self._transition(previous, Status.INACTIVE)
        target.env_vars = variables
        target.activated_at = _now()
        self._transition(target, Status.ACTIVE)
        self._active = target.name
        logger.info(
            "environment_activated",
            environment=target.name,
            previous=previous.name if previous else None,
        )

    async def _reactivate(self, env: Environment) -> None:
        """Re-run ``env``'s activation hooks after a failed switch away from it."""
        try:
            variables = await self.compose(env)
        except Exception as e:
            # its recorded variables stay the overlay
            log_error(e, {"environment": env.name, "phase": "reactivate"})
        else:
            env.env_vars = variables
            self.store.save(env)
        self._active = env.name

    def _fail_promotion(self, target: Environment, error: Exception) -> None:
        if target.status == Status.CREATING:
            target.last_error = f"Activation failed: {error}"
            self._transition(target, Status.DEGRADED)
