"""Orchestration engine facade.

Every operation returns a ``Result``; errors are translated here, once,
into ``ErrorInfo`` objects carrying a machine-readable kind. Nothing
raises across this boundary.
"""

import functools
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from devenv.cache import InstallCache
from devenv.config import Settings, load_settings
from devenv.detection import detect as detect_project
from devenv.environments.environment import EnvironmentStateMachine
from devenv.environments.store import EnvironmentStore, parse_shared, share_descriptor
from devenv.errors import DevEnvError, EnvironmentNotFound, log_error
from devenv.health import HealthMonitor
from devenv.installer import DependencyInstaller
from devenv.logging import configure_logging, get_logger
from devenv.plugins.registry import PluginRegistry
from devenv.types import Environment, EnvironmentStatus

logger = get_logger("engine")


@dataclass(frozen=True)
class ErrorInfo:
    kind: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


@dataclass(frozen=True)
class Result:
    """Outcome of one facade operation"""
    success: bool
    data: Any = None
    error: Optional[ErrorInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success}
        if self.data is not None:
            data = self.data
            result["data"] = data.decode("utf-8") if isinstance(data, bytes) else data
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def operation(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Result]]:
    """Run a facade operation, turning its return value or exception into a Result."""

    @functools.wraps(func)
    async def wrapper(self: "OrchestrationEngine", *args: Any, **kwargs: Any) -> Result:
        try:
            self._ensure_started()
            outcome = await func(self, *args, **kwargs)
        except DevEnvError as e:
            log_error(e, {"operation": func.__name__}, logger)
            return Result(False, error=ErrorInfo(e.kind, str(e), e.details))
        except Exception as e:
            log_error(e, {"operation": func.__name__}, logger)
            return Result(
                False,
                error=ErrorInfo(
                    "internal_error", str(e) or e.__class__.__name__, {"type": e.__class__.__name__}
                ),
            )
        return outcome if isinstance(outcome, Result) else Result(True, outcome)

    return wrapper


class OrchestrationEngine:
    """Entry point for detecting, creating, switching and maintaining environments"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[PluginRegistry] = None,
        base_env: Optional[Mapping[str, str]] = None,
        health: Optional[HealthMonitor] = None,
    ):
        self.settings = settings or load_settings()
        if registry is None:
            registry = PluginRegistry()
            registry.load_builtin()
            registry.load_directory(self.settings.plugins_dir)
        self.registry = registry

        self.cache = InstallCache(self.settings.cache_dir, self.settings.cache_max_bytes)
        self.installer = DependencyInstaller.from_settings(registry, self.settings)
        self.store = EnvironmentStore(self.settings.environments_dir)
        self.machine = EnvironmentStateMachine(
            self.store,
            self.installer,
            cache=self.cache,
            base_env=base_env,
            task_timeout=self.settings.task_timeout,
        )
        self.health = health or HealthMonitor(
            registry,
            self.machine.context,
            concurrency=self.settings.concurrency,
            probe_timeout=self.settings.probe_timeout,
            disk_root=self.settings.environments_dir,
            min_free_disk_mb=self.settings.min_free_disk_mb,
            performance_monitoring=self.settings.performance_monitoring,
        )
        self._started = False

    @classmethod
    def from_config(cls, path: Optional[Path] = None) -> "OrchestrationEngine":
        """Engine built from a config file, with logging configured at its log_level."""
        settings = load_settings(path)
        configure_logging(settings.log_level)
        logger.info("engine_starting", devenv_dir=str(settings.devenv_dir))
        return cls(settings)

    def _ensure_started(self) -> None:
        if not self._started:
            self.settings.ensure_dirs()
            self.machine.restore()
            self._started = True

    def _summary(self, env: Environment) -> Dict[str, Any]:
        active = self.machine.active
        return {**env.summary(), "active": active is env}

    @operation
    async def detect(self, path: str) -> Dict[str, Any]:
        return detect_project(Path(path), self.settings.detection_threshold).to_dict()

    @operation
    async def init(self, path: str, name: Optional[str] = None) -> Dict[str, Any]:
        root = Path(path).resolve()
        profile = detect_project(root, self.settings.detection_threshold)
        env = self.machine.init(name or root.name, profile)
        return self._summary(env)

    @operation
    async def setup(self, name: str, path: Optional[str] = None) -> Result:
        """Install (or repair) ``name``; with ``path``, detect the project first."""
        profile = None
        if path is not None:
            profile = detect_project(Path(path).resolve(), self.settings.detection_threshold)

        report = await self.machine.setup(name, profile)
        env = self.machine.get(name)
        data = {"environment": self._summary(env), "report": report.to_dict()}
        if env.status == EnvironmentStatus.ACTIVE:
            return Result(True, data)
        return Result(
            False,
            data,
            ErrorInfo(
                "environment_degraded",
                env.last_error or f"Environment {name} is degraded",
                {
                    "environment": name,
                    "failed": [t.plugin for t in report.failed],
                    "cancelled": report.cancelled,
                },
            ),
        )

    @operation
    async def switch(self, name: str) -> Dict[str, Any]:
        env = await self.machine.switch(name)
        return {"environment": self._summary(env), "env_vars": dict(env.env_vars)}

    @operation
    async def status(self, name: Optional[str] = None) -> Dict[str, Any]:
        """Health-check ``name`` (or the active environment) and report it."""
        if name is None:
            env = self.machine.active
            if env is None:
                raise EnvironmentNotFound("(active)")
        else:
            env = self.machine.get(name)

        record = await self.health.check(env)
        self.machine.record_health(env, record)
        report = self.machine.last_report(env.name)
        return {
            "environment": self._summary(env),
            "health": record.to_dict(),
            "last_report": report.to_dict() if report else None,
            "last_error": env.last_error,
        }

    @operation
    async def remove(self, name: str) -> Dict[str, Any]:
        env = await self.machine.remove(name)
        return env.summary()

    @operation
    async def share(self, name: str) -> bytes:
        return share_descriptor(self.machine.get(name))

    @operation
    async def import_environment(self, payload: bytes, name: Optional[str] = None) -> Dict[str, Any]:
        shared_name, languages, tools = parse_shared(payload)
        env = self.machine.init(name or shared_name, {"languages": languages, "tools": tools})
        return self._summary(env)

    @operation
    async def list_environments(self) -> List[Dict[str, Any]]:
        return [self._summary(env) for env in self.machine.list()]

    @operation
    async def update(self, name: Optional[str] = None) -> Dict[str, Any]:
        """Run plugin update procedures, then re-check health.

        Without ``name``, every usable environment is updated when
        ``auto_update`` is enabled.
        """
        if name is not None:
            targets = [self.machine.get(name)]
        elif self.settings.auto_update:
            targets = [
                env for env in self.machine.list()
                if env.status in (EnvironmentStatus.ACTIVE, EnvironmentStatus.INACTIVE)
            ]
        else:
            targets = []

        updated: Dict[str, Any] = {}
        for env in targets:
            plugins = []
            for descriptor, version in self.machine.descriptors(env):
                if descriptor.update is None:
                    continue
                ctx = self.machine.context(env, version, self.settings.task_timeout)
                await descriptor.update(ctx)
                plugins.append(descriptor.name)
            record = await self.health.check(env)
            self.machine.record_health(env, record)
            updated[env.name] = {"plugins": plugins, "health": record.status.value}
            logger.info("environment_updated", environment=env.name, plugins=plugins)
        return {"updated": updated}

    @operation
    async def interrupt(self) -> Dict[str, Any]:
        self.machine.interrupt()
        return {"stop_requested": True}

    def environ(self) -> Dict[str, str]:
        """Process environment with the active environment applied."""
        self._ensure_started()
        return self.machine.environ()
