"""Core type definitions"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple


class DetectionKind(str, Enum):
    LANGUAGE = "language"
    FRAMEWORK = "framework"
    TOOL = "tool"


class EnvironmentStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    CREATING = "creating"
    ACTIVE = "active"
    INACTIVE = "inactive"
    DEGRADED = "degraded"
    REMOVED = "removed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYING = "retrying"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def severity(self) -> int:
        return _HEALTH_SEVERITY[self]


_HEALTH_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}


@dataclass(frozen=True)
class Detection:
    """A single language, framework or tool found in a project"""
    name: str
    kind: DetectionKind
    version: Optional[str]
    confidence: float
    source: str
    language: Optional[str] = None


@dataclass(frozen=True)
class ProjectProfile:
    """Detected project requirements"""
    root: Path
    languages: Tuple[Detection, ...] = ()
    frameworks: Tuple[Detection, ...] = ()
    tools: Tuple[Detection, ...] = ()
    scripts: Tuple[Tuple[str, str], ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.languages or self.frameworks or self.tools)

    @property
    def language_versions(self) -> Dict[str, Optional[str]]:
        return {d.name: d.version for d in self.languages}

    @property
    def tool_versions(self) -> Dict[str, Optional[str]]:
        return {d.name: d.version for d in self.tools}

    def requirements(self) -> List[Tuple[str, Optional[str]]]:
        """Languages followed by tools, each sorted by name."""
        return [(d.name, d.version) for d in self.languages + self.tools]

    def to_dict(self) -> Dict[str, Any]:
        def entries(items: Tuple[Detection, ...]) -> List[Dict[str, Any]]:
            return [
                {
                    "name": d.name,
                    "version": d.version,
                    "confidence": d.confidence,
                    "source": d.source,
                    **({"language": d.language} if d.language else {}),
                }
                for d in items
            ]

        return {
            "root": str(self.root),
            "languages": entries(self.languages),
            "frameworks": entries(self.frameworks),
            "tools": entries(self.tools),
            "scripts": dict(self.scripts),
        }


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one plugin health probe"""
    status: HealthStatus
    installed_version: Optional[str] = None
    score: float = 100.0
    message: str = ""


@dataclass(frozen=True)
class HealthIssue:
    language: str
    kind: str
    severity: HealthStatus
    message: str


@dataclass(frozen=True)
class HealthRecord:
    """Aggregated environment health, replaced wholesale on each check"""
    status: HealthStatus
    score: float
    issues: Tuple[HealthIssue, ...] = ()
    recommendations: Tuple[str, ...] = ()
    probes: Tuple[Tuple[str, ProbeResult], ...] = ()
    checked_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "score": self.score,
            "issues": [
                {
                    "language": i.language,
                    "kind": i.kind,
                    "severity": i.severity.value,
                    "message": i.message,
                }
                for i in self.issues
            ],
            "recommendations": list(self.recommendations),
            "probes": {
                name: {
                    "status": p.status.value,
                    "installed_version": p.installed_version,
                    "score": p.score,
                    "message": p.message,
                }
                for name, p in self.probes
            },
            "checked_at": self.checked_at.isoformat() if self.checked_at else None,
        }


@dataclass(frozen=True)
class CommandResult:
    """Captured result of an external command"""
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class PluginContext:
    """Everything a plugin procedure needs to act on one environment"""
    environment: str
    version: Optional[str]
    env_dir: Path
    project_path: Optional[Path]
    cache: Any
    env_vars: Mapping[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None

    def with_version(self, version: Optional[str]) -> "PluginContext":
        return PluginContext(
            environment=self.environment,
            version=version,
            env_dir=self.env_dir,
            project_path=self.project_path,
            cache=self.cache,
            env_vars=self.env_vars,
            timeout=self.timeout,
        )


InstallProcedure = Callable[[PluginContext], Awaitable[None]]
HealthProbe = Callable[[PluginContext], Awaitable[ProbeResult]]
ActivationHook = Callable[[PluginContext], Awaitable[Dict[str, str]]]
DeactivationHook = Callable[[PluginContext], Awaitable[None]]


@dataclass(frozen=True)
class PluginDescriptor:
    """Immutable capability set of one provider"""
    name: str
    versions: str
    install: InstallProcedure
    probe: HealthProbe
    provides: str = ""
    depends_on: Tuple[str, ...] = ()
    fallback: Optional[InstallProcedure] = None
    update: Optional[InstallProcedure] = None
    install_dependencies: Optional[InstallProcedure] = None
    activate: Optional[ActivationHook] = None
    deactivate: Optional[DeactivationHook] = None
    default_version: Optional[str] = None

    def __post_init__(self):
        if not self.provides:
            object.__setattr__(self, "provides", self.name)
        object.__setattr__(self, "depends_on", tuple(self.depends_on))


_TASK_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.FAILED},
    TaskStatus.RUNNING: {TaskStatus.SUCCEEDED, TaskStatus.RETRYING, TaskStatus.FAILED},
    TaskStatus.RETRYING: {TaskStatus.RUNNING},
    TaskStatus.SUCCEEDED: set(),
    TaskStatus.FAILED: set(),
}


@dataclass
class InstallTask:
    """One plugin installation inside a setup run"""
    plugin: str
    version: Optional[str]
    depends_on: Tuple[str, ...] = ()
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    used_fallback: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    history: List[TaskStatus] = field(default_factory=lambda: [TaskStatus.PENDING])

    def transition(self, status: TaskStatus) -> None:
        if status not in _TASK_TRANSITIONS[self.status]:
            raise ValueError(
                f"Illegal task transition for {self.plugin}: "
                f"{self.status.value} -> {status.value}"
            )
        self.status = status
        self.history.append(status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plugin": self.plugin,
            "version": self.version,
            "depends_on": list(self.depends_on),
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "used_fallback": self.used_fallback,
        }


@dataclass
class InstallReport:
    """Aggregate outcome of an installer run"""
    tasks: List[InstallTask]
    cancelled: bool = False

    @property
    def succeeded(self) -> List[InstallTask]:
        return [t for t in self.tasks if t.status == TaskStatus.SUCCEEDED]

    @property
    def failed(self) -> List[InstallTask]:
        return [t for t in self.tasks if t.status == TaskStatus.FAILED]

    @property
    def ok(self) -> bool:
        return not self.cancelled and all(
            t.status == TaskStatus.SUCCEEDED for t in self.tasks
        )

    def task(self, plugin: str) -> InstallTask:
        for t in self.tasks:
            if t.plugin == plugin:
                return t
        raise KeyError(plugin)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "cancelled": self.cancelled,
            "tasks": [t.to_dict() for t in self.tasks],
        }


@dataclass
class Environment:
    """Named development environment"""
    name: str
    id: str
    status: EnvironmentStatus
    languages: Dict[str, Optional[str]]
    created_at: datetime
    tools: Dict[str, Optional[str]] = field(default_factory=dict)
    project_path: Optional[Path] = None
    env_vars: Dict[str, str] = field(default_factory=dict)
    activated_at: Optional[datetime] = None
    health: Optional[HealthRecord] = None
    last_error: Optional[str] = None

    def requirements(self) -> List[Tuple[str, Optional[str]]]:
        return sorted(self.languages.items()) + sorted(self.tools.items())

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "id": self.id,
            "status": self.status.value,
            "languages": dict(self.languages),
            "tools": dict(self.tools),
            "created_at": self.created_at.isoformat(),
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "health": self.health.status.value if self.health else None,
        }
