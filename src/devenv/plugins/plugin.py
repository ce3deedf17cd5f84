"""Provider interface shared by every language and tool plugin."""

import os
import re
import shlex
import tarfile
import time
import zipfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from devenv.errors import ConfigurationError, InstallFailed
from devenv.logging import get_logger
from devenv.process import check_result, run_command, which
from devenv.types import CommandResult, HealthStatus, PluginContext, PluginDescriptor, ProbeResult

logger = get_logger(__name__)

VERSION_PATTERN = re.compile(r"(\d+\.\d+(?:\.\d+)?)")
SLOW_PROBE_SECONDS = 2.0


def probe_score(elapsed: float) -> float:
    """100 for a probe answering within SLOW_PROBE_SECONDS, then 10 points per extra second."""
    return round(max(0.0, 100.0 - max(0.0, elapsed - SLOW_PROBE_SECONDS) * 10.0), 1)


def extract_archive(archive_path: Path, dest_dir: Path, strip_components: int = 1) -> Path:
    """Extract a .tar.gz/.tar.xz/.zip archive, dropping leading path components."""
    dest_dir.mkdir(parents=True, exist_ok=True)
    name = archive_path.name

    if zipfile.is_zipfile(archive_path):
        with zipfile.ZipFile(archive_path) as archive:
            for info in archive.infolist():
                parts = Path(info.filename).parts[strip_components:]
                if not parts or info.is_dir():
                    continue
                target = dest_dir.joinpath(*parts)
                if dest_dir.resolve() not in target.resolve().parents:
                    raise ValueError(f"Unsafe path in {name}: {info.filename}")
                target.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(info) as src, open(target, "wb") as dst:
                    dst.write(src.read())
                mode = info.external_attr >> 16
                if mode:
                    target.chmod(mode & 0o777)
        return dest_dir

    if not tarfile.is_tarfile(archive_path):
        raise ValueError(f"Unsupported archive format: {name}")

    with tarfile.open(archive_path) as archive:
        members = []
        for member in archive.getmembers():
            parts = Path(member.name).parts[strip_components:]
            if not parts:
                continue
            member.name = str(Path(*parts))
            members.append(member)
        if hasattr(tarfile, "data_filter"):
            archive.extractall(dest_dir, members=members, filter="data")
        else:
            archive.extractall(dest_dir, members=members)

    logger.debug("archive_extracted", archive=name, dest=str(dest_dir))
    return dest_dir


class Plugin(ABC):
    """Base class for providers.

    Subclasses implement ``setup`` and ``check_health``; ``fallback``,
    ``update``, ``install_dependencies``, ``activate`` and ``deactivate``
    have sensible defaults. ``descriptor()`` publishes the capability set
    to the registry.
    """

    name: str = ""
    provides: str = ""
    versions: str = "*"
    depends_on: Tuple[str, ...] = ()
    default_version: Optional[str] = None
    env_setup: Dict[str, str] = {}
    fallback = None

    def target(self, ctx: PluginContext) -> str:
        return ctx.version or self.default_version or "latest"

    def home(self, ctx: PluginContext) -> Path:
        return ctx.env_dir / self.name

    def bin_dirs(self, ctx: PluginContext) -> List[Path]:
        return [self.home(ctx) / "bin"]

    def command_env(self, ctx: PluginContext, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Environment for commands: context vars, plugin vars, own bin dirs first on PATH."""
        env = {**ctx.env_vars, **self.env_setup, **(extra or {})}
        path = env.get("PATH") or os.environ.get("PATH", "")
        env["PATH"] = os.pathsep.join([str(p) for p in self.bin_dirs(ctx)] + ([path] if path else []))
        return env

    def require(self, binary: str, ctx: PluginContext, env: Optional[Mapping[str, str]] = None) -> Path:
        found = which(binary, env or self.command_env(ctx))
        if not found:
            raise InstallFailed(self.name, ctx.version, f"Required program not found: {binary}")
        return found

    async def run(
        self,
        ctx: PluginContext,
        args: Sequence[Any],
        action: str,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        result = await run_command(
            [str(a) for a in args],
            env=self.command_env(ctx, env),
            cwd=cwd,
            timeout=ctx.timeout,
        )
        return check_result(result, self.name, ctx.version, action)

    async def probe_version(
        self,
        ctx: PluginContext,
        args: Sequence[Any],
        pattern: re.Pattern = VERSION_PATTERN,
        env: Optional[Mapping[str, str]] = None,
    ) -> ProbeResult:
        """Run a version command and turn the outcome into a probe result."""
        binary = Path(str(args[0]))
        if binary.is_absolute() and not binary.exists():
            return ProbeResult(HealthStatus.UNHEALTHY, score=0.0, message=f"{binary} is missing")

        started = time.monotonic()
        try:
            result = await run_command(
                [str(a) for a in args], env=self.command_env(ctx, env), timeout=ctx.timeout
            )
        except FileNotFoundError:
            return ProbeResult(HealthStatus.UNHEALTHY, score=0.0, message=f"{binary.name} not found")
        elapsed = time.monotonic() - started

        if not result.ok:
            return ProbeResult(
                HealthStatus.UNHEALTHY,
                score=0.0,
                message=f"{binary.name} exited with code {result.returncode}",
            )
        match = pattern.search(result.stdout or result.stderr)
        installed = match.group(1) if match else None
        score = probe_score(elapsed)
        status = HealthStatus.HEALTHY if installed else HealthStatus.DEGRADED
        message = "" if installed else f"Could not parse {binary.name} version output"
        if installed and elapsed > SLOW_PROBE_SECONDS:
            message = f"{binary.name} took {elapsed:.1f}s to answer"
        return ProbeResult(status, installed_version=installed, score=score, message=message)

    @abstractmethod
    async def setup(self, ctx: PluginContext) -> None:
        """Install the runtime or tool into the environment."""

    async def update(self, ctx: PluginContext) -> None:
        await self.setup(ctx)

    async def install_dependencies(self, ctx: PluginContext) -> None:
        """Install project dependencies; nothing by default."""

    @abstractmethod
    async def check_health(self, ctx: PluginContext) -> ProbeResult:
        """Probe the installed runtime."""

    async def activate(self, ctx: PluginContext) -> Dict[str, str]:
        return {
            **self.env_setup,
            "PATH": os.pathsep.join(str(p) for p in self.bin_dirs(ctx)),
        }

    async def deactivate(self, ctx: PluginContext) -> None:
        return None

    def descriptor(self) -> PluginDescriptor:
        return PluginDescriptor(
            name=self.name,
            provides=self.provides or self.name,
            versions=self.versions,
            depends_on=tuple(self.depends_on),
            install=self.setup,
            fallback=self.fallback,
            probe=self.check_health,
            update=self.update,
            install_dependencies=self.install_dependencies,
            activate=self.activate,
            deactivate=self.deactivate,
            default_version=self.default_version,
        )


def _command(raw: Any, key: str, source: str) -> Optional[List[str]]:
    if raw is None:
        return None
    if isinstance(raw, str):
        return shlex.split(raw)
    if isinstance(raw, list) and all(isinstance(a, (str, int, float)) for a in raw):
        return [str(a) for a in raw]
    raise ConfigurationError(f"'{key}' in {source} must be a command string or list")


class CommandPlugin(Plugin):
    """Provider declared in a plugins directory YAML file.

    Commands may reference ``{version}``, ``{home}`` and ``{env_dir}``.
    """

    def __init__(
        self,
        name: str,
        install: List[str],
        probe: List[str],
        provides: str = "",
        versions: str = "*",
        depends_on: Sequence[str] = (),
        fallback: Optional[List[str]] = None,
        update: Optional[List[str]] = None,
        install_dependencies: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        default_version: Optional[str] = None,
        bin_dirs: Sequence[str] = ("bin",),
    ):
        self.name = name
        self.provides = provides or name
        self.versions = versions
        self.depends_on = tuple(depends_on)
        self.default_version = default_version
        self.env_setup = dict(env or {})
        self._install = install
        self._probe = probe
        self._fallback = fallback
        self._update = update
        self._install_dependencies = install_dependencies
        self._bin_dirs = tuple(bin_dirs)
        if fallback:
            self.fallback = self._run_fallback

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], source: str = "<plugin>") -> "CommandPlugin":
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"Plugin declaration in {source} must be a mapping")
        missing = [k for k in ("name", "install", "probe") if not data.get(k)]
        if missing:
            raise ConfigurationError(
                f"Plugin declaration in {source} is missing: {', '.join(missing)}"
            )
        depends_on = data.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        return cls(
            name=str(data["name"]),
            install=_command(data["install"], "install", source),
            probe=_command(data["probe"], "probe", source),
            provides=str(data.get("provides") or ""),
            versions=str(data.get("versions") or "*"),
            depends_on=[str(d) for d in depends_on],
            fallback=_command(data.get("fallback"), "fallback", source),
            update=_command(data.get("update"), "update", source),
            install_dependencies=_command(
                data.get("install_dependencies"), "install_dependencies", source
            ),
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            default_version=data.get("default_version"),
            bin_dirs=data.get("bin_dirs") or ("bin",),
        )

    def bin_dirs(self, ctx: PluginContext) -> List[Path]:
        return [self.home(ctx) / d for d in self._bin_dirs]

    def _render(self, ctx: PluginContext, args: List[str]) -> List[str]:
        values = {"version": self.target(ctx), "home": str(self.home(ctx)), "env_dir": str(ctx.env_dir)}
        return [a.format(**values) for a in args]

    async def setup(self, ctx: PluginContext) -> None:
        self.home(ctx).mkdir(parents=True, exist_ok=True)
        await self.run(ctx, self._render(ctx, self._install), "install")

    async def _run_fallback(self, ctx: PluginContext) -> None:
        self.home(ctx).mkdir(parents=True, exist_ok=True)
        await self.run(ctx, self._render(ctx, self._fallback), "fallback install")

    async def update(self, ctx: PluginContext) -> None:
        if self._update:
            await self.run(ctx, self._render(ctx, self._update), "update")
        else:
            await self.setup(ctx)

    async def install_dependencies(self, ctx: PluginContext) -> None:
        if self._install_dependencies and ctx.project_path:
            await self.run(
                ctx,
                self._render(ctx, self._install_dependencies),
                "install dependencies",
                cwd=ctx.project_path,
            )

    async def check_health(self, ctx: PluginContext) -> ProbeResult:
        return await self.probe_version(ctx, self._render(ctx, self._probe))
