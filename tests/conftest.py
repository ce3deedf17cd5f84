import asyncio
import json
from dataclasses import replace
from pathlib import Path
from typing import Dict, Optional

import pytest

from devenv.config import Settings
from devenv.environments.environment import EnvironmentStateMachine
from devenv.environments.store import EnvironmentStore
from devenv.installer import DependencyInstaller
from devenv.plugins.registry import PluginRegistry
from devenv.types import HealthStatus, PluginDescriptor, ProbeResult

async def _noop(ctx):
    return None


def make_descriptor(
    name: str,
    provides: Optional[str] = None,
    versions: str = "*",
    depends_on=(),
    install=None,
    fallback=None,
    probe=None,
    activate=None,
    deactivate=None,
    update=None,
    default_version: Optional[str] = None,
) -> PluginDescriptor:
    """Descriptor backed by small async functions; everything succeeds by default."""

    async def default_probe(ctx):
        return ProbeResult(HealthStatus.HEALTHY, installed_version=ctx.version or "1.0.0")

    async def default_activate(ctx):
        return {
            "PATH": str(ctx.env_dir / name / "bin"),
            f"{name.upper()}_HOME": str(ctx.env_dir / name),
        }

    return PluginDescriptor(
        name=name,
        provides=provides or name,
        versions=versions,
        depends_on=tuple(depends_on),
        install=install or _noop,
        fallback=fallback,
        probe=probe or default_probe,
        update=update,
        activate=activate or default_activate,
        deactivate=deactivate,
        default_version=default_version,
    )


class Recorder:
    """Tracks install order and concurrency across fake install procedures"""

    def __init__(self):
        self.events = []
        self.running = 0
        self.max_running = 0

    def install(self, name: str, delay: float = 0.01, fail: Optional[Exception] = None):
        async def procedure(ctx):
            self.events.append(("start", name))
            self.running += 1
            self.max_running = max(self.max_running, self.running)
            try:
                await asyncio.sleep(delay)
                if fail is not None:
                    raise fail
            finally:
                self.running -= 1
                self.events.append(("end", name))

        return procedure

    def index(self, event: str, name: str) -> int:
        return self.events.index((event, name))


@pytest.fixture
def make_plugin():
    return make_descriptor


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in a temp dir with instant retries"""
    return replace(
        Settings.defaults(tmp_path / "devenv"),
        backoff_base=0.0,
        backoff_max=0.0,
        task_timeout=5.0,
        probe_timeout=5.0,
        performance_monitoring=False,
    )


@pytest.fixture
def registry() -> PluginRegistry:
    registry = PluginRegistry()
    registry.register(make_descriptor("python", versions=">=2.7", default_version="3.12"))
    registry.register(make_descriptor("node", versions=">=0.10", default_version="20"))
    return registry


@pytest.fixture
def installer(registry, settings) -> DependencyInstaller:
    return DependencyInstaller.from_settings(registry, settings)


@pytest.fixture
def store(settings) -> EnvironmentStore:
    return EnvironmentStore(settings.environments_dir)


@pytest.fixture
def machine(store, installer) -> EnvironmentStateMachine:
    return EnvironmentStateMachine(store, installer, base_env={"PATH": "/usr/bin:/bin", "HOME": "/home/dev"})


@pytest.fixture
def make_project(tmp_path):
    """Write a project directory from a {relative path: content} mapping."""

    def make(files: Dict[str, object], name: str = "project") -> Path:
        root = tmp_path / name
        root.mkdir(parents=True, exist_ok=True)
        for relative, content in files.items():
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, (dict, list)):
                content = json.dumps(content)
            path.write_text(str(content))
        return root

    return make
