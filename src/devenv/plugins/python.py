"""Python runtime provider."""

import re
from pathlib import Path
from typing import Dict, List

from devenv.plugins.plugin import Plugin
from devenv.types import PluginContext, ProbeResult

PYTHON_VERSION = re.compile(r"Python (\d+\.\d+(?:\.\d+)?)")


class PythonPlugin(Plugin):
    """Installs interpreters with uv, falling back to pyenv, into a per-environment venv."""

    name = "python"
    versions = ">=2.7"
    default_version = "3.12"
    env_setup = {
        "PYTHONUNBUFFERED": "1",
        "PYTHONDONTWRITEBYTECODE": "1",
    }

    def venv(self, ctx: PluginContext) -> Path:
        return self.home(ctx) / "venv"

    def bin_dirs(self, ctx: PluginContext) -> List[Path]:
        return [self.venv(ctx) / "bin"]

    def _uv_env(self, ctx: PluginContext) -> Dict[str, str]:
        return {
            "UV_PYTHON_INSTALL_DIR": str(self.home(ctx) / "interpreters"),
            "UV_PROJECT_ENVIRONMENT": str(self.venv(ctx)),
            "VIRTUAL_ENV": str(self.venv(ctx)),
        }

    async def setup(self, ctx: PluginContext) -> None:
        uv = self.require("uv", ctx)
        version = self.target(ctx)
        self.home(ctx).mkdir(parents=True, exist_ok=True)

        env = self._uv_env(ctx)
        await self.run(ctx, [uv, "python", "install", version], "uv python install", env=env)
        await self.run(
            ctx,
            [uv, "venv", "--allow-existing", "--python", version, self.venv(ctx)],
            "uv venv",
            env=env,
        )

    async def fallback(self, ctx: PluginContext) -> None:
        pyenv = self.require("pyenv", ctx)
        version = self.target(ctx)
        self.home(ctx).mkdir(parents=True, exist_ok=True)

        await self.run(ctx, [pyenv, "install", "--skip-existing", version], "pyenv install")
        prefix = await self.run(ctx, [pyenv, "prefix", version], "pyenv prefix")
        interpreter = Path(prefix.stdout.strip()) / "bin" / "python"
        await self.run(ctx, [interpreter, "-m", "venv", self.venv(ctx)], "python -m venv")

    async def install_dependencies(self, ctx: PluginContext) -> None:
        project = ctx.project_path
        if not project:
            return

        if (project / "pyproject.toml").exists():
            uv = self.require("uv", ctx)
            await self.run(
                ctx, [uv, "sync", "--all-extras"], "uv sync", cwd=project, env=self._uv_env(ctx)
            )
        elif (project / "requirements.txt").exists():
            python = self.venv(ctx) / "bin" / "python"
            await self.run(
                ctx,
                [python, "-m", "pip", "install", "-r", project / "requirements.txt"],
                "pip install",
                cwd=project,
            )

    async def check_health(self, ctx: PluginContext) -> ProbeResult:
        return await self.probe_version(
            ctx, [self.venv(ctx) / "bin" / "python", "--version"], PYTHON_VERSION
        )

    async def activate(self, ctx: PluginContext) -> Dict[str, str]:
        return {
            **self.env_setup,
            "VIRTUAL_ENV": str(self.venv(ctx)),
            "PATH": str(self.venv(ctx) / "bin"),
        }
