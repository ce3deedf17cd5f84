"""Node package manager providers (pnpm, yarn); both need node installed first."""

from pathlib import Path
from typing import List

from devenv.plugins.plugin import Plugin
from devenv.types import PluginContext, ProbeResult


class NodePackageManager(Plugin):
    """Installs a package manager with the environment's own npm."""

    depends_on = ("node",)
    default_version = "latest"
    lockfile = ""
    install_args: tuple = ()

    def node_bin(self, ctx: PluginContext) -> Path:
        return ctx.env_dir / "node" / "bin"

    def bin_dirs(self, ctx: PluginContext) -> List[Path]:
        return [self.home(ctx) / "bin", self.node_bin(ctx)]

    async def setup(self, ctx: PluginContext) -> None:
        await self.run(
            ctx,
            [self.node_bin(ctx) / "npm", "install", "--global", "--prefix", self.home(ctx),
             f"{self.name}@{self.target(ctx)}"],
            f"npm install {self.name}",
        )

    async def fallback(self, ctx: PluginContext) -> None:
        corepack = self.node_bin(ctx) / "corepack"
        self.home(ctx).joinpath("bin").mkdir(parents=True, exist_ok=True)
        await self.run(
            ctx,
            [corepack, "enable", "--install-directory", self.home(ctx) / "bin", self.name],
            "corepack enable",
        )
        await self.run(
            ctx, [corepack, "prepare", f"{self.name}@{self.target(ctx)}", "--activate"],
            "corepack prepare",
        )

    async def install_dependencies(self, ctx: PluginContext) -> None:
        project = ctx.project_path
        if project and (project / self.lockfile).exists():
            await self.run(
                ctx, [self.home(ctx) / "bin" / self.name, "install", *self.install_args],
                f"{self.name} install", cwd=project,
            )

    async def check_health(self, ctx: PluginContext) -> ProbeResult:
        return await self.probe_version(ctx, [self.home(ctx) / "bin" / self.name, "--version"])


class PnpmPlugin(NodePackageManager):
    name = "pnpm"
    versions = ">=6"
    lockfile = "pnpm-lock.yaml"
    install_args = ("--frozen-lockfile",)


class YarnPlugin(NodePackageManager):
    name = "yarn"
    versions = ">=1"
    lockfile = "yarn.lock"
