"""Go toolchain provider."""

import re
from pathlib import Path
from typing import Dict, List

import aiohttp

from devenv.errors import InstallFailed
from devenv.plugins.platforms import get_platform_info
from devenv.plugins.plugin import Plugin, extract_archive
from devenv.types import PluginContext, ProbeResult
from devenv.versions import max_satisfying, parse_range

GO_DL = "https://go.dev/dl"
GO_VERSION = re.compile(r"go(\d+\.\d+(?:\.\d+)?)")


class GoPlugin(Plugin):
    name = "go"
    versions = ">=1.11"
    default_version = "1.22"

    def gopath(self, ctx: PluginContext) -> Path:
        return ctx.env_dir / "gopath"

    def bin_dirs(self, ctx: PluginContext) -> List[Path]:
        return [self.home(ctx) / "bin", self.gopath(ctx) / "bin"]

    def _env(self, ctx: PluginContext) -> Dict[str, str]:
        return {
            "GOROOT": str(self.home(ctx)),
            "GOPATH": str(self.gopath(ctx)),
            "GOTOOLCHAIN": "local",
        }

    async def resolve_version(self, spec: str) -> str:
        exact = parse_range(spec).exact
        if exact:
            return exact
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{GO_DL}/?mode=json&include=all") as response:
                response.raise_for_status()
                releases = await response.json()
        stable = [r["version"].removeprefix("go") for r in releases if r.get("stable")]
        version = max_satisfying(stable, spec)
        if not version:
            raise InstallFailed(self.name, spec, f"No Go release satisfies {spec}")
        return version

    async def setup(self, ctx: PluginContext) -> None:
        version = await self.resolve_version(self.target(ctx))
        platform = get_platform_info().go_platform
        url = f"{GO_DL}/go{version}.{platform}.tar.gz"

        archive = await ctx.cache.fetch(f"go-{version}-{platform}", url)
        extract_archive(archive, self.home(ctx))
        self.gopath(ctx).mkdir(parents=True, exist_ok=True)

    async def install_dependencies(self, ctx: PluginContext) -> None:
        project = ctx.project_path
        if project and (project / "go.mod").exists():
            await self.run(
                ctx, [self.home(ctx) / "bin" / "go", "mod", "download"], "go mod download",
                cwd=project, env=self._env(ctx),
            )

    async def check_health(self, ctx: PluginContext) -> ProbeResult:
        return await self.probe_version(
            ctx, [self.home(ctx) / "bin" / "go", "version"], GO_VERSION, env=self._env(ctx)
        )

    async def activate(self, ctx: PluginContext) -> Dict[str, str]:
        return {**self._env(ctx), **await super().activate(ctx)}
