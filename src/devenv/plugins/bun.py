"""Bun runtime provider."""

from typing import List, Optional

import aiohttp

from devenv.errors import InstallFailed
from devenv.plugins.platforms import get_platform_info
from devenv.plugins.plugin import Plugin, extract_archive
from devenv.types import PluginContext, ProbeResult
from devenv.versions import max_satisfying, parse_range

BUN_RELEASES = "https://github.com/oven-sh/bun/releases"
BUN_API_RELEASES = "https://api.github.com/repos/oven-sh/bun/releases?per_page=100"


async def fetch_release_versions(url: str) -> List[str]:
    async with aiohttp.ClientSession() as session:
        async with session.get(url) as response:
            response.raise_for_status()
            releases = await response.json()
    return [
        r["tag_name"].removeprefix("bun-").lstrip("v")
        for r in releases
        if not r.get("prerelease") and not r.get("draft")
    ]


class BunPlugin(Plugin):
    name = "bun"
    versions = ">=1.0"
    default_version = "latest"
    env_setup = {"NO_INSTALL_HINTS": "1"}

    async def resolve_version(self, spec: Optional[str]) -> str:
        exact = parse_range(spec).exact
        if exact:
            return exact
        version = max_satisfying(await fetch_release_versions(BUN_API_RELEASES), spec)
        if not version:
            raise InstallFailed(self.name, spec, f"No Bun release satisfies {spec}")
        return version

    async def setup(self, ctx: PluginContext) -> None:
        version = await self.resolve_version(self.target(ctx))
        platform = get_platform_info().bun_platform
        url = f"{BUN_RELEASES}/download/bun-v{version}/bun-{platform}.zip"

        archive = await ctx.cache.fetch(f"bun-{version}-{platform}", url)
        extract_archive(archive, self.home(ctx) / "bin")

    async def fallback(self, ctx: PluginContext) -> None:
        version = self.target(ctx)
        script = "curl -fsSL https://bun.sh/install | bash"
        if version != "latest":
            script += f" -s bun-v{version}"
        await self.run(
            ctx, ["sh", "-c", script], "bun install script", env={"BUN_INSTALL": str(self.home(ctx))}
        )

    async def install_dependencies(self, ctx: PluginContext) -> None:
        project = ctx.project_path
        if project and ((project / "bun.lockb").exists() or (project / "bun.lock").exists()):
            await self.run(ctx, [self.home(ctx) / "bin" / "bun", "install"], "bun install", cwd=project)

    async def check_health(self, ctx: PluginContext) -> ProbeResult:
        return await self.probe_version(ctx, [self.home(ctx) / "bin" / "bun", "--version"])
