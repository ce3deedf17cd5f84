"""Node runtime provider."""

import os
import re
from typing import Dict, List, Optional

import aiohttp

from devenv.errors import InstallFailed
from devenv.logging import get_logger
from devenv.plugins.platforms import get_platform_info
from devenv.plugins.plugin import Plugin, extract_archive
from devenv.types import PluginContext, ProbeResult
from devenv.versions import max_satisfying, parse_range

logger = get_logger(__name__)

NODE_DIST = "https://nodejs.org/dist"
NODE_VERSION = re.compile(r"v?(\d+\.\d+\.\d+)")
OTHER_LOCKFILES = ("pnpm-lock.yaml", "yarn.lock", "bun.lockb", "bun.lock")


async def fetch_release_versions(url: str) -> List[str]:
    async with aiohttp.ClientSession() as session:
        async with session.get(url) as response:
            response.raise_for_status()
            releases = await response.json()
    return [r["version"].lstrip("v") for r in releases]


class NodePlugin(Plugin):
    """Installs official Node.js builds from nodejs.org, falling back to fnm."""

    name = "node"
    versions = ">=0.10"
    default_version = "20"
    env_setup = {
        "NODE_NO_WARNINGS": "1",
        "NPM_CONFIG_UPDATE_NOTIFIER": "false",
    }

    async def resolve_version(self, spec: Optional[str]) -> str:
        """Exact version for ``spec``, asking nodejs.org when it is a range."""
        exact = parse_range(spec).exact
        if exact:
            return exact

        versions = await fetch_release_versions(f"{NODE_DIST}/index.json")
        version = max_satisfying(versions, spec)
        if not version:
            raise InstallFailed(self.name, spec, f"No Node.js release satisfies {spec}")
        logger.debug("node_version_resolved", spec=spec, version=version)
        return version

    async def setup(self, ctx: PluginContext) -> None:
        version = await self.resolve_version(self.target(ctx))
        platform = get_platform_info().node_platform
        url = f"{NODE_DIST}/v{version}/node-v{version}-{platform}.tar.gz"

        archive = await ctx.cache.fetch(f"node-{version}-{platform}", url)
        extract_archive(archive, self.home(ctx))

    async def fallback(self, ctx: PluginContext) -> None:
        fnm = self.require("fnm", ctx)
        fnm_dir = self.home(ctx) / "fnm"
        version = self.target(ctx)

        await self.run(ctx, [fnm, "install", version], "fnm install", env={"FNM_DIR": str(fnm_dir)})
        listed = await self.run(
            ctx, [fnm, "exec", "--using", version, "--", "node", "--version"],
            "fnm exec", env={"FNM_DIR": str(fnm_dir)},
        )
        installed = listed.stdout.strip()
        source = fnm_dir / "node-versions" / installed / "installation" / "bin"

        bin_dir = self.home(ctx) / "bin"
        if bin_dir.is_symlink() or bin_dir.exists():
            bin_dir.unlink()
        os.symlink(source, bin_dir)

    async def install_dependencies(self, ctx: PluginContext) -> None:
        project = ctx.project_path
        if not project or not (project / "package.json").exists():
            return
        if any((project / lock).exists() for lock in OTHER_LOCKFILES):
            # the matching package manager plugin installs these
            return

        npm = self.home(ctx) / "bin" / "npm"
        args = [npm, "ci"] if (project / "package-lock.json").exists() else [npm, "install"]
        await self.run(ctx, args, "npm install", cwd=project)

    async def check_health(self, ctx: PluginContext) -> ProbeResult:
        return await self.probe_version(
            ctx, [self.home(ctx) / "bin" / "node", "--version"], NODE_VERSION
        )

    async def activate(self, ctx: PluginContext) -> Dict[str, str]:
        return {
            **self.env_setup,
            "NPM_CONFIG_PREFIX": str(self.home(ctx)),
            "PATH": str(self.home(ctx) / "bin"),
        }
