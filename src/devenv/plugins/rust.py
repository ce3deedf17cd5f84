"""Rust toolchain providers: rustup and the toolchains it manages."""

import re
from pathlib import Path
from typing import Dict, List

from devenv.plugins.plugin import Plugin
from devenv.types import PluginContext, ProbeResult
from devenv.versions import minimum_version

RUSTUP_INIT = "curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs | sh -s -- {args}"
RUSTC_VERSION = re.compile(r"rustc (\d+\.\d+\.\d+)")
# names rustup accepts as-is: channels, optionally dated, and plain versions
TOOLCHAIN_NAME = re.compile(r"^(stable|beta|nightly)(-[\w.-]+)?$|^\d+\.\d+(\.\d+)?$")


def toolchain_for(requested: str) -> str:
    """Toolchain name for a channel, version or version range.

    Ranges such as the ``>=1.70`` derived from Cargo's ``rust-version`` become
    their lowest satisfying release; unbounded ranges use ``stable``.
    """
    if TOOLCHAIN_NAME.match(requested):
        return requested
    try:
        return minimum_version(requested) or "stable"
    except ValueError:
        return requested


def rust_homes(ctx: PluginContext) -> Dict[str, str]:
    return {
        "RUSTUP_HOME": str(ctx.env_dir / "rustup"),
        "CARGO_HOME": str(ctx.env_dir / "cargo"),
    }


class RustupPlugin(Plugin):
    """Installs rustup itself; toolchains are installed by RustPlugin."""

    name = "rustup"
    versions = "*"

    def bin_dirs(self, ctx: PluginContext) -> List[Path]:
        return [ctx.env_dir / "cargo" / "bin"]

    async def setup(self, ctx: PluginContext) -> None:
        args = "-y --no-modify-path --default-toolchain none"
        await self.run(ctx, ["sh", "-c", RUSTUP_INIT.format(args=args)], "rustup-init", env=rust_homes(ctx))

    async def update(self, ctx: PluginContext) -> None:
        await self.run(ctx, [self.bin_dirs(ctx)[0] / "rustup", "self", "update"], "rustup self update", env=rust_homes(ctx))

    async def check_health(self, ctx: PluginContext) -> ProbeResult:
        return await self.probe_version(ctx, [self.bin_dirs(ctx)[0] / "rustup", "--version"], env=rust_homes(ctx))

    async def activate(self, ctx: PluginContext) -> Dict[str, str]:
        return {**rust_homes(ctx), "PATH": str(self.bin_dirs(ctx)[0])}


class RustPlugin(Plugin):
    name = "rust"
    versions = "*"
    depends_on = ("rustup",)
    default_version = "stable"

    def target(self, ctx: PluginContext) -> str:
        return toolchain_for(super().target(ctx))

    def bin_dirs(self, ctx: PluginContext) -> List[Path]:
        return [ctx.env_dir / "cargo" / "bin"]

    def _env(self, ctx: PluginContext) -> Dict[str, str]:
        return {**rust_homes(ctx), "RUSTUP_TOOLCHAIN": self.target(ctx)}

    async def setup(self, ctx: PluginContext) -> None:
        rustup = self.bin_dirs(ctx)[0] / "rustup"
        await self.run(
            ctx,
            [rustup, "toolchain", "install", self.target(ctx), "--profile", "minimal"],
            "rustup toolchain install",
            env=rust_homes(ctx),
        )

    async def update(self, ctx: PluginContext) -> None:
        rustup = self.bin_dirs(ctx)[0] / "rustup"
        await self.run(ctx, [rustup, "update", self.target(ctx)], "rustup update", env=rust_homes(ctx))

    async def install_dependencies(self, ctx: PluginContext) -> None:
        project = ctx.project_path
        if project and (project / "Cargo.toml").exists():
            cargo = self.bin_dirs(ctx)[0] / "cargo"
            await self.run(ctx, [cargo, "fetch"], "cargo fetch", cwd=project, env=self._env(ctx))

    async def check_health(self, ctx: PluginContext) -> ProbeResult:
        return await self.probe_version(
            ctx, [self.bin_dirs(ctx)[0] / "rustc", "--version"], RUSTC_VERSION, env=self._env(ctx)
        )

    async def activate(self, ctx: PluginContext) -> Dict[str, str]:
        return {**self._env(ctx), "PATH": str(self.bin_dirs(ctx)[0])}
