"""Tests for the plugin base class and YAML-declared command plugins."""

import io
import tarfile
import zipfile

import pytest

from devenv.errors import ConfigurationError, InstallFailed
from devenv.plugins.plugin import CommandPlugin, extract_archive, probe_score
from devenv.types import HealthStatus, PluginContext


@pytest.fixture
def ctx(tmp_path):
    return PluginContext(
        environment="demo",
        version="3.2.2",
        env_dir=tmp_path / "env",
        project_path=None,
        cache=None,
        timeout=10.0,
    )


def declared(**overrides):
    data = {
        "name": "ruby",
        "versions": ">=3",
        "install": "sh -c 'mkdir -p {home}/bin && echo {version} > {home}/VERSION'",
        "probe": ["sh", "-c", "echo ruby {version}p100"],
    }
    data.update(overrides)
    return CommandPlugin.from_dict(data, "ruby.yaml")


@pytest.mark.asyncio
async def test_setup_renders_placeholders(ctx):
    plugin = declared()
    await plugin.descriptor().install(ctx)

    assert (ctx.env_dir / "ruby" / "bin").is_dir()
    assert (ctx.env_dir / "ruby" / "VERSION").read_text().strip() == "3.2.2"


@pytest.mark.asyncio
async def test_default_version_used_without_request(ctx):
    plugin = declared(default_version="3.3.0")
    await plugin.setup(ctx.with_version(None))
    assert (ctx.env_dir / "ruby" / "VERSION").read_text().strip() == "3.3.0"


@pytest.mark.asyncio
async def test_probe_parses_version(ctx):
    result = await declared().check_health(ctx)

    assert result.status == HealthStatus.HEALTHY
    assert result.installed_version == "3.2.2"
    assert result.score == 100.0


@pytest.mark.asyncio
async def test_probe_unparsable_output(ctx):
    result = await declared(probe="echo hello").check_health(ctx)

    assert result.status == HealthStatus.DEGRADED
    assert result.installed_version is None


@pytest.mark.asyncio
async def test_probe_failing_command(ctx):
    result = await declared(probe="sh -c 'exit 4'").check_health(ctx)
    assert result.status == HealthStatus.UNHEALTHY
    assert result.score == 0.0


@pytest.mark.asyncio
async def test_probe_missing_binary(ctx):
    result = await declared(probe="{home}/bin/ruby --version").check_health(ctx)
    assert result.status == HealthStatus.UNHEALTHY
    assert "missing" in result.message


@pytest.mark.asyncio
async def test_install_failure_is_classified(ctx):
    permanent = declared(install="sh -c 'echo unknown flag >&2; exit 2'")
    with pytest.raises(InstallFailed) as exc_info:
        await permanent.setup(ctx)
    assert not exc_info.value.transient

    transient = declared(install="sh -c 'echo Could not resolve host >&2; exit 6'")
    with pytest.raises(InstallFailed) as exc_info:
        await transient.setup(ctx)
    assert exc_info.value.transient


@pytest.mark.asyncio
async def test_fallback_declared(ctx):
    plugin = declared(fallback="sh -c 'mkdir -p {home} && touch {home}/fallback'")
    descriptor = plugin.descriptor()

    assert descriptor.fallback is not None
    await descriptor.fallback(ctx)
    assert (ctx.env_dir / "ruby" / "fallback").exists()

    assert declared().descriptor().fallback is None


@pytest.mark.asyncio
async def test_update_and_install_dependencies(ctx, tmp_path):
    project = tmp_path / "project"
    project.mkdir()
    plugin = declared(
        update="sh -c 'mkdir -p {home} && touch {home}/updated'",
        install_dependencies="sh -c 'touch installed'",
    )

    await plugin.update(ctx)
    await plugin.install_dependencies(ctx)
    assert (ctx.env_dir / "ruby" / "updated").exists()
    assert not (project / "installed").exists()

    with_project = PluginContext("demo", "3.2.2", ctx.env_dir, project, None)
    await plugin.install_dependencies(with_project)
    assert (project / "installed").exists()


@pytest.mark.asyncio
async def test_activate_exposes_env_and_bin_dirs(ctx):
    plugin = declared(env={"GEM_HOME": "/gems"}, bin_dirs=["bin", "gems/bin"])
    values = await plugin.activate(ctx)

    home = ctx.env_dir / "ruby"
    assert values["GEM_HOME"] == "/gems"
    assert values["PATH"].split(":") == [str(home / "bin"), str(home / "gems" / "bin")]


def test_descriptor_fields():
    descriptor = declared(provides="ruby-lang", depends_on="openssl").descriptor()
    assert descriptor.name == "ruby"
    assert descriptor.provides == "ruby-lang"
    assert descriptor.depends_on == ("openssl",)
    assert descriptor.versions == ">=3"


@pytest.mark.parametrize(
    "data",
    [
        {"name": "ruby", "install": "x"},
        {"install": "x", "probe": "y"},
        {"name": "ruby", "install": {"a": 1}, "probe": "y"},
        "ruby",
    ],
)
def test_invalid_declarations(data):
    with pytest.raises(ConfigurationError):
        CommandPlugin.from_dict(data, "bad.yaml")


@pytest.mark.parametrize("elapsed,score", [(0.1, 100.0), (2.0, 100.0), (4.0, 80.0), (30.0, 0.0)])
def test_probe_score(elapsed, score):
    assert probe_score(elapsed) == score


def test_extract_tarball_strips_top_directory(tmp_path):
    archive = tmp_path / "tool.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        payload = b"#!/bin/sh\necho tool\n"
        info = tarfile.TarInfo("tool-1.0.0/bin/tool")
        info.size = len(payload)
        info.mode = 0o755
        tar.addfile(info, io.BytesIO(payload))

    dest = extract_archive(archive, tmp_path / "out")

    assert (dest / "bin" / "tool").read_bytes() == b"#!/bin/sh\necho tool\n"


def test_extract_zip(tmp_path):
    archive = tmp_path / "bun.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("bun-linux-x64/bun", b"binary")

    extract_archive(archive, tmp_path / "out")

    assert (tmp_path / "out" / "bun").read_bytes() == b"binary"


def test_extract_rejects_unknown_format(tmp_path):
    archive = tmp_path / "notes.txt"
    archive.write_text("plain text")
    with pytest.raises(ValueError):
        extract_archive(archive, tmp_path / "out")
