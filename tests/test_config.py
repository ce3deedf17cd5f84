"""Tests for settings and project declarations."""

from pathlib import Path

import pytest

from devenv.config import (
    Settings,
    atomic_write,
    load_project_config,
    load_settings,
    save_settings,
)
from devenv.errors import ConfigurationError


def test_missing_config_gives_defaults(tmp_path):
    settings = load_settings(tmp_path / "config.yaml")

    assert settings.devenv_dir == tmp_path
    assert settings.environments_dir == tmp_path / "environments"
    assert settings.plugins_dir == tmp_path / "plugins"
    assert settings.concurrency == 4
    assert settings.auto_update is True
    assert settings.detection_threshold == 0.5


def test_load_overrides(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text(
        "concurrency: 8\n"
        "log_level: DEBUG\n"
        "task_timeout: null\n"
        "backoff_base: 2\n"
        "performance_monitoring: false\n"
    )

    settings = load_settings(config)

    assert settings.concurrency == 8
    assert settings.log_level == "debug"
    assert settings.task_timeout is None
    assert settings.backoff_base == 2.0
    assert settings.performance_monitoring is False
    assert settings.environments_dir == tmp_path / "environments"


def test_devenv_dir_moves_derived_paths(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text(f"devenv_dir: {tmp_path / 'elsewhere'}\n")

    settings = load_settings(config)

    assert settings.devenv_dir == tmp_path / "elsewhere"
    assert settings.environments_dir == tmp_path / "elsewhere" / "environments"


def test_empty_config_file(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text("")
    assert load_settings(config) == Settings.defaults(tmp_path)


def test_legacy_security_scan_key_is_ignored(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text("security_scan: true\n")
    assert load_settings(config).concurrency == 4


@pytest.mark.parametrize(
    "content",
    [
        "concurrency: 0\n",
        "concurrency: two\n",
        "max_attempts: true\n",
        "auto_update: yes please\n",
        "detection_threshold: 1.5\n",
        "task_timeout: -1\n",
        "log_level: loud\n",
        "colour: blue\n",
        "- just\n- a list\n",
        "concurrency: [\n",
    ],
)
def test_invalid_config(tmp_path, content):
    config = tmp_path / "config.yaml"
    config.write_text(content)
    with pytest.raises(ConfigurationError):
        load_settings(config)


def test_unknown_keys_are_listed(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text("colour: blue\nshape: round\n")
    with pytest.raises(ConfigurationError) as exc_info:
        load_settings(config)
    assert exc_info.value.details["unknown"] == ["colour", "shape"]
    assert exc_info.value.kind == "configuration_error"


def test_save_and_reload(tmp_path):
    settings = Settings.defaults(tmp_path)
    path = save_settings(settings)

    assert path == tmp_path / "config.yaml"
    assert load_settings(path) == settings


def test_ensure_dirs(tmp_path):
    settings = Settings.defaults(tmp_path / "home")
    settings.ensure_dirs()
    for path in (settings.devenv_dir, settings.environments_dir, settings.plugins_dir, settings.cache_dir):
        assert path.is_dir()


def test_atomic_write_replaces_content(tmp_path):
    target = tmp_path / "nested" / "file.yaml"
    atomic_write(target, "first")
    atomic_write(target, "second")

    assert target.read_text() == "second"
    assert [p.name for p in target.parent.iterdir()] == ["file.yaml"]


def test_project_config(tmp_path):
    (tmp_path / ".devenv.yaml").write_text(
        "languages:\n"
        "  python: 3.12\n"
        "  node: '20'\n"
        "tools: [pnpm]\n"
        "scripts:\n"
        "  test: pytest -q\n"
    )

    config = load_project_config(tmp_path)

    assert config.languages == {"python": "3.12", "node": "20"}
    assert config.tools == {"pnpm": None}
    assert config.scripts == {"test": "pytest -q"}


def test_project_config_absent(tmp_path):
    assert load_project_config(tmp_path) is None


@pytest.mark.parametrize(
    "content",
    [
        "languages: 3.12\n",
        "scripts: [a, b]\n",
        "- not a mapping\n",
        "languages: {python\n",
    ],
)
def test_project_config_invalid(tmp_path, content):
    (tmp_path / ".devenv.yaml").write_text(content)
    with pytest.raises(ConfigurationError):
        load_project_config(Path(tmp_path))
