"""Global settings and project declarations.

Settings are read from ``config.yaml`` under the devenv home directory
(``$DEVENV_HOME`` or the platform data dir). Projects may declare their
languages, tools and scripts in a ``.devenv.yaml`` file at their root.
"""

import os
import tempfile
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import appdirs
import yaml

from devenv.errors import ConfigurationError
from devenv.logging import get_logger

logger = get_logger(__name__)

APP_NAME = "devenv"
CONFIG_FILE = "config.yaml"
PROJECT_CONFIG_FILE = ".devenv.yaml"


def default_home() -> Path:
    return Path(os.environ.get("DEVENV_HOME") or appdirs.user_data_dir(APP_NAME))


@dataclass(frozen=True)
class Settings:
    """Global devenv settings with documented defaults"""
    devenv_dir: Path
    environments_dir: Path
    plugins_dir: Path
    cache_dir: Path
    log_level: str = "info"
    auto_update: bool = True
    team_sync: bool = False
    performance_monitoring: bool = True
    concurrency: int = 4
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    task_timeout: Optional[float] = 900.0
    probe_timeout: Optional[float] = 30.0
    detection_threshold: float = 0.5
    min_free_disk_mb: int = 1024
    cache_max_bytes: int = 5 * 1024 * 1024 * 1024

    @classmethod
    def defaults(cls, home: Optional[Path] = None) -> "Settings":
        if home is None:
            home = default_home()
            cache = Path(appdirs.user_cache_dir(APP_NAME))
        else:
            home = Path(home)
            cache = home / "cache"
        return cls(
            devenv_dir=home,
            environments_dir=home / "environments",
            plugins_dir=home / "plugins",
            cache_dir=cache,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {k: str(v) if isinstance(v, Path) else v for k, v in data.items()}

    def ensure_dirs(self) -> None:
        for path in (self.devenv_dir, self.environments_dir, self.plugins_dir, self.cache_dir):
            path.mkdir(parents=True, exist_ok=True)


_PATH_KEYS = {"devenv_dir", "environments_dir", "plugins_dir", "cache_dir"}
_BOOL_KEYS = {"auto_update", "team_sync", "performance_monitoring"}
_POSITIVE_INT_KEYS = {"concurrency", "max_attempts"}
_INT_KEYS = {"min_free_disk_mb", "cache_max_bytes"}
_FLOAT_KEYS = {"backoff_base", "backoff_max", "detection_threshold"}
_OPTIONAL_FLOAT_KEYS = {"task_timeout", "probe_timeout"}
_LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}


def _coerce(key: str, value: Any, config_path: Path) -> Any:
    def bad(expected: str) -> ConfigurationError:
        return ConfigurationError(
            f"Invalid value for {key} in {config_path}: expected {expected}, got {value!r}",
            details={"key": key, "value": repr(value), "path": str(config_path)},
        )

    if key in _PATH_KEYS:
        if not isinstance(value, str) or not value:
            raise bad("a path")
        return Path(os.path.expanduser(value))
    if key in _BOOL_KEYS:
        if not isinstance(value, bool):
            raise bad("true or false")
        return value
    if key in _POSITIVE_INT_KEYS:
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise bad("a positive integer")
        return value
    if key in _INT_KEYS:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise bad("a non-negative integer")
        return value
    if key in _FLOAT_KEYS:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise bad("a non-negative number")
        if key == "detection_threshold" and value > 1:
            raise bad("a number between 0 and 1")
        return float(value)
    if key in _OPTIONAL_FLOAT_KEYS:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise bad("a positive number or null")
        return float(value)
    if key == "log_level":
        if not isinstance(value, str) or value.lower() not in _LOG_LEVELS:
            raise bad(f"one of {sorted(_LOG_LEVELS)}")
        return value.lower()
    return value


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from YAML, falling back to defaults for missing keys.

    Raises:
        ConfigurationError: If the file is unreadable, not a mapping, or has
            unknown keys or invalid values.
    """
    config_path = Path(path) if path else default_home() / CONFIG_FILE
    if not config_path.is_file():
        logger.debug("settings_defaults", path=str(config_path))
        return Settings.defaults(config_path.parent if path else None)

    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"Cannot read {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        )

    # security_scan is written by older installers; scanning lives outside devenv
    known = {f.name for f in fields(Settings)} | {"security_scan"}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown settings in {config_path}: {', '.join(unknown)}",
            details={"unknown": unknown},
        )

    values = {k: _coerce(k, v, config_path) for k, v in data.items() if k != "security_scan"}

    base = Settings.defaults(values.get("devenv_dir") or (config_path.parent if path else None))
    settings = Settings(**{**asdict(base), **values})

    logger.info(
        "settings_loaded",
        path=str(config_path),
        concurrency=settings.concurrency,
        environments_dir=str(settings.environments_dir),
    )
    return settings


def atomic_write(path: Path, content: str) -> None:
    """Write a file by writing a sibling temp file and renaming it over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def save_settings(settings: Settings, path: Optional[Path] = None) -> Path:
    config_path = Path(path) if path else settings.devenv_dir / CONFIG_FILE
    atomic_write(config_path, yaml.safe_dump(settings.to_dict(), sort_keys=False))
    logger.info("settings_saved", path=str(config_path))
    return config_path


@dataclass(frozen=True)
class ProjectConfig:
    """Declarations read from a project's .devenv.yaml"""
    languages: Dict[str, Optional[str]]
    tools: Dict[str, Optional[str]]
    scripts: Dict[str, str]


def _version_map(raw: Any, key: str, path: Path) -> Dict[str, Optional[str]]:
    if raw is None:
        return {}
    if isinstance(raw, list):
        raw = {str(item): None for item in raw}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"'{key}' in {path} must be a mapping or a list")
    return {str(k): (None if v is None else str(v)) for k, v in raw.items()}


def load_project_config(root: Path) -> Optional[ProjectConfig]:
    """Read a project's .devenv.yaml, or None if it has none."""
    path = Path(root) / PROJECT_CONFIG_FILE
    if not path.is_file():
        return None

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    scripts = data.get("scripts") or {}
    if not isinstance(scripts, dict):
        raise ConfigurationError(f"'scripts' in {path} must be a mapping")

    return ProjectConfig(
        languages=_version_map(data.get("languages"), "languages", path),
        tools=_version_map(data.get("tools"), "tools", path),
        scripts={str(k): str(v) for k, v in scripts.items()},
    )
