"""Environment descriptor persistence.

Each environment is stored as ``<root>/<name>.yaml``; its installed
artifacts live in ``<root>/<name>/``. Writes go through a temp file and a
rename so a descriptor is never left half-written.
"""

import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from devenv.config import atomic_write
from devenv.errors import ConfigurationError, DescriptorError, EnvironmentNotFound
from devenv.logging import get_logger
from devenv.types import (
    Environment,
    EnvironmentStatus,
    HealthIssue,
    HealthRecord,
    HealthStatus,
    ProbeResult,
)

logger = get_logger(__name__)

SCHEMA_VERSION = 1
DESCRIPTOR_SUFFIX = ".yaml"
NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")


def validate_name(name: str) -> str:
    if not isinstance(name, str) or not NAME_PATTERN.match(name):
        raise ConfigurationError(
            f"Invalid environment name {name!r}: use letters, digits, '.', '_' or '-'",
            details={"environment": name},
        )
    return name


def _timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _version_map(value: Any) -> Dict[str, Optional[str]]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("expected a mapping")
    return {str(k): (None if v is None else str(v)) for k, v in value.items()}


def health_from_dict(data: Dict[str, Any]) -> HealthRecord:
    return HealthRecord(
        status=HealthStatus(data["status"]),
        score=float(data["score"]),
        issues=tuple(
            HealthIssue(
                language=i["language"],
                kind=i["kind"],
                severity=HealthStatus(i["severity"]),
                message=i["message"],
            )
            for i in data.get("issues") or []
        ),
        recommendations=tuple(data.get("recommendations") or ()),
        probes=tuple(
            (
                name,
                ProbeResult(
                    status=HealthStatus(p["status"]),
                    installed_version=p.get("installed_version"),
                    score=float(p.get("score", 100.0)),
                    message=p.get("message", ""),
                ),
            )
            for name, p in sorted((data.get("probes") or {}).items())
        ),
        checked_at=_parse_timestamp(data.get("checked_at")),
    )


def to_descriptor(env: Environment) -> Dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "name": env.name,
        "id": env.id,
        "status": env.status.value,
        "languages": dict(env.languages),
        "tools": dict(env.tools),
        "project_path": str(env.project_path) if env.project_path else None,
        "env_vars": dict(env.env_vars),
        "created_at": _timestamp(env.created_at),
        "activated_at": _timestamp(env.activated_at),
        "health": env.health.to_dict() if env.health else None,
        "last_error": env.last_error,
    }


def from_descriptor(data: Any, source: str = "<descriptor>") -> Environment:
    """Rebuild an Environment from its persisted descriptor.

    Raises:
        DescriptorError: If required fields are missing or malformed.
    """
    if not isinstance(data, dict):
        raise DescriptorError(f"Descriptor {source} is not a mapping", details={"source": source})
    try:
        return Environment(
            name=validate_name(data["name"]),
            id=str(data["id"]),
            status=EnvironmentStatus(data["status"]),
            languages=_version_map(data.get("languages")),
            tools=_version_map(data.get("tools")),
            created_at=_parse_timestamp(data["created_at"]),
            project_path=Path(data["project_path"]) if data.get("project_path") else None,
            env_vars={str(k): str(v) for k, v in (data.get("env_vars") or {}).items()},
            activated_at=_parse_timestamp(data.get("activated_at")),
            health=health_from_dict(data["health"]) if data.get("health") else None,
            last_error=data.get("last_error"),
        )
    except (KeyError, TypeError, ValueError, ConfigurationError) as e:
        raise DescriptorError(
            f"Invalid descriptor {source}: {e}", details={"source": source}
        ) from e


def share_descriptor(env: Environment) -> bytes:
    """Portable YAML for ``env``: no ids, paths or machine-local variables."""
    data = {
        "schema_version": SCHEMA_VERSION,
        "name": env.name,
        "languages": dict(sorted(env.languages.items())),
        "tools": dict(sorted(env.tools.items())),
    }
    return yaml.safe_dump(data, sort_keys=False).encode("utf-8")


def parse_shared(
    payload: bytes,
) -> Tuple[str, Dict[str, Optional[str]], Dict[str, Optional[str]]]:
    """Validate a shared descriptor and return (name, languages, tools).

    Raises:
        DescriptorError: If the payload is not a supported shared descriptor.
    """
    try:
        data = yaml.safe_load(payload.decode("utf-8"))
    except (UnicodeDecodeError, yaml.YAMLError) as e:
        raise DescriptorError(f"Shared descriptor is not valid YAML: {e}") from e

    if not isinstance(data, dict):
        raise DescriptorError("Shared descriptor must be a mapping")
    version = data.get("schema_version")
    if version != SCHEMA_VERSION:
        raise DescriptorError(
            f"Unsupported shared descriptor schema version: {version}",
            details={"schema_version": version, "supported": SCHEMA_VERSION},
        )
    try:
        return (
            validate_name(data.get("name")),
            _version_map(data.get("languages")),
            _version_map(data.get("tools")),
        )
    except (ValueError, ConfigurationError) as e:
        raise DescriptorError(f"Invalid shared descriptor: {e}") from e


class EnvironmentStore:
    """YAML descriptor files under the environments directory"""

    def __init__(self, root: Path):
        self.root = Path(root)

    def descriptor_path(self, name: str) -> Path:
        return self.root / f"{validate_name(name)}{DESCRIPTOR_SUFFIX}"

    def env_dir(self, name: str) -> Path:
        return self.root / validate_name(name)

    def save(self, env: Environment) -> Path:
        path = self.descriptor_path(env.name)
        atomic_write(path, yaml.safe_dump(to_descriptor(env), sort_keys=False))
        logger.debug("descriptor_saved", environment=env.name, status=env.status.value)
        return path

    def load(self, name: str) -> Environment:
        path = self.descriptor_path(name)
        if not path.is_file():
            raise EnvironmentNotFound(name)
        return self._read(path)

    def _read(self, path: Path) -> Environment:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise DescriptorError(
                f"Cannot read {path}: {e}", details={"source": str(path)}
            ) from e
        except yaml.YAMLError as e:
            raise DescriptorError(
                f"Invalid YAML in {path}: {e}", details={"source": str(path)}
            ) from e
        return from_descriptor(data, str(path))

    def load_all(self) -> List[Environment]:
        """Every readable descriptor, by name; unreadable ones are logged and skipped."""
        if not self.root.is_dir():
            return []
        environments = []
        for path in sorted(self.root.glob(f"*{DESCRIPTOR_SUFFIX}")):
            try:
                environments.append(self._read(path))
            except DescriptorError as e:
                logger.warning("descriptor_skipped", path=str(path), error=str(e))
        return environments

    def delete(self, name: str) -> None:
        """Remove the descriptor and the environment's artifact directory."""
        env_dir = self.env_dir(name)
        if env_dir.exists():
            shutil.rmtree(env_dir)
        self.descriptor_path(name).unlink(missing_ok=True)
        logger.info("environment_deleted", environment=name, path=str(env_dir))
