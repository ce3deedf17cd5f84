"""Error taxonomy for the environment orchestration engine."""
from typing import Any, Dict, Iterable, Optional

from devenv.logging import get_logger

logger = get_logger(__name__)


def log_error(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    log: Any = None,
) -> None:
    """Log an error with context."""
    log = log or logger

    error_info: Dict[str, Any] = {
        "error_type": error.__class__.__name__,
        "error_message": str(error),
    }
    if context:
        error_info["context"] = context
    if isinstance(error, DevEnvError):
        error_info["kind"] = error.kind
        error_info["details"] = error.details

    log.error("error_occurred", **error_info)


class DevEnvError(Exception):
    """Base error class for devenv."""
    kind = "internal_error"

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        if kind:
            self.kind = kind
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": str(self), "details": self.details}


class ConfigurationError(DevEnvError):
    """Malformed or missing settings."""
    kind = "configuration_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class DependencyCycle(ConfigurationError):
    """Plugin dependency edges would form a cycle."""

    def __init__(self, cycle: Iterable[str]):
        cycle = list(cycle)
        super().__init__(
            f"Plugin dependency cycle: {' -> '.join(cycle)}",
            details={"cycle": cycle},
        )


class DetectionAmbiguous(DevEnvError):
    """Conflicting signatures of the same rank above the threshold."""
    kind = "detection_ambiguous"

    def __init__(self, name: str, candidates: Dict[str, Optional[str]]):
        listed = ", ".join(f"{src}={ver}" for src, ver in candidates.items())
        super().__init__(
            f"Conflicting versions detected for {name}: {listed}",
            details={"name": name, "candidates": candidates},
        )


class PluginNotFound(DevEnvError):
    kind = "plugin_not_found"

    def __init__(self, name: str):
        super().__init__(f"Plugin {name} not found", details={"plugin": name})


class DuplicateName(DevEnvError):
    """A different descriptor is already registered under this name."""
    kind = "duplicate_name"

    def __init__(self, name: str):
        super().__init__(
            f"Plugin {name} is already registered with a different capability set",
            details={"plugin": name},
        )


class VersionUnsupported(DevEnvError):
    kind = "version_unsupported"

    def __init__(self, language: str, requested: str, supported: Iterable[str]):
        supported = list(supported)
        super().__init__(
            f"No plugin for {language} supports version {requested}",
            details={
                "language": language,
                "requested": requested,
                "supported": supported,
            },
        )


class InstallFailed(DevEnvError):
    """An install procedure failed; transient failures are retried."""

    def __init__(
        self,
        plugin: str,
        version: Optional[str],
        message: str,
        transient: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.plugin = plugin
        self.version = version
        self.transient = transient
        target = f"{plugin} {version}" if version else plugin
        super().__init__(
            f"Install of {target} failed: {message}",
            kind="install_failed_transient" if transient else "install_failed_permanent",
            details={
                "plugin": plugin,
                "version": version,
                "message": message,
                **(details or {}),
            },
        )


class CommandTimeout(DevEnvError, TimeoutError):
    kind = "command_timeout"

    def __init__(self, command: str, timeout: float):
        super().__init__(
            f"Command timed out after {timeout}s: {command}",
            details={"command": command, "timeout": timeout},
        )


class ActivationFailed(DevEnvError):
    kind = "activation_failed"

    def __init__(self, environment: str, message: str, rolled_back_to: Optional[str] = None):
        super().__init__(
            f"Activation of {environment} failed: {message}",
            details={
                "environment": environment,
                "message": message,
                "rolled_back_to": rolled_back_to,
            },
        )


class SwitchInProgress(DevEnvError):
    kind = "switch_in_progress"

    def __init__(self, requested: str):
        super().__init__(
            f"Another environment switch is in progress; rejected switch to {requested}",
            details={"requested": requested},
        )


class NameConflict(DevEnvError):
    kind = "name_conflict"

    def __init__(self, name: str):
        super().__init__(f"Environment {name} already exists", details={"environment": name})


class EnvironmentNotFound(DevEnvError):
    kind = "environment_not_found"

    def __init__(self, name: str):
        super().__init__(f"Environment {name} not found", details={"environment": name})


class InvalidTransition(DevEnvError):
    kind = "invalid_transition"

    def __init__(self, name: str, current: str, target: str):
        super().__init__(
            f"Environment {name} cannot move from {current} to {target}",
            details={"environment": name, "from": current, "to": target},
        )


class HealthCheckIssue(DevEnvError):
    """Non-fatal probe problem; recorded in the health record."""
    kind = "health_check_issue"

    def __init__(self, language: str, message: str):
        self.language = language
        super().__init__(message, details={"language": language})


class DescriptorError(DevEnvError):
    """A persisted or shared environment descriptor is unreadable."""
    kind = "descriptor_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
