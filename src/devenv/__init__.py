"""Per-project development environment orchestration."""

from devenv.config import Settings, load_settings
from devenv.detection import detect
from devenv.engine import ErrorInfo, OrchestrationEngine, Result
from devenv.errors import (
    ActivationFailed,
    ConfigurationError,
    DetectionAmbiguous,
    DevEnvError,
    InstallFailed,
    PluginNotFound,
    SwitchInProgress,
    VersionUnsupported,
)
from devenv.plugins.registry import PluginRegistry
from devenv.types import (
    Environment,
    EnvironmentStatus,
    HealthRecord,
    HealthStatus,
    InstallReport,
    PluginDescriptor,
    ProjectProfile,
    TaskStatus,
)

__version__ = "0.1.0"

__all__ = [
    # Engine
    "OrchestrationEngine",
    "Result",
    "ErrorInfo",
    "detect",

    # Configuration
    "Settings",
    "load_settings",
    "PluginRegistry",

    # Types
    "Environment",
    "EnvironmentStatus",
    "HealthRecord",
    "HealthStatus",
    "InstallReport",
    "PluginDescriptor",
    "ProjectProfile",
    "TaskStatus",

    # Error types
    "DevEnvError",
    "ConfigurationError",
    "DetectionAmbiguous",
    "PluginNotFound",
    "VersionUnsupported",
    "InstallFailed",
    "ActivationFailed",
    "SwitchInProgress",
]
