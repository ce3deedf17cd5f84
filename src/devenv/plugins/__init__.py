"""Language and tool providers."""

from devenv.plugins.bun import BunPlugin
from devenv.plugins.go import GoPlugin
from devenv.plugins.node import NodePlugin
from devenv.plugins.package_managers import PnpmPlugin, YarnPlugin
from devenv.plugins.plugin import CommandPlugin, Plugin
from devenv.plugins.python import PythonPlugin
from devenv.plugins.rust import RustPlugin, RustupPlugin

BUILTIN_PLUGINS = (
    PythonPlugin,
    NodePlugin,
    BunPlugin,
    RustupPlugin,
    RustPlugin,
    GoPlugin,
    PnpmPlugin,
    YarnPlugin,
)

__all__ = ["BUILTIN_PLUGINS", "CommandPlugin", "Plugin"]
