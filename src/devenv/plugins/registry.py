"""Plugin registry.

Descriptors are kept in an immutable snapshot that readers use without
locking; writers build a new snapshot under a lock and swap it in, so a
failed registration never leaves the registry half-updated.
"""

import threading
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional

import yaml

from devenv.errors import (
    ConfigurationError,
    DependencyCycle,
    DuplicateName,
    PluginNotFound,
    VersionUnsupported,
)
from devenv.logging import get_logger
from devenv.plugins import BUILTIN_PLUGINS
from devenv.plugins.plugin import CommandPlugin
from devenv.types import PluginDescriptor
from devenv.versions import parse_range, ranges_intersect

logger = get_logger(__name__)

_CALLABLE_FIELDS = (
    "install",
    "fallback",
    "probe",
    "update",
    "install_dependencies",
    "activate",
    "deactivate",
)


def _capability(fn: Any) -> Any:
    """Comparable identity of a procedure, equal across instances with equal state."""
    if fn is None:
        return None
    owner = getattr(fn, "__self__", None)
    func = getattr(fn, "__func__", fn)
    if owner is None:
        return func
    state = tuple(
        sorted((k, repr(v)) for k, v in vars(owner).items() if not callable(v))
    )
    return (func, type(owner), state)


def same_capabilities(a: PluginDescriptor, b: PluginDescriptor) -> bool:
    if (a.name, a.provides, a.versions, a.depends_on, a.default_version) != (
        b.name, b.provides, b.versions, b.depends_on, b.default_version
    ):
        return False
    return all(
        _capability(getattr(a, f)) == _capability(getattr(b, f)) for f in _CALLABLE_FIELDS
    )


def find_cycle(plugins: Mapping[str, PluginDescriptor]) -> Optional[List[str]]:
    """Return one dependency cycle as a path (first node repeated at the end), or None.

    Edges to plugins that are not registered yet are ignored.
    """
    visiting: List[str] = []
    done = set()

    def visit(name: str) -> Optional[List[str]]:
        if name in done:
            return None
        if name in visiting:
            return visiting[visiting.index(name):] + [name]
        visiting.append(name)
        for dep in plugins[name].depends_on:
            if dep in plugins:
                cycle = visit(dep)
                if cycle:
                    return cycle
        visiting.pop()
        done.add(name)
        return None

    for name in plugins:
        cycle = visit(name)
        if cycle:
            return cycle
    return None


class PluginRegistry:
    """Name-keyed catalogue of provider descriptors"""

    def __init__(self):
        self._lock = threading.Lock()
        self._plugins: Mapping[str, PluginDescriptor] = MappingProxyType({})

    def register(self, descriptor: PluginDescriptor) -> None:
        """Add a descriptor.

        Re-registering an identical descriptor is a no-op.

        Raises:
            DuplicateName: If the name is taken by a different capability set.
            DependencyCycle: If the descriptor's edges close a cycle.
        """
        with self._lock:
            current = self._plugins
            existing = current.get(descriptor.name)
            if existing is not None:
                if existing is descriptor or same_capabilities(existing, descriptor):
                    return
                raise DuplicateName(descriptor.name)

            updated = {**current, descriptor.name: descriptor}
            cycle = find_cycle(updated)
            if cycle:
                raise DependencyCycle(cycle)
            self._plugins = MappingProxyType(updated)

        logger.debug(
            "plugin_registered",
            plugin=descriptor.name,
            provides=descriptor.provides,
            depends_on=list(descriptor.depends_on),
        )

    def lookup(self, name: str) -> PluginDescriptor:
        try:
            return self._plugins[name]
        except KeyError:
            raise PluginNotFound(name) from None

    def resolve(self, language: str, version_range: Optional[str] = None) -> PluginDescriptor:
        """First provider of ``language``, in registration order, whose range intersects the request.

        A provider accepting any version matches every request, including
        channel names such as ``nightly`` that are not version ranges.

        Raises:
            PluginNotFound: If nothing provides ``language``.
            VersionUnsupported: If providers exist but none supports the request.
        """
        candidates = [d for d in self._plugins.values() if d.provides == language]
        if not candidates:
            raise PluginNotFound(language)

        for descriptor in candidates:
            if parse_range(descriptor.versions).is_any:
                return descriptor
            try:
                if ranges_intersect(descriptor.versions, version_range):
                    return descriptor
            except ValueError:
                # unparseable request against a bounded range
                continue
        raise VersionUnsupported(
            language, version_range or "*", [d.versions for d in candidates]
        )

    def dependencies_of(self, name: str) -> tuple:
        return self.lookup(name).depends_on

    def names(self) -> List[str]:
        return list(self._plugins)

    def snapshot(self) -> Mapping[str, PluginDescriptor]:
        return self._plugins

    def __contains__(self, name: object) -> bool:
        return name in self._plugins

    def __iter__(self) -> Iterator[PluginDescriptor]:
        return iter(list(self._plugins.values()))

    def __len__(self) -> int:
        return len(self._plugins)

    def load_builtin(self) -> None:
        for plugin_class in BUILTIN_PLUGINS:
            self.register(plugin_class().descriptor())

    def load_directory(self, path: Path) -> List[str]:
        """Register CommandPlugin declarations from ``*.yaml`` files in ``path``.

        A file holds one declaration, a list of them, or a ``plugins:`` list.

        Raises:
            ConfigurationError: If a file is not valid YAML or a declaration is malformed.
        """
        path = Path(path)
        if not path.is_dir():
            return []

        loaded = []
        for plugin_file in sorted(path.glob("*.yaml")):
            try:
                data = yaml.safe_load(plugin_file.read_text(encoding="utf-8"))
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {plugin_file}: {e}") from e

            if isinstance(data, dict) and "plugins" in data:
                data = data["plugins"]
            declarations: List[Dict[str, Any]] = data if isinstance(data, list) else [data]

            for declaration in declarations:
                plugin = CommandPlugin.from_dict(declaration, str(plugin_file))
                self.register(plugin.descriptor())
                loaded.append(plugin.name)

        logger.info("plugins_loaded", path=str(path), plugins=loaded)
        return loaded
