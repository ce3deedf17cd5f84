"""Platform detection and mapping for runtime downloads."""
import platform
from dataclasses import dataclass
from typing import NamedTuple


@dataclass(frozen=True)
class PlatformInfo:
    """Platform information."""
    os_name: str
    arch: str
    format: str
    node_platform: str
    bun_platform: str
    go_platform: str


class PlatformMapping(NamedTuple):
    """Platform-specific values."""
    node: str
    bun: str
    go: str
    archive_format: str


ARCH_MAPPINGS = {
    "x86_64": {"node": "x64", "bun": "x64", "go": "amd64"},
    "amd64": {"node": "x64", "bun": "x64", "go": "amd64"},
    "aarch64": {"node": "arm64", "bun": "aarch64", "go": "arm64"},
}

PLATFORM_MAPPINGS = {
    "Linux": PlatformMapping(node="linux", bun="linux", go="linux", archive_format="tar.gz"),
    "Darwin": PlatformMapping(node="darwin", bun="darwin", go="darwin", archive_format="tar.gz"),
}


def get_platform_info(system: str = None, machine: str = None) -> PlatformInfo:
    """Get current platform information."""
    system = system or platform.system()
    machine = (machine or platform.machine()).lower()

    if system not in PLATFORM_MAPPINGS:
        raise RuntimeError(f"Unsupported operating system: {system}")

    if machine in ("arm64", "aarch64"):
        machine = "aarch64"

    if machine not in ARCH_MAPPINGS:
        raise RuntimeError(f"Unsupported architecture: {machine}")

    platform_map = PLATFORM_MAPPINGS[system]
    arch_map = ARCH_MAPPINGS[machine]

    return PlatformInfo(
        os_name=system.lower(),
        arch=machine,
        format=platform_map.archive_format,
        node_platform=f"{platform_map.node}-{arch_map['node']}",
        bun_platform=f"{platform_map.bun}-{arch_map['bun']}",
        go_platform=f"{platform_map.go}-{arch_map['go']}",
    )
