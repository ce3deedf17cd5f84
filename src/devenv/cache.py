"""Shared install cache.

Entries live under ``<cache_dir>/<key>/`` as an ``artifact`` file with a
``artifact.sha256`` sidecar. Only one task at a time may populate a given
key; entries are published by rename so readers never see a partial file.
"""
import asyncio
import hashlib
import os
import re
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

import aiohttp

from devenv.logging import get_logger

logger = get_logger(__name__)

MAX_CACHE_SIZE = 5 * 1024 * 1024 * 1024  # 5 GB
ARTIFACT = "artifact"


def compute_file_hash(path: Path) -> str:
    """Compute SHA-256 hash of a file."""
    sha256_hash = hashlib.sha256()
    with open(path, "rb") as f:
        for byte_block in iter(lambda: f.read(65536), b""):
            sha256_hash.update(byte_block)
    return sha256_hash.hexdigest()


async def download(url: str, dest: Path) -> None:
    """Stream ``url`` into ``dest``.

    Raises:
        aiohttp.ClientError: On connection problems or a non-2xx response.
    """
    logger.debug("download_started", url=url, dest=str(dest))
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(url) as response:
                response.raise_for_status()
                with open(dest, "wb") as f:
                    while chunk := await response.content.read(65536):
                        f.write(chunk)
    except BaseException:
        if dest.exists():
            dest.unlink()
        raise
    logger.debug("download_complete", url=url, dest=str(dest))


class InstallCache:
    """Keyed artifact cache with single-writer-per-key discipline"""

    def __init__(self, root: Path, max_bytes: int = MAX_CACHE_SIZE):
        self.root = Path(root)
        self.max_bytes = max_bytes
        self._locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def _safe(key: str) -> str:
        return re.sub(r"[^A-Za-z0-9._-]", "_", key)

    def entry_dir(self, key: str) -> Path:
        return self.root / self._safe(key)

    @asynccontextmanager
    async def slot(self, key: str) -> AsyncIterator[Path]:
        """Hold the writer lock for ``key`` and yield its entry directory."""
        lock = self._locks.setdefault(self._safe(key), asyncio.Lock())
        async with lock:
            entry = self.entry_dir(key)
            entry.mkdir(parents=True, exist_ok=True)
            yield entry

    def lookup(self, key: str) -> Optional[Path]:
        """Cached artifact path if present and its hash still matches."""
        artifact = self.entry_dir(key) / ARTIFACT
        hash_path = artifact.with_suffix(".sha256")

        if not artifact.exists() or not hash_path.exists():
            return None

        stored_hash = hash_path.read_text().strip()
        current_hash = compute_file_hash(artifact)
        if stored_hash != current_hash:
            logger.error(
                "cache_validation_failed",
                key=key,
                stored_hash=stored_hash,
                computed_hash=current_hash,
            )
            return None
        return artifact

    def store(self, key: str, source: Path, checksum: Optional[str] = None) -> Path:
        """Publish ``source`` as the artifact for ``key``.

        Call while holding ``slot(key)``.

        Raises:
            ValueError: If ``checksum`` is given and does not match.
        """
        entry = self.entry_dir(key)
        entry.mkdir(parents=True, exist_ok=True)
        artifact = entry / ARTIFACT
        hash_path = artifact.with_suffix(".sha256")

        computed_hash = compute_file_hash(source)
        if checksum and computed_hash != checksum:
            logger.error(
                "checksum_mismatch", key=key, computed=computed_hash, expected=checksum
            )
            raise ValueError(f"Checksum mismatch for {key}")

        fd, tmp = tempfile.mkstemp(dir=entry, prefix=".artifact-")
        os.close(fd)
        shutil.copy2(source, tmp)
        os.replace(tmp, artifact)
        hash_path.write_text(computed_hash)

        logger.info("artifact_cached", key=key, path=str(artifact), hash=computed_hash)
        return artifact

    async def fetch(self, key: str, url: str, checksum: Optional[str] = None) -> Path:
        """Return the cached artifact for ``key``, downloading it on a miss."""
        async with self.slot(key) as entry:
            cached = self.lookup(key)
            if cached:
                logger.info("using_cached_artifact", key=key, path=str(cached))
                return cached

            partial = entry / ".download"
            await download(url, partial)
            try:
                return self.store(key, partial, checksum)
            finally:
                partial.unlink(missing_ok=True)

    def prune(self, max_bytes: Optional[int] = None) -> int:
        """Remove oldest entries until the cache fits ``max_bytes``; returns bytes freed."""
        limit = self.max_bytes if max_bytes is None else max_bytes
        if not self.root.exists():
            return 0

        total_size = sum(f.stat().st_size for f in self.root.rglob("*") if f.is_file())
        if total_size <= limit:
            return 0

        artifacts = sorted(
            (f for f in self.root.rglob(ARTIFACT) if f.is_file()),
            key=lambda f: f.stat().st_mtime,
        )

        freed = 0
        for artifact in artifacts:
            if total_size <= limit:
                break
            if self._locks.get(artifact.parent.name, asyncio.Lock()).locked():
                continue
            size = artifact.stat().st_size
            shutil.rmtree(artifact.parent, ignore_errors=True)
            total_size -= size
            freed += size
            logger.info("cache_entry_removed", path=str(artifact.parent), size=size)

        return freed
