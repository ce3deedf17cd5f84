"""Tests for the shared install cache."""

import asyncio
import os
from unittest.mock import AsyncMock, patch

import pytest

from devenv.cache import ARTIFACT, InstallCache, compute_file_hash


def write_source(tmp_path, name="source.tar.gz", content=b"archive-bytes"):
    source = tmp_path / name
    source.write_bytes(content)
    return source


def test_store_and_lookup(tmp_path):
    cache = InstallCache(tmp_path / "cache")
    source = write_source(tmp_path)

    artifact = cache.store("node-20.10.0-linux-x64", source, compute_file_hash(source))

    assert artifact.read_bytes() == b"archive-bytes"
    assert cache.lookup("node-20.10.0-linux-x64") == artifact
    assert cache.lookup("node-18.0.0-linux-x64") is None


def test_store_rejects_checksum_mismatch(tmp_path):
    cache = InstallCache(tmp_path / "cache")
    with pytest.raises(ValueError):
        cache.store("key", write_source(tmp_path), checksum="0" * 64)
    assert cache.lookup("key") is None


def test_lookup_detects_tampering(tmp_path):
    cache = InstallCache(tmp_path / "cache")
    artifact = cache.store("key", write_source(tmp_path))

    artifact.write_bytes(b"corrupted")

    assert cache.lookup("key") is None


def test_unsafe_keys_stay_inside_root(tmp_path):
    cache = InstallCache(tmp_path / "cache")
    entry = cache.entry_dir("../../etc/passwd")
    assert entry.parent == tmp_path / "cache"


@pytest.mark.asyncio
async def test_fetch_downloads_once(tmp_path):
    cache = InstallCache(tmp_path / "cache")

    async def fake_download(url, dest):
        dest.write_bytes(url.encode())

    with patch("devenv.cache.download", new=AsyncMock(side_effect=fake_download)) as download:
        first = await cache.fetch("go-1.22.0", "https://example.invalid/go.tar.gz")
        second = await cache.fetch("go-1.22.0", "https://example.invalid/go.tar.gz")

    assert first == second
    assert first.read_bytes() == b"https://example.invalid/go.tar.gz"
    assert download.await_count == 1
    assert not (cache.entry_dir("go-1.22.0") / ".download").exists()


@pytest.mark.asyncio
async def test_concurrent_fetches_share_one_download(tmp_path):
    cache = InstallCache(tmp_path / "cache")

    async def slow_download(url, dest):
        await asyncio.sleep(0.05)
        dest.write_bytes(b"payload")

    with patch("devenv.cache.download", new=AsyncMock(side_effect=slow_download)) as download:
        results = await asyncio.gather(*(cache.fetch("bun-1.1.0", "https://x.invalid") for _ in range(3)))

    assert len(set(results)) == 1
    assert download.await_count == 1


@pytest.mark.asyncio
async def test_fetch_failure_leaves_no_entry(tmp_path):
    cache = InstallCache(tmp_path / "cache")

    with patch("devenv.cache.download", new=AsyncMock(side_effect=ConnectionError("reset"))):
        with pytest.raises(ConnectionError):
            await cache.fetch("key", "https://x.invalid")

    assert cache.lookup("key") is None


def test_prune_removes_oldest_entries(tmp_path):
    cache = InstallCache(tmp_path / "cache", max_bytes=250)
    old = cache.store("old", write_source(tmp_path, "a", b"a" * 100))
    new = cache.store("new", write_source(tmp_path, "b", b"b" * 100))
    os.utime(old, (1_000_000, 1_000_000))
    os.utime(new, (2_000_000, 2_000_000))

    freed = cache.prune()

    assert freed == 100
    assert cache.lookup("old") is None
    assert cache.lookup("new") == new


def test_prune_under_limit_is_noop(tmp_path):
    cache = InstallCache(tmp_path / "cache")
    cache.store("key", write_source(tmp_path))
    assert cache.prune() == 0
    assert (cache.entry_dir("key") / ARTIFACT).exists()


def test_prune_missing_root(tmp_path):
    assert InstallCache(tmp_path / "missing").prune(0) == 0
