"""Tests for environment descriptor persistence and sharing."""

from datetime import datetime, timezone
from pathlib import Path

import pytest
import yaml

from devenv.environments.store import (
    SCHEMA_VERSION,
    EnvironmentStore,
    from_descriptor,
    parse_shared,
    share_descriptor,
    to_descriptor,
)
from devenv.errors import DescriptorError, EnvironmentNotFound
from devenv.types import (
    Environment,
    EnvironmentStatus,
    HealthIssue,
    HealthRecord,
    HealthStatus,
    ProbeResult,
)


def make_env(name="web", **overrides):
    values = dict(
        name=name,
        id="3nQ8oW2f",
        status=EnvironmentStatus.ACTIVE,
        languages={"python": "3.11.0", "node": "20.10.0"},
        tools={"pnpm": None},
        created_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        project_path=Path("/work/web"),
        env_vars={"PATH": "/envs/web/node/bin:/usr/bin"},
        activated_at=datetime(2024, 5, 1, 12, 5, tzinfo=timezone.utc),
    )
    values.update(overrides)
    return Environment(**values)


def test_save_and_load(tmp_path):
    store = EnvironmentStore(tmp_path)
    health = HealthRecord(
        status=HealthStatus.DEGRADED,
        score=80.0,
        issues=(HealthIssue("node", "slow_probe", HealthStatus.DEGRADED, "node took 4.0s"),),
        recommendations=("Investigate slow node startup",),
        probes=(("node", ProbeResult(HealthStatus.HEALTHY, "20.10.0", 80.0, "node took 4.0s")),),
        checked_at=datetime(2024, 5, 2, tzinfo=timezone.utc),
    )
    env = make_env(health=health, last_error=None)

    path = store.save(env)

    assert path == tmp_path / "web.yaml"
    assert store.load("web") == env


def test_descriptor_is_plain_yaml(tmp_path):
    store = EnvironmentStore(tmp_path)
    store.save(make_env())

    data = yaml.safe_load((tmp_path / "web.yaml").read_text())

    assert data["schema_version"] == SCHEMA_VERSION
    assert data["status"] == "active"
    assert data["languages"] == {"python": "3.11.0", "node": "20.10.0"}
    assert data["project_path"] == "/work/web"


def test_load_missing(tmp_path):
    with pytest.raises(EnvironmentNotFound):
        EnvironmentStore(tmp_path).load("ghost")


def test_load_all_sorted(tmp_path):
    store = EnvironmentStore(tmp_path)
    for name in ("zeta", "alpha", "mid"):
        store.save(make_env(name))
    (tmp_path / "alpha").mkdir()

    assert [e.name for e in store.load_all()] == ["alpha", "mid", "zeta"]
    assert EnvironmentStore(tmp_path / "missing").load_all() == []


def test_load_all_skips_unreadable_descriptors(tmp_path):
    store = EnvironmentStore(tmp_path)
    store.save(make_env("web"))
    (tmp_path / "broken.yaml").write_text("name: [unclosed\n")
    (tmp_path / "binary.yaml").write_bytes(b"\xff\xfe\x00")

    assert [e.name for e in store.load_all()] == ["web"]


def test_delete_removes_files(tmp_path):
    store = EnvironmentStore(tmp_path)
    store.save(make_env())
    (store.env_dir("web") / "node" / "bin").mkdir(parents=True)

    store.delete("web")

    assert not (tmp_path / "web.yaml").exists()
    assert not (tmp_path / "web").exists()
    store.delete("web")


@pytest.mark.parametrize(
    "content",
    [
        "name: [unclosed\n",
        "- a list\n",
        "name: web\nid: x\nstatus: sleeping\ncreated_at: '2024-05-01T12:00:00+00:00'\n",
        "name: web\nstatus: active\n",
        "name: web\nid: x\nstatus: active\ncreated_at: yesterday\n",
    ],
)
def test_corrupt_descriptor(tmp_path, content):
    (tmp_path / "web.yaml").write_text(content)
    with pytest.raises(DescriptorError) as exc_info:
        EnvironmentStore(tmp_path).load("web")
    assert exc_info.value.kind == "descriptor_error"


def test_descriptor_round_trip_without_optional_fields():
    env = make_env(project_path=None, activated_at=None, tools={}, env_vars={})
    assert from_descriptor(to_descriptor(env)) == env


def test_share_excludes_machine_state():
    payload = share_descriptor(make_env())
    data = yaml.safe_load(payload)

    assert data == {
        "schema_version": SCHEMA_VERSION,
        "name": "web",
        "languages": {"node": "20.10.0", "python": "3.11.0"},
        "tools": {"pnpm": None},
    }


def test_share_is_deterministic():
    a = make_env(languages={"python": "3.11.0", "node": "20.10.0"})
    b = make_env(languages={"node": "20.10.0", "python": "3.11.0"}, id="other")
    assert share_descriptor(a) == share_descriptor(b)


def test_parse_shared():
    name, languages, tools = parse_shared(share_descriptor(make_env()))
    assert name == "web"
    assert languages == {"node": "20.10.0", "python": "3.11.0"}
    assert tools == {"pnpm": None}


@pytest.mark.parametrize(
    "payload",
    [
        b"\xff\xfe",
        b"name: [oops\n",
        b"- web\n",
        b"schema_version: 99\nname: web\n",
        b"name: web\nlanguages: {}\n",
        b"schema_version: 1\nname: ../etc\n",
        b"schema_version: 1\nname: web\nlanguages: [python]\n",
    ],
)
def test_parse_shared_rejects(payload):
    with pytest.raises(DescriptorError):
        parse_shared(payload)
