import json
from pathlib import Path

import pytest

from stagegate.errors import StateError
from stagegate.state.store import StateStore


def test_state_store_roundtrip(tmp_path: Path) -> None:
    store = StateStore(tmp_path / ".stagegate")
    payload = {"exec-1": {"id": "exec-1", "status": "running"}}
    store.set_json("executions", payload)

    assert store.get_json("executions") == payload
    assert store.get_execution("exec-1") == payload["exec-1"]
    assert store.get_execution("missing") is None


def test_state_schema_migrates_legacy_payload(tmp_path: Path) -> None:
    store = StateStore(tmp_path / ".stagegate")
    local_path = tmp_path / ".stagegate" / "state" / "metrics.json"
    local_path.write_text(json.dumps({"legacy": True}), encoding="utf-8")

    assert store.get_json("metrics") == {"legacy": True}
    assert store.get_envelope("metrics")["revision"] == 0

    store.set_json("metrics", {"legacy": False})
    on_disk = json.loads(local_path.read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == StateStore.SCHEMA_VERSION
    assert on_disk["revision"] == 1
    assert on_disk["data"] == {"legacy": False}


def test_update_json_increments_revision(tmp_path: Path) -> None:
    store = StateStore(tmp_path / ".stagegate")
    store.set_json("metrics", {"count": 1})
    first_revision = store.get_envelope("metrics")["revision"]

    store.update_json(
        "metrics", lambda payload: {"count": payload["count"] + 1}, default={"count": 0}
    )
    second_revision = store.get_envelope("metrics")["revision"]

    assert store.get_json("metrics")["count"] == 2
    assert second_revision > first_revision


def test_stale_revision_is_rejected(tmp_path: Path) -> None:
    store = StateStore(tmp_path / ".stagegate")
    store.set_json("checkpoints", {})

    with pytest.raises(StateError, match="Concurrent state update"):
        store.set_json("checkpoints", {"cp": {}}, expected_revision=0)


def test_unknown_namespace_is_rejected(tmp_path: Path) -> None:
    store = StateStore(tmp_path / ".stagegate")

    with pytest.raises(StateError, match="Unsupported namespace"):
        store.get_json("tasks")


def test_executions_are_listed_in_creation_order(tmp_path: Path) -> None:
    store = StateStore(tmp_path / ".stagegate")
    store.put_execution({"id": "b", "created_at": "2026-01-02T00:00:00+00:00"})
    store.put_execution({"id": "a", "created_at": "2026-01-01T00:00:00+00:00"})
    store.put_incident({"id": "inc-1", "execution_id": "a"})

    assert [item["id"] for item in store.list_executions()] == ["a", "b"]
    assert store.get_incidents() == [{"id": "inc-1", "execution_id": "a"}]
    assert not (tmp_path / ".stagegate" / "state" / ".lock").exists()
