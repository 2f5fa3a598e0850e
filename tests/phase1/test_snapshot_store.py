import json
import os
from datetime import datetime, timedelta, timezone

import pytest

from services.version_registry.errors import PersistenceError, StaleWriteError
from services.version_registry.models import (
    SnapshotStatus,
    ToolVersionRecord,
    UpdateInfo,
    VersionSnapshot,
)
from services.version_registry.repository import SnapshotStore


FIXED_TIME = datetime(2026, 1, 28, 12, 0, tzinfo=timezone.utc)


def _snapshot(updated_at=FIXED_TIME, version="20.11.0"):
    return VersionSnapshot(
        tools=[
            ToolVersionRecord(
                id="node",
                name="Node.js",
                latest_version=version,
                last_check_at=updated_at,
                last_success_at=updated_at,
            )
        ],
        updated_at=updated_at,
        status=SnapshotStatus.ok,
    )


def test_missing_documents_fall_back_to_empty(store):
    snapshot = store.load_versions()
    assert snapshot.tools == []
    assert snapshot.updated_at is None
    assert snapshot.status == SnapshotStatus.error

    info = store.load_update_info()
    assert info.version is None
    assert info.update == {}
    assert info.release_notes == ""
    assert info.required is False
    assert info.updated_at is None


def test_saved_snapshot_survives_a_new_store_instance(store, data_dir):
    store.save_versions(_snapshot())

    reloaded = SnapshotStore(data_dir).load_versions()
    assert reloaded == _snapshot()
    assert json.loads((data_dir / "versions.json").read_text())["status"] == "ok"


def test_corrupt_document_falls_back(data_dir, write_json):
    data_dir.mkdir(parents=True)
    (data_dir / "versions.json").write_text('{"tools": [', encoding="utf-8")
    (data_dir / "update.json").write_text("not json", encoding="utf-8")

    store = SnapshotStore(data_dir)
    assert store.load_versions().status == SnapshotStatus.error
    assert store.load_versions().tools == []
    assert store.load_update_info().required is False


def test_invalid_shape_falls_back(data_dir, write_json):
    write_json(data_dir / "versions.json", {"tools": "node"})
    assert SnapshotStore(data_dir).load_versions().tools == []


def test_invalid_tool_record_is_skipped_not_the_snapshot(data_dir, write_json):
    write_json(
        data_dir / "versions.json",
        {
            "tools": [
                {"id": "node", "name": "Node.js", "latest_version": "20.11.0"},
                {"id": "python", "name": "Python", "latest_version": 3.12},
                {"name": "Nameless", "latest_version": "1.0"},
                "git",
                {"id": "deno", "name": "Deno", "latest_version": "1.40.0"},
            ],
            "updated_at": "2026-01-28T12:00:00Z",
            "status": "ok",
        },
    )
    snapshot = SnapshotStore(data_dir).load_versions()

    assert [tool.id for tool in snapshot.tools] == ["node", "deno"]
    assert snapshot.find_tool("node").latest_version == "20.11.0"
    assert snapshot.status == SnapshotStatus.ok


def test_legacy_stale_alias_is_equivalent(data_dir, write_json):
    write_json(
        data_dir / "versions.json",
        {
            "tools": [
                {"id": "legacy", "name": "Legacy", "latest_version": "1.0", "stale": True},
                {"id": "current", "name": "Current", "latest_version": "1.0", "is_stale": True},
                {"id": "fresh", "name": "Fresh", "latest_version": "1.0"},
            ],
            "updated_at": "2026-01-28T12:00:00Z",
            "status": "ok",
        },
    )
    tools = {tool.id: tool for tool in SnapshotStore(data_dir).load_versions().tools}

    assert tools["legacy"].is_stale is True
    assert tools["current"].is_stale is True
    assert tools["fresh"].is_stale is False
    assert tools["legacy"].model_dump(exclude={"id", "name"}) == tools["current"].model_dump(
        exclude={"id", "name"}
    )


def test_legacy_error_and_timestamp_fields_are_mapped(data_dir, write_json):
    write_json(
        data_dir / "versions.json",
        {
            "tools": [
                {"id": "git", "error": "timeout", "updated_at": "2026-01-28T11:00:00"},
            ],
            "updated_at": "2026-01-28T12:00:00Z",
        },
    )
    snapshot = SnapshotStore(data_dir).load_versions()
    tool = snapshot.tools[0]

    assert tool.name == "git"
    assert tool.last_check_error == "timeout"
    assert tool.last_check_at == datetime(2026, 1, 28, 11, 0, tzinfo=timezone.utc)
    assert snapshot.status == SnapshotStatus.ok


def test_duplicate_tool_ids_keep_first_entry(data_dir, write_json):
    write_json(
        data_dir / "versions.json",
        {
            "tools": [
                {"id": "node", "name": "Node.js", "latest_version": "20.0.0"},
                {"id": "node", "name": "Node.js", "latest_version": "18.0.0"},
            ],
            "updated_at": "2026-01-28T12:00:00Z",
            "status": "ok",
        },
    )
    tools = SnapshotStore(data_dir).load_versions().tools
    assert len(tools) == 1
    assert tools[0].latest_version == "20.0.0"


def test_failed_replace_keeps_previous_document(store, data_dir, monkeypatch):
    store.save_versions(_snapshot())

    def _fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", _fail_replace)
    with pytest.raises(PersistenceError):
        store.save_versions(_snapshot(updated_at=FIXED_TIME + timedelta(minutes=10), version="21.0.0"))
    monkeypatch.undo()

    assert SnapshotStore(data_dir).load_versions().tools[0].latest_version == "20.11.0"
    assert sorted(path.name for path in data_dir.iterdir()) == ["versions.json"]


def test_interrupted_write_leftover_is_never_read(store, data_dir):
    store.save_versions(_snapshot())
    (data_dir / ".versions.json.abc123.tmp").write_text('{"tools": [{"id": "no', encoding="utf-8")

    snapshot = SnapshotStore(data_dir).load_versions()
    assert snapshot == _snapshot()


def test_older_snapshot_is_refused(store, data_dir):
    store.save_versions(_snapshot())

    with pytest.raises(StaleWriteError):
        SnapshotStore(data_dir).save_versions(_snapshot(updated_at=FIXED_TIME - timedelta(minutes=1)))

    assert store.load_versions().updated_at == FIXED_TIME


def test_reads_are_monotonic_per_store(store, data_dir, write_json):
    store.save_versions(_snapshot())
    write_json(
        data_dir / "versions.json",
        {"tools": [], "updated_at": "2026-01-28T11:00:00Z", "status": "ok"},
    )

    assert store.load_versions().updated_at == FIXED_TIME
    assert SnapshotStore(data_dir).load_versions().updated_at == datetime(2026, 1, 28, 11, 0, tzinfo=timezone.utc)


def test_unusable_data_directory_is_tolerated(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    store = SnapshotStore(blocker / "data")

    assert store.ensure_directory() is False
    assert store.load_versions().status == SnapshotStatus.error
    with pytest.raises(PersistenceError):
        store.save_versions(_snapshot())


def test_update_document_nulls_take_defaults(data_dir, write_json):
    write_json(
        data_dir / "update.json",
        {
            "version": "2.3.0",
            "update": None,
            "release_notes": None,
            "required": True,
            "updated_at": "2026-01-28T12:00:00Z",
        },
    )
    info = SnapshotStore(data_dir).load_update_info()
    assert info.version == "2.3.0"
    assert info.update == {}
    assert info.release_notes == ""
    assert info.required is True


def test_update_document_is_saved_independently(store, data_dir):
    store.save_update_info(
        UpdateInfo(version="2.3.0", update={"darwin-aarch64": {"url": "https://example.com/app.dmg"}})
    )
    assert store.load_update_info().update["darwin-aarch64"]["url"] == "https://example.com/app.dmg"
    assert not (data_dir / "versions.json").exists()
