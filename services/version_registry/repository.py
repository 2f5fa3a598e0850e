"""File-backed snapshot store for the version registry.

Holds two independent JSON documents in one data directory: the tool version
snapshot (``versions.json``) and the client update document (``update.json``).
Writes go through a temp file in the same directory followed by ``os.replace``
so readers in this or any other process only ever see a complete document.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from services.common.api import model_dump
from services.version_registry.errors import PersistenceError, StaleWriteError
from services.version_registry.models import SnapshotStatus, ToolVersionRecord, UpdateInfo, VersionSnapshot

logger = logging.getLogger(__name__)

VERSIONS_FILENAME = "versions.json"
UPDATE_FILENAME = "update.json"


def empty_snapshot() -> VersionSnapshot:
    return VersionSnapshot(tools=[], updated_at=None, status=SnapshotStatus.error)


def empty_update_info() -> UpdateInfo:
    return UpdateInfo(version=None, update={}, release_notes="", required=False, updated_at=None)


def normalize_tool_record(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map every accepted legacy record shape onto the current field names."""
    record = dict(raw)
    legacy_stale = record.pop("stale", None)
    record["is_stale"] = bool(record.get("is_stale")) or bool(legacy_stale)

    legacy_error = record.pop("error", None)
    if not record.get("last_check_error") and legacy_error:
        record["last_check_error"] = str(legacy_error)

    legacy_checked = record.pop("updated_at", None)
    if record.get("last_check_at") is None and legacy_checked:
        record["last_check_at"] = legacy_checked

    if not record.get("name"):
        record["name"] = record.get("id")
    return record


def normalize_snapshot(raw: Any) -> Dict[str, Any]:
    """Normalize a stored snapshot, dropping tool records that cannot be read.

    A bad record only costs that one tool; the rest of the snapshot survives.
    """
    if not isinstance(raw, dict):
        raise ValueError("version snapshot must be a JSON object")
    tools = raw.get("tools") or []
    if not isinstance(tools, list):
        raise ValueError("tools must be a JSON array")

    seen = set()
    normalized_tools = []
    for index, entry in enumerate(tools):
        if not isinstance(entry, dict):
            logger.warning(f"Skipping tool record #{index}: expected a JSON object, got {entry!r}")
            continue
        try:
            record = ToolVersionRecord.model_validate(normalize_tool_record(entry))
        except ValidationError as exc:
            logger.warning(f"Skipping invalid tool record #{index} ({entry.get('id')!r}): {exc}")
            continue
        if record.id in seen:
            continue
        seen.add(record.id)
        normalized_tools.append(record)

    return {
        "tools": normalized_tools,
        "updated_at": raw.get("updated_at"),
        "status": raw.get("status") or SnapshotStatus.ok.value,
    }


class SnapshotStore:
    def __init__(self, data_dir: Union[str, Path]) -> None:
        self.data_dir = Path(data_dir)
        self.versions_path = self.data_dir / VERSIONS_FILENAME
        self.update_path = self.data_dir / UPDATE_FILENAME
        self._lock = Lock()
        self._latest_versions: Optional[VersionSnapshot] = None

    def ensure_directory(self) -> bool:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error(f"Failed to create data directory {self.data_dir}: {exc}")
            return False
        return True

    # Version snapshot

    def load_versions(self) -> VersionSnapshot:
        """Load the version snapshot, never raising.

        Missing or unreadable documents yield the empty error snapshot, unless
        this instance has already seen a newer snapshot, which is returned
        instead so reads stay monotonic.
        """
        snapshot = self._read_versions_from_disk()
        with self._lock:
            latest = self._latest_versions
            if latest is not None and _is_older(snapshot, latest):
                return latest
            if snapshot.updated_at is not None:
                self._latest_versions = snapshot
            return snapshot

    def save_versions(self, snapshot: VersionSnapshot) -> None:
        with self._lock:
            on_disk = self._read_versions_from_disk(quiet=True)
            for current in (on_disk, self._latest_versions):
                if current is not None and _is_older(snapshot, current):
                    raise StaleWriteError(
                        f"Refusing to overwrite snapshot from {current.updated_at} "
                        f"with older snapshot from {snapshot.updated_at}",
                        path=str(self.versions_path),
                    )
            self._write_atomic(self.versions_path, model_dump(snapshot))
            self._latest_versions = snapshot
        logger.debug(f"Saved version snapshot with {len(snapshot.tools)} tools to {self.versions_path}")

    # Update document

    def load_update_info(self) -> UpdateInfo:
        raw = self._read_json(self.update_path)
        if raw is None:
            return empty_update_info()
        if isinstance(raw, dict):
            raw = {key: value for key, value in raw.items() if value is not None}
        try:
            return UpdateInfo.model_validate(raw)
        except ValidationError as exc:
            logger.error(f"Invalid update document {self.update_path}: {exc}")
            return empty_update_info()

    def save_update_info(self, info: UpdateInfo) -> None:
        with self._lock:
            self._write_atomic(self.update_path, model_dump(info))
        logger.debug(f"Saved update document to {self.update_path}")

    # Internals

    def _read_versions_from_disk(self, *, quiet: bool = False) -> VersionSnapshot:
        raw = self._read_json(self.versions_path, quiet=quiet)
        if raw is None:
            return empty_snapshot()
        try:
            return VersionSnapshot.model_validate(normalize_snapshot(raw))
        except (ValueError, ValidationError) as exc:
            if not quiet:
                logger.error(f"Invalid version snapshot {self.versions_path}: {exc}")
            return empty_snapshot()

    def _read_json(self, path: Path, *, quiet: bool = False) -> Optional[Any]:
        try:
            with open(path, encoding="utf-8") as handle:
                return json.load(handle)
        except FileNotFoundError:
            if not quiet:
                logger.warning(f"Document not found: {path}")
            return None
        except (OSError, ValueError) as exc:
            if not quiet:
                logger.error(f"Failed to read {path}: {exc}")
            return None

    def _write_atomic(self, path: Path, payload: Dict[str, Any]) -> None:
        if not self.ensure_directory():
            raise PersistenceError(f"Data directory unavailable: {self.data_dir}", path=str(path))
        try:
            fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
        except OSError as exc:
            raise PersistenceError(f"Failed to create temp file for {path}: {exc}", path=str(path)) from exc

        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, ensure_ascii=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, path)
        except (OSError, TypeError, ValueError) as exc:
            try:
                temp_path.unlink()
            except FileNotFoundError:
                pass
            raise PersistenceError(f"Failed to write {path}: {exc}", path=str(path)) from exc


def _is_older(candidate: VersionSnapshot, reference: VersionSnapshot) -> bool:
    if reference.updated_at is None:
        return False
    if candidate.updated_at is None:
        return True
    return candidate.updated_at < reference.updated_at
