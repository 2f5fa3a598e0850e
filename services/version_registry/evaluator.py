"""Pure cache-validator and staleness computations over stored documents."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel

from services.common.api import model_dump
from services.common.hashes import sha256_json
from services.version_registry.models import (
    HealthView,
    SnapshotStatus,
    ToolHealth,
    ToolVersionRecord,
    VersionSnapshot,
)

DEFAULT_STALE_THRESHOLD = timedelta(minutes=15)


def fingerprint(document: Union[BaseModel, Dict[str, Any]]) -> str:
    """Content hash of the canonical JSON form; key order and whitespace do not matter."""
    payload = model_dump(document) if isinstance(document, BaseModel) else document
    return sha256_json(payload)


def etag_for(document: Union[BaseModel, Dict[str, Any]]) -> str:
    return f'"{fingerprint(document)}"'


def age_minutes(updated_at: Optional[datetime], now: datetime) -> Optional[int]:
    if updated_at is None:
        return None
    return math.floor((now - updated_at).total_seconds() / 60)


def is_snapshot_stale(
    updated_at: Optional[datetime],
    now: datetime,
    threshold: timedelta = DEFAULT_STALE_THRESHOLD,
) -> bool:
    if updated_at is None:
        return True
    return now - updated_at > threshold


def is_tool_stale(record: ToolVersionRecord) -> bool:
    return record.is_stale or bool(record.last_check_error)


def health_status(
    snapshot: VersionSnapshot,
    now: datetime,
    threshold: timedelta = DEFAULT_STALE_THRESHOLD,
) -> SnapshotStatus:
    if is_snapshot_stale(snapshot.updated_at, now, threshold):
        return SnapshotStatus.stale
    return snapshot.status


def tool_health(record: ToolVersionRecord) -> ToolHealth:
    return ToolHealth(
        id=record.id,
        name=record.name,
        has_version=bool(record.latest_version),
        is_stale=record.is_stale,
        has_error=bool(record.last_check_error),
        last_check_at=record.last_check_at,
    )


def build_health(
    snapshot: VersionSnapshot,
    now: datetime,
    threshold: timedelta = DEFAULT_STALE_THRESHOLD,
) -> HealthView:
    return HealthView(
        status=health_status(snapshot, now, threshold),
        updated_at=snapshot.updated_at,
        tools_count=len(snapshot.tools),
        age_minutes=age_minutes(snapshot.updated_at, now),
        tools=[tool_health(record) for record in snapshot.tools],
    )
