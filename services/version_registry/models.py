from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from services.common.clock import ensure_utc


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(value)


class SnapshotStatus(str, Enum):
    ok = "ok"
    stale = "stale"
    error = "error"


class ToolVersionRecord(BaseModel):
    id: str
    name: str
    latest_version: Optional[str] = None
    last_check_at: Optional[datetime] = None
    last_check_error: Optional[str] = None
    last_success_at: Optional[datetime] = None
    is_stale: bool = False

    @field_validator("last_check_at", "last_success_at")
    @classmethod
    def _timestamps_in_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class VersionSnapshot(BaseModel):
    tools: List[ToolVersionRecord] = Field(default_factory=list)
    updated_at: Optional[datetime] = None
    status: SnapshotStatus = SnapshotStatus.error

    @field_validator("updated_at")
    @classmethod
    def _updated_at_in_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    def find_tool(self, tool_id: str) -> Optional[ToolVersionRecord]:
        for tool in self.tools:
            if tool.id == tool_id:
                return tool
        return None


class UpdateInfo(BaseModel):
    version: Optional[str] = None
    update: Dict[str, Any] = Field(default_factory=dict)
    release_notes: str = ""
    required: bool = False
    updated_at: Optional[datetime] = None

    @field_validator("updated_at")
    @classmethod
    def _updated_at_in_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class ToolHealth(BaseModel):
    id: str
    name: str
    has_version: bool
    is_stale: bool
    has_error: bool
    last_check_at: Optional[datetime] = None


class HealthView(BaseModel):
    status: SnapshotStatus
    updated_at: Optional[datetime] = None
    tools_count: int
    age_minutes: Optional[int] = None
    tools: List[ToolHealth] = Field(default_factory=list)


@dataclass(frozen=True)
class TrackedTool:
    id: str
    name: str


@dataclass(frozen=True)
class FetchResult:
    version: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, version: str) -> "FetchResult":
        return cls(version=version)

    @classmethod
    def failure(cls, error: str) -> "FetchResult":
        return cls(error=error)

    @property
    def is_success(self) -> bool:
        return self.error is None and bool(self.version)


@dataclass(frozen=True)
class CycleResult:
    started_at: datetime
    finished_at: datetime
    status: Optional[SnapshotStatus] = None
    snapshot: Optional[VersionSnapshot] = None
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class ConditionalResponse:
    etag: str
    max_age: int
    body: Optional[Dict[str, Any]] = None

    @property
    def not_modified(self) -> bool:
        return self.body is None
