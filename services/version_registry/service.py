from __future__ import annotations

from datetime import timedelta
from typing import Optional

from services.common.api import model_dump
from services.common.clock import Clock
from services.version_registry.errors import ToolNotFoundError
from services.version_registry.evaluator import DEFAULT_STALE_THRESHOLD, build_health, etag_for
from services.version_registry.models import ConditionalResponse, HealthView, ToolVersionRecord
from services.version_registry.repository import SnapshotStore

SNAPSHOT_MAX_AGE = 60
UPDATE_INFO_MAX_AGE = 300


class QueryService:
    """Read-only view over the snapshot store. Never writes or triggers a refresh."""

    def __init__(
        self,
        store: SnapshotStore,
        *,
        stale_threshold: timedelta = DEFAULT_STALE_THRESHOLD,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._stale_threshold = stale_threshold
        self._clock = clock or Clock()

    def get_snapshot(self, if_none_match: Optional[str] = None) -> ConditionalResponse:
        body = model_dump(self._store.load_versions())
        return _conditional(body, if_none_match, SNAPSHOT_MAX_AGE)

    def get_tool(self, tool_id: str) -> ToolVersionRecord:
        tool = self._store.load_versions().find_tool(tool_id)
        if tool is None:
            raise ToolNotFoundError(tool_id)
        return tool

    def get_update_info(self, if_none_match: Optional[str] = None) -> ConditionalResponse:
        body = model_dump(self._store.load_update_info())
        return _conditional(body, if_none_match, UPDATE_INFO_MAX_AGE)

    def get_health(self) -> HealthView:
        snapshot = self._store.load_versions()
        return build_health(snapshot, self._clock.now(), self._stale_threshold)


def _conditional(body: dict, if_none_match: Optional[str], max_age: int) -> ConditionalResponse:
    etag = etag_for(body)
    if if_none_match is not None and if_none_match == etag:
        return ConditionalResponse(etag=etag, max_age=max_age)
    return ConditionalResponse(etag=etag, max_age=max_age, body=body)
