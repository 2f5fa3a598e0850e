from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Sequence

from services.common.clock import Clock
from services.version_registry.errors import ConfigError
from services.version_registry.fetchers import (
    DisabledFetcher,
    FetcherAdapter,
    FetcherRegistry,
    import_object,
    load_fetcher,
)
from services.version_registry.models import TrackedTool
from services.version_registry.repository import SnapshotStore
from services.version_registry.service import QueryService
from services.version_registry.updater import UpdateInfoSource, VersionUpdater

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VersionApiConfig:
    host: str = "127.0.0.1"
    port: int = 3100
    data_dir: str = "data"
    enable_scheduler: bool = True
    refresh_interval_minutes: float = 10.0
    stale_threshold_minutes: float = 15.0
    cycle_timeout_seconds: float = 120.0
    fetch_workers: int = 8
    tools_file: Optional[str] = None
    fetcher_path: Optional[str] = None
    update_source_path: Optional[str] = None
    log_level: str = "INFO"

    @property
    def refresh_interval(self) -> timedelta:
        return timedelta(minutes=self.refresh_interval_minutes)

    @property
    def stale_threshold(self) -> timedelta:
        return timedelta(minutes=self.stale_threshold_minutes)

    @property
    def cycle_timeout(self) -> timedelta:
        return timedelta(seconds=self.cycle_timeout_seconds)


@dataclass(frozen=True)
class VersionRegistryComponents:
    store: SnapshotStore
    updater: VersionUpdater
    query_service: QueryService


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def load_version_api_config() -> VersionApiConfig:
    return VersionApiConfig(
        host=os.getenv("HOST", VersionApiConfig.host),
        port=_env_number("PORT", VersionApiConfig.port, int),
        data_dir=os.getenv("DATA_DIR", VersionApiConfig.data_dir),
        enable_scheduler=os.getenv("ENABLE_CRON", "true").strip().lower() != "false",
        refresh_interval_minutes=_env_number(
            "REFRESH_INTERVAL_MINUTES", VersionApiConfig.refresh_interval_minutes, float
        ),
        stale_threshold_minutes=_env_number(
            "STALE_THRESHOLD_MINUTES", VersionApiConfig.stale_threshold_minutes, float
        ),
        cycle_timeout_seconds=_env_number("CYCLE_TIMEOUT_SECONDS", VersionApiConfig.cycle_timeout_seconds, float),
        fetch_workers=_env_number("FETCH_WORKERS", VersionApiConfig.fetch_workers, int),
        tools_file=os.getenv("TOOLS_FILE") or None,
        fetcher_path=os.getenv("VERSION_FETCHER") or None,
        update_source_path=os.getenv("UPDATE_INFO_SOURCE") or None,
        log_level=os.getenv("LOG_LEVEL", VersionApiConfig.log_level),
    )


def load_tracked_tools(path: str) -> List[TrackedTool]:
    """Read the tracked tool list: a JSON array of ``{"id": ..., "name": ...}`` objects."""
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Cannot read tools file {path}: {exc}") from exc
    if not isinstance(raw, list):
        raise ConfigError(f"Tools file {path} must contain a JSON array")

    tools: List[TrackedTool] = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("id"):
            raise ConfigError(f"Invalid tool entry in {path}: {entry!r}")
        tool_id = str(entry["id"])
        tools.append(TrackedTool(id=tool_id, name=str(entry.get("name") or tool_id)))
    return tools


def build_version_registry(
    config: Optional[VersionApiConfig] = None,
    *,
    fetcher: Optional[FetcherAdapter] = None,
    tools: Optional[Sequence[TrackedTool]] = None,
    update_source: Optional[UpdateInfoSource] = None,
    clock: Optional[Clock] = None,
) -> VersionRegistryComponents:
    cfg = config or load_version_api_config()

    if fetcher is None:
        if cfg.fetcher_path:
            fetcher = load_fetcher(cfg.fetcher_path)
        else:
            logger.warning("No VERSION_FETCHER configured; every tool check will report an error")
            fetcher = DisabledFetcher()

    if tools is None:
        if cfg.tools_file:
            tools = load_tracked_tools(cfg.tools_file)
        elif isinstance(fetcher, FetcherRegistry):
            tools = [TrackedTool(id=tool_id, name=tool_id) for tool_id in fetcher.tool_ids()]
        else:
            tools = []

    if update_source is None and cfg.update_source_path:
        update_source = import_object(cfg.update_source_path)

    store = SnapshotStore(cfg.data_dir)
    updater = VersionUpdater(
        store=store,
        fetcher=fetcher,
        tools=tools,
        update_source=update_source,
        refresh_interval=cfg.refresh_interval,
        stale_threshold=cfg.stale_threshold,
        cycle_timeout=cfg.cycle_timeout,
        max_workers=cfg.fetch_workers,
        clock=clock,
    )
    query_service = QueryService(store, stale_threshold=cfg.stale_threshold, clock=clock)
    return VersionRegistryComponents(store=store, updater=updater, query_service=query_service)
