"""Periodic refresh of the version snapshot.

One ``VersionUpdater`` owns the scheduler and the "cycle running" flag.
``run_cycle()`` performs exactly one refresh synchronously; ``start()`` runs a
cycle right away and then on a fixed interval through APScheduler, skipping any
tick that fires while a cycle is still in progress.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import ValidationError

from services.common.api import model_dump
from services.common.clock import Clock
from services.version_registry.errors import PersistenceError
from services.version_registry.evaluator import DEFAULT_STALE_THRESHOLD
from services.version_registry.fetchers import FetcherAdapter, coerce_fetch_result
from services.version_registry.models import (
    CycleResult,
    FetchResult,
    SnapshotStatus,
    ToolVersionRecord,
    TrackedTool,
    UpdateInfo,
    VersionSnapshot,
)
from services.version_registry.repository import SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = timedelta(minutes=10)
DEFAULT_CYCLE_TIMEOUT = timedelta(seconds=120)

UpdateInfoSource = Callable[[], Any]


class VersionUpdater:
    JOB_ID = "version-refresh"

    def __init__(
        self,
        *,
        store: SnapshotStore,
        fetcher: FetcherAdapter,
        tools: Sequence[TrackedTool],
        update_source: Optional[UpdateInfoSource] = None,
        refresh_interval: timedelta = DEFAULT_REFRESH_INTERVAL,
        stale_threshold: timedelta = DEFAULT_STALE_THRESHOLD,
        cycle_timeout: timedelta = DEFAULT_CYCLE_TIMEOUT,
        max_workers: int = 8,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._tools = _unique_tools(tools)
        self._update_source = update_source
        self._refresh_interval = refresh_interval
        self._stale_threshold = stale_threshold
        self._cycle_timeout = cycle_timeout
        self._max_workers = max(1, max_workers)
        self._clock = clock or Clock()
        self._cycle_lock = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def tools(self) -> List[TrackedTool]:
        return list(self._tools)

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_lock.locked()

    def next_run_time(self) -> Optional[datetime]:
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(self.JOB_ID)
        return job.next_run_time if job else None

    def start(self, *, run_immediately: bool = True) -> None:
        """Schedule periodic refreshes; the first one fires now unless told otherwise."""
        if self._scheduler is not None:
            logger.warning("Version updater already running")
            return

        scheduler = BackgroundScheduler(timezone="UTC")
        job_options: Dict[str, Any] = {}
        if run_immediately:
            job_options["next_run_time"] = datetime.now(tz=timezone.utc)
        scheduler.add_job(
            func=self._scheduled_cycle,
            trigger=IntervalTrigger(seconds=self._refresh_interval.total_seconds(), timezone="UTC"),
            id=self.JOB_ID,
            name="Version snapshot refresh",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **job_options,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            f"Version updater started: {len(self._tools)} tools, "
            f"every {self._refresh_interval.total_seconds() / 60:g} minutes"
        )

    def stop(self, *, wait: bool = True) -> None:
        if self._scheduler is None:
            logger.warning("Version updater not running")
            return
        logger.info("Stopping version updater")
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None

    def run_cycle(self) -> CycleResult:
        if not self._cycle_lock.acquire(blocking=False):
            now = self._clock.now()
            logger.warning("Refresh cycle already in progress, skipping")
            return CycleResult(started_at=now, finished_at=now, skipped=True)
        try:
            return self._run_cycle_locked()
        finally:
            self._cycle_lock.release()

    def _scheduled_cycle(self) -> None:
        try:
            self.run_cycle()
        except Exception:  # pragma: no cover - keeps the scheduler thread alive
            logger.exception("Scheduled refresh cycle failed")

    def _run_cycle_locked(self) -> CycleResult:
        started_at = self._clock.now()
        logger.info(f"Refresh cycle started for {len(self._tools)} tools")
        previous = self._store.load_versions()

        results = self._fetch_all()

        now = self._clock.now()
        if previous.updated_at is not None and now < previous.updated_at:
            now = previous.updated_at

        records = [
            self._merge(tool, previous.find_tool(tool.id), results[tool.id], now)
            for tool in self._tools
        ]
        status = SnapshotStatus.stale if any(record.is_stale for record in records) else SnapshotStatus.ok
        snapshot = VersionSnapshot(tools=records, updated_at=now, status=status)
        succeeded = [tool_id for tool_id, result in results.items() if result.is_success]
        failed = {
            tool_id: result.error or "empty version"
            for tool_id, result in results.items()
            if not result.is_success
        }

        self._refresh_update_info(now)

        try:
            self._store.save_versions(snapshot)
        except PersistenceError as exc:
            logger.error(f"Refresh cycle could not persist snapshot: {exc}")
            return CycleResult(
                started_at=started_at,
                finished_at=self._clock.now(),
                status=SnapshotStatus.error,
                snapshot=snapshot,
                succeeded=succeeded,
                failed=failed,
                error=str(exc),
            )

        logger.info(
            f"Refresh cycle finished with status={status.value}: "
            f"{len(succeeded)} succeeded, {len(failed)} failed"
        )
        return CycleResult(
            started_at=started_at,
            finished_at=self._clock.now(),
            status=status,
            snapshot=snapshot,
            succeeded=succeeded,
            failed=failed,
        )

    def _fetch_all(self) -> Dict[str, FetchResult]:
        """Fetch every tracked tool on daemon worker threads, bounded by the cycle timeout.

        Fetches still running at the deadline are abandoned; their threads never
        hold up interpreter exit.
        """
        results: Dict[str, FetchResult] = {}
        if not self._tools:
            return results

        timeout_s = self._cycle_timeout.total_seconds()
        pending: "queue.Queue[str]" = queue.Queue()
        for tool in self._tools:
            pending.put(tool.id)
        finished: "queue.Queue[Tuple[str, FetchResult]]" = queue.Queue()
        cancelled = threading.Event()

        for index in range(min(self._max_workers, len(self._tools))):
            threading.Thread(
                target=self._fetch_worker,
                args=(pending, finished, cancelled),
                name=f"version-fetch-{index}",
                daemon=True,
            ).start()

        deadline = time.monotonic() + timeout_s
        while len(results) < len(self._tools):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                tool_id, result = finished.get(timeout=remaining)
            except queue.Empty:
                break
            results[tool_id] = result
        cancelled.set()

        unfinished = [tool.id for tool in self._tools if tool.id not in results]
        if unfinished:
            logger.error(f"Refresh cycle timed out after {timeout_s:g}s; unfinished tools: {unfinished}")
        for tool_id in unfinished:
            results[tool_id] = FetchResult.failure(f"fetch timed out after {timeout_s:g}s")
        return results

    def _fetch_worker(
        self,
        pending: "queue.Queue[str]",
        finished: "queue.Queue[Tuple[str, FetchResult]]",
        cancelled: threading.Event,
    ) -> None:
        while not cancelled.is_set():
            try:
                tool_id = pending.get_nowait()
            except queue.Empty:
                return
            finished.put((tool_id, self._fetch_one(tool_id)))

    def _fetch_one(self, tool_id: str) -> FetchResult:
        try:
            result = coerce_fetch_result(self._fetcher.fetch(tool_id))
        except Exception as exc:
            logger.warning(f"Fetch failed for {tool_id}: {exc.__class__.__name__}: {exc}")
            return FetchResult.failure(f"{exc.__class__.__name__}: {exc}")
        if not result.is_success:
            logger.warning(f"Fetch failed for {tool_id}: {result.error}")
        return result

    def _merge(
        self,
        tool: TrackedTool,
        previous: Optional[ToolVersionRecord],
        result: FetchResult,
        now: datetime,
    ) -> ToolVersionRecord:
        if result.is_success:
            return ToolVersionRecord(
                id=tool.id,
                name=tool.name,
                latest_version=result.version,
                last_check_at=now,
                last_check_error=None,
                last_success_at=now,
                is_stale=False,
            )

        last_success_at = _last_success(previous)
        return ToolVersionRecord(
            id=tool.id,
            name=tool.name,
            latest_version=previous.latest_version if previous else None,
            last_check_at=now,
            last_check_error=result.error or "empty version",
            last_success_at=last_success_at,
            is_stale=last_success_at is None or now - last_success_at > self._stale_threshold,
        )

    def _refresh_update_info(self, now: datetime) -> None:
        if self._update_source is None:
            return
        try:
            raw = self._update_source()
            info = raw if isinstance(raw, UpdateInfo) else UpdateInfo.model_validate(raw)
        except ValidationError as exc:
            logger.error(f"Update source returned an invalid document: {exc}")
            return
        except Exception as exc:
            logger.error(f"Update source failed: {exc.__class__.__name__}: {exc}")
            return

        if info.updated_at is None:
            stored = self._store.load_update_info()
            if stored.updated_at is not None and _same_update_content(stored, info):
                logger.debug("Update document unchanged; keeping stored timestamp")
                return
            info = info.model_copy(update={"updated_at": now})
        try:
            self._store.save_update_info(info)
        except PersistenceError as exc:
            logger.error(f"Could not persist update document: {exc}")


def _unique_tools(tools: Sequence[TrackedTool]) -> List[TrackedTool]:
    seen = set()
    unique: List[TrackedTool] = []
    for tool in tools:
        if tool.id in seen:
            logger.warning(f"Ignoring duplicate tracked tool id: {tool.id}")
            continue
        seen.add(tool.id)
        unique.append(tool)
    return unique


def _same_update_content(stored: UpdateInfo, fresh: UpdateInfo) -> bool:
    stored_content = model_dump(stored)
    fresh_content = model_dump(fresh)
    stored_content.pop("updated_at", None)
    fresh_content.pop("updated_at", None)
    return stored_content == fresh_content


def _last_success(previous: Optional[ToolVersionRecord]) -> Optional[datetime]:
    if previous is None:
        return None
    if previous.last_success_at is not None:
        return previous.last_success_at
    if previous.latest_version and not previous.last_check_error:
        return previous.last_check_at
    return None
