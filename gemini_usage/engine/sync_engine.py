"""Incremental mtime-based session usage engine.

Reconciles the on-disk session files with the in-memory metadata index and
aggregate cache, re-reading only files that are dirty, new, or due for the
periodic full sweep.
"""
from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from gemini_usage import config
from gemini_usage.date_utils import mtime_ms, now_ms
from gemini_usage.engine.caches import (
    AggregateCache,
    AggregateCacheEntry,
    MetadataEntry,
    MetadataIndex,
    ResultCache,
)
from gemini_usage.engine.file_watcher import SessionWatcher
from gemini_usage.models import UsageRow
from gemini_usage.observability import record_parser_failure, record_reconciliation, start_span
from gemini_usage.parsers.sessions import parse_session_file_rows, read_session_record
from gemini_usage.paths import get_chats_dirs, list_session_files

logger = logging.getLogger("gemini_usage.sync")


@dataclass
class SessionFile:
    session_id: str
    file_path: Path
    mtime_ms: int


class SessionUsageEngine:
    """Owns the metadata index, aggregate cache, result cache and session watcher."""

    def __init__(
        self,
        tmp_root: Path | None = None,
        *,
        result_cache_ttl_ms: int = config.RESULT_CACHE_TTL_MS,
        aggregate_cache_max: int = config.AGGREGATE_CACHE_MAX,
        watcher: Optional[SessionWatcher] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.tmp_root = tmp_root or config.GEMINI_TMP_DIR
        self.metadata_index = MetadataIndex()
        self.aggregate_cache = AggregateCache(aggregate_cache_max)
        self.result_cache = ResultCache(result_cache_ttl_ms)
        self.watcher = watcher or SessionWatcher(self.tmp_root)
        self._clock = clock
        self._last_stats: dict[str, Any] = {}
        self._pass_count = 0

    async def parse_sessions(
        self,
        limit: int = config.DEFAULT_LIMIT,
        since: int | None = None,
        session_id: str | None = None,
    ) -> list[UsageRow]:
        """Return usage rows, most recently modified session file first.

        ``session_id`` restricts the result to one session and bypasses the
        result cache in both directions. ``since`` keeps only files modified
        at or after that epoch-millisecond timestamp.
        """
        if not self.tmp_root.exists():
            logger.debug("No Gemini CLI tmp directory found at %s", self.tmp_root)
            return []

        await self.watcher.start()

        now = self._clock()
        if not session_id:
            cached = self.result_cache.lookup(limit, since, now)
            if cached is not None:
                logger.debug("Using cached sessions (within TTL): %d rows", len(cached))
                return cached

        t0 = time.monotonic()
        with start_span("gemini_usage.reconcile", {"session_id": session_id, "since": since}):
            rows, stats = self._reconcile(now, since, session_id)
        duration_ms = (time.monotonic() - t0) * 1000

        if not session_id:
            self.result_cache.store(rows, limit, since, self._clock())

        stats["durationMs"] = int(duration_ms)
        self._pass_count += 1
        self._last_stats = stats
        record_reconciliation("full" if stats["fullSweep"] else "incremental", duration_ms)
        logger.debug("Parsed sessions: %s", stats)
        return rows

    def request_full_reconciliation(self) -> None:
        self.watcher.request_full_reconciliation()
        self.result_cache.clear()

    def get_observability_snapshot(self) -> dict[str, Any]:
        return {
            "passCount": self._pass_count,
            "lastPass": copy.deepcopy(self._last_stats),
            "metadataIndexSize": len(self.metadata_index),
            "aggregateCacheSize": len(self.aggregate_cache),
            "watcherRunning": self.watcher.is_running,
            "watchedDirCount": len(self.watcher.watched_dirs),
            "pendingDirtyPaths": self.watcher.dirty_count,
            "fullSweepPending": self.watcher.force_full_pending,
        }

    async def close(self) -> None:
        await self.watcher.stop()

    def _reconcile(
        self,
        now: int,
        since: int | None,
        session_id: str | None,
    ) -> tuple[list[UsageRow], dict[str, Any]]:
        dirty_paths = self.watcher.drain_dirty_paths()
        needs_full_stat = self.watcher.consume_force_full_reconciliation()
        if needs_full_stat:
            logger.debug("Full reconciliation sweep triggered")

        stats: dict[str, Any] = {
            "fullSweep": needs_full_stat,
            "statChecks": 0,
            "statSkips": 0,
            "dirtyHits": 0,
            "parseFailures": 0,
            "evictedIndexEntries": 0,
            "aggregateCacheHits": 0,
            "aggregateCacheMisses": 0,
        }

        session_files = self._collect_session_files(dirty_paths, needs_full_stat, since, session_id, stats)
        session_files.sort(key=lambda f: f.mtime_ms, reverse=True)

        sessions: list[UsageRow] = []
        for file in session_files:
            cached = self.aggregate_cache.get(file.session_id)
            if cached is not None and cached.updated_at_ms == file.mtime_ms:
                self.aggregate_cache.touch(file.session_id, now)
                stats["aggregateCacheHits"] += 1
                sessions.extend(cached.usage_rows)
                continue

            stats["aggregateCacheMisses"] += 1
            record = read_session_record(file.file_path)
            if record is None:
                continue

            usage_rows = parse_session_file_rows(record, file.mtime_ms)
            self.aggregate_cache.set(
                file.session_id,
                AggregateCacheEntry(updated_at_ms=file.mtime_ms, usage_rows=usage_rows, last_accessed_ms=now),
            )
            sessions.extend(usage_rows)

        self.aggregate_cache.evict()

        stats.update({
            "count": len(sessions),
            "sessionFiles": len(session_files),
            "metadataIndexSize": len(self.metadata_index),
            "aggregateCacheSize": len(self.aggregate_cache),
        })
        return sessions, stats

    def _collect_session_files(
        self,
        dirty_paths: set[Path],
        needs_full_stat: bool,
        since: int | None,
        session_id: str | None,
        stats: dict[str, Any],
    ) -> list[SessionFile]:
        session_files: list[SessionFile] = []
        seen_file_paths: set[Path] = set()

        def _include(sid: str, file_path: Path, file_mtime: int) -> None:
            if session_id and sid != session_id:
                return
            if since is None or file_mtime >= since:
                session_files.append(SessionFile(session_id=sid, file_path=file_path, mtime_ms=file_mtime))

        for chats_dir in get_chats_dirs(self.tmp_root):
            self.watcher.watch_chats_dir(chats_dir)

            entries = list_session_files(chats_dir)
            if entries is None:
                continue

            for file_path in entries:
                seen_file_paths.add(file_path)

                is_dirty = file_path in dirty_paths
                if is_dirty:
                    stats["dirtyHits"] += 1

                metadata = self.metadata_index.get(file_path)
                if session_id and metadata and metadata.session_id != session_id:
                    continue

                if not is_dirty and not needs_full_stat and metadata:
                    stats["statSkips"] += 1
                    _include(metadata.session_id, file_path, metadata.mtime_ms)
                    continue

                stats["statChecks"] += 1
                try:
                    file_mtime = mtime_ms(file_path.stat())
                except OSError:
                    self.metadata_index.delete(file_path)
                    continue

                if metadata and metadata.mtime_ms == file_mtime:
                    _include(metadata.session_id, file_path, file_mtime)
                    continue

                record = read_session_record(file_path)
                if record is None or not record.sessionId:
                    stats["parseFailures"] += 1
                    record_parser_failure("gemini_session")
                    self.metadata_index.delete(file_path)
                    continue

                self.metadata_index.set(file_path, MetadataEntry(mtime_ms=file_mtime, session_id=record.sessionId))
                _include(record.sessionId, file_path, file_mtime)

        stats["evictedIndexEntries"] = self.metadata_index.evict_unseen(seen_file_paths)
        return session_files
