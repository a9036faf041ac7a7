"""Gemini CLI agent: one engine and one activity watcher per instance."""
from __future__ import annotations

import logging
from pathlib import Path

from gemini_usage import config
from gemini_usage.engine.activity_watcher import ActivityCallback, ActivityWatcher
from gemini_usage.engine.file_watcher import SessionWatcher
from gemini_usage.engine.sync_engine import SessionUsageEngine
from gemini_usage.models import UsageRow
from gemini_usage.paths import is_installed

logger = logging.getLogger("gemini_usage")


class GeminiCliAgent:
    id = "gemini-cli"
    name = "Gemini CLI"
    command = "gemini"
    provider_id = "google"

    def __init__(
        self,
        home: Path | None = None,
        *,
        result_cache_ttl_ms: int = config.RESULT_CACHE_TTL_MS,
        aggregate_cache_max: int = config.AGGREGATE_CACHE_MAX,
        reconciliation_interval_seconds: float = config.RECONCILIATION_INTERVAL_SECONDS,
        debounce_ms: int = config.WATCH_DEBOUNCE_MS,
    ):
        self.home = home or config.GEMINI_HOME
        self.config_path = self.home
        self.session_path = self.home / "tmp"

        watcher = SessionWatcher(
            self.session_path,
            reconciliation_interval_seconds=reconciliation_interval_seconds,
            debounce_ms=debounce_ms,
        )
        self.engine = SessionUsageEngine(
            self.session_path,
            result_cache_ttl_ms=result_cache_ttl_ms,
            aggregate_cache_max=aggregate_cache_max,
            watcher=watcher,
        )
        self.activity = ActivityWatcher(
            self.session_path,
            session_watcher=watcher,
            debounce_ms=debounce_ms,
            rescan_interval_seconds=reconciliation_interval_seconds,
        )

    def is_installed(self) -> bool:
        return is_installed(self.home)

    async def parse_sessions(
        self,
        limit: int = config.DEFAULT_LIMIT,
        since: int | None = None,
        session_id: str | None = None,
    ) -> list[UsageRow]:
        return await self.engine.parse_sessions(limit=limit, since=since, session_id=session_id)

    async def start_watch(self, callback: ActivityCallback) -> None:
        await self.activity.start(callback)

    async def stop_watch(self) -> None:
        """Stop live activity tailing and the session watcher behind the engine."""
        await self.activity.stop()

    async def shutdown(self) -> None:
        await self.activity.stop()
        await self.engine.close()
        logger.info("%s agent shut down", self.name)
