"""Session file watcher using watchfiles.

Keeps one ``awatch`` loop per ``chats`` directory that marks changed
session files dirty, one loop on the storage root that picks up new
project directories, and a timer that periodically forces a full
reconciliation sweep. Lost or coalesced events are covered by that sweep.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional

from watchfiles import Change, awatch

from gemini_usage import config
from gemini_usage.paths import chats_dir_for, get_chats_dirs, is_session_file_name

logger = logging.getLogger("gemini_usage.watcher")


class SessionWatcher:
    """Dirty-path tracker for the reconciliation engine."""

    def __init__(
        self,
        tmp_root: Path,
        *,
        reconciliation_interval_seconds: float = config.RECONCILIATION_INTERVAL_SECONDS,
        debounce_ms: int = config.WATCH_DEBOUNCE_MS,
    ):
        self.tmp_root = tmp_root
        self.reconciliation_interval_seconds = reconciliation_interval_seconds
        self.debounce_ms = debounce_ms
        self._chats_dir_tasks: dict[Path, asyncio.Task] = {}
        self._root_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._dirty_paths: set[Path] = set()
        self._force_full_reconciliation = False
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def watched_dirs(self) -> list[Path]:
        return list(self._chats_dir_tasks)

    @property
    def force_full_pending(self) -> bool:
        return self._force_full_reconciliation

    @property
    def dirty_count(self) -> int:
        return len(self._dirty_paths)

    async def start(self) -> None:
        """Start the root watcher, per-directory watchers and the sweep timer. Idempotent."""
        if self._running:
            return
        self._running = True
        self._stop_event = asyncio.Event()

        self._root_task = asyncio.create_task(self._watch_root_loop(), name="session-watcher:root")
        for chats_dir in get_chats_dirs(self.tmp_root):
            self.watch_chats_dir(chats_dir)
        self._timer_task = asyncio.create_task(self._reconciliation_timer(), name="session-watcher:timer")
        logger.info("Session watcher started for %s", self.tmp_root)

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

        tasks = [task for task in (self._timer_task, self._root_task) if task is not None]
        tasks.extend(self._chats_dir_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._timer_task = None
        self._root_task = None
        self._chats_dir_tasks.clear()
        self._dirty_paths.clear()
        self._stop_event = None
        if self._running:
            logger.info("Session watcher stopped")
        self._running = False

    def watch_chats_dir(self, chats_dir: Path) -> None:
        """Attach a watcher to a chats directory unless one is already attached."""
        if not self._running or chats_dir in self._chats_dir_tasks:
            return
        self._chats_dir_tasks[chats_dir] = asyncio.create_task(
            self._watch_chats_dir_loop(chats_dir),
            name=f"session-watcher:{chats_dir.parent.name}",
        )

    def drain_dirty_paths(self) -> set[Path]:
        dirty, self._dirty_paths = self._dirty_paths, set()
        return dirty

    def consume_force_full_reconciliation(self) -> bool:
        value, self._force_full_reconciliation = self._force_full_reconciliation, False
        return value

    def request_full_reconciliation(self) -> None:
        self._force_full_reconciliation = True

    def record_changes(self, chats_dir: Path, changes: Iterable[tuple[Change, str]]) -> int:
        """Mark every changed session file under ``chats_dir`` dirty."""
        marked = 0
        for _change_type, path_str in changes:
            name = Path(path_str).name
            if not is_session_file_name(name):
                continue
            # Keyed the same way enumeration builds paths, whatever form the notifier reports.
            self._dirty_paths.add(chats_dir / name)
            marked += 1
        return marked

    def handle_root_changes(self, changes: Iterable[tuple[Change, str]]) -> list[Path]:
        """Start watching the chats directory of any newly created project directory."""
        attached: list[Path] = []
        for change_type, path_str in changes:
            if change_type != Change.added:
                continue
            chats_dir = chats_dir_for(self.tmp_root, Path(path_str).name)
            if chats_dir is None or chats_dir in self._chats_dir_tasks:
                continue
            self.watch_chats_dir(chats_dir)
            if chats_dir in self._chats_dir_tasks:
                attached.append(chats_dir)
        return attached

    async def _watch_chats_dir_loop(self, chats_dir: Path) -> None:
        try:
            async for changes in awatch(
                chats_dir,
                recursive=False,
                debounce=self.debounce_ms,
                stop_event=self._stop_event,
            ):
                marked = self.record_changes(chats_dir, changes)
                if marked:
                    logger.debug("Marked %d session file(s) dirty in %s", marked, chats_dir)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Watch on %s unavailable, relying on periodic sweep: %s", chats_dir, e)
        finally:
            if self._chats_dir_tasks.get(chats_dir) is asyncio.current_task():
                del self._chats_dir_tasks[chats_dir]

    async def _watch_root_loop(self) -> None:
        try:
            async for changes in awatch(
                self.tmp_root,
                recursive=False,
                debounce=self.debounce_ms,
                stop_event=self._stop_event,
            ):
                for chats_dir in self.handle_root_changes(changes):
                    logger.info("Watching new project chats directory %s", chats_dir)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Root watch on %s unavailable: %s", self.tmp_root, e)

    async def _reconciliation_timer(self) -> None:
        while True:
            await asyncio.sleep(self.reconciliation_interval_seconds)
            self._force_full_reconciliation = True
            logger.debug("Full reconciliation sweep scheduled")
