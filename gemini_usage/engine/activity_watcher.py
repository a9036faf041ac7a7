"""Live activity watcher.

Tails session files and reports each token-bearing message once, as soon as
it is appended. Existing messages are recorded as a baseline when a
directory is first watched and are never reported.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Iterable, Optional

from watchfiles import Change, awatch

from gemini_usage import config
from gemini_usage.date_utils import now_ms, to_timestamp
from gemini_usage.engine.file_watcher import SessionWatcher
from gemini_usage.engine.tasks import TaskSupervisor
from gemini_usage.models import ActivityUpdate
from gemini_usage.observability import record_activity_tokens
from gemini_usage.parsers.sessions import activity_tokens, iter_token_bearing_messages, read_session_record
from gemini_usage.paths import chats_dir_for, get_chats_dirs, is_session_file_name, list_session_files

logger = logging.getLogger("gemini_usage.activity")

ActivityCallback = Callable[[ActivityUpdate], None]


class ActivityWatcher:
    """Per-file message-id dedup over ``awatch`` change notifications."""

    def __init__(
        self,
        tmp_root: Path,
        *,
        session_watcher: Optional[SessionWatcher] = None,
        debounce_ms: int = config.WATCH_DEBOUNCE_MS,
        rescan_interval_seconds: float = config.RECONCILIATION_INTERVAL_SECONDS,
        clock: Callable[[], int] = now_ms,
    ):
        self.tmp_root = tmp_root
        self.session_watcher = session_watcher
        self.debounce_ms = debounce_ms
        self.rescan_interval_seconds = rescan_interval_seconds
        self._clock = clock
        self._callback: Optional[ActivityCallback] = None
        self._chats_dir_tasks: dict[Path, asyncio.Task] = {}
        self._root_task: Optional[asyncio.Task] = None
        self._rescan_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._seen_message_ids: dict[Path, set[str]] = {}
        self._background = TaskSupervisor("activity")
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    @property
    def watched_dirs(self) -> list[Path]:
        return list(self._chats_dir_tasks)

    def seen_message_ids(self, file_path: Path) -> set[str]:
        return set(self._seen_message_ids.get(file_path, ()))

    async def start(self, callback: ActivityCallback) -> None:
        """Register ``callback`` and begin watching. A second call only swaps the callback."""
        self._callback = callback
        if self._started:
            return
        self._started = True
        self._stop_event = asyncio.Event()

        self._root_task = asyncio.create_task(self._watch_root_loop(), name="activity-watcher:root")
        self.refresh_watches()
        self._rescan_task = asyncio.create_task(self._rescan_timer(), name="activity-watcher:rescan")
        logger.info("Activity watcher started for %s", self.tmp_root)

    async def wait_until_primed(self) -> None:
        await self._background.join()

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

        tasks = list(self._chats_dir_tasks.values())
        tasks.extend(task for task in (self._root_task, self._rescan_task) if task is not None)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._background.cancel_all()

        self._chats_dir_tasks.clear()
        self._root_task = None
        self._rescan_task = None
        self._stop_event = None
        self._seen_message_ids.clear()
        self._callback = None
        if self._started:
            logger.info("Activity watcher stopped")
        self._started = False

        if self.session_watcher is not None and self.session_watcher.is_running:
            await self.session_watcher.stop()

    def refresh_watches(self) -> list[Path]:
        """Attach every chats directory that has no live watch, including ones whose watch ended."""
        attached: list[Path] = []
        for chats_dir in get_chats_dirs(self.tmp_root):
            if self._attach(chats_dir):
                attached.append(chats_dir)
        return attached

    def _attach(self, chats_dir: Path) -> bool:
        if not self._started or chats_dir in self._chats_dir_tasks:
            return False
        self._chats_dir_tasks[chats_dir] = asyncio.create_task(
            self._watch_chats_dir_loop(chats_dir),
            name=f"activity-watcher:{chats_dir.parent.name}",
        )
        self._background.spawn(self.prime_seen_messages(chats_dir), name=f"prime:{chats_dir.parent.name}")
        return True

    async def prime_seen_messages(self, chats_dir: Path) -> None:
        """Record every token-bearing message already present as seen.

        Files that already have a baseline keep it, so messages appended while a
        directory was unwatched are still reported on the next change.
        """
        entries = list_session_files(chats_dir)
        if entries is None:
            return
        for file_path in entries:
            if file_path in self._seen_message_ids:
                continue
            record = read_session_record(file_path)
            if record is None:
                continue
            self._seen_message_ids[file_path] = {message.id for message in iter_token_bearing_messages(record)}
        logger.debug("Primed %d session file(s) in %s", len(entries), chats_dir)

    async def process_session_delta(self, file_path: Path) -> int:
        """Re-read one session file and report messages not reported before."""
        callback = self._callback
        if callback is None:
            return 0

        record = read_session_record(file_path)
        if record is None:
            return 0

        seen_ids = self._seen_message_ids.setdefault(file_path, set())
        emitted = 0
        for message in iter_token_bearing_messages(record):
            if message.id in seen_ids:
                continue
            seen_ids.add(message.id)

            update = ActivityUpdate(
                sessionId=record.sessionId,
                messageId=message.id,
                tokens=activity_tokens(message),
                timestamp=to_timestamp(message.timestamp, self._clock()),
            )
            record_activity_tokens(token_input=update.tokens.input, token_output=update.tokens.output)
            try:
                callback(update)
            except Exception:
                logger.exception("Activity callback failed for %s/%s", record.sessionId, message.id)
            emitted += 1
        return emitted

    async def handle_chats_changes(self, chats_dir: Path, changes: Iterable[tuple[Change, str]]) -> None:
        """Report new messages for each changed session file; one failing file never stops the rest."""
        change_types: dict[str, set[Change]] = {}
        for change_type, path_str in changes:
            change_types.setdefault(Path(path_str).name, set()).add(change_type)

        for name in sorted(change_types):
            if not is_session_file_name(name):
                continue
            file_path = chats_dir / name
            if Change.deleted in change_types[name] and not file_path.exists():
                self._seen_message_ids.pop(file_path, None)
                continue
            try:
                await self.process_session_delta(file_path)
            except Exception:
                logger.exception("Failed to process activity for %s", file_path)

    def handle_root_changes(self, changes: Iterable[tuple[Change, str]]) -> list[Path]:
        attached: list[Path] = []
        for change_type, path_str in changes:
            if change_type != Change.added:
                continue
            chats_dir = chats_dir_for(self.tmp_root, Path(path_str).name)
            if chats_dir is not None and self._attach(chats_dir):
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
                await self.handle_chats_changes(chats_dir, changes)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Activity watch on %s unavailable: %s", chats_dir, e)
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
                    logger.info("Tailing new project chats directory %s", chats_dir)
                for chats_dir in self.refresh_watches():
                    logger.info("Re-attached activity watch on %s", chats_dir)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Activity root watch on %s unavailable: %s", self.tmp_root, e)

    async def _rescan_timer(self) -> None:
        while True:
            await asyncio.sleep(self.rescan_interval_seconds)
            for chats_dir in self.refresh_watches():
                logger.info("Re-attached activity watch on %s", chats_dir)
