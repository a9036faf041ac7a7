"""In-memory caches owned by the usage engine.

``MetadataIndex``   file path -> (mtime, session id) last seen on disk
``AggregateCache``  session id -> usage rows computed for one mtime
``ResultCache``     last full query result, reused for a short TTL
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

from gemini_usage.models import UsageRow


@dataclass
class MetadataEntry:
    mtime_ms: int
    session_id: str


@dataclass
class AggregateCacheEntry:
    updated_at_ms: int
    usage_rows: list[UsageRow]
    last_accessed_ms: int


@dataclass
class ResultCacheEntry:
    last_check_ms: int = 0
    last_result: list[UsageRow] = field(default_factory=list)
    last_limit: Optional[int] = None
    last_since: Optional[int] = None


class MetadataIndex:
    """What the engine last saw for each session file. No TTL."""

    def __init__(self) -> None:
        self._entries: dict[Path, MetadataEntry] = {}

    def get(self, path: Path) -> MetadataEntry | None:
        return self._entries.get(path)

    def set(self, path: Path, entry: MetadataEntry) -> None:
        self._entries[path] = entry

    def delete(self, path: Path) -> None:
        self._entries.pop(path, None)

    def evict_unseen(self, seen_paths: set[Path]) -> int:
        """Drop every path that was not part of the latest enumeration."""
        stale = [path for path in self._entries if path not in seen_paths]
        for path in stale:
            del self._entries[path]
        return len(stale)

    def paths(self) -> Iterator[Path]:
        return iter(list(self._entries))

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class AggregateCache:
    """Per-session usage rows, bounded by entry count (least recently accessed evicted first).

    Callers must check ``updated_at_ms`` against the file's current mtime
    before trusting an entry.
    """

    def __init__(self, max_entries: int) -> None:
        self.max_entries = max(1, max_entries)
        self._entries: dict[str, AggregateCacheEntry] = {}

    def get(self, session_id: str) -> AggregateCacheEntry | None:
        return self._entries.get(session_id)

    def set(self, session_id: str, entry: AggregateCacheEntry) -> None:
        self._entries[session_id] = entry

    def touch(self, session_id: str, now_ms: int) -> None:
        entry = self._entries.get(session_id)
        if entry is not None:
            entry.last_accessed_ms = now_ms

    def evict(self) -> int:
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return 0
        oldest = sorted(self._entries.items(), key=lambda item: item[1].last_accessed_ms)[:overflow]
        for session_id, _ in oldest:
            del self._entries[session_id]
        return overflow

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class ResultCache:
    """Last full (not single-session) query result."""

    def __init__(self, ttl_ms: int) -> None:
        self.ttl_ms = ttl_ms
        self.entry = ResultCacheEntry()

    def lookup(self, limit: int, since: int | None, now_ms: int) -> list[UsageRow] | None:
        entry = self.entry
        if (
            limit == entry.last_limit
            and since == entry.last_since
            and now_ms - entry.last_check_ms < self.ttl_ms
            and len(entry.last_result) > 0
        ):
            return entry.last_result
        return None

    def store(self, result: list[UsageRow], limit: int, since: int | None, now_ms: int) -> None:
        self.entry = ResultCacheEntry(
            last_check_ms=now_ms,
            last_result=result,
            last_limit=limit,
            last_since=since,
        )

    def clear(self) -> None:
        self.entry = ResultCacheEntry()
