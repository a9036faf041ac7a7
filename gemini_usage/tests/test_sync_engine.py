import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from watchfiles import Change

from helpers import (
    BASE_MTIME_MS,
    gemini_message,
    idle_awatch,
    session_record,
    session_text_with_count,
    set_mtime,
    write_session,
)

from gemini_usage.engine.sync_engine import SessionUsageEngine
from gemini_usage.parsers.sessions import read_session_record

T1 = BASE_MTIME_MS
T2 = BASE_MTIME_MS + 60_000


class SessionUsageEngineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.tmp_root = Path(tmpdir.name) / "tmp"
        self.chats_dir = self.tmp_root / "hash-1" / "chats"
        self.chats_dir.mkdir(parents=True)
        self.now = 50_000

        patcher = patch("gemini_usage.engine.file_watcher.awatch", idle_awatch)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _engine(self, **kwargs) -> SessionUsageEngine:
        kwargs.setdefault("result_cache_ttl_ms", 0)
        engine = SessionUsageEngine(self.tmp_root, clock=lambda: self.now, **kwargs)
        self.addAsyncCleanup(engine.close)
        return engine

    def _write(self, name, session_id, messages, mtime_ms, chats_dir=None, **extra) -> Path:
        return write_session(chats_dir or self.chats_dir, name, session_record(session_id, messages, **extra), mtime_ms)

    def _write_scenario(self) -> tuple[Path, Path]:
        a = self._write("session-a.json", "S-a", [gemini_message("m1", 10, 5, 0)], T1)
        b = self._write("session-b.json", "S-b", [gemini_message("m2", 3, 1, 2)], T2)
        return a, b

    async def test_discovers_every_session_file_once(self) -> None:
        self._write("session-a.json", "S-a", [gemini_message("m1")], T1)
        self._write("session-b.json", "S-b", [gemini_message("m2")], T1)
        self._write("session-c.json", "S-c", [gemini_message("m3")], T1, chats_dir=self.tmp_root / "hash-2" / "chats")
        self._write("notes.json", "S-x", [gemini_message("m4")], T1)
        self._write("session-d.txt", "S-y", [gemini_message("m5")], T1)
        (self.tmp_root / "hash-3").mkdir()

        engine = self._engine()
        rows = await engine.parse_sessions()

        self.assertEqual(sorted(row.sessionId for row in rows), ["S-a", "S-b", "S-c"])
        self.assertEqual(len(engine.metadata_index), 3)

    async def test_end_to_end_rows_are_newest_first_with_optional_cache_read(self) -> None:
        self._write_scenario()
        engine = self._engine()

        rows = await engine.parse_sessions()

        self.assertEqual([row.sessionId for row in rows], ["S-b", "S-a"])
        self.assertEqual(rows[0].tokens.cacheRead, 2)
        self.assertEqual(rows[0].model_dump()["tokens"], {"input": 3, "output": 1, "cacheRead": 2})
        self.assertEqual(rows[1].model_dump()["tokens"], {"input": 10, "output": 5})
        self.assertEqual(rows[0].sessionUpdatedAt, T2)

    async def test_rows_within_a_file_keep_message_order(self) -> None:
        self._write("session-a.json", "S-a", [gemini_message("m1", 1), gemini_message("m2", 2), gemini_message("m3", 3)], T1)
        self._write("session-b.json", "S-b", [gemini_message("m9", 9)], T2)

        rows = await self._engine().parse_sessions()

        self.assertEqual([row.tokens.input for row in rows], [9, 1, 2, 3])

    async def test_repeated_query_within_ttl_returns_identical_result_without_io(self) -> None:
        self._write_scenario()
        engine = self._engine(result_cache_ttl_ms=2000)

        first = await engine.parse_sessions(limit=100)
        self.now += 500
        with patch("gemini_usage.engine.sync_engine.read_session_record") as reader:
            second = await engine.parse_sessions(limit=100)

        self.assertIs(second, first)
        reader.assert_not_called()

    async def test_result_cache_expires_and_respects_parameters(self) -> None:
        self._write_scenario()
        engine = self._engine(result_cache_ttl_ms=2000)

        first = await engine.parse_sessions(limit=100)
        different_limit = await engine.parse_sessions(limit=10)
        self.assertIsNot(different_limit, first)

        self.now += 5000
        expired = await engine.parse_sessions(limit=10)
        self.assertIsNot(expired, different_limit)
        self.assertEqual(expired, first)

    async def test_unchanged_files_are_not_reparsed(self) -> None:
        self._write_scenario()
        engine = self._engine()
        await engine.parse_sessions()

        with patch("gemini_usage.engine.sync_engine.read_session_record", wraps=read_session_record) as reader:
            rows = await engine.parse_sessions()

        reader.assert_not_called()
        self.assertEqual(len(rows), 2)
        last_pass = engine.get_observability_snapshot()["lastPass"]
        self.assertEqual(last_pass["statSkips"], 2)
        self.assertEqual(last_pass["aggregateCacheHits"], 2)

    async def test_dirty_file_with_new_mtime_is_reread(self) -> None:
        a, _ = self._write_scenario()
        engine = self._engine()
        await engine.parse_sessions()

        self._write("session-a.json", "S-a", [gemini_message("m1", 99, 5, 0)], T2 + 1000)
        engine.watcher.record_changes(self.chats_dir, [(Change.modified, str(a))])
        rows = await engine.parse_sessions()

        self.assertEqual(rows[0].sessionId, "S-a")
        self.assertEqual(rows[0].tokens.input, 99)
        self.assertEqual(rows[0].sessionUpdatedAt, T2 + 1000)
        self.assertEqual(engine.get_observability_snapshot()["lastPass"]["dirtyHits"], 1)

    async def test_content_change_without_mtime_change_may_serve_cached_rows(self) -> None:
        a, _ = self._write_scenario()
        engine = self._engine()
        await engine.parse_sessions()

        self._write("session-a.json", "S-a", [gemini_message("m1", 99, 5, 0)], T1)
        engine.watcher.record_changes(self.chats_dir, [(Change.modified, str(a))])
        rows = await engine.parse_sessions()

        self.assertEqual(rows[1].tokens.input, 10)

    async def test_missed_event_is_recovered_by_full_sweep(self) -> None:
        self._write_scenario()
        engine = self._engine()
        await engine.parse_sessions()

        self._write("session-a.json", "S-a", [gemini_message("m1", 42, 5, 0)], T2 + 1000)
        stale = await engine.parse_sessions()
        self.assertEqual(stale[1].tokens.input, 10)

        engine.request_full_reconciliation()
        rows = await engine.parse_sessions()
        self.assertEqual(rows[0].tokens.input, 42)
        self.assertTrue(engine.get_observability_snapshot()["lastPass"]["fullSweep"])

        await engine.parse_sessions()
        self.assertFalse(engine.get_observability_snapshot()["lastPass"]["fullSweep"])

    async def test_full_sweep_with_unchanged_mtime_does_not_reparse(self) -> None:
        self._write_scenario()
        engine = self._engine()
        await engine.parse_sessions()

        engine.request_full_reconciliation()
        with patch("gemini_usage.engine.sync_engine.read_session_record", wraps=read_session_record) as reader:
            rows = await engine.parse_sessions()

        reader.assert_not_called()
        self.assertEqual(len(rows), 2)
        self.assertEqual(engine.get_observability_snapshot()["lastPass"]["statChecks"], 2)

    async def test_deleted_file_is_evicted_from_index_and_results(self) -> None:
        a, b = self._write_scenario()
        engine = self._engine()
        await engine.parse_sessions()
        self.assertIn(a, engine.metadata_index)

        a.unlink()
        engine.request_full_reconciliation()
        rows = await engine.parse_sessions()

        self.assertNotIn(a, engine.metadata_index)
        self.assertIn(b, engine.metadata_index)
        self.assertEqual([row.sessionId for row in rows], ["S-b"])
        again = await engine.parse_sessions()
        self.assertEqual([row.sessionId for row in again], ["S-b"])

    async def test_since_filter_is_inclusive(self) -> None:
        self._write_scenario()
        engine = self._engine()

        self.assertEqual([row.sessionId for row in await engine.parse_sessions(since=T2)], ["S-b"])
        self.assertEqual([row.sessionId for row in await engine.parse_sessions(since=T1)], ["S-b", "S-a"])
        self.assertEqual(await engine.parse_sessions(since=T2 + 1), [])

    async def test_single_session_query_bypasses_result_cache(self) -> None:
        self._write_scenario()
        engine = self._engine(result_cache_ttl_ms=60_000)

        full = await engine.parse_sessions()
        single = await engine.parse_sessions(session_id="S-a")

        self.assertEqual([row.sessionId for row in single], ["S-a"])
        self.assertIs(engine.result_cache.entry.last_result, full)
        self.assertIs(await engine.parse_sessions(), full)

    async def test_single_session_query_on_cold_index(self) -> None:
        self._write_scenario()
        engine = self._engine()

        rows = await engine.parse_sessions(session_id="S-b")

        self.assertEqual([row.sessionId for row in rows], ["S-b"])
        self.assertEqual(len(engine.metadata_index), 2)
        self.assertEqual(engine.result_cache.entry.last_result, [])

    async def test_unreadable_and_anonymous_files_contribute_nothing(self) -> None:
        good = self._write("session-good.json", "S-good", [gemini_message("m1")], T1)
        corrupt = write_session(self.chats_dir, "session-corrupt.json", "{not json", T1)
        anonymous = write_session(self.chats_dir, "session-anon.json", {"messages": [gemini_message("m2")]}, T1)

        engine = self._engine()
        rows = await engine.parse_sessions()

        self.assertEqual([row.sessionId for row in rows], ["S-good"])
        self.assertIn(good, engine.metadata_index)
        self.assertNotIn(corrupt, engine.metadata_index)
        self.assertNotIn(anonymous, engine.metadata_index)
        self.assertEqual(engine.get_observability_snapshot()["lastPass"]["parseFailures"], 2)

    async def test_non_finite_token_counts_do_not_break_queries(self) -> None:
        self._write("session-good.json", "S-good", [gemini_message("m1")], T1)
        write_session(self.chats_dir, "session-huge.json", session_text_with_count("S-huge", "m1", "1e400"), T2)
        write_session(self.chats_dir, "session-nan.json", session_text_with_count("S-nan", "m1", "NaN", "cached"), T2)

        rows = await self._engine().parse_sessions()

        self.assertEqual([row.sessionId for row in rows], ["S-good"])

    async def test_file_turning_corrupt_purges_index_entry(self) -> None:
        a = self._write("session-a.json", "S-a", [gemini_message("m1")], T1)
        engine = self._engine()
        await engine.parse_sessions()

        a.write_text("{broken", encoding="utf-8")
        set_mtime(a, T2)
        engine.watcher.record_changes(self.chats_dir, [(Change.modified, str(a))])
        rows = await engine.parse_sessions()

        self.assertEqual(rows, [])
        self.assertNotIn(a, engine.metadata_index)

    async def test_missing_root_returns_empty_without_watching(self) -> None:
        engine = SessionUsageEngine(self.tmp_root / "absent", clock=lambda: self.now)
        self.addAsyncCleanup(engine.close)

        self.assertEqual(await engine.parse_sessions(), [])
        self.assertFalse(engine.watcher.is_running)

    async def test_new_project_directories_are_discovered_and_watched(self) -> None:
        self._write_scenario()
        engine = self._engine()
        await engine.parse_sessions()

        new_chats = self.tmp_root / "hash-2" / "chats"
        self._write("session-n.json", "S-n", [gemini_message("m7")], T2 + 5000, chats_dir=new_chats)
        rows = await engine.parse_sessions()

        self.assertEqual(rows[0].sessionId, "S-n")
        self.assertIn(new_chats, engine.watcher.watched_dirs)

    async def test_aggregate_cache_stays_within_capacity(self) -> None:
        self._write_scenario()
        engine = self._engine(aggregate_cache_max=1)

        rows = await engine.parse_sessions()

        self.assertEqual(len(rows), 2)
        self.assertEqual(len(engine.aggregate_cache), 1)


if __name__ == "__main__":
    unittest.main()
