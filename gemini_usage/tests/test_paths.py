import asyncio
import tempfile
import unittest
from pathlib import Path

from gemini_usage.engine.tasks import TaskSupervisor
from gemini_usage.paths import get_chats_dirs, is_installed, is_session_file_name, list_session_files


class PathsTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.home = Path(tmpdir.name) / ".gemini"
        self.tmp_root = self.home / "tmp"

    def test_session_file_names(self) -> None:
        self.assertTrue(is_session_file_name("session-2025-10-09T08-50-abc.json"))
        self.assertFalse(is_session_file_name("logs.json"))
        self.assertFalse(is_session_file_name("session-a.json.bak"))

    def test_enumeration(self) -> None:
        self.assertEqual(get_chats_dirs(self.tmp_root), [])

        chats_b = self.tmp_root / "hash-b" / "chats"
        chats_a = self.tmp_root / "hash-a" / "chats"
        chats_a.mkdir(parents=True)
        chats_b.mkdir(parents=True)
        (self.tmp_root / "hash-c").mkdir()
        (self.tmp_root / "stray.txt").write_text("x", encoding="utf-8")
        (chats_a / "session-1.json").write_text("{}", encoding="utf-8")
        (chats_a / "checkpoint.json").write_text("{}", encoding="utf-8")
        (chats_a / "session-dir.json").mkdir()

        self.assertEqual(get_chats_dirs(self.tmp_root), [chats_a, chats_b])
        self.assertEqual(list_session_files(chats_a), [chats_a / "session-1.json"])
        self.assertEqual(list_session_files(chats_b), [])
        self.assertIsNone(list_session_files(self.tmp_root / "missing" / "chats"))

    def test_is_installed(self) -> None:
        self.assertFalse(is_installed(self.home))
        self.home.mkdir()
        self.assertTrue(is_installed(self.home))


class TaskSupervisorTests(unittest.IsolatedAsyncioTestCase):
    async def test_failures_are_logged_and_dropped(self) -> None:
        supervisor = TaskSupervisor("test")
        done = []

        async def ok():
            done.append("ok")

        async def boom():
            raise RuntimeError("boom")

        supervisor.spawn(ok(), name="ok")
        supervisor.spawn(boom(), name="boom")
        with self.assertLogs("gemini_usage.tasks", level="WARNING") as logs:
            await supervisor.join()

        self.assertEqual(done, ["ok"])
        self.assertEqual(len(supervisor), 0)
        self.assertIn("test:boom", logs.output[0])

    async def test_cancel_all(self) -> None:
        supervisor = TaskSupervisor("test")
        task = supervisor.spawn(asyncio.sleep(60), name="sleeper")

        await supervisor.cancel_all()

        self.assertTrue(task.cancelled())
        self.assertEqual(len(supervisor), 0)


if __name__ == "__main__":
    unittest.main()
