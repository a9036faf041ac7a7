"""Shared fixtures for session-file based tests."""
import json
import os
from pathlib import Path

BASE_MTIME_MS = 1_760_000_000_000


def gemini_message(message_id, input_tokens=10, output_tokens=5, cached=0, *, model="gemini-2.5-pro",
                   timestamp="2025-10-09T08:53:20Z", thoughts=None):
    tokens = {
        "input": input_tokens,
        "output": output_tokens,
        "cached": cached,
        "total": input_tokens + output_tokens,
    }
    if thoughts is not None:
        tokens["thoughts"] = thoughts
    message = {
        "id": message_id,
        "type": "gemini",
        "timestamp": timestamp,
        "content": "ok",
        "model": model,
        "tokens": tokens,
    }
    return message


def user_message(message_id):
    return {"id": message_id, "type": "user", "timestamp": "2025-10-09T08:53:00Z", "content": "hi"}


def session_record(session_id, messages, **extra):
    record = {
        "sessionId": session_id,
        "projectHash": "abc123",
        "startTime": "2025-10-09T08:50:00Z",
        "lastUpdated": "2025-10-09T08:55:00Z",
        "messages": messages,
    }
    record.update(extra)
    return record


def write_session(chats_dir: Path, name: str, record, mtime_ms=None) -> Path:
    chats_dir.mkdir(parents=True, exist_ok=True)
    path = chats_dir / name
    if isinstance(record, str):
        path.write_text(record, encoding="utf-8")
    else:
        path.write_text(json.dumps(record), encoding="utf-8")
    if mtime_ms is not None:
        set_mtime(path, mtime_ms)
    return path


def set_mtime(path: Path, mtime_ms: int) -> None:
    ns = mtime_ms * 1_000_000
    os.utime(path, ns=(ns, ns))


async def idle_awatch(*paths, stop_event=None, **kwargs):
    """Stand-in for watchfiles.awatch that never reports a change."""
    if stop_event is not None:
        await stop_event.wait()
    return
    yield  # noqa: unreachable, makes this an async generator


async def failing_awatch(*paths, **kwargs):
    raise FileNotFoundError(str(paths[0]))
    yield  # noqa: unreachable, makes this an async generator


def scripted_awatch(batches):
    """Build an awatch stand-in that replays ``batches[path]`` and then idles."""

    async def _awatch(path, *args, stop_event=None, **kwargs):
        for batch in batches.get(Path(path), []):
            yield batch
        if stop_event is not None:
            await stop_event.wait()

    return _awatch


def session_text_with_count(session_id, message_id, raw_count, field="input"):
    """Session JSON whose ``field`` token count is the literal ``raw_count`` (e.g. ``1e400``, ``NaN``)."""
    marker = 987654321
    message = gemini_message(message_id)
    message["tokens"][field] = marker
    return json.dumps(session_record(session_id, [message])).replace(str(marker), raw_count)
