"""Parse Gemini CLI ``session-*.json`` files into usage rows."""
from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any, Iterator

from pydantic import TypeAdapter, ValidationError

from gemini_usage.date_utils import to_timestamp
from gemini_usage.models import (
    ActivityTokens,
    ConversationRecord,
    GeminiMessage,
    SessionMessage,
    TokenBreakdown,
    UsageRow,
)

logger = logging.getLogger("gemini_usage.parser")

PROVIDER_ID = "google"
UNKNOWN_MODEL = "unknown"

_MESSAGE_ADAPTER: TypeAdapter[SessionMessage] = TypeAdapter(SessionMessage)


def read_session_record(path: Path) -> ConversationRecord | None:
    """Load one session file. Missing, unreadable or malformed files yield None."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.debug("Skipping unreadable session file %s: %s", path, exc)
        return None
    if not isinstance(raw, dict):
        return None
    try:
        return ConversationRecord.model_validate(raw)
    except ValidationError as exc:
        logger.debug("Skipping malformed session file %s: %s", path, exc.error_count())
        return None


def coerce_message(raw: Any) -> SessionMessage | None:
    try:
        return _MESSAGE_ADAPTER.validate_python(raw)
    except ValidationError:
        return None


def is_token_bearing_message(message: SessionMessage | None) -> bool:
    if not isinstance(message, GeminiMessage):
        return False
    if not message.id:
        return False
    tokens = message.tokens
    if tokens is None:
        return False
    return tokens.input > 0


def iter_token_bearing_messages(record: ConversationRecord) -> Iterator[GeminiMessage]:
    for raw in record.messages:
        message = coerce_message(raw)
        if is_token_bearing_message(message):
            yield message


def extract_project_path(directories: Any) -> str | None:
    if not isinstance(directories, list) or not directories:
        return None
    first = directories[0]
    if not isinstance(first, str):
        return None
    first = first.strip()
    return first or None


def _positive_int(value: Any) -> int | None:
    """Truncate a finite count to int; None unless the result is positive."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    count = int(value)
    return count if count > 0 else None


def parse_session_file_rows(record: ConversationRecord, mtime_ms: int) -> list[UsageRow]:
    """One row per token-bearing message id; a later duplicate replaces the earlier one."""
    deduped: dict[str, UsageRow] = {}
    project_path = extract_project_path(record.directories)
    session_name = None
    if isinstance(record.summary, str):
        session_name = record.summary.strip() or None
    fallback_ts = to_timestamp(record.startTime, mtime_ms)

    for message in iter_token_bearing_messages(record):
        tokens = message.tokens
        deduped[message.id] = UsageRow(
            sessionId=record.sessionId,
            providerId=PROVIDER_ID,
            modelId=message.model if message.model is not None else UNKNOWN_MODEL,
            tokens=TokenBreakdown(
                input=int(tokens.input),
                output=int(tokens.output),
                cacheRead=_positive_int(tokens.cached),
            ),
            timestamp=to_timestamp(message.timestamp, fallback_ts),
            sessionUpdatedAt=mtime_ms,
            sessionName=session_name,
            projectPath=project_path,
        )

    return list(deduped.values())


def activity_tokens(message: GeminiMessage) -> ActivityTokens:
    tokens = message.tokens
    return ActivityTokens(
        input=int(tokens.input),
        output=int(tokens.output),
        cacheRead=_positive_int(tokens.cached),
        reasoning=_positive_int(tokens.thoughts),
    )
