"""Observability helpers."""

from gemini_usage.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_reconciliation,
    record_parser_failure,
    record_activity_tokens,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_reconciliation",
    "record_parser_failure",
    "record_activity_tokens",
]
