#!/usr/bin/env python3
"""Print Gemini CLI usage rows as JSON.

Usage:
  python -m gemini_usage.scripts.usage_snapshot
  python -m gemini_usage.scripts.usage_snapshot --home ~/.gemini --since 1760000000000
  python -m gemini_usage.scripts.usage_snapshot --session-id 5c1f...
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from gemini_usage import config
from gemini_usage.agent import GeminiCliAgent


async def _run(home: Path | None, limit: int, since: int | None, session_id: str | None) -> list[dict]:
    agent = GeminiCliAgent(home)
    try:
        rows = await agent.parse_sessions(limit=limit, since=since, session_id=session_id)
    finally:
        await agent.shutdown()
    return [row.model_dump() for row in rows]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--home", default="", help="Gemini CLI home (default: GEMINI_USAGE_HOME or ~/.gemini)")
    parser.add_argument("--limit", type=int, default=config.DEFAULT_LIMIT)
    parser.add_argument("--since", type=int, default=None, help="Epoch milliseconds lower bound on session mtime")
    parser.add_argument("--session-id", default="", help="Only report this session")
    args = parser.parse_args(argv)

    home = Path(args.home).expanduser() if args.home else None
    rows = asyncio.run(_run(home, args.limit, args.since, args.session_id or None))
    json.dump(rows, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
