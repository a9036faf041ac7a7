"""Usage query and live activity API."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request

from gemini_usage import config
from gemini_usage.models import ActivityUpdate, UsageRow

logger = logging.getLogger("gemini_usage.api")

usage_router = APIRouter(prefix="/api/usage", tags=["usage"])
activity_router = APIRouter(prefix="/api/activity", tags=["activity"])


def _get_agent(request: Request):
    agent = getattr(request.app.state, "agent", None)
    if not agent:
        raise HTTPException(status_code=503, detail="Usage engine not initialized")
    return agent


@usage_router.get("", response_model=list[UsageRow], response_model_exclude_none=True)
async def list_usage(
    request: Request,
    limit: int = Query(config.DEFAULT_LIMIT, ge=1),
    since: int | None = Query(None, description="Epoch milliseconds; only sessions modified at or after"),
    session_id: str | None = Query(None, alias="sessionId", description="Restrict to a single session"),
):
    """Return usage rows, most recently updated session first."""
    agent = _get_agent(request)
    return await agent.parse_sessions(limit=limit, since=since, session_id=session_id or None)


@usage_router.get("/status")
async def usage_status(request: Request) -> dict[str, Any]:
    agent = _get_agent(request)
    snapshot = agent.engine.get_observability_snapshot()
    snapshot["installed"] = agent.is_installed()
    snapshot["activityRunning"] = agent.activity.is_running
    return snapshot


@usage_router.post("/reconcile")
async def request_reconcile(request: Request) -> dict[str, Any]:
    """Force the next query to stat every session file."""
    agent = _get_agent(request)
    agent.engine.request_full_reconciliation()
    logger.info("Full reconciliation requested via API")
    return {"status": "scheduled"}


@activity_router.get("/recent", response_model=list[ActivityUpdate], response_model_exclude_none=True)
async def recent_activity(request: Request, limit: int = Query(50, ge=1, le=1000)):
    """Return the newest activity updates, newest first."""
    _get_agent(request)
    buffer = getattr(request.app.state, "activity_buffer", None) or []
    return list(reversed(buffer))[:limit]
