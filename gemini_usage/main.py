"""Gemini usage engine: FastAPI application entry point."""
from __future__ import annotations

import logging
from collections import deque
from contextlib import asynccontextmanager

from fastapi import FastAPI

from gemini_usage import config
from gemini_usage.agent import GeminiCliAgent
from gemini_usage.models import ActivityUpdate
from gemini_usage.observability import initialize as initialize_observability, shutdown as shutdown_observability
from gemini_usage.routers.usage import activity_router, usage_router

logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO))
logger = logging.getLogger("gemini_usage")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Gemini usage engine starting up")
    initialize_observability(app)

    agent = GeminiCliAgent()
    app.state.agent = agent
    activity_buffer: deque[ActivityUpdate] = deque(maxlen=max(1, config.ACTIVITY_BUFFER_SIZE))
    app.state.activity_buffer = activity_buffer

    if not agent.is_installed():
        logger.warning("Gemini CLI not found at %s; serving empty results", agent.home)
    elif config.ACTIVITY_ENABLED:
        await agent.start_watch(activity_buffer.append)

    yield

    logger.info("Gemini usage engine shutting down")
    await agent.shutdown()
    shutdown_observability(app)


app = FastAPI(
    title="Gemini Usage API",
    description="Incremental token usage for Gemini CLI sessions",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(usage_router)
app.include_router(activity_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    agent = getattr(app.state, "agent", None)
    return {
        "status": "ok",
        "installed": bool(agent and agent.is_installed()),
        "watcher": "running" if agent and agent.engine.watcher.is_running else "stopped",
        "activity": "running" if agent and agent.activity.is_running else "stopped",
    }
