"""Pydantic models for Gemini CLI session records and the usage data derived from them."""
from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AllowInfNan, BaseModel, ConfigDict, Field, StrictFloat, StrictInt, StrictStr, model_serializer

Number = Union[StrictInt, Annotated[StrictFloat, AllowInfNan(False)]]


# ── On-disk session record ──────────────────────────────────────────

class TokensSummary(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    input: Number        # promptTokenCount
    output: Number       # candidatesTokenCount
    cached: Number       # cachedContentTokenCount
    total: Number        # totalTokenCount
    thoughts: Any = None  # thoughtsTokenCount
    tool: Any = None      # toolUsePromptTokenCount


class GeminiMessage(BaseModel):
    type: Literal["gemini"]
    id: StrictStr
    timestamp: Any = None
    model: Optional[str] = None
    tokens: Optional[TokensSummary] = None
    content: Any = None


class OtherMessage(BaseModel):
    type: Literal["user", "info", "error", "warning"]
    id: Any = None
    timestamp: Any = None
    content: Any = None


SessionMessage = Annotated[Union[GeminiMessage, OtherMessage], Field(discriminator="type")]


class ConversationRecord(BaseModel):
    sessionId: str = ""
    projectHash: Optional[str] = None
    startTime: Any = None
    lastUpdated: Any = None
    summary: Any = None
    directories: Any = None
    # Kept raw; each entry is narrowed to a SessionMessage on demand so one
    # unexpected message never invalidates the whole record.
    messages: list[Any] = Field(default_factory=list)


# ── Produced data ───────────────────────────────────────────────────

class _CompactModel(BaseModel):
    """Output model whose unset optional fields are left out of every dump."""

    model_config = ConfigDict(frozen=True)

    @model_serializer(mode="wrap")
    def _drop_none(self, handler):
        data = handler(self)
        return {key: value for key, value in data.items() if value is not None}


class TokenBreakdown(_CompactModel):
    input: int
    output: int
    cacheRead: Optional[int] = None


class UsageRow(_CompactModel):
    sessionId: str
    providerId: str
    modelId: str
    tokens: TokenBreakdown
    timestamp: int
    sessionUpdatedAt: int
    sessionName: Optional[str] = None
    projectPath: Optional[str] = None


class ActivityTokens(_CompactModel):
    input: int
    output: int
    cacheRead: Optional[int] = None
    reasoning: Optional[int] = None


class ActivityUpdate(_CompactModel):
    sessionId: str
    messageId: str
    tokens: ActivityTokens
    timestamp: int
