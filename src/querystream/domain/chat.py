"""
Chat sessions and messages.

Assistant message metadata uses the camelCase keys clients read directly:
sql, results, rowCount, executionTimeMs, dialect, suggestions, fromCache,
cacheKey, informational, canRetry, retryCount, retryOf, isDeepAnalysis,
deepAnalysisSteps.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .base_enums import MessageRole


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatSession(BaseModel):
    """A conversation about one connection."""

    id: str = Field(..., description="Session identifier")
    user_id: str = Field(..., description="Owner of the session")
    connection_id: str = Field(..., description="Connection the session queries")
    title: str = Field(..., description="Session title derived from the first question")
    message_count: int = Field(default=0, description="Number of persisted messages")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ChatMessage(BaseModel):
    """One persisted turn."""

    id: str = Field(..., description="Message identifier")
    session_id: str = Field(..., description="Session the message belongs to")
    role: MessageRole = Field(..., description="Author of the message")
    content: str = Field(..., description="Message text")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Pipeline artifacts for this turn")
    created_at: datetime = Field(default_factory=_utcnow)


class NewMessage(BaseModel):
    """A message to append; the repository assigns id and timestamp."""

    role: MessageRole
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    message_id: Optional[str] = Field(default=None, description="Pre-assigned id, generated when absent")


def session_title(question: str, max_chars: int) -> str:
    """Title for a new session: the question, truncated with an ellipsis."""
    question = question.strip()
    if len(question) <= max_chars:
        return question
    return question[:max_chars] + "..."
