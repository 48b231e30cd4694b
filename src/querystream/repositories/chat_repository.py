"""
Chat Repository.

Persists sessions and messages. The pipeline depends on the ChatRepository
interface only; InMemoryChatRepository is the reference implementation
used by the service and the tests.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from querystream.domain.chat import ChatMessage, ChatSession, NewMessage
from querystream.domain.errors import MessageNotFoundError, SessionNotFoundError
from querystream.utils.logging import get_module_logger
from querystream.utils.tracing import current_trace_id

logger = get_module_logger()


class ChatRepository(ABC):
    """Interface for session and message persistence."""

    @abstractmethod
    async def create_session(self, user_id: str, connection_id: str, title: str) -> ChatSession:
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        ...

    @abstractmethod
    async def append_messages(self, session_id: str, messages: List[NewMessage]) -> List[ChatMessage]:
        """
        Append messages atomically and bump the session's count and timestamp.

        Either every message is stored or none is.
        """

    @abstractmethod
    async def list_recent_messages(self, session_id: str, limit: int) -> List[ChatMessage]:
        """The last `limit` messages, oldest first."""

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[ChatMessage]:
        ...

    @abstractmethod
    async def update_message_metadata(self, message_id: str, updates: Dict[str, Any]) -> ChatMessage:
        """Merge `updates` into a message's metadata."""

    @abstractmethod
    async def claim_retry(self, message_id: str) -> bool:
        """
        Atomically take the single retry of a message.

        Returns True and marks the message canRetry=false, retryCount=1 when
        it was retryable and not yet retried; False otherwise.
        """


class InMemoryChatRepository(ChatRepository):
    """Process-local store guarded by one asyncio.Lock."""

    def __init__(self):
        self._sessions: Dict[str, ChatSession] = {}
        self._messages: Dict[str, ChatMessage] = {}
        self._session_messages: Dict[str, List[str]] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, user_id: str, connection_id: str, title: str) -> ChatSession:
        session = ChatSession(id=str(uuid.uuid4()), user_id=user_id, connection_id=connection_id, title=title)
        async with self._lock:
            self._sessions[session.id] = session
            self._session_messages[session.id] = []
        logger.info("Chat session created", session_id=session.id, user_id=user_id, trace_id=current_trace_id())
        return session.model_copy()

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        session = self._sessions.get(session_id)
        return session.model_copy() if session else None

    async def append_messages(self, session_id: str, messages: List[NewMessage]) -> List[ChatMessage]:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)

            stored = [
                ChatMessage(
                    id=new.message_id or str(uuid.uuid4()),
                    session_id=session_id,
                    role=new.role,
                    content=new.content,
                    metadata=dict(new.metadata),
                )
                for new in messages
            ]
            for message in stored:
                self._messages[message.id] = message
                self._session_messages[session_id].append(message.id)

            self._sessions[session_id] = session.model_copy(
                update={
                    "message_count": session.message_count + len(stored),
                    "updated_at": datetime.now(timezone.utc),
                }
            )

        logger.debug("Messages appended", session_id=session_id, count=len(stored), trace_id=current_trace_id())
        return [message.model_copy(deep=True) for message in stored]

    async def list_recent_messages(self, session_id: str, limit: int) -> List[ChatMessage]:
        ids = self._session_messages.get(session_id, [])
        recent = ids[-limit:] if limit > 0 else []
        return [self._messages[message_id].model_copy(deep=True) for message_id in recent]

    async def get_message(self, message_id: str) -> Optional[ChatMessage]:
        message = self._messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    async def update_message_metadata(self, message_id: str, updates: Dict[str, Any]) -> ChatMessage:
        async with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                raise MessageNotFoundError(message_id)
            updated = message.model_copy(update={"metadata": {**message.metadata, **updates}})
            self._messages[message_id] = updated
        return updated.model_copy(deep=True)

    async def claim_retry(self, message_id: str) -> bool:
        async with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                raise MessageNotFoundError(message_id)
            metadata = message.metadata
            if not metadata.get("canRetry") or metadata.get("retryCount", 0) != 0:
                return False
            self._messages[message_id] = message.model_copy(
                update={"metadata": {**metadata, "canRetry": False, "retryCount": 1}}
            )
        return True
