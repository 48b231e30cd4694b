"""
Retry Service.

Re-runs the stored SQL of a turn whose execution failed. A turn can be
retried once: the original message is claimed (canRetry=false,
retryCount=1) before execution, so concurrent retries cannot both run.
"""

from typing import List, Optional

from querystream.config import PipelineConfig
from querystream.domain.base_enums import MessageRole
from querystream.domain.chat import ChatMessage, NewMessage
from querystream.domain.errors import (
    MessageNotFoundError,
    QueryExecutionError,
    RetryNotAllowedError,
)
from querystream.domain.results import RetryOutcome
from querystream.repositories.chat_repository import ChatRepository
from querystream.repositories.interpretation import InterpretationRepository
from querystream.repositories.sql_execution import SQLExecutionRepository
from querystream.repositories.sql_safety import SQLSafetyGate
from querystream.services.account_service import AccountService
from querystream.services.chat_stream_service import answer_metadata, safe_suggestions
from querystream.services.suggestions import SuggestionEngine
from querystream.services.usage_service import UsageService
from querystream.utils.logging import get_module_logger
from querystream.utils.tracing import current_trace_id

logger = get_module_logger()

def preceding_question(messages: List[ChatMessage], message_id: str) -> str:
    """Content of the last user turn before `message_id`."""
    question = ""
    for message in messages:
        if message.id == message_id:
            break
        if message.role == MessageRole.USER:
            question = message.content
    return question


class RetryService:
    def __init__(
        self,
        account_service: AccountService,
        usage_service: UsageService,
        chat_repository: ChatRepository,
        sql_execution_repository: SQLExecutionRepository,
        interpretation_repository: InterpretationRepository,
        suggestion_engine: SuggestionEngine,
        config: PipelineConfig,
    ):
        self.accounts = account_service
        self.usage = usage_service
        self.chat_repo = chat_repository
        self.execution_repo = sql_execution_repository
        self.interpretation_repo = interpretation_repository
        self.suggestion_engine = suggestion_engine
        self.config = config

    async def retry(self, user_id: Optional[str], message_id: str) -> RetryOutcome:
        """
        Re-execute a failed turn's SQL and interpret the results.

        Raises:
            UnauthorizedError: Unknown caller
            MessageNotFoundError: Unknown message or another user's
            RetryNotAllowedError: Message not flagged retryable, or already retried
            QuotaExceededError: No query left today
            SQLValidationError: Stored SQL no longer passes the safety gate
            QueryExecutionError: Execution failed again (not retryable)
        """
        trace_id = current_trace_id()
        user = await self.accounts.resolve_user(user_id)

        message = await self.chat_repo.get_message(message_id)
        session = await self.chat_repo.get_session(message.session_id) if message else None
        if message is None or session is None or session.user_id != user.id:
            raise MessageNotFoundError(message_id)

        metadata = message.metadata
        sql = metadata.get("sql")
        if not metadata.get("canRetry") or metadata.get("retryCount", 0) != 0 or not sql:
            raise RetryNotAllowedError(
                "This message cannot be retried",
                details={"message_id": message_id, "retry_count": metadata.get("retryCount", 0)},
            )

        await self.usage.check(user)
        connection = await self.accounts.resolve_connection(user, session.connection_id)
        if not await self.chat_repo.claim_retry(message_id):
            raise RetryNotAllowedError(
                "This message has already been retried", details={"message_id": message_id, "retry_count": 1}
            )

        history = await self.chat_repo.list_recent_messages(session.id, session.message_count)
        question = preceding_question(history, message_id)

        logger.info("Retrying query", message_id=message_id, session_id=session.id, trace_id=trace_id)

        try:
            SQLSafetyGate.validate(sql)
            execution = await self.execution_repo.execute(
                connection, sql, timeout_seconds=self.config.execution_timeout_seconds
            )
        except QueryExecutionError as e:
            logger.warning("Retry failed", message_id=message_id, error=e.driver_message, trace_id=trace_id)
            raise QueryExecutionError(e.driver_message, attempted_sql=sql, can_retry=False) from e

        fragments = [
            fragment
            async for fragment in self.interpretation_repo.stream_interpretation(
                question=question,
                sql=sql,
                rows=execution.rows,
                row_count=execution.row_count,
                dialect=connection.dialect,
                plan=user.plan,
            )
        ]
        interpretation = "".join(fragments)
        suggestions = safe_suggestions(self.suggestion_engine, question, sql, execution.rows)

        stored = await self.chat_repo.append_messages(
            session.id,
            [
                NewMessage(
                    role=MessageRole.ASSISTANT,
                    content=interpretation,
                    metadata=answer_metadata(
                        sql, execution, suggestions, connection.dialect.value, retryOf=message_id
                    ),
                )
            ],
        )
        usage = await self.usage.charge(user, 1)

        logger.info("Retry succeeded", message_id=message_id, new_message_id=stored[0].id, trace_id=trace_id)

        return RetryOutcome(
            message_id=stored[0].id,
            retry_of=message_id,
            sql=sql,
            results=execution.rows,
            row_count=execution.row_count,
            execution_time_ms=execution.execution_time_ms,
            interpretation=interpretation,
            suggestions=suggestions,
            usage_remaining=usage.remaining,
        )
