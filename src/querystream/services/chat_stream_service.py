"""
Chat Stream Service - Main orchestrator for streamed question answering.

This service is a THIN ORCHESTRATOR that coordinates repositories:
1. AccountService - Caller, connection and session resolution
2. UsageService - Daily quota check and charge
3. QueryResultCache - Short-circuit for repeated questions
4. SchemaService - Cached schema context
5. SQLGenerationRepository - Streamed SQL generation
6. SQLSafetyGate - Read-only enforcement
7. SQLExecutionRepository - Bounded execution
8. InterpretationRepository - Streamed narrative
9. SuggestionEngine - Follow-up questions
10. ChatRepository - Durable turns

Every run yields StreamEvents and ends with exactly one terminal event,
`complete` or `error`. Nothing is charged unless the run completes a
billable answer.
"""

from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional

from querystream.config import PipelineConfig
from querystream.domain.base_enums import MessageRole, PipelineStage, StreamEventType
from querystream.domain.chat import ChatSession, NewMessage, session_title
from querystream.domain.errors import (
    InternalError,
    PlanUpgradeRequiredError,
    QueryExecutionError,
    QueryStreamException,
    SessionNotFoundError,
)
from querystream.domain.events import StreamEvent
from querystream.domain.pipeline import PipelineRun
from querystream.domain.plans import MULTI_TURN_REQUIRED_PLAN, allows_multi_turn
from querystream.domain.requests import ChatStreamRequest
from querystream.domain.results import CachedQueryResult, ExecutionResult, Suggestion, UsageSnapshot
from querystream.domain.types import Rows
from querystream.infrastructure.cache.query_cache import QueryResultCache
from querystream.repositories.chat_repository import ChatRepository
from querystream.repositories.interpretation import InterpretationRepository
from querystream.repositories.sql_execution import SQLExecutionRepository
from querystream.repositories.sql_generation import SQLGenerationRepository, unable_to_generate_reason
from querystream.repositories.sql_safety import SQLSafetyGate
from querystream.services.account_service import AccountService
from querystream.services.schema_service import SchemaService
from querystream.services.suggestions import SuggestionEngine
from querystream.services.usage_service import UsageService
from querystream.utils.logging import get_module_logger
from querystream.utils.tracing import current_trace_id

logger = get_module_logger()


def safe_suggestions(engine: SuggestionEngine, question: str, sql: str, rows: Rows) -> List[Suggestion]:
    """Suggestions for a turn; any failure degrades to no suggestions."""
    try:
        return engine.suggest(question, sql, rows)
    except Exception as e:
        logger.warning("Suggestion generation failed", error=str(e), trace_id=current_trace_id())
        return []


def answer_metadata(
    sql: str,
    execution: ExecutionResult,
    suggestions: List[Suggestion],
    dialect: str,
    **extra: Any,
) -> Dict[str, Any]:
    """Metadata stored on an assistant turn that answered with results."""
    return {
        "sql": sql,
        "results": execution.rows,
        "rowCount": execution.row_count,
        "executionTimeMs": execution.execution_time_ms,
        "dialect": dialect,
        "suggestions": [s.to_payload() for s in suggestions],
        **extra,
    }


def format_conversation(messages) -> str:
    """Render prior turns as prompt context."""
    if not messages:
        return ""
    lines = [f"{message.role.value}: {message.content}" for message in messages]
    return "\n\nPrevious conversation:\n" + "\n".join(lines)


class ChatStreamService:
    """
    Streaming orchestrator for one natural-language question.

    Stages (see PipelineStage):
    1. Initializing - caller, connection, session
    2. Usage check - daily quota
    3. Cache lookup - replay a stored answer on a hit
    4. Schema resolve - cached schema context
    5. SQL generation - streamed, with unable-to-generate detection
    6. Validation - safety gate
    7. Execution - bounded, capped rows
    8. Results caching - bundle assembly
    9. Interpretation - streamed
    10. Suggestions - rule based, never fatal
    11. Persisting - cache write, assistant turn, usage charge
    """

    def __init__(
        self,
        account_service: AccountService,
        usage_service: UsageService,
        schema_service: SchemaService,
        query_cache: QueryResultCache,
        chat_repository: ChatRepository,
        sql_generation_repository: SQLGenerationRepository,
        sql_execution_repository: SQLExecutionRepository,
        interpretation_repository: InterpretationRepository,
        suggestion_engine: SuggestionEngine,
        config: PipelineConfig,
    ):
        self.accounts = account_service
        self.usage = usage_service
        self.schema_service = schema_service
        self.query_cache = query_cache
        self.chat_repo = chat_repository
        self.generation_repo = sql_generation_repository
        self.execution_repo = sql_execution_repository
        self.interpretation_repo = interpretation_repository
        self.suggestion_engine = suggestion_engine
        self.config = config

        logger.info(
            "ChatStreamService initialized",
            row_cap=config.result_row_cap,
            execution_timeout=config.execution_timeout_seconds,
            context_messages=config.conversation_context_messages,
        )

    async def run(self, user_id: Optional[str], request: ChatStreamRequest) -> AsyncIterator[StreamEvent]:
        """
        Run the pipeline for one question.

        Args:
            user_id: Caller identity (X-User-Id)
            request: Question, connection and optional session to continue

        Yields:
            StreamEvents; the last one is `complete` or `error`
        """
        trace_id = current_trace_id()
        run = PipelineRun(
            question=request.question,
            connection_id=request.connection_id,
            requested_session_id=request.session_id,
        )

        logger.info(
            "Starting chat stream",
            connection_id=request.connection_id,
            continuing_session=request.session_id is not None,
            question_length=len(request.question),
            trace_id=trace_id,
        )

        try:
            async for event in self._run(run, user_id):
                yield event
        except QueryStreamException as e:
            run.fail(e.message)
            logger.warning(
                "Chat stream failed",
                stage=run.error_stage.value if run.error_stage else None,
                error_code=e.error_code,
                error=e.message,
                trace_id=trace_id,
            )
            yield StreamEvent.error(e)
        except Exception as e:
            run.fail(str(e))
            logger.exception("Unexpected chat stream failure", trace_id=trace_id)
            yield StreamEvent.error(InternalError(f"Unexpected error: {e}"))

    async def _run(self, run: PipelineRun, user_id: Optional[str]) -> AsyncIterator[StreamEvent]:
        await self._step_initialize(run, user_id)

        run.advance(PipelineStage.USAGE_CHECK)
        await self.usage.check(run.user)

        run.advance(PipelineStage.CACHE_LOOKUP)
        yield StreamEvent.status(run.stage.value, "Checking for a recent answer...")

        if run.session is None:
            title = session_title(run.question, self.config.session_title_max_chars)
            run.session = await self.chat_repo.create_session(run.user.id, run.connection.id, title)
            run.session_created = True
            yield StreamEvent.of(StreamEventType.SESSION_CREATED, sessionId=run.session.id)

        run.cache_key = self.query_cache.key(run.question, run.connection.id)
        cached = await self.query_cache.get(run.cache_key)
        if cached is not None:
            async for event in self._step_replay(run, cached):
                yield event
            return

        run.advance(PipelineStage.SCHEMA_RESOLVE)
        yield StreamEvent.status(run.stage.value, "Loading database schema...")
        run.schema = await self.schema_service.resolve(run.connection)

        history = await self._conversation_context(run)
        stored = await self.chat_repo.append_messages(
            run.session.id, [NewMessage(role=MessageRole.USER, content=run.question)]
        )
        run.user_message_id = stored[0].id
        yield StreamEvent.of(StreamEventType.USER_MESSAGE, messageId=run.user_message_id, content=run.question)

        run.advance(PipelineStage.SQL_GENERATING)
        yield StreamEvent.status(run.stage.value, "Generating SQL...")
        async for event in self._step_generate(run, history):
            yield event

        reason = unable_to_generate_reason(run.raw_sql)
        if reason is not None:
            async for event in self._step_informational(run, reason):
                yield event
            return

        run.advance(PipelineStage.SQL_VALIDATING)
        run.sql = SQLSafetyGate.validate_and_clean(run.raw_sql)
        yield StreamEvent.of(StreamEventType.SQL_GENERATED, sql=run.sql)

        run.advance(PipelineStage.SQL_EXECUTING)
        yield StreamEvent.of(StreamEventType.SQL_EXECUTING, message="Executing query...")
        await self._step_execute(run)
        yield StreamEvent.of(
            StreamEventType.RESULTS,
            results=run.execution.rows,
            columns=run.execution.column_names,
            rowCount=run.execution.row_count,
            executionTimeMs=run.execution.execution_time_ms,
            wasLimited=run.execution.was_limited,
        )

        run.advance(PipelineStage.RESULTS_CACHING)
        run.bundle = CachedQueryResult(
            sql=run.sql,
            results=run.execution.rows,
            execution_time_ms=run.execution.execution_time_ms,
            row_count=run.execution.row_count,
            dialect=run.connection.dialect,
        )

        run.advance(PipelineStage.INTERPRETING)
        yield StreamEvent.of(StreamEventType.INTERPRETATION_START)
        async for event in self._step_interpret(run):
            yield event

        run.advance(PipelineStage.SUGGESTION_GENERATING)
        run.suggestions = safe_suggestions(self.suggestion_engine, run.question, run.sql, run.execution.rows)
        yield StreamEvent.of(
            StreamEventType.INTERPRETATION_COMPLETE,
            interpretation=run.interpretation,
            suggestions=[s.to_payload() for s in run.suggestions],
        )

        run.advance(PipelineStage.PERSISTING)
        usage = await self._step_persist(run)

        run.advance(PipelineStage.COMPLETE)
        yield self._complete_event(run, usage, charged=1, from_cache=False)

    async def _step_initialize(self, run: PipelineRun, user_id: Optional[str]) -> None:
        """Resolve caller, connection and the session being continued."""
        run.user = await self.accounts.resolve_user(user_id)
        run.connection = await self.accounts.resolve_connection(run.user, run.connection_id)

        if run.requested_session_id is None:
            return

        session = await self.chat_repo.get_session(run.requested_session_id)
        if session is None or session.user_id != run.user.id:
            raise SessionNotFoundError(run.requested_session_id)
        if not allows_multi_turn(run.user.plan):
            raise PlanUpgradeRequiredError(
                "Multi-turn conversations require the Growth plan or higher",
                required_plan=MULTI_TURN_REQUIRED_PLAN.value,
            )
        run.session = session

    async def _step_replay(self, run: PipelineRun, cached: CachedQueryResult) -> AsyncIterator[StreamEvent]:
        """Serve a cache hit: record both turns, charge nothing."""
        logger.info("Serving cached answer", cache_key=run.cache_key, trace_id=current_trace_id())

        payload = cached.to_payload()
        payload["cacheKey"] = run.cache_key
        yield StreamEvent.of(StreamEventType.CACHED_RESULT, **payload)

        stored = await self.chat_repo.append_messages(
            run.session.id,
            [
                NewMessage(role=MessageRole.USER, content=run.question),
                NewMessage(
                    role=MessageRole.ASSISTANT,
                    content=cached.interpretation,
                    metadata={
                        "sql": cached.sql,
                        "results": cached.results,
                        "rowCount": cached.row_count,
                        "executionTimeMs": cached.execution_time_ms,
                        "dialect": cached.dialect.value if cached.dialect else run.connection.dialect.value,
                        "suggestions": [s.to_payload() for s in cached.suggestions],
                        "fromCache": True,
                        "cacheKey": run.cache_key,
                    },
                ),
            ],
        )
        run.user_message_id, run.assistant_message_id = stored[0].id, stored[1].id

        usage = await self.usage.snapshot(run.user)
        run.advance(PipelineStage.COMPLETE)
        yield self._complete_event(run, usage, charged=0, from_cache=True)

    async def _conversation_context(self, run: PipelineRun) -> str:
        """Prior turns of a continued session, as prompt text."""
        if run.session_created or not allows_multi_turn(run.user.plan):
            return ""
        messages = await self.chat_repo.list_recent_messages(
            run.session.id, self.config.conversation_context_messages
        )
        return format_conversation(messages)

    async def _step_generate(self, run: PipelineRun, history: str) -> AsyncIterator[StreamEvent]:
        schema_text = run.schema.to_prompt_text() + history
        fragments: List[str] = []
        stream = self.generation_repo.stream_sql(
            question=run.question,
            schema_text=schema_text,
            plan=run.user.plan,
            dialect=run.connection.dialect,
            connection_id=run.connection.id,
        )
        async with aclosing(stream) as chunks:
            async for fragment in chunks:
                fragments.append(fragment)
                yield StreamEvent.of(StreamEventType.SQL_CHUNK, chunk=fragment)
        run.raw_sql = "".join(fragments)

    async def _step_informational(self, run: PipelineRun, reason: str) -> AsyncIterator[StreamEvent]:
        """The model declined to write SQL: answer with its explanation."""
        logger.info("Model could not generate SQL", reason=reason, trace_id=current_trace_id())
        yield StreamEvent.of(StreamEventType.INFORMATIONAL_MESSAGE, message=reason)

        run.advance(PipelineStage.PERSISTING)
        stored = await self.chat_repo.append_messages(
            run.session.id,
            [NewMessage(role=MessageRole.ASSISTANT, content=reason, metadata={"informational": True})],
        )
        run.assistant_message_id = stored[0].id
        usage = await self.usage.charge(run.user, 1)

        run.advance(PipelineStage.COMPLETE)
        yield self._complete_event(run, usage, charged=1, from_cache=False)

    async def _step_execute(self, run: PipelineRun) -> None:
        """
        Execute validated SQL.

        On failure an assistant turn flagged canRetry is recorded so the
        caller can retry it once.
        """
        try:
            run.execution = await self.execution_repo.execute(
                run.connection, run.sql, timeout_seconds=self.config.execution_timeout_seconds
            )
        except QueryExecutionError as e:
            stored = await self.chat_repo.append_messages(
                run.session.id,
                [
                    NewMessage(
                        role=MessageRole.ASSISTANT,
                        content=e.message,
                        metadata={
                            "sql": run.sql,
                            "error": e.driver_message,
                            "canRetry": True,
                            "retryCount": 0,
                        },
                    )
                ],
            )
            run.assistant_message_id = stored[0].id
            raise QueryExecutionError(
                e.driver_message,
                attempted_sql=run.sql,
                can_retry=True,
                retry_message_id=run.assistant_message_id,
            ) from e

    async def _step_interpret(self, run: PipelineRun) -> AsyncIterator[StreamEvent]:
        fragments: List[str] = []
        stream = self.interpretation_repo.stream_interpretation(
            question=run.question,
            sql=run.sql,
            rows=run.execution.rows,
            row_count=run.execution.row_count,
            dialect=run.connection.dialect,
            plan=run.user.plan,
        )
        async with aclosing(stream) as chunks:
            async for fragment in chunks:
                fragments.append(fragment)
                yield StreamEvent.of(StreamEventType.INTERPRETATION_CHUNK, chunk=fragment)
        run.interpretation = "".join(fragments)

    async def _step_persist(self, run: PipelineRun) -> UsageSnapshot:
        """Write the cache entry and the assistant turn, then charge one query."""
        run.bundle.interpretation = run.interpretation
        run.bundle.suggestions = run.suggestions
        await self.query_cache.set(run.cache_key, run.bundle)

        stored = await self.chat_repo.append_messages(
            run.session.id,
            [
                NewMessage(
                    role=MessageRole.ASSISTANT,
                    content=run.interpretation,
                    metadata=answer_metadata(
                        run.sql,
                        run.execution,
                        run.suggestions,
                        run.connection.dialect.value,
                        cacheKey=run.cache_key,
                    ),
                )
            ],
        )
        run.assistant_message_id = stored[0].id
        return await self.usage.charge(run.user, 1)

    def _complete_event(self, run: PipelineRun, usage: UsageSnapshot, charged: int, from_cache: bool) -> StreamEvent:
        """`queriesUsed` is what this run charged; `usageRemaining` is the day's balance."""
        session: ChatSession = run.session
        logger.info(
            "Chat stream complete",
            session_id=session.id,
            from_cache=from_cache,
            charged=charged,
            used_today=usage.used,
            stages=[stage.value for stage in run.stages_visited],
            trace_id=current_trace_id(),
        )
        return StreamEvent.of(
            StreamEventType.COMPLETE,
            sessionId=session.id,
            messageId=run.assistant_message_id,
            queriesUsed=charged,
            usageRemaining=usage.remaining,
            canContinue=allows_multi_turn(run.user.plan),
            fromCache=from_cache,
        )
