"""
Deep Analysis Service - multi-step follow-up investigation.

Takes a previous answer (question, SQL, rows) and runs a fixed number of
follow-up questions through a reduced pipeline (generate -> validate ->
execute -> insight), then streams one executive summary over all of them.

The analysis is all or nothing: any failed step ends the stream with an
error, and nothing is persisted or charged. On success both turns are
stored together and the fixed cost is charged once.
"""

import time
from contextlib import aclosing
from typing import AsyncIterator, List, Optional, Tuple

from querystream.config import PipelineConfig
from querystream.domain.base_enums import MessageRole, StreamEventType
from querystream.domain.chat import ChatSession, NewMessage
from querystream.domain.connections import ConnectionDescriptor, UserAccount
from querystream.domain.errors import (
    DeepAnalysisStepError,
    InternalError,
    PlanUpgradeRequiredError,
    QueryStreamException,
    SessionNotFoundError,
)
from querystream.domain.events import StreamEvent
from querystream.domain.plans import MULTI_TURN_REQUIRED_PLAN, allows_deep_analysis
from querystream.domain.requests import DeepAnalysisRequest
from querystream.domain.results import DeepAnalysisStep
from querystream.domain.schema_context import SchemaContext
from querystream.repositories.chat_repository import ChatRepository
from querystream.repositories.interpretation import InterpretationRepository
from querystream.repositories.sql_execution import SQLExecutionRepository
from querystream.repositories.sql_generation import SQLGenerationRepository, unable_to_generate_reason
from querystream.repositories.sql_safety import SQLSafetyGate
from querystream.services.account_service import AccountService
from querystream.services.chat_stream_service import safe_suggestions
from querystream.services.schema_service import SchemaService
from querystream.services.suggestions import SuggestionEngine
from querystream.services.usage_service import UsageService
from querystream.utils.logging import get_module_logger
from querystream.utils.tracing import current_trace_id

logger = get_module_logger()

DEEP_ANALYSIS_PREFIX = "[Deep Analysis Request]"

# Used when the suggestion engine offers fewer follow-ups than needed
GENERIC_FOLLOW_UPS: List[Tuple[str, str]] = [
    (
        "What are the top 10 records behind these results by their main metric?",
        "Identify the biggest contributors",
    ),
    (
        "How have these numbers changed over the last 30 days?",
        "Check the recent trend",
    ),
    (
        "How are these results distributed across categories?",
        "Understand the breakdown",
    ),
]


class DeepAnalysisService:
    """
    Orchestrator for deep analysis streams.

    Gates run before any cost: plan tier, session ownership, then quota for
    the full cost of the analysis.
    """

    def __init__(
        self,
        account_service: AccountService,
        usage_service: UsageService,
        schema_service: SchemaService,
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
        self.chat_repo = chat_repository
        self.generation_repo = sql_generation_repository
        self.execution_repo = sql_execution_repository
        self.interpretation_repo = interpretation_repository
        self.suggestion_engine = suggestion_engine
        self.config = config

    async def run(self, user_id: Optional[str], request: DeepAnalysisRequest) -> AsyncIterator[StreamEvent]:
        """
        Run a deep analysis of a previous answer.

        Yields:
            StreamEvents; the last one is `complete` or `error`
        """
        trace_id = current_trace_id()
        logger.info(
            "Starting deep analysis",
            session_id=request.session_id,
            connection_id=request.connection_id,
            original_rows=len(request.results),
            trace_id=trace_id,
        )

        try:
            async for event in self._run(user_id, request):
                yield event
        except QueryStreamException as e:
            logger.warning("Deep analysis failed", error_code=e.error_code, error=e.message, trace_id=trace_id)
            yield StreamEvent.error(e)
        except Exception as e:
            logger.exception("Unexpected deep analysis failure", trace_id=trace_id)
            yield StreamEvent.error(InternalError(f"Unexpected error: {e}"))

    async def _run(self, user_id: Optional[str], request: DeepAnalysisRequest) -> AsyncIterator[StreamEvent]:
        started = time.perf_counter()
        user = await self.accounts.resolve_user(user_id)
        if not allows_deep_analysis(user.plan):
            raise PlanUpgradeRequiredError(
                "Deep analysis requires the Growth plan or higher",
                required_plan=MULTI_TURN_REQUIRED_PLAN.value,
            )

        session = await self.chat_repo.get_session(request.session_id)
        if session is None or session.user_id != user.id:
            raise SessionNotFoundError(request.session_id)

        connection = await self.accounts.resolve_connection(user, request.connection_id)
        cost = self.config.deep_analysis_cost
        await self.usage.require(user, cost)

        yield StreamEvent.status("deep_analysis", "Starting deep analysis...")

        schema = await self.schema_service.resolve(connection)
        follow_ups = self.follow_up_questions(request)

        steps: List[DeepAnalysisStep] = []
        for step_number, (question, purpose) in enumerate(follow_ups, start=1):
            yield StreamEvent.of(
                StreamEventType.STEP_START, stepNumber=step_number, question=question, purpose=purpose
            )
            try:
                async for event in self._run_step(
                    user, connection, schema, request, step_number, question, purpose, steps
                ):
                    yield event
            except DeepAnalysisStepError:
                raise
            except QueryStreamException as e:
                raise DeepAnalysisStepError(step_number, question, e.message) from e

        yield StreamEvent.of(StreamEventType.COMPREHENSIVE_INSIGHTS_START)
        fragments: List[str] = []
        synthesis = self.interpretation_repo.stream_synthesis(
            question=request.question,
            original_row_count=len(request.results),
            steps=steps,
            plan=user.plan,
        )
        async with aclosing(synthesis) as chunks:
            async for fragment in chunks:
                fragments.append(fragment)
                yield StreamEvent.of(StreamEventType.COMPREHENSIVE_INSIGHTS_CHUNK, chunk=fragment)
        insights = "".join(fragments)
        execution_time_ms = int((time.perf_counter() - started) * 1000)
        yield StreamEvent.of(
            StreamEventType.COMPREHENSIVE_INSIGHTS_COMPLETE,
            insights=insights,
            executionTimeMs=execution_time_ms,
            originalRowCount=len(request.results),
        )

        assistant_id = await self._persist(session, request, steps, insights)
        usage = await self.usage.charge(user, cost)

        logger.info(
            "Deep analysis complete",
            session_id=session.id,
            steps=len(steps),
            charged=cost,
            execution_time_ms=execution_time_ms,
            trace_id=current_trace_id(),
        )
        yield StreamEvent.of(
            StreamEventType.COMPLETE,
            sessionId=session.id,
            messageId=assistant_id,
            queriesUsed=cost,
            usageRemaining=usage.remaining,
            executionTimeMs=execution_time_ms,
        )

    def follow_up_questions(self, request: DeepAnalysisRequest) -> List[Tuple[str, str]]:
        """The first N suggestions for the analysed turn, padded with generic ones."""
        wanted = self.config.deep_analysis_follow_ups
        suggestions = safe_suggestions(self.suggestion_engine, request.question, request.sql, request.results)

        follow_ups = [(s.question, s.description) for s in suggestions[:wanted]]
        seen = {question for question, _ in follow_ups}
        for question, purpose in GENERIC_FOLLOW_UPS:
            if len(follow_ups) >= wanted:
                break
            if question not in seen:
                follow_ups.append((question, purpose))
        return follow_ups

    async def _run_step(
        self,
        user: UserAccount,
        connection: ConnectionDescriptor,
        schema: SchemaContext,
        request: DeepAnalysisRequest,
        step_number: int,
        question: str,
        purpose: str,
        steps: List[DeepAnalysisStep],
    ) -> AsyncIterator[StreamEvent]:
        schema_text = (
            schema.to_prompt_text()
            + f'\n\nThis is a follow-up to the question "{request.question}", answered with:\n{request.sql}'
        )
        raw = await self.generation_repo.generate_sql(
            question=question,
            schema_text=schema_text,
            plan=user.plan,
            dialect=connection.dialect,
        )
        reason = unable_to_generate_reason(raw)
        if reason is not None:
            raise DeepAnalysisStepError(step_number, question, reason)
        sql = SQLSafetyGate.validate_and_clean(raw)

        yield StreamEvent.of(
            StreamEventType.STEP_PROGRESS,
            stepNumber=step_number,
            message=f"Executing query {step_number}...",
        )
        execution = await self.execution_repo.execute(
            connection, sql, timeout_seconds=self.config.execution_timeout_seconds
        )

        yield StreamEvent.of(
            StreamEventType.STEP_PROGRESS,
            stepNumber=step_number,
            message=f"Analyzing results for step {step_number}...",
        )
        insights = await self.interpretation_repo.interpret_step(
            step_number=step_number,
            question=question,
            purpose=purpose,
            sql=sql,
            rows=execution.rows,
            plan=user.plan,
        )

        step = DeepAnalysisStep(
            step_number=step_number,
            question=question,
            purpose=purpose,
            sql=sql,
            results=execution.rows,
            row_count=execution.row_count,
            insights=insights,
        )
        steps.append(step)
        yield StreamEvent(event=StreamEventType.STEP_COMPLETE, data=step.to_payload())

    async def _persist(
        self,
        session: ChatSession,
        request: DeepAnalysisRequest,
        steps: List[DeepAnalysisStep],
        insights: str,
    ) -> str:
        stored = await self.chat_repo.append_messages(
            session.id,
            [
                NewMessage(
                    role=MessageRole.USER,
                    content=f"{DEEP_ANALYSIS_PREFIX} {request.question}",
                    metadata={"isDeepAnalysis": True},
                ),
                NewMessage(
                    role=MessageRole.ASSISTANT,
                    content=insights,
                    metadata={
                        "sql": request.sql,
                        "results": request.results[: self.config.result_row_cap],
                        "isDeepAnalysis": True,
                        "deepAnalysisSteps": [step.to_payload() for step in steps],
                    },
                ),
            ],
        )
        return stored[1].id
