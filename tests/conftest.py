"""
Shared fixtures for the QueryStream test suite.

External collaborators (LLM, target databases) are replaced by small fakes
that follow the repository interfaces; everything else (caches, chat and
usage stores, services) is the real in-memory implementation.
"""

from typing import Callable, List, Optional

import pytest

from querystream.config import PipelineConfig
from querystream.domain.base_enums import DatabaseDialect, PlanTier, StreamEventType
from querystream.domain.connections import ConnectionDescriptor, UserAccount
from querystream.domain.errors import (
    InterpretationError,
    QueryExecutionError,
    SchemaIntrospectionError,
)
from querystream.domain.results import ExecutionResult
from querystream.domain.schema_context import ColumnInfo, SchemaContext, TableInfo
from querystream.infrastructure.cache.query_cache import InMemoryQueryResultCache
from querystream.infrastructure.cache.schema_cache import SchemaContextCache
from querystream.repositories.account_repository import (
    InMemoryConnectionRepository,
    InMemoryUserDirectory,
)
from querystream.repositories.chat_repository import InMemoryChatRepository
from querystream.repositories.usage_repository import InMemoryUsageRepository
from querystream.services.account_service import AccountService
from querystream.services.chat_stream_service import ChatStreamService
from querystream.services.deep_analysis_service import DeepAnalysisService
from querystream.services.retry_service import RetryService
from querystream.services.schema_service import SchemaService
from querystream.services.suggestions import SuggestionEngine
from querystream.services.usage_service import UsageService

USERS_SQL = "SELECT COUNT(*) AS user_count FROM users"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSQLGenerator:
    """Replays scripted model output."""

    def __init__(self, chunks: Optional[List[str]] = None, outputs: Optional[List[str]] = None):
        self.chunks = chunks if chunks is not None else ["SELECT COUNT(*) ", "AS user_count ", "FROM users"]
        self.outputs = list(outputs or [])
        self.stream_calls: List[dict] = []
        self.generate_calls: List[dict] = []

    async def stream_sql(self, **kwargs):
        self.stream_calls.append(kwargs)
        for chunk in self.chunks:
            yield chunk

    async def generate_sql(self, **kwargs) -> str:
        self.generate_calls.append(kwargs)
        if self.outputs:
            return self.outputs.pop(0)
        return "SELECT status, COUNT(*) AS total FROM orders GROUP BY status"


class FakeExecutor:
    """Returns canned rows, or fails for SQL matching `fail_when`."""

    def __init__(self, rows: Optional[List[dict]] = None, fail_when: Optional[Callable[[str], bool]] = None):
        self.rows = rows if rows is not None else [{"user_count": 42}]
        self.fail_when = fail_when
        self.calls: List[str] = []

    async def execute(self, connection, sql, timeout_seconds):
        self.calls.append(sql)
        if self.fail_when and self.fail_when(sql):
            raise QueryExecutionError('relation "userz" does not exist', attempted_sql=sql)
        return ExecutionResult(
            rows=self.rows,
            column_names=list(self.rows[0].keys()) if self.rows else [],
            row_count=len(self.rows),
            execution_time_ms=7,
        )


class FakeIntrospector:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    async def introspect(self, connection):
        self.calls += 1
        if self.fail:
            raise SchemaIntrospectionError("Schema introspection failed: connection refused")
        return SchemaContext(
            connection_id=connection.id,
            dialect=connection.dialect,
            tables=[
                TableInfo(
                    name="users",
                    columns=[
                        ColumnInfo(name="id", data_type="integer", is_nullable=False, is_primary_key=True),
                        ColumnInfo(name="email", data_type="text"),
                        ColumnInfo(name="created_at", data_type="timestamp"),
                    ],
                ),
            ],
        )


class FakeInterpreter:
    def __init__(self, chunks: Optional[List[str]] = None, fail: bool = False):
        self.chunks = chunks if chunks is not None else ["You have ", "**42** users."]
        self.fail = fail
        self.step_calls: List[int] = []

    async def stream_interpretation(self, **kwargs):
        if self.fail:
            raise InterpretationError("Interpretation failed: provider unavailable")
        for chunk in self.chunks:
            yield chunk

    async def interpret_step(self, step_number, question, purpose, sql, rows, plan):
        self.step_calls.append(step_number)
        return f"Insight for step {step_number}"

    async def stream_synthesis(self, **kwargs):
        for chunk in ["Overall, ", "things look good."]:
            yield chunk


class World:
    """All collaborators of the orchestrators, wired like the app lifespan does."""

    def __init__(self):
        self.clock = FakeClock()
        self.users = InMemoryUserDirectory(
            [
                UserAccount(id="free-user", plan=PlanTier.FREE),
                UserAccount(id="growth-user", plan=PlanTier.GROWTH),
                UserAccount(id="enterprise-user", plan=PlanTier.ENTERPRISE),
            ]
        )
        self.connections = InMemoryConnectionRepository(
            [
                ConnectionDescriptor(id="conn-free", user_id="free-user", dialect=DatabaseDialect.SQLITE, database="/tmp/shop.db"),
                ConnectionDescriptor(id="conn-growth", user_id="growth-user", dialect=DatabaseDialect.SQLITE, database="/tmp/shop.db"),
                ConnectionDescriptor(id="conn-ent", user_id="enterprise-user", dialect=DatabaseDialect.SQLITE, database="/tmp/shop.db"),
            ]
        )
        self.schema_cache = SchemaContextCache(ttl_minutes=120, clock=self.clock)
        self.query_cache = InMemoryQueryResultCache(ttl_minutes=30, clock=self.clock)
        self.chat = InMemoryChatRepository()
        self.usage_repo = InMemoryUsageRepository()
        self.accounts = AccountService(self.users, self.connections, self.schema_cache, self.query_cache)
        self.usage = UsageService(self.usage_repo)
        self.introspector = FakeIntrospector()
        self.generator = FakeSQLGenerator()
        self.executor = FakeExecutor()
        self.interpreter = FakeInterpreter()
        self.suggestions = SuggestionEngine()
        self.config = PipelineConfig()

    def chat_service(self) -> ChatStreamService:
        return ChatStreamService(
            account_service=self.accounts,
            usage_service=self.usage,
            schema_service=SchemaService(self.introspector, self.schema_cache),
            query_cache=self.query_cache,
            chat_repository=self.chat,
            sql_generation_repository=self.generator,
            sql_execution_repository=self.executor,
            interpretation_repository=self.interpreter,
            suggestion_engine=self.suggestions,
            config=self.config,
        )

    def retry_service(self) -> RetryService:
        return RetryService(
            account_service=self.accounts,
            usage_service=self.usage,
            chat_repository=self.chat,
            sql_execution_repository=self.executor,
            interpretation_repository=self.interpreter,
            suggestion_engine=self.suggestions,
            config=self.config,
        )

    def deep_analysis_service(self) -> DeepAnalysisService:
        return DeepAnalysisService(
            account_service=self.accounts,
            usage_service=self.usage,
            schema_service=SchemaService(self.introspector, self.schema_cache),
            chat_repository=self.chat,
            sql_generation_repository=self.generator,
            sql_execution_repository=self.executor,
            interpretation_repository=self.interpreter,
            suggestion_engine=self.suggestions,
            config=self.config,
        )

    async def used_today(self, user_id: str) -> int:
        user = await self.users.get(user_id)
        return (await self.usage.snapshot(user)).used


@pytest.fixture
def world() -> World:
    return World()


async def collect(events) -> list:
    """Drain an event stream into a list."""
    return [event async for event in events]


def names(events) -> List[str]:
    return [event.event.value for event in events]


def only(events, event_type: StreamEventType):
    matches = [event for event in events if event.event == event_type]
    assert len(matches) == 1, f"expected one {event_type.value}, got {len(matches)}"
    return matches[0]
