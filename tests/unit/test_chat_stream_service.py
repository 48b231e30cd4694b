"""Unit tests for the streaming chat orchestrator."""

import pytest

from querystream.domain.base_enums import DatabaseDialect, MessageRole, PlanTier, StreamEventType
from querystream.domain.connections import ConnectionDescriptor
from querystream.domain.requests import ChatStreamRequest
from querystream.infrastructure.cache.query_cache import normalize_question

from conftest import FakeIntrospector, FakeInterpreter, FakeSQLGenerator, collect, names, only


def ask(question: str = "How many users do we have?", connection_id: str = "conn-free", session_id=None):
    return ChatStreamRequest(question=question, connection_id=connection_id, session_id=session_id)


COLD_ORDER = [
    "status",
    "session_created",
    "status",
    "user_message",
    "status",
    "sql_chunk",
    "sql_chunk",
    "sql_chunk",
    "sql_generated",
    "sql_executing",
    "results",
    "interpretation_start",
    "interpretation_chunk",
    "interpretation_chunk",
    "interpretation_complete",
    "complete",
]


class TestColdCache:
    """A question nobody asked recently runs the whole pipeline."""

    @pytest.mark.asyncio
    async def test_event_order(self, world):
        events = await collect(world.chat_service().run("free-user", ask()))

        assert names(events) == COLD_ORDER
        assert "error" not in names(events)

    @pytest.mark.asyncio
    async def test_charges_exactly_one_query(self, world):
        events = await collect(world.chat_service().run("free-user", ask()))

        complete = events[-1]
        assert complete.data["queriesUsed"] == 1
        assert complete.data["usageRemaining"] == 2
        assert complete.data["fromCache"] is False
        assert complete.data["canContinue"] is False
        assert await world.used_today("free-user") == 1

    @pytest.mark.asyncio
    async def test_queries_used_is_per_run(self, world):
        service = world.chat_service()
        await collect(service.run("free-user", ask()))
        events = await collect(service.run("free-user", ask("List all customers")))

        assert events[-1].data["fromCache"] is False
        assert events[-1].data["queriesUsed"] == 1
        assert events[-1].data["usageRemaining"] == 1
        assert await world.used_today("free-user") == 2

    @pytest.mark.asyncio
    async def test_payloads(self, world):
        events = await collect(world.chat_service().run("free-user", ask()))

        assert only(events, StreamEventType.SQL_GENERATED).data["sql"] == "SELECT COUNT(*) AS user_count FROM users"
        results = only(events, StreamEventType.RESULTS).data
        assert results["results"] == [{"user_count": 42}]
        assert results["rowCount"] == 1
        assert results["executionTimeMs"] == 7

        done = only(events, StreamEventType.INTERPRETATION_COMPLETE).data
        assert done["interpretation"] == "You have **42** users."
        assert isinstance(done["suggestions"], list)
        assert done["suggestions"], "an aggregate over users should get suggestions"
        assert set(done["suggestions"][0]) == {"question", "description", "category"}

    @pytest.mark.asyncio
    async def test_turns_persisted(self, world):
        events = await collect(world.chat_service().run("free-user", ask()))
        session_id = events[-1].data["sessionId"]

        messages = await world.chat.list_recent_messages(session_id, 10)
        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert messages[0].content == "How many users do we have?"
        assert messages[1].content == "You have **42** users."
        assert messages[1].metadata["sql"] == "SELECT COUNT(*) AS user_count FROM users"
        assert messages[1].metadata["rowCount"] == 1
        assert messages[1].metadata["dialect"] == "sqlite"

        session = await world.chat.get_session(session_id)
        assert session.message_count == 2
        assert session.title == "How many users do we have?"

    @pytest.mark.asyncio
    async def test_answer_is_cached(self, world):
        await collect(world.chat_service().run("free-user", ask()))

        cached = await world.query_cache.get(world.query_cache.key("How many users do we have?", "conn-free"))
        assert cached is not None
        assert cached.sql == "SELECT COUNT(*) AS user_count FROM users"
        assert cached.interpretation == "You have **42** users."
        assert cached.results == [{"user_count": 42}]

    @pytest.mark.asyncio
    async def test_long_question_title_truncated(self, world):
        question = "Show me " + "very " * 20 + "many users"
        events = await collect(world.chat_service().run("free-user", ask(question)))

        session = await world.chat.get_session(events[-1].data["sessionId"])
        assert session.title == question[:50] + "..."


class TestCacheHit:
    """The same question within the TTL is replayed without external calls."""

    @pytest.mark.asyncio
    async def test_second_ask_replays_cached_answer(self, world):
        service = world.chat_service()
        await collect(service.run("growth-user", ask(connection_id="conn-growth")))

        events = await collect(service.run("growth-user", ask(connection_id="conn-growth")))
        event_names = names(events)

        assert event_names.count("cached_result") == 1
        assert event_names[-2:] == ["cached_result", "complete"]
        assert "sql_executing" not in event_names
        assert "sql_chunk" not in event_names
        assert len(world.executor.calls) == 1
        assert len(world.generator.stream_calls) == 1

    @pytest.mark.asyncio
    async def test_hit_is_not_charged(self, world):
        service = world.chat_service()
        await collect(service.run("growth-user", ask(connection_id="conn-growth")))
        events = await collect(service.run("growth-user", ask(connection_id="conn-growth")))

        assert await world.used_today("growth-user") == 1
        assert events[-1].data["fromCache"] is True
        assert events[-1].data["queriesUsed"] == 0
        assert events[-1].data["usageRemaining"] == 299

    @pytest.mark.asyncio
    async def test_hit_payload(self, world):
        service = world.chat_service()
        await collect(service.run("growth-user", ask(connection_id="conn-growth")))
        events = await collect(service.run("growth-user", ask("  how many USERS do we have?  ", "conn-growth")))

        cached = only(events, StreamEventType.CACHED_RESULT).data
        assert cached["fromCache"] is True
        assert cached["sql"] == "SELECT COUNT(*) AS user_count FROM users"
        assert cached["interpretation"] == "You have **42** users."
        assert cached["results"] == [{"user_count": 42}]
        assert cached["cacheKey"] == "query:conn-growth:" + normalize_question("How many users do we have?")

    @pytest.mark.asyncio
    async def test_hit_persists_both_turns(self, world):
        service = world.chat_service()
        await collect(service.run("growth-user", ask(connection_id="conn-growth")))
        events = await collect(service.run("growth-user", ask(connection_id="conn-growth")))

        messages = await world.chat.list_recent_messages(events[-1].data["sessionId"], 10)
        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert messages[1].metadata["fromCache"] is True

    @pytest.mark.asyncio
    async def test_expired_entry_runs_pipeline_again(self, world):
        service = world.chat_service()
        await collect(service.run("growth-user", ask(connection_id="conn-growth")))

        world.clock.advance(30 * 60)
        events = await collect(service.run("growth-user", ask(connection_id="conn-growth")))

        assert "cached_result" not in names(events)
        assert len(world.executor.calls) == 2

    @pytest.mark.asyncio
    async def test_other_connection_misses(self, world):
        service = world.chat_service()
        await collect(service.run("enterprise-user", ask(connection_id="conn-ent")))
        events = await collect(service.run("growth-user", ask(connection_id="conn-growth")))

        assert "cached_result" not in names(events)

    @pytest.mark.asyncio
    async def test_colon_connection_ids_do_not_share_answers(self, world):
        """A question on `acme` never replays an answer cached for `acme:sales`."""
        await world.connections.upsert(
            ConnectionDescriptor(id="acme:sales", user_id="enterprise-user", dialect=DatabaseDialect.SQLITE, database="/tmp/a.db")
        )
        await world.connections.upsert(
            ConnectionDescriptor(id="acme", user_id="growth-user", dialect=DatabaseDialect.SQLITE, database="/tmp/b.db")
        )
        service = world.chat_service()
        world.executor.rows = [{"secret": "enterprise data"}]
        await collect(service.run("enterprise-user", ask("revenue", connection_id="acme:sales")))

        world.executor.rows = [{"revenue": 10}]
        events = await collect(service.run("growth-user", ask("sales:revenue", connection_id="acme")))

        assert "cached_result" not in names(events)
        assert only(events, StreamEventType.RESULTS).data["results"] == [{"revenue": 10}]


class TestGates:
    """Failures before any billable work end the stream with one error event."""

    @pytest.mark.asyncio
    async def test_missing_identity(self, world):
        events = await collect(world.chat_service().run(None, ask()))

        assert names(events) == ["error"]
        assert events[0].data["errorCode"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_unknown_user(self, world):
        events = await collect(world.chat_service().run("nobody", ask()))
        assert events[0].data["errorCode"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_foreign_connection(self, world):
        events = await collect(world.chat_service().run("free-user", ask(connection_id="conn-growth")))

        assert names(events) == ["error"]
        assert events[0].data["errorCode"] == "CONNECTION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_quota_exceeded(self, world):
        user = await world.users.get("free-user")
        await world.usage.charge(user, 3)

        events = await collect(world.chat_service().run("free-user", ask()))

        assert names(events) == ["error"]
        assert events[0].data["errorCode"] == "QUOTA_EXCEEDED"
        assert events[0].data["limitReached"] is True
        assert events[0].data["limit"] == 3
        assert events[0].data["currentUsage"] == 3
        assert world.generator.stream_calls == []

    @pytest.mark.asyncio
    async def test_quota_blocks_even_cached_answers(self, world):
        service = world.chat_service()
        await collect(service.run("free-user", ask()))
        user = await world.users.get("free-user")
        await world.usage.charge(user, 2)

        events = await collect(service.run("free-user", ask()))
        assert events[-1].data["errorCode"] == "QUOTA_EXCEEDED"

    @pytest.mark.asyncio
    async def test_enterprise_is_unlimited(self, world):
        user = await world.users.get("enterprise-user")
        await world.usage.charge(user, 10_000)

        events = await collect(world.chat_service().run("enterprise-user", ask(connection_id="conn-ent")))

        assert events[-1].event == StreamEventType.COMPLETE
        assert events[-1].data["usageRemaining"] is None

    @pytest.mark.asyncio
    async def test_continuing_requires_multi_turn_plan(self, world):
        session = await world.chat.create_session("free-user", "conn-free", "Earlier")

        events = await collect(world.chat_service().run("free-user", ask(session_id=session.id)))

        assert names(events) == ["error"]
        assert events[0].data["errorCode"] == "PLAN_UPGRADE_REQUIRED"
        assert events[0].data["upgradeRequired"] is True
        assert events[0].data["requiredPlan"] == "growth"

    @pytest.mark.asyncio
    async def test_unknown_session(self, world):
        events = await collect(world.chat_service().run("growth-user", ask(connection_id="conn-growth", session_id="missing")))
        assert events[0].data["errorCode"] == "SESSION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_foreign_session(self, world):
        session = await world.chat.create_session("enterprise-user", "conn-ent", "Theirs")

        events = await collect(
            world.chat_service().run("growth-user", ask(connection_id="conn-growth", session_id=session.id))
        )
        assert events[0].data["errorCode"] == "SESSION_NOT_FOUND"


class TestMultiTurn:
    @pytest.mark.asyncio
    async def test_continued_session_sends_previous_turns(self, world):
        service = world.chat_service()
        first = await collect(service.run("growth-user", ask(connection_id="conn-growth")))
        session_id = first[-1].data["sessionId"]

        events = await collect(
            service.run("growth-user", ask("And how many signed up this week?", "conn-growth", session_id))
        )

        assert "session_created" not in names(events)
        schema_text = world.generator.stream_calls[-1]["schema_text"]
        assert "Previous conversation:" in schema_text
        assert "user: How many users do we have?" in schema_text
        assert "assistant: You have **42** users." in schema_text
        assert events[-1].data["sessionId"] == session_id
        assert events[-1].data["canContinue"] is True

    @pytest.mark.asyncio
    async def test_new_session_has_no_history(self, world):
        await collect(world.chat_service().run("growth-user", ask(connection_id="conn-growth")))

        assert "Previous conversation" not in world.generator.stream_calls[0]["schema_text"]


class TestGenerationOutcomes:
    @pytest.mark.asyncio
    async def test_dangerous_sql_is_never_executed(self, world):
        world.generator = FakeSQLGenerator(chunks=["DELETE FROM users"])

        events = await collect(world.chat_service().run("free-user", ask()))

        assert events[-1].event == StreamEventType.ERROR
        assert events[-1].data["errorCode"] == "DANGEROUS_OPERATION"
        assert "sql_executing" not in names(events)
        assert world.executor.calls == []
        assert await world.used_today("free-user") == 0

    @pytest.mark.asyncio
    async def test_fenced_sql_is_cleaned(self, world):
        world.generator = FakeSQLGenerator(chunks=["```sql\n", "SELECT COUNT(*) AS user_count FROM users\n", "```"])

        events = await collect(world.chat_service().run("free-user", ask()))

        assert only(events, StreamEventType.SQL_GENERATED).data["sql"] == "SELECT COUNT(*) AS user_count FROM users"
        assert world.executor.calls == ["SELECT COUNT(*) AS user_count FROM users"]

    @pytest.mark.asyncio
    async def test_common_table_expression_rejected(self, world):
        world.generator = FakeSQLGenerator(chunks=["WITH t AS (SELECT 1) SELECT * FROM t"])

        events = await collect(world.chat_service().run("free-user", ask()))
        assert events[-1].data["errorCode"] == "NOT_SELECT"

    @pytest.mark.asyncio
    async def test_unable_to_generate_is_informational(self, world):
        world.generator = FakeSQLGenerator(chunks=["UNABLE_TO_GENERATE: ", "There is no weather data in this database."])

        events = await collect(world.chat_service().run("free-user", ask("What's the weather?")))

        assert names(events)[-2:] == ["informational_message", "complete"]
        assert events[-2].data["message"] == "There is no weather data in this database."
        assert "error" not in names(events)
        assert world.executor.calls == []
        assert await world.used_today("free-user") == 1

        messages = await world.chat.list_recent_messages(events[-1].data["sessionId"], 10)
        assert messages[-1].metadata["informational"] is True

    @pytest.mark.asyncio
    async def test_prose_answer_is_informational(self, world):
        world.generator = FakeSQLGenerator(chunks=["I'm sorry, I can only answer questions about your data."])

        events = await collect(world.chat_service().run("free-user", ask("Tell me a joke")))
        assert "informational_message" in names(events)

    @pytest.mark.asyncio
    async def test_schema_introspected_once_per_connection(self, world):
        service = world.chat_service()
        await collect(service.run("growth-user", ask("How many users?", "conn-growth")))
        await collect(service.run("growth-user", ask("How many users signed up today?", "conn-growth")))

        assert world.introspector.calls == 1

    @pytest.mark.asyncio
    async def test_schema_failure(self, world):
        world.introspector = FakeIntrospector(fail=True)

        events = await collect(world.chat_service().run("free-user", ask()))

        assert events[-1].data["errorCode"] == "SCHEMA_INTROSPECTION_FAILED"
        assert world.generator.stream_calls == []
        assert await world.used_today("free-user") == 0


class TestExecutionFailure:
    @pytest.mark.asyncio
    async def test_error_offers_retry(self, world):
        world.executor.fail_when = lambda sql: True

        events = await collect(world.chat_service().run("free-user", ask()))

        assert "complete" not in names(events)
        error = events[-1]
        assert error.event == StreamEventType.ERROR
        assert error.data["errorCode"] == "QUERY_EXECUTION_ERROR"
        assert error.data["canRetry"] is True
        assert error.data["sql"] == "SELECT COUNT(*) AS user_count FROM users"
        assert error.data["driverMessage"] == 'relation "userz" does not exist'
        assert error.data["retryMessageId"]
        assert await world.used_today("free-user") == 0

    @pytest.mark.asyncio
    async def test_failed_turn_recorded_as_retryable(self, world):
        world.executor.fail_when = lambda sql: True

        events = await collect(world.chat_service().run("free-user", ask()))

        message = await world.chat.get_message(events[-1].data["retryMessageId"])
        assert message.role == MessageRole.ASSISTANT
        assert message.metadata["canRetry"] is True
        assert message.metadata["retryCount"] == 0
        assert message.metadata["sql"] == "SELECT COUNT(*) AS user_count FROM users"


class TestWrapUp:
    @pytest.mark.asyncio
    async def test_suggestion_failure_degrades_to_empty_list(self, world, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("rule table corrupted")

        monkeypatch.setattr(world.suggestions, "suggest", broken)

        events = await collect(world.chat_service().run("free-user", ask()))

        assert only(events, StreamEventType.INTERPRETATION_COMPLETE).data["suggestions"] == []
        assert events[-1].event == StreamEventType.COMPLETE

    @pytest.mark.asyncio
    async def test_interpretation_failure_is_terminal(self, world):
        world.interpreter = FakeInterpreter(fail=True)

        events = await collect(world.chat_service().run("free-user", ask()))

        assert events[-1].data["errorCode"] == "INTERPRETATION_FAILED"
        assert "complete" not in names(events)
        assert await world.used_today("free-user") == 0
        assert await world.query_cache.get(world.query_cache.key("How many users do we have?", "conn-free")) is None

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_internal_error(self, world, monkeypatch):
        async def broken(*args, **kwargs):
            raise KeyError("boom")

        monkeypatch.setattr(world.usage, "check", broken)

        events = await collect(world.chat_service().run("free-user", ask()))

        assert names(events) == ["error"]
        assert events[0].data["errorCode"] == "INTERNAL_ERROR"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_closing_the_stream_stops_the_pipeline(self, world):
        stream = world.chat_service().run("free-user", ask())

        async for event in stream:
            if event.event == StreamEventType.SQL_CHUNK:
                break
        await stream.aclose()

        assert world.executor.calls == []
        assert await world.used_today("free-user") == 0

    @pytest.mark.asyncio
    async def test_persisted_user_turn_is_kept(self, world):
        stream = world.chat_service().run("free-user", ask())

        session_id = None
        async for event in stream:
            if event.event == StreamEventType.SESSION_CREATED:
                session_id = event.data["sessionId"]
            if event.event == StreamEventType.USER_MESSAGE:
                break
        await stream.aclose()

        messages = await world.chat.list_recent_messages(session_id, 10)
        assert [m.role for m in messages] == [MessageRole.USER]


class TestPlans:
    @pytest.mark.asyncio
    async def test_plan_passed_to_generator(self, world):
        await collect(world.chat_service().run("growth-user", ask(connection_id="conn-growth")))

        assert world.generator.stream_calls[0]["plan"] == PlanTier.GROWTH
