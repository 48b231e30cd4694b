"""Unit tests for the deep analysis orchestrator."""

import itertools

import pytest

from querystream.domain.base_enums import MessageRole, StreamEventType
from querystream.domain.requests import DeepAnalysisRequest
from querystream.services import deep_analysis_service
from querystream.services.deep_analysis_service import DEEP_ANALYSIS_PREFIX, GENERIC_FOLLOW_UPS

from conftest import USERS_SQL, FakeSQLGenerator, collect, names, only


async def analysis_request(world, user_id: str = "growth-user", connection_id: str = "conn-growth"):
    session = await world.chat.create_session(user_id, connection_id, "How many users do we have?")
    return DeepAnalysisRequest(
        question="How many users do we have?",
        sql=USERS_SQL,
        results=[{"user_count": 42}],
        connection_id=connection_id,
        session_id=session.id,
    )


class TestDeepAnalysisSuccess:
    """A complete analysis streams three steps, one summary, and charges three queries."""

    @pytest.mark.asyncio
    async def test_event_order(self, world):
        request = await analysis_request(world)

        events = await collect(world.deep_analysis_service().run("growth-user", request))

        step_events = ["step_start", "step_progress", "step_progress", "step_complete"]
        assert names(events) == (
            ["status"]
            + step_events * 3
            + [
                "comprehensive_insights_start",
                "comprehensive_insights_chunk",
                "comprehensive_insights_chunk",
                "comprehensive_insights_complete",
                "complete",
            ]
        )

    @pytest.mark.asyncio
    async def test_steps_are_numbered(self, world):
        request = await analysis_request(world)

        events = await collect(world.deep_analysis_service().run("growth-user", request))

        completed = [e.data for e in events if e.event == StreamEventType.STEP_COMPLETE]
        assert [step["stepNumber"] for step in completed] == [1, 2, 3]
        assert completed[0]["insights"] == "Insight for step 1"
        assert completed[0]["rowCount"] == 1
        assert completed[0]["sql"].startswith("SELECT")
        assert world.interpreter.step_calls == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_progress_messages(self, world):
        request = await analysis_request(world)

        events = await collect(world.deep_analysis_service().run("growth-user", request))

        progress = [e.data["message"] for e in events if e.event == StreamEventType.STEP_PROGRESS]
        assert progress[:2] == ["Executing query 1...", "Analyzing results for step 1..."]

    @pytest.mark.asyncio
    async def test_charges_full_cost_once(self, world):
        request = await analysis_request(world)

        events = await collect(world.deep_analysis_service().run("growth-user", request))

        complete = events[-1].data
        assert complete["queriesUsed"] == 3
        assert complete["usageRemaining"] == 297
        assert complete["sessionId"] == request.session_id
        assert await world.used_today("growth-user") == 3

    @pytest.mark.asyncio
    async def test_persists_both_turns(self, world):
        request = await analysis_request(world)

        events = await collect(world.deep_analysis_service().run("growth-user", request))

        messages = await world.chat.list_recent_messages(request.session_id, 10)
        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert messages[0].content == f"{DEEP_ANALYSIS_PREFIX} How many users do we have?"
        assert messages[1].id == events[-1].data["messageId"]
        assert messages[1].content == "Overall, things look good."
        assert messages[1].metadata["isDeepAnalysis"] is True
        assert len(messages[1].metadata["deepAnalysisSteps"]) == 3

    @pytest.mark.asyncio
    async def test_summary_payload(self, world, monkeypatch):
        ticks = itertools.chain([10.0], itertools.repeat(12.5))
        monkeypatch.setattr(deep_analysis_service.time, "perf_counter", lambda: next(ticks))
        request = await analysis_request(world)

        events = await collect(world.deep_analysis_service().run("growth-user", request))

        summary = only(events, StreamEventType.COMPREHENSIVE_INSIGHTS_COMPLETE).data
        assert summary["insights"] == "Overall, things look good."
        assert summary["executionTimeMs"] == 2500
        assert summary["originalRowCount"] == 1
        assert events[-1].data["executionTimeMs"] == 2500


class TestFollowUpQuestions:
    @pytest.mark.asyncio
    async def test_uses_top_suggestions(self, world):
        request = await analysis_request(world)

        follow_ups = world.deep_analysis_service().follow_up_questions(request)

        expected = world.suggestions.suggest(request.question, request.sql, request.results)[:3]
        assert follow_ups == [(s.question, s.description) for s in expected]

    @pytest.mark.asyncio
    async def test_padded_with_generic_questions(self, world, monkeypatch):
        monkeypatch.setattr(world.suggestions, "suggest", lambda *args: [])
        request = await analysis_request(world)

        follow_ups = world.deep_analysis_service().follow_up_questions(request)

        assert follow_ups == GENERIC_FOLLOW_UPS


class TestDeepAnalysisAtomicity:
    """A failed step fails the whole analysis: nothing stored, nothing charged."""

    @pytest.mark.asyncio
    async def test_execution_failure_in_step_two(self, world):
        world.generator = FakeSQLGenerator(
            outputs=[
                "SELECT status, COUNT(*) FROM users GROUP BY status",
                "SELECT * FROM userz",
                "SELECT 1",
            ]
        )
        world.executor.fail_when = lambda sql: "userz" in sql
        request = await analysis_request(world)

        events = await collect(world.deep_analysis_service().run("growth-user", request))

        error = events[-1]
        assert error.event == StreamEventType.ERROR
        assert error.data["errorCode"] == "DEEP_ANALYSIS_STEP_FAILED"
        assert error.data["failedStep"] == 2
        assert "complete" not in names(events)
        assert names(events).count("step_complete") == 1
        assert await world.chat.list_recent_messages(request.session_id, 10) == []
        assert await world.used_today("growth-user") == 0

    @pytest.mark.asyncio
    async def test_dangerous_step_sql(self, world):
        world.generator = FakeSQLGenerator(outputs=["DROP TABLE users"])
        request = await analysis_request(world)

        events = await collect(world.deep_analysis_service().run("growth-user", request))

        assert events[-1].data["errorCode"] == "DEEP_ANALYSIS_STEP_FAILED"
        assert events[-1].data["failedStep"] == 1
        assert world.executor.calls == []

    @pytest.mark.asyncio
    async def test_unable_to_generate_step(self, world):
        world.generator = FakeSQLGenerator(outputs=["UNABLE_TO_GENERATE: no hourly data"])
        request = await analysis_request(world)

        events = await collect(world.deep_analysis_service().run("growth-user", request))

        assert events[-1].data["errorCode"] == "DEEP_ANALYSIS_STEP_FAILED"
        assert "no hourly data" in events[-1].data["message"]


class TestDeepAnalysisGates:
    @pytest.mark.asyncio
    async def test_free_plan_needs_upgrade(self, world):
        request = await analysis_request(world, user_id="free-user", connection_id="conn-free")

        events = await collect(world.deep_analysis_service().run("free-user", request))

        assert names(events) == ["error"]
        assert events[0].data["errorCode"] == "PLAN_UPGRADE_REQUIRED"
        assert events[0].data["requiredPlan"] == "growth"

    @pytest.mark.asyncio
    async def test_insufficient_quota(self, world):
        request = await analysis_request(world)
        user = await world.users.get("growth-user")
        await world.usage.charge(user, 298)

        events = await collect(world.deep_analysis_service().run("growth-user", request))

        assert names(events) == ["error"]
        assert events[0].data["errorCode"] == "INSUFFICIENT_QUOTA"
        assert events[0].data["queriesNeeded"] == 3
        assert events[0].data["queriesAvailable"] == 2
        assert world.generator.generate_calls == []

    @pytest.mark.asyncio
    async def test_foreign_session(self, world):
        request = await analysis_request(world, user_id="enterprise-user", connection_id="conn-ent")

        events = await collect(world.deep_analysis_service().run("growth-user", request))

        assert events[0].data["errorCode"] == "SESSION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_enterprise_unlimited(self, world):
        request = await analysis_request(world, user_id="enterprise-user", connection_id="conn-ent")

        events = await collect(world.deep_analysis_service().run("enterprise-user", request))

        assert events[-1].event == StreamEventType.COMPLETE
        assert events[-1].data["usageRemaining"] is None
