"""Unit tests for pipeline run state and stream events."""

import json
from datetime import date

import pytest

from querystream.domain.base_enums import PipelineStage, StreamEventType
from querystream.domain.chat import session_title
from querystream.domain.errors import InternalError, QuotaExceededError
from querystream.domain.events import StreamEvent
from querystream.domain.pipeline import PipelineRun


def new_run() -> PipelineRun:
    return PipelineRun(question="How many users?", connection_id="conn-1")


class TestPipelineRun:
    def test_starts_initializing(self):
        run = new_run()
        assert run.stage == PipelineStage.INITIALIZING
        assert run.stages_visited == [PipelineStage.INITIALIZING]

    def test_forward_moves(self):
        run = new_run()
        run.advance(PipelineStage.USAGE_CHECK)
        run.advance(PipelineStage.CACHE_LOOKUP)
        run.advance(PipelineStage.COMPLETE)

        assert run.stages_visited[-1] == PipelineStage.COMPLETE

    def test_backward_move_rejected(self):
        run = new_run()
        run.advance(PipelineStage.SQL_GENERATING)

        with pytest.raises(InternalError):
            run.advance(PipelineStage.SCHEMA_RESOLVE)

    def test_same_stage_rejected(self):
        run = new_run()
        with pytest.raises(InternalError):
            run.advance(PipelineStage.INITIALIZING)

    def test_fail_records_stage(self):
        run = new_run()
        run.advance(PipelineStage.SQL_EXECUTING)
        run.fail("relation does not exist")

        assert run.stage == PipelineStage.FAILED
        assert run.error_stage == PipelineStage.SQL_EXECUTING
        assert run.error_message == "relation does not exist"

    def test_no_moves_after_finish(self):
        run = new_run()
        run.advance(PipelineStage.COMPLETE)

        with pytest.raises(InternalError):
            run.advance(PipelineStage.FAILED)
        run.fail("late")
        assert run.stage == PipelineStage.COMPLETE
        assert run.error_message is None


class TestStreamEvent:
    def test_sse_format(self):
        event = StreamEvent.of(StreamEventType.SQL_CHUNK, chunk="SELECT")

        assert event.to_sse() == 'event: sql_chunk\ndata: {"chunk": "SELECT"}\n\n'

    def test_status(self):
        event = StreamEvent.status("cache_lookup", "Checking...")
        assert event.data == {"stage": "cache_lookup", "message": "Checking..."}
        assert not event.is_terminal

    def test_error_payload(self):
        event = StreamEvent.error(QuotaExceededError(limit=3, used=3))

        assert event.is_terminal
        assert event.data == {
            "message": "Daily query limit reached (3 queries)",
            "errorCode": "QUOTA_EXCEEDED",
            "limitReached": True,
            "limit": 3,
            "currentUsage": 3,
        }

    def test_non_json_values_are_stringified(self):
        data = json.loads(StreamEvent.of(StreamEventType.RESULTS, day=date(2026, 1, 2)).to_sse().split("data: ")[1])
        assert data == {"day": "2026-01-02"}


class TestSessionTitle:
    def test_short_question(self):
        assert session_title("  How many users?  ", 50) == "How many users?"

    def test_truncated(self):
        assert session_title("x" * 60, 50) == "x" * 50 + "..."
