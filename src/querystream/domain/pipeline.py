"""
Pipeline state models for the QueryStream system.

A PipelineRun is the mutable record of one streaming request as it moves
through the stages. Stages only move forward; FAILED is reachable from
anywhere except COMPLETE.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .base_enums import PipelineStage
from .chat import ChatSession
from .connections import ConnectionDescriptor, UserAccount
from .errors import InternalError
from .results import CachedQueryResult, ExecutionResult, Suggestion
from .schema_context import SchemaContext

_STAGE_ORDER = {stage: index for index, stage in enumerate(PipelineStage)}


@dataclass
class PipelineRun:
    """
    Mutable state passed through the streaming pipeline stages.

    Tracks the current stage and every partial artifact so a failure can be
    reported with whatever was produced before it.
    """

    # Input
    question: str
    connection_id: str
    requested_session_id: Optional[str] = None

    stage: PipelineStage = PipelineStage.INITIALIZING
    stages_visited: List[PipelineStage] = field(default_factory=lambda: [PipelineStage.INITIALIZING])

    # Resolved at Initializing
    user: Optional[UserAccount] = None
    connection: Optional[ConnectionDescriptor] = None
    session: Optional[ChatSession] = None
    session_created: bool = False

    # Artifacts
    cache_key: Optional[str] = None
    schema: Optional[SchemaContext] = None
    raw_sql: str = ""
    sql: Optional[str] = None
    execution: Optional[ExecutionResult] = None
    # Assembled at ResultsCaching, written to the cache once interpreted
    bundle: Optional[CachedQueryResult] = None
    interpretation: str = ""
    suggestions: List[Suggestion] = field(default_factory=list)
    user_message_id: Optional[str] = None
    assistant_message_id: Optional[str] = None

    # Error tracking
    error_message: Optional[str] = None
    error_stage: Optional[PipelineStage] = None

    def advance(self, stage: PipelineStage) -> None:
        """
        Move to `stage`.

        Raises:
            InternalError: If `stage` is not after the current stage, or the
                run has already finished
        """
        if self.stage in (PipelineStage.COMPLETE, PipelineStage.FAILED):
            raise InternalError(
                f"Pipeline already finished at {self.stage.value}",
                details={"requested": stage.value},
            )
        if stage != PipelineStage.FAILED and _STAGE_ORDER[stage] <= _STAGE_ORDER[self.stage]:
            raise InternalError(
                f"Illegal pipeline transition {self.stage.value} -> {stage.value}",
                details={"from": self.stage.value, "to": stage.value},
            )
        self.stage = stage
        self.stages_visited.append(stage)

    def fail(self, message: str) -> None:
        """Record the failure and move to FAILED (no-op once finished)."""
        if self.stage in (PipelineStage.COMPLETE, PipelineStage.FAILED):
            return
        self.error_message = message
        self.error_stage = self.stage
        self.advance(PipelineStage.FAILED)
