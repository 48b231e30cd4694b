"""
Plan tier capabilities.

Each function matches exhaustively over PlanTier, so adding a tier without
deciding its limits is a type error rather than a silent default.
"""

from typing import Optional, assert_never

from .base_enums import PlanTier

# Deep analysis and session continuation are sold from this tier up
MULTI_TURN_REQUIRED_PLAN = PlanTier.GROWTH


def daily_query_limit(plan: PlanTier) -> Optional[int]:
    """
    Queries allowed per UTC day.

    Returns:
        The limit, or None for unlimited
    """
    match plan:
        case PlanTier.FREE:
            return 3
        case PlanTier.STARTER:
            return 50
        case PlanTier.GROWTH:
            return 300
        case PlanTier.ENTERPRISE:
            return None
        case _:
            assert_never(plan)


def allows_multi_turn(plan: PlanTier) -> bool:
    """Whether an existing chat session may be continued."""
    match plan:
        case PlanTier.FREE | PlanTier.STARTER:
            return False
        case PlanTier.GROWTH | PlanTier.ENTERPRISE:
            return True
        case _:
            assert_never(plan)


def allows_deep_analysis(plan: PlanTier) -> bool:
    match plan:
        case PlanTier.FREE | PlanTier.STARTER:
            return False
        case PlanTier.GROWTH | PlanTier.ENTERPRISE:
            return True
        case _:
            assert_never(plan)
