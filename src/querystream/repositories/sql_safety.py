"""
SQL Safety Gate.

Every piece of model-generated SQL passes through this gate before it is
executed against a user's database.

Checks (in order, first failure wins):
1. Empty Check: nothing left after cleaning
2. Dangerous Keywords Check: DROP, DELETE, UPDATE, INSERT, TRUNCATE, ALTER,
   CREATE, GRANT, REVOKE as whole words anywhere in the text
3. SELECT-Only Check: the first token after comments must be SELECT

Known limitation: the scan is pattern based, not a parser. A dangerous word
inside a string literal (WHERE note = 'drop') is rejected; identifiers such
as created_at or update_time pass because of word boundaries. Statements
starting with WITH are rejected by check 3.

Usage:
    sql = SQLSafetyGate.validate_and_clean(raw_model_output)
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional

from querystream.domain.errors import (
    DangerousOperationError,
    NotSelectError,
    SQLValidationError,
)
from querystream.utils.logging import get_module_logger
from querystream.utils.tracing import current_trace_id

logger = get_module_logger()

DANGEROUS_KEYWORDS = (
    "DROP", "DELETE", "UPDATE", "INSERT", "TRUNCATE",
    "ALTER", "CREATE", "GRANT", "REVOKE",
)

_DANGEROUS_PATTERN = re.compile(r"\b(" + "|".join(DANGEROUS_KEYWORDS) + r")\b", re.IGNORECASE)

# Fence whose language tag sits alone on the opening line
_FENCE_WITH_TAG_LINE = re.compile(r"^```[ \t]*[\w+-]*[ \t]*\r?\n")
# Fence followed by a known SQL tag on the same line
_FENCE_WITH_SQL_TAG = re.compile(
    r"^```[ \t]*(?:(?:sql|postgresql|postgres|pgsql|mysql|sqlite|tsql|mssql|plsql)\b)?",
    re.IGNORECASE,
)
_CLOSING_FENCE = re.compile(r"\r?\n?[ \t]*```[ \t]*$")

# Leading whitespace and SQL comments before the first token
_LEADING_NOISE = re.compile(r"^(?:\s+|--[^\n]*(?:\n|$)|/\*.*?\*/)*", re.DOTALL)
_SELECT_TOKEN = re.compile(r"SELECT\b", re.IGNORECASE)


@dataclass(frozen=True)
class SafetyRule:
    """One gate check: `violation` returns an error for unsafe SQL, else None."""

    name: str
    violation: Callable[[str], Optional[SQLValidationError]]


def _empty(sql: str) -> Optional[SQLValidationError]:
    if not sql:
        return NotSelectError("SQL query cannot be empty")
    return None


def _dangerous_keyword(sql: str) -> Optional[SQLValidationError]:
    match = _DANGEROUS_PATTERN.search(sql)
    if match:
        return DangerousOperationError(match.group(1).upper())
    return None


def _not_select(sql: str) -> Optional[SQLValidationError]:
    body = _LEADING_NOISE.sub("", sql, count=1)
    if not _SELECT_TOKEN.match(body):
        first_token = body.split(None, 1)[0] if body.split() else ""
        return NotSelectError(
            "Only SELECT queries are allowed",
            details={"leading_token": first_token[:32]},
        )
    return None


SAFETY_RULES: List[SafetyRule] = [
    SafetyRule("empty_check", _empty),
    SafetyRule("dangerous_keyword_check", _dangerous_keyword),
    SafetyRule("select_only_check", _not_select),
]


class SQLSafetyGate:
    """
    Stateless cleaner and validator for generated SQL.

    Pure functions only; safe to call from any task.
    """

    @staticmethod
    def clean(raw: str) -> str:
        """
        Strip Markdown fences, stray backticks and surrounding whitespace.

        Handles fences with or without a language tag and with or without a
        closing fence. Text between the fences is returned unchanged.
        """
        text = (raw or "").strip()

        if text.startswith("```"):
            if _FENCE_WITH_TAG_LINE.match(text):
                text = _FENCE_WITH_TAG_LINE.sub("", text, count=1)
            else:
                text = _FENCE_WITH_SQL_TAG.sub("", text, count=1)

        text = _CLOSING_FENCE.sub("", text)
        return text.strip().strip("`").strip()

    @classmethod
    def validate(cls, sql: str) -> None:
        """
        Run the rule table over already cleaned SQL.

        Raises:
            NotSelectError: If the SQL is empty or does not start with SELECT
            DangerousOperationError: If a write/DDL/DCL keyword is present
        """
        for rule in SAFETY_RULES:
            error = rule.violation(sql)
            if error is not None:
                logger.warning(
                    "SQL rejected by safety gate",
                    rule=rule.name,
                    error_code=error.error_code,
                    sql_preview=sql[:200],
                    trace_id=current_trace_id(),
                )
                raise error

    @classmethod
    def validate_and_clean(cls, raw: str) -> str:
        """
        Clean model output and validate it.

        Returns:
            The cleaned SQL, safe to hand to the executor

        Raises:
            NotSelectError, DangerousOperationError
        """
        sql = cls.clean(raw)
        cls.validate(sql)
        return sql
