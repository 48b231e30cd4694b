"""
SQL Generation Repository.

Handles LLM-based SQL generation:
- Prompt building with schema context and dialect rules
- Streaming and single-shot LLM interaction
- Detection of answers that contain no SQL at all
"""

import re
from contextlib import aclosing
from typing import AsyncIterator, Optional

from querystream.config import LLMConfig
from querystream.domain.base_enums import DatabaseDialect, PlanTier
from querystream.domain.errors import LLMError, SQLGenerationError
from querystream.infrastructure.llm_client import LLMClient
from querystream.repositories.sql_safety import DANGEROUS_KEYWORDS
from querystream.utils.logging import get_module_logger
from querystream.utils.tracing import current_trace_id

logger = get_module_logger()

UNABLE_MARKER = "UNABLE_TO_GENERATE:"

# Any statement verb, including the ones the safety gate rejects
_SQL_VERB = re.compile(r"\b(SELECT|WITH|" + "|".join(DANGEROUS_KEYWORDS) + r")\b", re.IGNORECASE)

_DIALECT_RULES = {
    DatabaseDialect.POSTGRESQL: (
        "   - Use PostgreSQL features: date_trunc(), EXTRACT(), string_agg(), etc.\n"
        "   - Window functions: ROW_NUMBER() OVER (PARTITION BY ...)\n"
        "   - Use ILIKE for case-insensitive text matching"
    ),
    DatabaseDialect.MYSQL: (
        "   - Use MySQL features: DATE_FORMAT(), GROUP_CONCAT(), etc.\n"
        "   - Avoid PostgreSQL-specific functions\n"
        "   - Be careful with date arithmetic"
    ),
    DatabaseDialect.MSSQL: (
        "   - Use SQL Server features: FORMAT(), STRING_AGG(), etc.\n"
        "   - Use TOP instead of LIMIT\n"
        "   - Use DATEPART() for date operations"
    ),
    DatabaseDialect.SQLITE: (
        "   - Use SQLite features: strftime(), group_concat(), etc.\n"
        "   - Simpler date functions\n"
        "   - LIMIT for row restrictions"
    ),
}


def unable_to_generate_reason(text: str) -> Optional[str]:
    """
    Explain why model output contains no usable SQL.

    Returns:
        The model's explanation when it refused (explicit marker) or wrote
        no statement verb at all; None when the output looks like SQL,
        safe or not, so the safety gate judges it
    """
    stripped = text.strip()
    if UNABLE_MARKER in stripped:
        reason = stripped.split(UNABLE_MARKER, 1)[1].strip()
        return reason or "The question cannot be answered from this database."
    if not _SQL_VERB.search(stripped):
        return stripped or "The model did not return a query for this question."
    return None


class SQLGenerationRepository:
    """
    Repository for LLM-based SQL generation.

    Handles prompt construction and LLM interaction.
    """

    def __init__(self, llm_client: LLMClient, config: LLMConfig):
        self.llm_client = llm_client
        self.config = config

    async def stream_sql(
        self,
        question: str,
        schema_text: str,
        plan: PlanTier,
        dialect: DatabaseDialect,
        connection_id: str,
    ) -> AsyncIterator[str]:
        """
        Stream raw SQL text fragments for a question.

        Raises:
            SQLGenerationError: If the provider fails
        """
        trace_id = current_trace_id()
        prompt = self._build_prompt(question, schema_text, dialect)

        logger.info(
            "Streaming SQL generation",
            connection_id=connection_id,
            plan=plan.value,
            dialect=dialect.value,
            prompt_length=len(prompt),
            trace_id=trace_id,
        )

        try:
            stream = self.llm_client.stream(
                prompt=prompt,
                system_prompt=self._system_prompt(dialect),
                plan=plan,
                temperature=self.config.sql_temperature,
            )
            async with aclosing(stream) as fragments:
                async for fragment in fragments:
                    yield fragment
        except LLMError as e:
            raise SQLGenerationError(f"SQL generation failed: {e.message}") from e

    async def generate_sql(
        self,
        question: str,
        schema_text: str,
        plan: PlanTier,
        dialect: DatabaseDialect,
    ) -> str:
        """
        Generate raw SQL text in one call.

        Raises:
            SQLGenerationError: If the provider fails
        """
        prompt = self._build_prompt(question, schema_text, dialect)
        try:
            return await self.llm_client.generate(
                prompt=prompt,
                system_prompt=self._system_prompt(dialect),
                plan=plan,
                temperature=self.config.sql_temperature,
            )
        except LLMError as e:
            raise SQLGenerationError(f"SQL generation failed: {e.message}") from e

    def _system_prompt(self, dialect: DatabaseDialect) -> str:
        return (
            f"You are a {dialect.value} expert that turns business questions into correct, "
            "read-only SQL queries whose results are easy to chart."
        )

    def _build_prompt(self, question: str, schema_text: str, dialect: DatabaseDialect) -> str:
        """Build the prompt for SQL generation."""
        return f"""Generate a {dialect.value} query that answers the user's question.

## QUERY SHAPE
1. For counting or filtering questions ("users with X"), include COUNT, SUM or AVG
2. Select only the columns needed: typically one category plus one or two metrics
3. Use meaningful column aliases (transaction_count, not count)
4. Include ORDER BY for predictable results
5. Limit category breakdowns to the top 10-15 rows

## DATABASE-SPECIFIC SYNTAX
{_DIALECT_RULES[dialect]}

## CRITICAL RULES
- Generate ONLY the SQL query, no explanations, no markdown
- Use ONLY SELECT statements (no INSERT, UPDATE, DELETE, DROP, ALTER, CREATE, TRUNCATE)
- Use ONLY tables and columns from the schema below
- Handle NULL values appropriately (COALESCE, IS NULL checks)
- Guard divisions against zero
- If the question cannot be answered from this schema, reply with a single line:
  {UNABLE_MARKER} <short explanation for the user>

## SCHEMA CONTEXT
{schema_text}

## USER QUESTION
{question}
"""
