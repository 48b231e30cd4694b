"""
Interpretation Repository.

Turns result rows into business-facing narrative:
- stream_interpretation: the explanation shown after a chat answer
- interpret_step: a short insight for one deep-analysis step
- stream_synthesis: the executive summary closing a deep analysis
"""

from contextlib import aclosing
from typing import AsyncIterator, List

from querystream.config import LLMConfig
from querystream.domain.base_enums import DatabaseDialect, PlanTier
from querystream.domain.errors import InterpretationError, LLMError
from querystream.domain.results import DeepAnalysisStep
from querystream.domain.types import Rows
from querystream.infrastructure.llm_client import LLMClient
from querystream.utils.logging import get_module_logger
from querystream.utils.token_utils import rows_to_prompt_json
from querystream.utils.tracing import current_trace_id

logger = get_module_logger()

# Share of the input budget given to serialized rows
_ROWS_BUDGET_RATIO = 0.6


class InterpretationRepository:
    """Repository for LLM-written result narratives."""

    def __init__(self, llm_client: LLMClient, config: LLMConfig):
        self.llm_client = llm_client
        self.config = config

    @property
    def _rows_budget(self) -> int:
        return int(self.config.max_input_chars * _ROWS_BUDGET_RATIO)

    async def _stream(self, prompt: str, plan: PlanTier) -> AsyncIterator[str]:
        try:
            stream = self.llm_client.stream(
                prompt=prompt,
                plan=plan,
                temperature=self.config.interpretation_temperature,
            )
            async with aclosing(stream) as fragments:
                async for fragment in fragments:
                    yield fragment
        except LLMError as e:
            raise InterpretationError(f"Interpretation failed: {e.message}") from e

    async def stream_interpretation(
        self,
        question: str,
        sql: str,
        rows: Rows,
        row_count: int,
        dialect: DatabaseDialect,
        plan: PlanTier,
    ) -> AsyncIterator[str]:
        """
        Stream the explanation of a chat answer.

        Raises:
            InterpretationError: If the provider fails
        """
        logger.info(
            "Streaming interpretation",
            row_count=row_count,
            plan=plan.value,
            trace_id=current_trace_id(),
        )
        prompt = f"""You are a data analyst explaining query results to a business user.

DATABASE TYPE: {dialect.value}
ORIGINAL QUESTION: "{question}"

SQL QUERY EXECUTED:
```sql
{sql}
```

QUERY RESULTS ({row_count} rows):
```json
{rows_to_prompt_json(rows, self._rows_budget)}
```

Provide a clear, insightful interpretation that:
1. **Directly answers the user's question** with specific numbers and facts
2. **Highlights key findings**: what stands out in the data?
3. **Provides context**: what do these numbers mean for the business?
4. **Notes any limitations**: missing data, edge cases or caveats

GUIDELINES:
- Lead with the most important finding
- Use **bold** for key metrics and bullet points for lists
- If results are empty, explain likely reasons and suggest alternatives
- Keep it concise (2-4 paragraphs)

Write your interpretation now:"""

        async with aclosing(self._stream(prompt, plan)) as fragments:
            async for fragment in fragments:
                yield fragment

    async def interpret_step(
        self,
        step_number: int,
        question: str,
        purpose: str,
        sql: str,
        rows: Rows,
        plan: PlanTier,
    ) -> str:
        """
        Write a 2-3 sentence insight for one deep-analysis step.

        Raises:
            InterpretationError: If the provider fails
        """
        prompt = f"""You are a data analyst providing quick, actionable insights.

FOLLOW-UP ANALYSIS #{step_number}:

Question: "{question}"
Purpose: {purpose}

SQL Executed:
```sql
{sql}
```

Results ({len(rows)} rows):
```json
{rows_to_prompt_json(rows, self._rows_budget) if rows else "No results"}
```

Provide a focused 2-3 sentence analysis that:
1. **Directly answers the question** with specific numbers from the results
2. **Highlights the most important finding**
3. **Explains the business implication** and what to do next

Write your analysis:"""

        try:
            text = await self.llm_client.generate(
                prompt=prompt,
                plan=plan,
                temperature=self.config.interpretation_temperature,
            )
        except LLMError as e:
            raise InterpretationError(f"Step analysis failed: {e.message}") from e
        return text.strip()

    async def stream_synthesis(
        self,
        question: str,
        original_row_count: int,
        steps: List[DeepAnalysisStep],
        plan: PlanTier,
    ) -> AsyncIterator[str]:
        """
        Stream the executive summary over all deep-analysis steps.

        Raises:
            InterpretationError: If the provider fails
        """
        steps_context = "\n".join(
            f"\n**Follow-up {step.step_number}: {step.question}**\n{step.insights}\n" for step in steps
        )
        prompt = f"""You are a senior business analyst preparing an executive summary.

ORIGINAL QUESTION: "{question}"
Initial Query Results: {original_row_count} rows

DEEP ANALYSIS COMPLETED - {len(steps)} Follow-up Investigations:
{steps_context}

Write a comprehensive executive summary (6-8 sentences) that:
1. **Leads with the direct answer** to the original question, using specific numbers
2. **Synthesizes insights** from all follow-ups into one narrative
3. **Highlights the most critical finding** for leadership
4. **Identifies patterns or trends** across the analysis
5. **Flags concerns or opportunities** needing attention
6. **Gives clear recommendations**

Use **bold** for key metrics and recommendations. Lead with conclusions, not methodology.

Write your executive summary now:"""

        async with aclosing(self._stream(prompt, plan)) as fragments:
            async for fragment in fragments:
                yield fragment
