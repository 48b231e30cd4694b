"""
Input sizing utilities for LLM prompts.

Prompts embed result rows, so they are validated against a hard character
limit and row payloads are trimmed before they are serialized.
"""

import json
from typing import Any, Dict, List, Optional


def rows_to_prompt_json(rows: List[Dict[str, Any]], max_chars: int) -> str:
    """
    Serialize result rows for a prompt, dropping trailing rows past `max_chars`.

    Args:
        rows: Result rows (already capped by the pipeline)
        max_chars: Character budget for the serialized block

    Returns:
        Indented JSON text, or "No results returned" for an empty result set
    """
    if not rows:
        return "No results returned"

    kept = list(rows)
    text = json.dumps(kept, indent=2, default=str)
    while len(text) > max_chars and len(kept) > 1:
        kept = kept[: max(1, len(kept) // 2)]
        text = json.dumps(kept, indent=2, default=str)

    if len(kept) < len(rows):
        text += f"\n(showing {len(kept)} of {len(rows)} rows)"
    return text


class InputValidator:
    """
    Input validation utility for checking character limits.

    Uses simple character count checks against hard limits.
    """

    @staticmethod
    def validate_total_chars(
        prompt: str,
        system_prompt: Optional[str] = None,
        max_chars: int = 0
    ) -> None:
        """
        Validate total character count for an LLM request.

        Raises:
            ValueError: If total exceeds character limit

        Example:
            >>> InputValidator.validate_total_chars("Hello", system_prompt="Hi", max_chars=1000)  # OK
        """
        total_chars = len(prompt)
        if system_prompt:
            total_chars += len(system_prompt)

        if total_chars > max_chars:
            raise ValueError(
                f"Total input too large: {total_chars} characters, "
                f"maximum allowed: {max_chars}"
            )
