"""Unit tests for token_utils module."""

import json
from datetime import date
from decimal import Decimal

import pytest
from querystream.utils.token_utils import InputValidator, rows_to_prompt_json


class TestRowsToPromptJson:
    """Tests for rows_to_prompt_json function."""

    def test_empty_rows(self):
        """An empty result set renders a fixed sentence."""
        assert rows_to_prompt_json([], max_chars=100) == "No results returned"

    def test_rows_within_budget_unchanged(self):
        """All rows are kept when they fit."""
        rows = [{"id": 1, "status": "failed"}, {"id": 2, "status": "success"}]
        text = rows_to_prompt_json(rows, max_chars=10_000)

        assert json.loads(text) == rows
        assert "showing" not in text

    def test_rows_trimmed_to_budget(self):
        """Trailing rows are dropped and the cut is noted."""
        rows = [{"id": i, "note": "x" * 50} for i in range(40)]
        text = rows_to_prompt_json(rows, max_chars=500)

        body, _, note = text.rpartition("\n(showing ")
        kept = json.loads(body)
        assert kept == rows[: len(kept)]
        assert len(kept) < 40
        assert note == f"{len(kept)} of 40 rows)"

    def test_single_row_always_kept(self):
        """At least one row survives even when it alone exceeds the budget."""
        rows = [{"note": "x" * 1000}, {"note": "y"}]
        text = rows_to_prompt_json(rows, max_chars=10)

        assert "x" * 1000 in text
        assert text.endswith("(showing 1 of 2 rows)")

    def test_non_json_values(self):
        """Dates and decimals are rendered as strings."""
        text = rows_to_prompt_json([{"day": date(2026, 1, 2), "amount": Decimal("9.50")}], max_chars=1000)
        assert json.loads(text) == [{"day": "2026-01-02", "amount": "9.50"}]


class TestInputValidator:
    """Tests for InputValidator class."""

    def test_validate_total_chars_passes(self):
        """Total validation should pass when within limit."""
        # Should not raise
        InputValidator.validate_total_chars(
            prompt="Hello",
            system_prompt="System",
            max_chars=100
        )

    def test_validate_total_chars_without_system_prompt(self):
        InputValidator.validate_total_chars(prompt="a" * 100, max_chars=100)

    def test_validate_total_chars_fails(self):
        """Total validation should fail when combined exceeds limit."""
        with pytest.raises(ValueError) as exc_info:
            InputValidator.validate_total_chars(
                prompt="a" * 60,
                system_prompt="b" * 60,
                max_chars=100
            )

        assert "120 characters" in str(exc_info.value)
        assert "maximum allowed: 100" in str(exc_info.value)
