"""
Suggestion Engine.

Offers follow-up questions after an answer. Purely rule based: the same
question, SQL and rows always produce the same suggestions, with no model
call.

Analysis of the turn:
- aggregation: question mentions count/sum/avg/total/average, or the SQL
  has count(, sum(, avg( or GROUP BY
- time filter: question mentions today/yesterday/week/month/year/date/time,
  or the SQL references created_at/updated_at/date/timestamp
- tables: names following FROM and JOIN
- entities: user, merchant, transaction, product keyword families

Rule groups are concatenated in order (drill-down, time-based, comparison,
related) and the list is cut to MAX_SUGGESTIONS.
"""

import re
from dataclasses import dataclass, field
from typing import List, Set

from querystream.domain.base_enums import SuggestionCategory
from querystream.domain.results import Suggestion
from querystream.domain.types import Rows

MAX_SUGGESTIONS = 6

_QUESTION_TIME = re.compile(r"\b(today|yesterday|week|month|year|date|time)\b")
_SQL_TIME = re.compile(r"\b(created_at|updated_at|date|timestamp)\b")
_QUESTION_AGGREGATION = re.compile(r"\b(count|sum|avg|total|average)\b")
_SQL_AGGREGATION = re.compile(r"(count\(|sum\(|avg\(|group by)")
_SQL_TABLES = re.compile(r"\b(?:from|join)\s+(\w+)")

_METRIC_PATTERNS = {
    "financial": re.compile(r"\b(revenue|sales|amount|money|payment)\b"),
    "transaction": re.compile(r"\b(transaction|payment|purchase)\b"),
    "user": re.compile(r"\b(user|customer|account)\b"),
    "merchant": re.compile(r"\b(merchant|vendor|business)\b"),
}

_ENTITY_PATTERNS = {
    "user": re.compile(r"\b(user|customer|account)\b"),
    "merchant": re.compile(r"\b(merchant|vendor|business|store)\b"),
    "transaction": re.compile(r"\b(transaction|payment|purchase)\b"),
    "product": re.compile(r"\b(product|item|service)\b"),
}


@dataclass
class QueryAnalysis:
    has_time_filter: bool
    has_aggregation: bool
    tables: List[str] = field(default_factory=list)
    metrics: Set[str] = field(default_factory=set)
    entities: Set[str] = field(default_factory=set)


def analyze_query(question: str, sql: str) -> QueryAnalysis:
    question_lower = question.lower()
    sql_lower = sql.lower()
    return QueryAnalysis(
        has_time_filter=bool(_QUESTION_TIME.search(question_lower) or _SQL_TIME.search(sql_lower)),
        has_aggregation=bool(_QUESTION_AGGREGATION.search(question_lower) or _SQL_AGGREGATION.search(sql_lower)),
        tables=_SQL_TABLES.findall(sql_lower),
        metrics={name for name, pattern in _METRIC_PATTERNS.items() if pattern.search(question_lower)},
        entities={name for name, pattern in _ENTITY_PATTERNS.items() if pattern.search(question_lower)},
    )


def _suggestion(question: str, description: str, category: SuggestionCategory) -> Suggestion:
    return Suggestion(question=question, description=description, category=category)


class SuggestionEngine:
    """Deterministic follow-up question generator."""

    def suggest(self, question: str, sql: str, rows: Rows) -> List[Suggestion]:
        analysis = analyze_query(question, sql)

        suggestions: List[Suggestion] = []
        suggestions.extend(self._drill_down(analysis, rows))
        suggestions.extend(self._time_based(analysis))
        suggestions.extend(self._comparison(analysis))
        suggestions.extend(self._related(analysis))
        return suggestions[:MAX_SUGGESTIONS]

    def _drill_down(self, analysis: QueryAnalysis, rows: Rows) -> List[Suggestion]:
        if not (analysis.has_aggregation and rows):
            return []

        out = []
        if "transactions" in analysis.tables:
            out.append(_suggestion(
                "Break down these results by merchant",
                "See which merchants drive these numbers",
                SuggestionCategory.DRILL_DOWN,
            ))
            out.append(_suggestion(
                "Show the individual transactions behind these numbers",
                "See the raw transaction details",
                SuggestionCategory.DRILL_DOWN,
            ))
        if "users" in analysis.tables:
            out.append(_suggestion(
                "Break down by user status or type",
                "Segment users to understand patterns",
                SuggestionCategory.DRILL_DOWN,
            ))
        return out

    def _time_based(self, analysis: QueryAnalysis) -> List[Suggestion]:
        out = []
        if not analysis.has_time_filter:
            out.append(_suggestion(
                "Show the same data over the last 30 days",
                "See trends over time",
                SuggestionCategory.TIME_BASED,
            ))
        out.append(_suggestion(
            "Compare this week vs last week",
            "Identify week-over-week changes",
            SuggestionCategory.TIME_BASED,
        ))
        out.append(_suggestion(
            "Show hourly patterns for this data",
            "Find peak usage times",
            SuggestionCategory.TIME_BASED,
        ))
        return out

    def _comparison(self, analysis: QueryAnalysis) -> List[Suggestion]:
        out = []
        if "transactions" in analysis.tables:
            out.append(_suggestion(
                "Compare success vs failed transaction rates",
                "Understand transaction health",
                SuggestionCategory.COMPARISON,
            ))
        if "merchant" in analysis.entities or "merchants" in analysis.tables:
            out.append(_suggestion(
                "Compare performance across different merchants",
                "Identify top and bottom performers",
                SuggestionCategory.COMPARISON,
            ))
        if "user" in analysis.entities or "users" in analysis.tables:
            out.append(_suggestion(
                "Compare new vs returning users",
                "Understand user behavior differences",
                SuggestionCategory.COMPARISON,
            ))
        return out

    def _related(self, analysis: QueryAnalysis) -> List[Suggestion]:
        out = []
        if "transactions" in analysis.tables:
            out.append(_suggestion(
                "What are the most common decline reasons?",
                "Identify payment friction points",
                SuggestionCategory.RELATED,
            ))
            out.append(_suggestion(
                "Which payment methods are most successful?",
                "Optimize payment flow",
                SuggestionCategory.RELATED,
            ))
        if "users" in analysis.tables:
            out.append(_suggestion(
                "What's the user retention rate?",
                "Understand user stickiness",
                SuggestionCategory.RELATED,
            ))
        return out
