"""
Natural-Language Result Filter.

Narrows an already fetched result set with a plain-language expression,
without another query:

    "amount > 100"
    "status is not failed and merchant contains acme"
    "top 5 amount over 1,000"

The expression is split into clauses on "and", ";" and ", ". Each clause is
matched against the rule table; the first rule that parses it with a
resolvable column wins. Conditions are AND-ed left to right and a "top N"
limit is applied last.

Column resolution: exact name, then substring, then the alias table, each
tried for the term and its singular form. Matching is case-insensitive;
conditions carry the row's real key.

Pure: input rows are never modified and no input text raises.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from querystream.domain.results import FilterCondition, FilterResult
from querystream.domain.types import Row, Rows

NO_RESULTS_MESSAGE = "No results to filter"
NOT_UNDERSTOOD_MESSAGE = "Could not understand the filter. Try: 'amount > 100' or 'status = failed'"

COLUMN_ALIASES: Dict[str, List[str]] = {
    "amount": ["value", "total", "sum", "price"],
    "status": ["state", "result"],
    "merchant": ["vendor", "store", "seller"],
    "user": ["customer", "client"],
    "date": ["time", "timestamp", "created", "updated"],
}

_NUMBER = r"(-?[\d][\d.,]*|-?\.\d+)"
_TEXT = r"['\"]?([^'\"]+?)['\"]?"

_CLAUSE_SPLIT = re.compile(r"\s+and\s+|\s*;\s*|,\s+", re.IGNORECASE)
_TOP_N = re.compile(r"\btop\s*(\d+)\b", re.IGNORECASE)
_ONLY_OVER = re.compile(r"\b(?:only|just)\s+(?:(\w+)\s+)?over\s*" + _NUMBER + r"\s*$")
_ONLY_VALUE = re.compile(r"\b(?:only|just)\s+(\w+)\s+(\S+)\s*$")


@dataclass(frozen=True)
class FilterRule:
    """A clause pattern: group 1 is the column term, group 2 the value."""

    operator: str
    pattern: re.Pattern
    numeric: bool


FILTER_RULES: List[FilterRule] = [
    FilterRule(">", re.compile(r"(\w+)\s*(?:>|\bgreater than\b|\bmore than\b|\babove\b|\bover\b)\s*" + _NUMBER + r"\s*$"), True),
    FilterRule("<", re.compile(r"(\w+)\s*(?:<|\bless than\b|\bbelow\b|\bunder\b)\s*" + _NUMBER + r"\s*$"), True),
    FilterRule("!=", re.compile(r"(\w+)\s*(?:!=|<>|\bnot equals?\b|\bis not\b)\s*" + _NUMBER + r"\s*$"), True),
    FilterRule("!=", re.compile(r"(\w+)\s*(?:!=|<>|\bnot equals?\b|\bis not\b)\s*" + _TEXT + r"\s*$"), False),
    FilterRule("=", re.compile(r"(\w+)\s*(?:=|\bequals?\b|\bis\b)\s*" + _NUMBER + r"\s*$"), True),
    FilterRule("=", re.compile(r"(\w+)\s*(?:=|\bequals?\b|\bis\b)\s*" + _TEXT + r"\s*$"), False),
    FilterRule("contains", re.compile(r"(\w+)\s*(?:\bcontains?\b|\bincludes?\b|\bhas\b)\s*" + _TEXT + r"\s*$"), False),
]


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).replace(",", "").strip())
    except ValueError:
        return None


def _term_variants(term: str) -> List[str]:
    term = term.lower()
    if term.endswith("s") and len(term) > 1:
        return [term, term[:-1]]
    return [term]


def find_matching_column(term: str, columns: Dict[str, str]) -> Optional[str]:
    """
    Resolve a user term to a row key.

    Args:
        term: Word from the expression (e.g. "amounts", "vendor")
        columns: Lowercased column name -> real row key

    Returns:
        The real row key, or None
    """
    names = list(columns)
    for variant in _term_variants(term):
        if variant in columns:
            return columns[variant]
        for name in names:
            if variant in name:
                return columns[name]
        for key, aliases in COLUMN_ALIASES.items():
            if variant in aliases:
                candidates = [key]
            elif variant == key:
                candidates = aliases
            else:
                continue
            for candidate in candidates:
                for name in names:
                    if candidate in name:
                        return columns[name]
    return None


class NaturalLanguageFilter:
    """Rule-based row filter over plain-language expressions."""

    def apply(self, rows: Rows, expression: str) -> FilterResult:
        if not rows:
            return FilterResult(rows=[], message=NO_RESULTS_MESSAGE)

        columns = {str(key).lower(): key for key in rows[0].keys()}
        conditions, limit = self.parse(expression or "", columns)

        if not conditions and limit is None:
            return FilterResult(rows=list(rows), message=NOT_UNDERSTOOD_MESSAGE)

        filtered = [row for row in rows if all(self._matches(row, c) for c in conditions)]
        if limit is not None:
            filtered = filtered[:limit]

        return FilterResult(
            rows=filtered,
            message=f"Showing {len(filtered)} of {len(rows)} results",
            conditions=conditions,
            limit=limit,
        )

    def parse(self, expression: str, columns: Dict[str, str]) -> Tuple[List[FilterCondition], Optional[int]]:
        """Parse `expression` into conditions and an optional top-N limit."""
        text = expression.strip().lower()

        limit = None
        top = _TOP_N.search(text)
        if top:
            limit = int(top.group(1))
            text = _TOP_N.sub(" ", text)

        conditions: List[FilterCondition] = []
        for clause in _CLAUSE_SPLIT.split(text):
            clause = clause.strip()
            if not clause:
                continue
            condition = self._parse_clause(clause, columns)
            if condition is not None:
                conditions.append(condition)
        return conditions, limit

    def _parse_clause(self, clause: str, columns: Dict[str, str]) -> Optional[FilterCondition]:
        for rule in FILTER_RULES:
            match = rule.pattern.search(clause)
            if not match:
                continue
            column = find_matching_column(match.group(1), columns)
            if column is None:
                continue
            raw = match.group(2).strip()
            if rule.numeric:
                value = _to_number(raw)
                if value is None:
                    continue
                return FilterCondition(column=column, operator=rule.operator, value=value)
            return FilterCondition(column=column, operator=rule.operator, value=raw)

        # "only amounts over 1000", "only over 1000"
        over = _ONLY_OVER.search(clause)
        if over:
            column = find_matching_column(over.group(1) or "amount", columns)
            value = _to_number(over.group(2))
            if column is not None and value is not None:
                return FilterCondition(column=column, operator=">", value=value)

        # "only status failed", "just merchant acme"
        only = _ONLY_VALUE.search(clause)
        if only:
            column = find_matching_column(only.group(1), columns)
            if column is not None:
                return FilterCondition(column=column, operator="=", value=only.group(2))
        return None

    @staticmethod
    def _matches(row: Row, condition: FilterCondition) -> bool:
        value = row.get(condition.column)
        op = condition.operator

        if op in (">", "<") or (op in ("=", "!=") and isinstance(condition.value, float)):
            number = _to_number(value)
            if number is None:
                return op == "!="
            if op == ">":
                return number > condition.value
            if op == "<":
                return number < condition.value
            if op == "!=":
                return number != condition.value
            return number == condition.value

        text = "" if value is None else str(value).lower()
        target = str(condition.value).lower()
        if op == "=":
            return text == target
        if op == "!=":
            return text != target
        if op == "contains":
            return target in text
        return True
