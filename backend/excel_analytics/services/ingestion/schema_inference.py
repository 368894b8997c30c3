from __future__ import annotations

import re
from typing import Any, Iterable

from excel_analytics.utils.date_utils import parse_date_text

TYPE_NUMBER = "number"
TYPE_DATE = "date"
TYPE_BOOLEAN = "boolean"
TYPE_TEXT = "text"
TYPE_EMPTY = "empty"

# Tie-break order: earlier wins
TYPE_PRIORITY = (TYPE_NUMBER, TYPE_DATE, TYPE_BOOLEAN, TYPE_TEXT)

BOOLEAN_TOKENS = frozenset({"true", "false", "yes", "no", "1", "0"})

_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


def is_number(text: str) -> bool:
    return bool(_NUMBER_RE.match(text))


def is_date(text: str) -> bool:
    return parse_date_text(text) is not None


def classify_value(value: Any) -> str | None:
    """Classify a single cell, or None if it is null or blank."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if is_number(text):
        return TYPE_NUMBER
    if is_date(text):
        return TYPE_DATE
    if text.lower() in BOOLEAN_TOKENS:
        return TYPE_BOOLEAN
    return TYPE_TEXT


def infer_column_type(values: Iterable[Any]) -> str:
    """Return the dominant type of a column's values.

    Null and blank cells are ignored; a column with nothing left is 'empty'.
    """
    tally = dict.fromkeys(TYPE_PRIORITY, 0)
    for value in values:
        kind = classify_value(value)
        if kind is not None:
            tally[kind] += 1

    if not any(tally.values()):
        return TYPE_EMPTY
    # max() keeps the first maximal key, so TYPE_PRIORITY order breaks ties
    return max(TYPE_PRIORITY, key=lambda kind: tally[kind])
