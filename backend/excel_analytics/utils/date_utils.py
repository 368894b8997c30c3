from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

from dateutil import parser as dateutil_parser

# 2023-01-15, 01/15/2023, 2024/3/1 12:00
_NUMERIC_DATE_RE = re.compile(r"\d{1,4}[-/]\d{1,2}")
_MONTH_NAME_RE = re.compile(
    r"\b(jan(uary)?|feb(ruary)?|mar(ch)?|apr(il)?|may|june?|july?|aug(ust)?"
    r"|sep(t(ember)?)?|oct(ober)?|nov(ember)?|dec(ember)?)\b\.?",
    re.IGNORECASE,
)
_DIGIT_RE = re.compile(r"\d")

# Longer cell text is prose, even if dateutil could find a date in it
MAX_DATE_TEXT_LENGTH = 64


def looks_like_date(text: str) -> bool:
    """Cheap shape check before handing text to dateutil.

    dateutil on its own accepts fragments such as "T1", "1 a" or
    "12.5.2024"; a date here needs a dash or slash between digit groups,
    or a month name next to a number.
    """
    if _NUMERIC_DATE_RE.search(text):
        return True
    return bool(_MONTH_NAME_RE.search(text)) and bool(_DIGIT_RE.search(text))


def parse_date_text(value: str | None) -> Optional[datetime]:
    """Parse spreadsheet cell text as a date or timestamp, or None.

    Text without a digit ("May", "Monday") is never treated as a date.
    """
    if not value:
        return None
    text = value.strip()
    if len(text) > MAX_DATE_TEXT_LENGTH or not looks_like_date(text):
        return None
    try:
        return dateutil_parser.parse(text)
    except (ValueError, OverflowError):
        return None
