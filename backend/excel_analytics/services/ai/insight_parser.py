from __future__ import annotations

import json
import logging

from pydantic import ValidationError as PydanticValidationError

from excel_analytics.exceptions import MalformedInsightResponse
from excel_analytics.schemas.insight import InsightPayload

logger = logging.getLogger(__name__)


def extract_json_object(text: str) -> str | None:
    """Return the first balanced {...} span in text, or None.

    Braces inside JSON string literals (including escaped quotes) are
    ignored. An opening brace that never closes is skipped and the scan
    resumes after it.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for pos in range(start, len(text)):
            char = text[pos]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : pos + 1]
        start = text.find("{", start + 1)
    return None


def _load_object(text: str) -> dict | None:
    try:
        data = json.loads(text)
    except (ValueError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def parse_insight_response(
    text: str, provider: str | None = None, model: str | None = None
) -> InsightPayload:
    """Parse free-form model output into an InsightPayload.

    Tries the whole text as JSON first, then the first balanced object
    embedded in it (prose or markdown fences around the JSON).
    """
    if not text or not text.strip():
        raise MalformedInsightResponse(
            "AI service returned an empty response", provider=provider, model=model
        )

    data = _load_object(text.strip())
    if data is None:
        span = extract_json_object(text)
        if span is not None:
            data = _load_object(span)

    if data is None:
        logger.warning("No JSON object found in %s response (%d chars)", provider, len(text))
        raise MalformedInsightResponse(provider=provider, model=model)

    try:
        return InsightPayload.model_validate(data)
    except PydanticValidationError as e:
        logger.warning("Insight JSON from %s failed validation: %s", provider, e)
        raise MalformedInsightResponse(
            "AI service returned insights in an unexpected format",
            provider=provider,
            model=model,
            details={"errors": e.error_count()},
        ) from e
