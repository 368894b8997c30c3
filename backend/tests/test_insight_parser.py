from __future__ import annotations

import json

import pytest

from excel_analytics.exceptions import MalformedInsightResponse
from excel_analytics.services.ai.insight_parser import extract_json_object, parse_insight_response
from excel_analytics.services.ai.prompt_builder import build_insight_prompt
from tests.conftest import SAMPLE_INSIGHT


def test_parses_bare_json():
    payload = parse_insight_response(json.dumps(SAMPLE_INSIGHT))
    assert payload.summary == SAMPLE_INSIGHT["summary"]
    assert payload.key_findings == SAMPLE_INSIGHT["keyFindings"]
    assert payload.data_quality.completeness == 0.9


def test_extracts_json_wrapped_in_prose():
    text = (
        "Sure! Here is my analysis of your dataset:\n\n"
        f"{json.dumps(SAMPLE_INSIGHT, indent=2)}\n\n"
        "Let me know if you need anything else."
    )
    payload = parse_insight_response(text, provider="openai", model="gpt-4o-mini")
    assert payload.recommendations == ["Validate the Age column on entry"]


def test_extracts_json_from_markdown_fence():
    text = f"```json\n{json.dumps(SAMPLE_INSIGHT)}\n```"
    assert parse_insight_response(text).summary == SAMPLE_INSIGHT["summary"]


def test_accepts_snake_case_keys():
    data = {
        "summary": "ok",
        "key_findings": ["a"],
        "recommendations": [],
        "data_quality": {"completeness": 1, "consistency": 1, "accuracy": 1},
    }
    payload = parse_insight_response(json.dumps(data))
    assert payload.key_findings == ["a"]


def test_braces_inside_strings_do_not_end_the_object():
    inner = dict(SAMPLE_INSIGHT, summary='Values like "{x}" and } appear')
    text = "Result: " + json.dumps(inner) + " trailing } noise"
    assert parse_insight_response(text).summary == 'Values like "{x}" and } appear'


def test_extract_skips_unclosed_brace():
    assert extract_json_object('{ broken {"a": 1}') == '{"a": 1}'
    assert extract_json_object("no json here") is None


@pytest.mark.parametrize("text", ["", "   ", "I could not analyze this data."])
def test_rejects_text_without_json(text):
    with pytest.raises(MalformedInsightResponse):
        parse_insight_response(text, provider="gemini", model="gemini-pro")


def test_rejects_json_with_wrong_shape():
    with pytest.raises(MalformedInsightResponse) as exc_info:
        parse_insight_response('{"summary": "missing quality"}')
    assert exc_info.value.details["errors"] >= 1


def test_rejects_quality_scores_out_of_range():
    bad = dict(SAMPLE_INSIGHT, dataQuality={"completeness": 2, "consistency": 0.5, "accuracy": 0.5})
    with pytest.raises(MalformedInsightResponse):
        parse_insight_response(json.dumps(bad))


def test_prompt_embeds_only_leading_sample_rows():
    records = [{"id": i} for i in range(50)]
    schema = [{"name": "id", "type": "number", "index": 0}]
    stats = {"total_rows": 50, "total_columns": 1, "empty_rows": 0, "duplicate_rows": 0}

    prompt = build_insight_prompt(schema, stats, records, sample_limit=20)

    assert prompt.sample_count == 20
    assert "Total Rows: 50" in prompt.user_prompt
    assert "- id: number data" in prompt.user_prompt
    assert '"id": 19' in prompt.user_prompt
    assert '"id": 20' not in prompt.user_prompt
