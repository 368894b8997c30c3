from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from excel_analytics.config import settings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an expert data analyst. Provide accurate, actionable insights from datasets.

IMPORTANT RULES:
- Base every statement on the statistics and sample rows provided.
- Respond with a single JSON object and nothing else.
- Scores in "dataQuality" are numbers between 0 and 1."""

RESPONSE_FORMAT = """{
  "summary": "Brief overview of the dataset",
  "keyFindings": ["finding1", "finding2", "finding3"],
  "recommendations": ["recommendation1", "recommendation2"],
  "dataQuality": {
    "completeness": 0.95,
    "consistency": 0.90,
    "accuracy": 0.85
  }
}"""


@dataclass
class InsightPrompt:
    system_prompt: str
    user_prompt: str
    sample_count: int


def build_insight_prompt(
    column_schema: list[dict[str, Any]],
    statistics: dict[str, Any],
    records: list[dict[str, Any]],
    sample_limit: int | None = None,
) -> InsightPrompt:
    """Build the analysis prompt for one dataset.

    Only the first `sample_limit` records are embedded, never the full table.
    """
    limit = settings.insight_prompt_sample_rows if sample_limit is None else sample_limit
    sample = records[: max(limit, 0)]

    columns = "\n".join(
        f"- {col['name']}: {col['type']} data" for col in column_schema
    ) or "- (no columns)"

    user_prompt = f"""As a data analyst, analyze this Excel dataset and provide comprehensive insights.

Dataset Overview:
- Total Rows: {statistics.get("total_rows", len(records))}
- Total Columns: {statistics.get("total_columns", len(column_schema))}
- Empty Rows: {statistics.get("empty_rows", 0)}
- Duplicate Rows: {statistics.get("duplicate_rows", 0)}

Column Information:
{columns}

Sample Data (first {len(sample)} rows):
{json.dumps(sample, indent=2, default=str)}

Provide your analysis in the following JSON format:
{RESPONSE_FORMAT}

Focus on:
1. Data quality assessment
2. Pattern identification
3. Anomaly detection
4. Business insights
5. Actionable recommendations"""

    logger.debug("Built insight prompt with %d sample rows", len(sample))
    return InsightPrompt(
        system_prompt=SYSTEM_PROMPT,
        user_prompt=user_prompt,
        sample_count=len(sample),
    )
