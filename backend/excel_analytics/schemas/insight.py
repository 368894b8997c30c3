from __future__ import annotations

from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class DataQuality(BaseModel):
    completeness: float = Field(ge=0.0, le=1.0)
    consistency: float = Field(ge=0.0, le=1.0)
    accuracy: float = Field(ge=0.0, le=1.0)


class InsightPayload(BaseModel):
    """The JSON object a provider is asked to return.

    Models are prompted with camelCase keys; snake_case is accepted too.
    """

    model_config = ConfigDict(populate_by_name=True)

    summary: str
    key_findings: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("keyFindings", "key_findings"),
    )
    recommendations: list[str] = Field(default_factory=list)
    data_quality: DataQuality = Field(
        validation_alias=AliasChoices("dataQuality", "data_quality"),
    )


class Insight(InsightPayload):
    """A stored insight: the payload plus provenance."""

    generated_by: str
    generated_at: datetime
