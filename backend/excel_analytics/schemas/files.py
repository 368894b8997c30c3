from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from excel_analytics.schemas.insight import Insight


class ColumnInfoSchema(BaseModel):
    name: str
    type: str
    index: int


class DataStatisticsSchema(BaseModel):
    total_rows: int
    total_columns: int
    empty_rows: int
    duplicate_rows: int
    data_types: dict[str, str]


class UploadAcceptedResponse(BaseModel):
    id: UUID
    status: str
    original_filename: str
    file_size_bytes: int
    uploaded_at: datetime


class FileSummary(BaseModel):
    """A record as listed; never carries full_data."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_id: UUID
    original_filename: str
    mime_type: str
    file_size_bytes: int
    file_hash: str
    status: str
    error_message: str | None = None
    row_count: int | None = None
    column_count: int | None = None
    column_schema: list[ColumnInfoSchema] | None = None
    sample_rows: list[dict[str, Any]] | None = None
    data_statistics: DataStatisticsSchema | None = None
    insight: Insight | None = None
    processing_started_at: datetime
    processing_completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class FileDetail(FileSummary):
    full_data: list[dict[str, Any]] | None = None


class FileListResponse(BaseModel):
    items: list[FileSummary]
    total: int
    page: int
    page_size: int
    pages: int


class FileInfo(BaseModel):
    id: UUID
    original_filename: str
    file_size_bytes: int
    row_count: int | None = None
    column_count: int | None = None
    uploaded_at: datetime


class DataPagination(BaseModel):
    page: int
    page_size: int
    total: int
    pages: int


class DataPreviewResponse(BaseModel):
    file_info: FileInfo
    column_schema: list[ColumnInfoSchema]
    data_statistics: DataStatisticsSchema | None = None
    sample_rows: list[dict[str, Any]]
    data: list[dict[str, Any]] | None = None
    pagination: DataPagination | None = None


class FileStatsResponse(BaseModel):
    total_files: int
    processed_files: int
    processing_files: int
    error_files: int
    total_size_bytes: int
    total_rows: int
    files_with_insights: int


class OwnerFileCount(BaseModel):
    owner_id: UUID
    file_count: int


class AdminStatsResponse(FileStatsResponse):
    status_distribution: dict[str, int]
    owners: list[OwnerFileCount]


class InsightResponse(BaseModel):
    id: UUID
    insight: Insight
