from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from excel_analytics.models.base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin

STATUS_PROCESSING = "processing"
STATUS_PROCESSED = "processed"
STATUS_ERROR = "error"

FILE_STATUSES = (STATUS_PROCESSING, STATUS_PROCESSED, STATUS_ERROR)


class SpreadsheetFile(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "spreadsheet_files"

    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    original_filename: Mapped[str] = mapped_column(Text, nullable=False)
    stored_filename: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    mime_type: Mapped[str] = mapped_column(Text, nullable=False)
    file_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    file_hash: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(
        Text, default=STATUS_PROCESSING, server_default=STATUS_PROCESSING
    )
    processing_started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    processing_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    row_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    column_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    column_schema: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    sample_rows: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    data_statistics: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    # Complete parsed records; only loaded when explicitly requested
    full_data: Mapped[list | None] = mapped_column(JSONType, nullable=True, deferred=True)
    insight: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        Index("idx_spreadsheet_files_owner_created", "owner_id", "created_at"),
        Index("idx_spreadsheet_files_status", "status"),
    )
