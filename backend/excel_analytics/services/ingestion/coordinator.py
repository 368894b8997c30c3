from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import undefer
from sqlalchemy.orm.exc import StaleDataError

from excel_analytics.config import settings
from excel_analytics.exceptions import (
    AppError,
    NotFound,
    NotProcessedYet,
    NoProviderConfigured,
    ProviderError,
    RecordBusy,
    StorageError,
    ValidationError,
)
from excel_analytics.models.spreadsheet_file import (
    STATUS_ERROR,
    STATUS_PROCESSED,
    STATUS_PROCESSING,
    SpreadsheetFile,
)
from excel_analytics.schemas.insight import Insight
from excel_analytics.services.ai.insight_service import InsightService
from excel_analytics.services.ingestion.profiler import build_column_schema, profile_dataset
from excel_analytics.services.ingestion.spreadsheet_parser import parse_spreadsheet
from excel_analytics.utils.file_utils import (
    compute_content_hash,
    is_excel_upload,
    safe_storage_path,
)

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Processing was interrupted"

SORTABLE_COLUMNS = {
    "created_at": SpreadsheetFile.created_at,
    "original_filename": SpreadsheetFile.original_filename,
    "file_size_bytes": SpreadsheetFile.file_size_bytes,
    "row_count": SpreadsheetFile.row_count,
    "status": SpreadsheetFile.status,
}


@dataclass
class AcceptedUpload:
    record: SpreadsheetFile
    storage_path: Path


@dataclass
class WorkbookAnalysis:
    """Everything the pipeline derives from one workbook."""

    row_count: int
    column_count: int
    column_schema: list[dict[str, Any]]
    sample_rows: list[dict[str, Any]]
    data_statistics: dict[str, Any]
    full_data: list[dict[str, Any]]


def analyze_workbook(content: bytes, sample_row_count: int) -> WorkbookAnalysis:
    """Parse, infer and profile a workbook. CPU-bound; run in a thread."""
    sheet = parse_spreadsheet(content)
    records = sheet.records()
    schema = build_column_schema(sheet.headers, sheet.rows)
    stats = profile_dataset(sheet.headers, sheet.rows, records, column_schema=schema)
    return WorkbookAnalysis(
        row_count=sheet.row_count,
        column_count=sheet.column_count,
        column_schema=[asdict(col) for col in schema],
        sample_rows=records[:sample_row_count],
        data_statistics=stats.to_dict(),
        full_data=records,
    )


async def accept_upload(
    db: AsyncSession,
    owner_id: UUID,
    original_filename: str | None,
    mime_type: str | None,
    content: bytes,
    upload_dir: Path | None = None,
    max_file_size_mb: int | None = None,
) -> AcceptedUpload:
    """Validate an upload, stash its bytes and create a `processing` record.

    Raises ValidationError synchronously; parsing happens later in
    run_pipeline.
    """
    if not original_filename:
        raise ValidationError("No filename provided")
    if not is_excel_upload(original_filename, mime_type):
        raise ValidationError("Only Excel files (.xlsx, .xls) are allowed")
    if not content:
        raise ValidationError("Uploaded file is empty")

    max_mb = max_file_size_mb or settings.max_file_size_mb
    if len(content) > max_mb * 1024 * 1024:
        raise ValidationError(
            f"File too large. Maximum size: {max_mb}MB", status_code=413
        )

    upload_dir = Path(upload_dir or settings.upload_dir)
    try:
        upload_dir.mkdir(parents=True, exist_ok=True)
        storage_path = safe_storage_path(upload_dir, owner_id, original_filename)
        await asyncio.to_thread(storage_path.write_bytes, content)
    except OSError as e:
        logger.error("Could not store upload %s: %s", original_filename, e)
        raise StorageError("Failed to store uploaded file") from e

    record = SpreadsheetFile(
        id=uuid4(),
        owner_id=owner_id,
        original_filename=original_filename,
        stored_filename=storage_path.name,
        mime_type=mime_type or "application/octet-stream",
        file_size_bytes=len(content),
        file_hash=compute_content_hash(content),
        status=STATUS_PROCESSING,
        processing_started_at=datetime.now(timezone.utc),
    )
    try:
        db.add(record)
        await db.commit()
        await db.refresh(record)
    except Exception:
        await db.rollback()
        storage_path.unlink(missing_ok=True)
        raise

    logger.info("Accepted upload %s (%s, %d bytes)", record.id, original_filename, len(content))
    return AcceptedUpload(record=record, storage_path=storage_path)


async def _remove_transient(storage_path: Path) -> None:
    try:
        await asyncio.to_thread(storage_path.unlink, missing_ok=True)
    except OSError:
        logger.exception("Failed to remove transient upload %s", storage_path)


async def _generate_insight_quietly(
    insight_service: InsightService, record_id: UUID, analysis: WorkbookAnalysis
) -> Insight | None:
    try:
        return await insight_service.generate(
            analysis.column_schema, analysis.data_statistics, analysis.full_data
        )
    except NoProviderConfigured:
        logger.info("Skipping insights for %s: no provider configured", record_id)
    except ProviderError as e:
        logger.warning(
            "Insight generation failed for %s (%s): %s", record_id, type(e).__name__, e.message
        )
    except Exception:
        logger.exception("Unexpected error generating insights for %s", record_id)
    return None


async def _mark_error(
    session_factory: async_sessionmaker[AsyncSession], record_id: UUID, message: str
) -> None:
    try:
        async with session_factory() as db:
            record = await db.get(SpreadsheetFile, record_id)
            if record is None or record.status != STATUS_PROCESSING:
                return
            record.status = STATUS_ERROR
            record.error_message = message
            record.processing_completed_at = datetime.now(timezone.utc)
            await db.commit()
    except StaleDataError:
        logger.info("Upload %s was deleted while processing", record_id)
    except Exception:
        # The record stays in `processing`; recovery is an operator concern
        logger.exception("Could not record failure for upload %s", record_id)


async def _store_results(
    session_factory: async_sessionmaker[AsyncSession],
    record_id: UUID,
    analysis: WorkbookAnalysis,
    insight: Insight | None,
) -> str | None:
    """Write every result field and `processed` in one commit."""
    async with session_factory() as db:
        record = await db.get(SpreadsheetFile, record_id)
        if record is None:
            logger.info("Upload %s was deleted while processing", record_id)
            return None
        if record.status != STATUS_PROCESSING:
            logger.warning("Upload %s became %s while processing", record_id, record.status)
            return record.status

        record.row_count = analysis.row_count
        record.column_count = analysis.column_count
        record.column_schema = analysis.column_schema
        record.sample_rows = analysis.sample_rows
        record.data_statistics = analysis.data_statistics
        record.full_data = analysis.full_data
        record.insight = insight.model_dump(mode="json") if insight else None
        record.error_message = None
        record.status = STATUS_PROCESSED
        record.processing_completed_at = datetime.now(timezone.utc)
        try:
            await db.commit()
        except StaleDataError:
            await db.rollback()
            logger.info("Upload %s was deleted while processing", record_id)
            return None
    return STATUS_PROCESSED


def _failure_message(record_id: UUID, error: Exception) -> str:
    if isinstance(error, AppError):
        logger.warning("Upload %s failed: %s", record_id, error.message)
        return error.message
    logger.error("Upload %s failed: %s", record_id, error, exc_info=error)
    return f"Failed to process Excel file: {type(error).__name__}"


async def run_pipeline(
    session_factory: async_sessionmaker[AsyncSession],
    insight_service: InsightService,
    record_id: UUID,
    storage_path: Path,
    sample_row_count: int | None = None,
) -> str | None:
    """Process one accepted upload to a terminal state.

    Failures are recorded on the record rather than raised. No database
    session is held while the workbook is parsed or the insight provider is
    called. Cancellation marks the record as interrupted and propagates.
    The transient upload is removed on every exit path. Returns the final
    status, or None if the record no longer exists.
    """
    sample_count = settings.sample_row_count if sample_row_count is None else sample_row_count

    try:
        try:
            async with session_factory() as db:
                record = await db.get(SpreadsheetFile, record_id)
                if record is None:
                    logger.warning("Upload %s vanished before processing", record_id)
                    return None
                if record.status != STATUS_PROCESSING:
                    logger.warning("Upload %s already %s; skipping", record_id, record.status)
                    return record.status
                filename = record.original_filename

            logger.info("Processing upload %s (%s)", record_id, filename)
            try:
                content = await asyncio.to_thread(storage_path.read_bytes)
            except OSError as e:
                raise StorageError(f"Failed to read uploaded file: {e.strerror or e}") from e
            analysis = await asyncio.to_thread(analyze_workbook, content, sample_count)
        except Exception as e:
            await _mark_error(session_factory, record_id, _failure_message(record_id, e))
            return STATUS_ERROR

        insight = await _generate_insight_quietly(insight_service, record_id, analysis)

        try:
            final = await _store_results(session_factory, record_id, analysis, insight)
        except Exception as e:
            await _mark_error(session_factory, record_id, _failure_message(record_id, e))
            return STATUS_ERROR

        if final == STATUS_PROCESSED:
            logger.info(
                "Processed upload %s: %d rows, %d columns, insight=%s",
                record_id, analysis.row_count, analysis.column_count, insight is not None,
            )
        return final
    except asyncio.CancelledError:
        logger.warning("Processing of upload %s was interrupted", record_id)
        await asyncio.shield(_mark_error(session_factory, record_id, INTERRUPTED_MESSAGE))
        raise
    finally:
        await _remove_transient(storage_path)


async def get_upload(
    db: AsyncSession,
    record_id: UUID,
    owner_id: UUID | None = None,
    include_data: bool = False,
) -> SpreadsheetFile:
    """Fetch one record; owner_id=None skips the ownership check (admin)."""
    query = select(SpreadsheetFile).where(SpreadsheetFile.id == record_id)
    if owner_id is not None:
        query = query.where(SpreadsheetFile.owner_id == owner_id)
    if include_data:
        query = query.options(undefer(SpreadsheetFile.full_data))
    result = await db.execute(query.execution_options(populate_existing=True))
    record = result.scalar_one_or_none()
    if record is None:
        raise NotFound()
    return record


async def list_uploads(
    db: AsyncSession,
    owner_id: UUID | None,
    page: int = 1,
    page_size: int = 10,
    status: str | None = None,
    sort_by: str = "created_at",
    descending: bool = True,
) -> tuple[list[SpreadsheetFile], int]:
    """One page of records, without full_data.

    owner_id=None lists every owner's records (admin).
    """
    sort_column = SORTABLE_COLUMNS.get(sort_by)
    if sort_column is None:
        raise ValidationError(
            f"Cannot sort by {sort_by!r}", details={"allowed": sorted(SORTABLE_COLUMNS)}
        )

    filters = []
    if owner_id is not None:
        filters.append(SpreadsheetFile.owner_id == owner_id)
    if status is not None:
        filters.append(SpreadsheetFile.status == status)

    total_result = await db.execute(
        select(func.count()).select_from(SpreadsheetFile).where(*filters)
    )
    total = total_result.scalar() or 0

    query = (
        select(SpreadsheetFile)
        .where(*filters)
        .order_by(sort_column.desc() if descending else sort_column.asc(), SpreadsheetFile.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(query)
    return list(result.scalars().all()), total


async def regenerate_insight(
    db: AsyncSession,
    insight_service: InsightService,
    record_id: UUID,
    owner_id: UUID | None = None,
) -> Insight:
    """Replace the insight of a processed record. Provider errors propagate."""
    record = await get_upload(db, record_id, owner_id, include_data=True)
    if record.status != STATUS_PROCESSED or record.full_data is None:
        raise NotProcessedYet(details={"status": record.status})

    insight = await insight_service.generate(
        record.column_schema or [], record.data_statistics or {}, record.full_data
    )
    record.insight = insight.model_dump(mode="json")
    await db.commit()
    logger.info("Regenerated insight for %s via %s", record_id, insight.generated_by)
    return insight


async def delete_upload(db: AsyncSession, record: SpreadsheetFile) -> None:
    """Delete a terminal record; records still processing are refused."""
    if record.status == STATUS_PROCESSING:
        raise RecordBusy()
    await db.delete(record)
    await db.commit()
    logger.info("Deleted upload %s", record.id)


async def collect_file_stats(db: AsyncSession, owner_id: UUID | None = None) -> dict:
    """Aggregate counts over one owner's records, or all records."""
    filters = [SpreadsheetFile.owner_id == owner_id] if owner_id is not None else []

    result = await db.execute(
        select(
            func.count().label("total"),
            func.count().filter(SpreadsheetFile.status == STATUS_PROCESSED).label("processed"),
            func.count().filter(SpreadsheetFile.status == STATUS_PROCESSING).label("processing"),
            func.count().filter(SpreadsheetFile.status == STATUS_ERROR).label("errors"),
            func.count().filter(SpreadsheetFile.insight.isnot(None)).label("with_insights"),
            func.coalesce(func.sum(SpreadsheetFile.file_size_bytes), 0).label("total_size"),
            func.coalesce(func.sum(SpreadsheetFile.row_count), 0).label("total_rows"),
        ).where(*filters)
    )
    row = result.one()

    return {
        "total_files": row.total,
        "processed_files": row.processed,
        "processing_files": row.processing,
        "error_files": row.errors,
        "total_size_bytes": int(row.total_size),
        "total_rows": int(row.total_rows),
        "files_with_insights": row.with_insights,
    }
