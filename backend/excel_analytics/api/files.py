from __future__ import annotations

import logging
import math
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from excel_analytics.database import get_db
from excel_analytics.dependencies import (
    get_authenticated_user_id,
    get_insight_service,
    get_pipeline_runner,
)
from excel_analytics.exceptions import NotProcessedYet
from excel_analytics.middleware.audit import log_audit_event
from excel_analytics.models.spreadsheet_file import STATUS_PROCESSED
from excel_analytics.schemas.files import (
    DataPagination,
    DataPreviewResponse,
    FileDetail,
    FileInfo,
    FileListResponse,
    FileStatsResponse,
    FileSummary,
    InsightResponse,
    UploadAcceptedResponse,
)
from excel_analytics.services.ai.insight_service import InsightService
from excel_analytics.services.ingestion.coordinator import (
    accept_upload,
    collect_file_stats,
    delete_upload,
    get_upload,
    list_uploads,
    regenerate_insight,
)
from excel_analytics.services.ingestion.pipeline_runner import PipelineRunner

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/files", tags=["files"])


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


@router.post("/upload", response_model=UploadAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def upload_file(
    request: Request,
    file: UploadFile,
    user_id: UUID = Depends(get_authenticated_user_id),
    db: AsyncSession = Depends(get_db),
    runner: PipelineRunner = Depends(get_pipeline_runner),
) -> UploadAcceptedResponse:
    """Accept an Excel workbook; parsing and analysis continue in the background."""
    content = await file.read()
    accepted = await accept_upload(
        db,
        owner_id=user_id,
        original_filename=file.filename,
        mime_type=file.content_type,
        content=content,
    )
    record = accepted.record

    await log_audit_event(
        db,
        user_id=user_id,
        action="file.upload",
        resource_type="spreadsheet_file",
        resource_id=record.id,
        ip_address=_client_ip(request),
        details={"filename": record.original_filename, "size": record.file_size_bytes},
    )

    runner.submit(record.id, accepted.storage_path)

    return UploadAcceptedResponse(
        id=record.id,
        status=record.status,
        original_filename=record.original_filename,
        file_size_bytes=record.file_size_bytes,
        uploaded_at=record.created_at,
    )


@router.get("", response_model=FileListResponse)
async def list_files(
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    user_id: UUID = Depends(get_authenticated_user_id),
    db: AsyncSession = Depends(get_db),
) -> FileListResponse:
    """The caller's files, newest first, without the full dataset."""
    records, total = await list_uploads(db, user_id, page=page, page_size=page_size)
    return FileListResponse(
        items=[FileSummary.model_validate(r) for r in records],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total else 0,
    )


@router.get("/stats", response_model=FileStatsResponse)
async def get_file_stats(
    user_id: UUID = Depends(get_authenticated_user_id),
    db: AsyncSession = Depends(get_db),
) -> FileStatsResponse:
    return FileStatsResponse(**await collect_file_stats(db, owner_id=user_id))


@router.get("/{file_id}", response_model=FileDetail)
async def get_file(
    file_id: UUID,
    user_id: UUID = Depends(get_authenticated_user_id),
    db: AsyncSession = Depends(get_db),
) -> FileDetail:
    record = await get_upload(db, file_id, owner_id=user_id, include_data=True)
    return FileDetail.model_validate(record)


@router.get("/{file_id}/data", response_model=DataPreviewResponse)
async def get_file_data(
    request: Request,
    file_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=1000),
    full: bool = Query(False),
    user_id: UUID = Depends(get_authenticated_user_id),
    db: AsyncSession = Depends(get_db),
) -> DataPreviewResponse:
    """Schema, statistics and sample rows; with full=true, a page of the dataset."""
    record = await get_upload(db, file_id, owner_id=user_id, include_data=full)
    if record.status != STATUS_PROCESSED:
        raise NotProcessedYet(
            "File is not yet processed or failed processing",
            details={"status": record.status},
        )

    data = None
    pagination = None
    if full:
        rows = record.full_data or []
        start = (page - 1) * page_size
        data = rows[start : start + page_size]
        pagination = DataPagination(
            page=page,
            page_size=page_size,
            total=len(rows),
            pages=math.ceil(len(rows) / page_size),
        )

    await log_audit_event(
        db,
        user_id=user_id,
        action="file.data.view",
        resource_type="spreadsheet_file",
        resource_id=record.id,
        ip_address=_client_ip(request),
        details={"full": full, "page": page if full else None},
    )

    return DataPreviewResponse(
        file_info=FileInfo(
            id=record.id,
            original_filename=record.original_filename,
            file_size_bytes=record.file_size_bytes,
            row_count=record.row_count,
            column_count=record.column_count,
            uploaded_at=record.created_at,
        ),
        column_schema=record.column_schema or [],
        data_statistics=record.data_statistics,
        sample_rows=record.sample_rows or [],
        data=data,
        pagination=pagination,
    )


@router.post("/{file_id}/insights", response_model=InsightResponse)
async def regenerate_file_insights(
    request: Request,
    file_id: UUID,
    user_id: UUID = Depends(get_authenticated_user_id),
    db: AsyncSession = Depends(get_db),
    insight_service: InsightService = Depends(get_insight_service),
) -> InsightResponse:
    """Ask the configured AI provider for a fresh insight on a processed file."""
    insight = await regenerate_insight(db, insight_service, file_id, owner_id=user_id)

    await log_audit_event(
        db,
        user_id=user_id,
        action="file.insights.regenerate",
        resource_type="spreadsheet_file",
        resource_id=file_id,
        ip_address=_client_ip(request),
        details={"generated_by": insight.generated_by},
    )
    return InsightResponse(id=file_id, insight=insight)


@router.delete("/{file_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_file(
    request: Request,
    file_id: UUID,
    user_id: UUID = Depends(get_authenticated_user_id),
    db: AsyncSession = Depends(get_db),
) -> Response:
    record = await get_upload(db, file_id, owner_id=user_id)
    filename = record.original_filename
    await delete_upload(db, record)

    await log_audit_event(
        db,
        user_id=user_id,
        action="file.delete",
        resource_type="spreadsheet_file",
        resource_id=file_id,
        ip_address=_client_ip(request),
        details={"filename": filename},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
