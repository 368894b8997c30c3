from __future__ import annotations

import math
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from excel_analytics.database import get_db
from excel_analytics.dependencies import require_admin
from excel_analytics.middleware.audit import log_audit_event
from excel_analytics.middleware.auth import Principal
from excel_analytics.models.spreadsheet_file import FILE_STATUSES, SpreadsheetFile
from excel_analytics.schemas.files import (
    AdminStatsResponse,
    FileDetail,
    FileListResponse,
    FileSummary,
    OwnerFileCount,
)
from excel_analytics.services.ingestion.coordinator import (
    collect_file_stats,
    delete_upload,
    get_upload,
    list_uploads,
)

router = APIRouter(prefix="/admin/files", tags=["admin"])

STATUS_PATTERN = "^(" + "|".join(FILE_STATUSES) + ")$"


@router.get("", response_model=FileListResponse)
async def admin_list_files(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status_filter: str | None = Query(None, alias="status", pattern=STATUS_PATTERN),
    owner_id: UUID | None = Query(None),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    _: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> FileListResponse:
    """Every owner's files, filterable and sortable, without the full dataset."""
    records, total = await list_uploads(
        db,
        owner_id,
        page=page,
        page_size=page_size,
        status=status_filter,
        sort_by=sort_by,
        descending=sort_order == "desc",
    )
    return FileListResponse(
        items=[FileSummary.model_validate(r) for r in records],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total else 0,
    )


@router.get("/stats", response_model=AdminStatsResponse)
async def get_system_stats(
    top_owners: int = Query(10, ge=1, le=100),
    _: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> AdminStatsResponse:
    """System-wide file statistics."""
    stats = await collect_file_stats(db)

    # Count by status
    status_result = await db.execute(
        select(SpreadsheetFile.status, func.count()).group_by(SpreadsheetFile.status)
    )
    by_status = {name: 0 for name in FILE_STATUSES}
    by_status.update({row[0]: row[1] for row in status_result.all()})

    # Busiest owners
    owner_result = await db.execute(
        select(SpreadsheetFile.owner_id, func.count().label("file_count"))
        .group_by(SpreadsheetFile.owner_id)
        .order_by(func.count().desc())
        .limit(top_owners)
    )
    owners = [
        OwnerFileCount(owner_id=row.owner_id, file_count=row.file_count)
        for row in owner_result.all()
    ]

    return AdminStatsResponse(**stats, status_distribution=by_status, owners=owners)


@router.get("/{file_id}", response_model=FileDetail)
async def admin_get_file(
    file_id: UUID,
    _: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> FileDetail:
    record = await get_upload(db, file_id, include_data=True)
    return FileDetail.model_validate(record)


@router.delete("/{file_id}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_file(
    request: Request,
    file_id: UUID,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Response:
    record = await get_upload(db, file_id)
    owner_id = record.owner_id
    await delete_upload(db, record)

    await log_audit_event(
        db,
        user_id=admin.user_id,
        action="file.delete",
        resource_type="spreadsheet_file",
        resource_id=file_id,
        ip_address=request.client.host if request.client else None,
        details={"owner_id": str(owner_id), "admin": True},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
