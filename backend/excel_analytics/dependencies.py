from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status

from excel_analytics.middleware.auth import Principal, get_current_principal
from excel_analytics.services.ai.insight_service import InsightService
from excel_analytics.services.ingestion.pipeline_runner import PipelineRunner


async def get_authenticated_principal(
    principal: Optional[Principal] = Depends(get_current_principal),
) -> Principal:
    """Require a valid bearer token."""
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


async def get_authenticated_user_id(
    principal: Principal = Depends(get_authenticated_principal),
) -> UUID:
    """Require authentication and return the current user's ID."""
    return principal.user_id


async def require_admin(
    principal: Principal = Depends(get_authenticated_principal),
) -> Principal:
    if not principal.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return principal


def get_insight_service(request: Request) -> InsightService:
    return request.app.state.insight_service


def get_pipeline_runner(request: Request) -> PipelineRunner:
    return request.app.state.pipeline_runner
