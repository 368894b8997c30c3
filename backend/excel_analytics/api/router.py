from __future__ import annotations

from fastapi import APIRouter

from excel_analytics.api import admin, files

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(files.router)
api_router.include_router(admin.router)
