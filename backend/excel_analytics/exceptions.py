"""
Application error hierarchy and the FastAPI handler that renders it.

Pipeline-internal errors (ParseError, StorageError) are recorded on the
spreadsheet record and never reach an HTTP caller; the provider family is
only surfaced by an explicit insight regeneration.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for all application exceptions."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "An unexpected error occurred."

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(AppError):
    """Request input rejected: an invalid upload or listing parameter."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid upload"


class ParseError(AppError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Failed to process Excel file"


class StorageError(AppError):
    default_message = "Failed to access stored upload"


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "File not found"


class NotProcessedYet(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "File must be processed before generating insights"


class RecordBusy(AppError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "File is still being processed"


# --- Insight providers ---


class ProviderError(AppError):
    """Failure while producing an AI insight. Never fatal to a record."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Failed to generate AI insights"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.provider = provider
        self.model = model
        merged = dict(details or {})
        if provider:
            merged.setdefault("provider", provider)
        if model:
            merged.setdefault("model", model)
        super().__init__(message, details=merged)


class NoProviderConfigured(ProviderError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "No AI API key configured. Set OPENAI_API_KEY or GEMINI_API_KEY."


class AuthError(ProviderError):
    default_message = "Invalid AI API key. Please check your configuration."


class QuotaExceeded(ProviderError):
    default_message = "AI API quota exceeded. Please try again later."


class ContentFiltered(ProviderError):
    default_message = "Content filtered by AI safety systems. Try with different data."


class TransientNetworkError(ProviderError):
    default_message = "Network error connecting to AI service. Please try again."


class ModelUnavailable(ProviderError):
    default_message = "AI model not available. The service may be temporarily unavailable."


class MalformedInsightResponse(ProviderError):
    default_message = "AI service returned a response that could not be parsed."


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render AppError subclasses as a uniform error body."""
    if exc.status_code >= 500:
        logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": type(exc).__name__,
                "message": exc.message,
                "details": exc.details,
                "path": request.url.path,
            }
        },
    )
