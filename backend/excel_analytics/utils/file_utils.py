from __future__ import annotations

import hashlib
from pathlib import Path
from uuid import UUID, uuid4

from excel_analytics.exceptions import ValidationError

EXCEL_EXTENSIONS = {".xlsx", ".xls"}

EXCEL_MIME_TYPES = {
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


def compute_content_hash(content: bytes) -> str:
    """Compute SHA-256 hash of an in-memory upload."""
    return hashlib.sha256(content).hexdigest()


def file_extension(filename: str) -> str:
    return Path(filename).suffix.lower()


def is_excel_upload(filename: str, mime_type: str | None) -> bool:
    """Accept a known Excel extension or a known Excel MIME type."""
    return file_extension(filename) in EXCEL_EXTENSIONS or (mime_type or "") in EXCEL_MIME_TYPES


def safe_storage_path(upload_dir: Path, owner_id: UUID, original_filename: str) -> Path:
    """Generate a unique path inside upload_dir, preventing path traversal."""
    # Preserve original extension only
    ext = file_extension(original_filename)
    if ext not in EXCEL_EXTENSIONS:
        ext = ".xlsx"
    safe_name = f"{owner_id}_{uuid4().hex}{ext}"
    file_path = (upload_dir / safe_name).resolve()

    upload_dir_resolved = upload_dir.resolve()
    if file_path.parent != upload_dir_resolved:
        raise ValidationError("Invalid filename")

    return file_path
