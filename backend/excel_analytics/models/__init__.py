from __future__ import annotations

from excel_analytics.models.spreadsheet_file import SpreadsheetFile
from excel_analytics.models.audit import AuditLog

__all__ = [
    "SpreadsheetFile",
    "AuditLog",
]
