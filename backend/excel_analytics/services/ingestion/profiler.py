from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from excel_analytics.services.ingestion.schema_inference import infer_column_type

logger = logging.getLogger(__name__)


@dataclass
class ColumnInfo:
    name: str
    type: str
    index: int


@dataclass
class DatasetStatistics:
    total_rows: int
    total_columns: int
    empty_rows: int
    duplicate_rows: int
    data_types: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def count_empty_rows(rows: list[list[Any]]) -> int:
    """Rows in which every cell is null or whitespace."""
    return sum(1 for row in rows if all(is_blank(cell) for cell in row))


def _canonical(record: dict[str, Any]) -> str:
    return json.dumps(record, sort_keys=True, default=str)


def count_duplicate_rows(records: list[dict[str, Any]]) -> int:
    """Count repeats only: the first occurrence of a record is not a duplicate."""
    seen: set[str] = set()
    duplicates = 0
    for record in records:
        key = _canonical(record)
        if key in seen:
            duplicates += 1
        else:
            seen.add(key)
    return duplicates


def column_values(rows: list[list[Any]], index: int) -> list[Any]:
    return [row[index] if index < len(row) else None for row in rows]


def build_column_schema(headers: list[str], rows: list[list[Any]]) -> list[ColumnInfo]:
    """Ordered name/type/index for every header column."""
    return [
        ColumnInfo(name=name, type=infer_column_type(column_values(rows, index)), index=index)
        for index, name in enumerate(headers)
    ]


def profile_dataset(
    headers: list[str],
    rows: list[list[Any]],
    records: list[dict[str, Any]],
    column_schema: list[ColumnInfo] | None = None,
) -> DatasetStatistics:
    """Exact statistics over the full table.

    Pass an already-built column_schema to avoid inferring types twice.
    """
    if column_schema is None:
        column_schema = build_column_schema(headers, rows)

    stats = DatasetStatistics(
        total_rows=len(rows),
        total_columns=len(headers),
        empty_rows=count_empty_rows(rows),
        duplicate_rows=count_duplicate_rows(records),
        data_types={col.name: col.type for col in column_schema},
    )
    logger.debug(
        "Profiled %d rows x %d columns (%d empty, %d duplicate)",
        stats.total_rows, stats.total_columns, stats.empty_rows, stats.duplicate_rows,
    )
    return stats
