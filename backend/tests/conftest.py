from __future__ import annotations

import asyncio
import io
import json
import os
import struct
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncGenerator, Callable
from uuid import UUID, uuid4

import httpx
import openpyxl
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from excel_analytics.config import settings
from excel_analytics.database import get_db
from excel_analytics.exceptions import NoProviderConfigured
from excel_analytics.main import app as fastapi_app
from excel_analytics.middleware.auth import ALGORITHM
from excel_analytics.models.base import Base
from excel_analytics.services.ai.insight_service import InsightService
from excel_analytics.services.ai.providers import GeminiProvider, OpenAIProvider
from excel_analytics.services.ingestion.pipeline_runner import PipelineRunner

# Import all models so metadata is populated
import excel_analytics.models  # noqa: F401

# File-backed SQLite by default so the API session and the pipeline session
# use separate connections, as they do against Postgres.
TEST_DB_URL = os.environ.get("TEST_DATABASE_URL")

TABLES = ["audit_log", "spreadsheet_files"]

OPENAI_TEST_URL = "https://openai.test/v1"
GEMINI_TEST_URL = "https://gemini.test/v1beta"

SAMPLE_INSIGHT = {
    "summary": "Small staff roster with one malformed age value.",
    "keyFindings": ["Ages cluster around 30", "One non-numeric age"],
    "recommendations": ["Validate the Age column on entry"],
    "dataQuality": {"completeness": 0.9, "consistency": 0.8, "accuracy": 0.85},
}


@pytest_asyncio.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Provide an engine with tables created and emptied."""
    url = TEST_DB_URL or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    engine = create_async_engine(url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with engine.begin() as conn:
        for table in TABLES:
            await conn.execute(text(f"DELETE FROM {table}"))

    yield engine

    async with engine.begin() as conn:
        for table in TABLES:
            await conn.execute(text(f"DELETE FROM {table}"))
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def upload_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point transient upload storage at a per-test directory."""
    path = tmp_path / "uploads"
    monkeypatch.setattr(settings, "upload_dir", str(path))
    return path


@pytest.fixture
def insight_service() -> InsightService:
    """An insight service with no credentials: uploads process without insights."""
    return InsightService([])


@pytest_asyncio.fixture
async def pipeline_runner(
    session_factory: async_sessionmaker[AsyncSession], insight_service: InsightService
) -> AsyncGenerator[PipelineRunner, None]:
    runner = PipelineRunner(session_factory, insight_service, concurrency=2, sample_row_count=10)
    yield runner
    await runner.drain()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    upload_dir: Path,
    insight_service: InsightService,
    pipeline_runner: PipelineRunner,
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP test client with DB and app state overrides."""

    async def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.state.insight_service = insight_service
    fastapi_app.state.pipeline_runner = pipeline_runner
    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    fastapi_app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Test helpers
# ---------------------------------------------------------------------------


def create_access_token(
    user_id: UUID, role: str = "user", expires_delta: timedelta | None = None
) -> str:
    """Mint a JWT the way the identity service would."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=30))
    to_encode = {
        "sub": str(user_id),
        "role": role,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=ALGORITHM)


def auth_headers(user_id: UUID | None = None, role: str = "user") -> tuple[dict, UUID]:
    uid = user_id or uuid4()
    token = create_access_token(uid, role=role)
    return {"Authorization": f"Bearer {token}"}, uid


def make_xlsx(rows: list[list], title: str = "Sheet1") -> bytes:
    """Build an .xlsx workbook in memory from a list of rows."""
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = title
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


# BIFF8 records and the OLE2 container around them, enough for xlrd to read
# strings, numbers, booleans and dates from a single worksheet.
_OLE2_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
_OLE2_FREE, _OLE2_END_OF_CHAIN, _OLE2_SAT_SECTOR = -1, -2, -3
_SECTOR = 512
_MIN_STANDARD_STREAM = 4096
_EXCEL_EPOCH = date(1899, 12, 30)
_XF_GENERAL, _XF_DATE = 0, 1


def _biff(code: int, data: bytes = b"") -> bytes:
    return struct.pack("<HH", code, len(data)) + data


def _biff_bof(stream_type: int) -> bytes:
    return _biff(0x0809, struct.pack("<HHHHII", 0x0600, stream_type, 0x0DBB, 0x07CC, 0, 6))


def _biff_cell(rowx: int, colx: int, value) -> bytes:
    if isinstance(value, bool):
        return _biff(0x0205, struct.pack("<HHHBB", rowx, colx, _XF_GENERAL, int(value), 0))
    if isinstance(value, (int, float)):
        return _biff(0x0203, struct.pack("<HHHd", rowx, colx, _XF_GENERAL, float(value)))
    if isinstance(value, date):
        serial = value.toordinal() - _EXCEL_EPOCH.toordinal()
        return _biff(0x0203, struct.pack("<HHHd", rowx, colx, _XF_DATE, float(serial)))
    text_bytes = str(value).encode("latin-1")
    return _biff(
        0x0204,
        struct.pack("<HHHHB", rowx, colx, _XF_GENERAL, len(text_bytes), 0) + text_bytes,
    )


def _biff_workbook_stream(rows: list[list], title: str) -> bytes:
    name = title.encode("latin-1")

    def globals_part(sheet_offset: int) -> bytes:
        return b"".join([
            _biff_bof(0x0005),
            # Cell XFs: General, then the built-in m/d/yy date format (14)
            _biff(0x00E0, struct.pack("<HHHBBBBIiH", 0, 0, 0, 0x20, 0, 0, 0, 0, 0, 0)),
            _biff(0x00E0, struct.pack("<HHHBBBBIiH", 0, 14, 0, 0x20, 0, 0, 0, 0, 0, 0)),
            _biff(0x0085, struct.pack("<iBBBB", sheet_offset, 0, 0, len(name), 0) + name),
            _biff(0x000A),
        ])

    cells = [
        _biff_cell(rowx, colx, value)
        for rowx, row in enumerate(rows)
        for colx, value in enumerate(row)
        if value is not None
    ]
    sheet_part = _biff_bof(0x0010) + b"".join(cells) + _biff(0x000A)
    return globals_part(len(globals_part(0))) + sheet_part


def _ole2_dir_entry(name: str, entry_type: int, child: int, first_sector: int, size: int) -> bytes:
    encoded = (name + "\0").encode("utf-16-le") if name else b""
    return (
        encoded.ljust(64, b"\0")
        + struct.pack("<HBBiii", len(encoded), entry_type, 1, -1, -1, child)
        + b"\0" * 36
        + struct.pack("<iiI", first_sector, size, 0)
    )


def make_xls(rows: list[list], title: str = "Sheet1") -> bytes:
    """Build a legacy .xls workbook in memory from a list of rows.

    Rows may hold str, int, float, bool, date or None cells. The Workbook
    stream is padded to a whole number of standard sectors so the container
    needs no mini-stream.
    """
    stream = _biff_workbook_stream(rows, title)
    stream_size = max(_MIN_STANDARD_STREAM, -(-len(stream) // _SECTOR) * _SECTOR)
    stream = stream.ljust(stream_size, b"\0")
    stream_sectors = stream_size // _SECTOR

    # Sector 0 holds the allocation table, sector 1 the directory
    sat = [_OLE2_SAT_SECTOR, _OLE2_END_OF_CHAIN]
    sat += [2 + i + 1 for i in range(stream_sectors - 1)] + [_OLE2_END_OF_CHAIN]
    sat += [_OLE2_FREE] * (_SECTOR // 4 - len(sat))

    directory = b"".join([
        _ole2_dir_entry("Root Entry", 5, 1, _OLE2_END_OF_CHAIN, 0),
        _ole2_dir_entry("Workbook", 2, -1, 2, stream_size),
        _ole2_dir_entry("", 0, -1, _OLE2_END_OF_CHAIN, 0),
        _ole2_dir_entry("", 0, -1, _OLE2_END_OF_CHAIN, 0),
    ])

    header = (
        _OLE2_SIGNATURE
        + b"\0" * 16
        + struct.pack("<HHHHH", 0x003E, 0x0003, 0xFFFE, 9, 6)
        + b"\0" * 10
        + struct.pack(
            "<iiiiiiii",
            1, 1, 0, _MIN_STANDARD_STREAM, _OLE2_END_OF_CHAIN, 0, _OLE2_END_OF_CHAIN, 0,
        )
        + struct.pack("<109i", 0, *([_OLE2_FREE] * 108))
    )
    return header + struct.pack(f"<{len(sat)}i", *sat) + directory + stream


XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

ROSTER_ROWS = [
    ["Name", "Age", "Joined", "Active"],
    ["Ann", 30, "2023-01-15", "yes"],
    [None, None, None, None],
    ["Bob", "x", "2023-02-01", "no"],
    ["Ann", 30, "2023-01-15", "yes"],
]


def openai_reply(content: str, finish_reason: str = "stop") -> dict:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
    }


def gemini_reply(text_value: str, finish_reason: str = "STOP") -> dict:
    return {
        "candidates": [
            {
                "content": {"role": "model", "parts": [{"text": text_value}]},
                "finishReason": finish_reason,
            }
        ]
    }


def recording_transport(
    handler: Callable[[httpx.Request], httpx.Response],
) -> tuple[httpx.MockTransport, list[httpx.Request]]:
    """Wrap a handler so every request it sees is kept for assertions."""
    seen: list[httpx.Request] = []

    def _handle(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    return httpx.MockTransport(_handle), seen


def openai_provider(
    transport: httpx.AsyncBaseTransport, models: list[str] | None = None, api_key: str = "sk-test"
) -> OpenAIProvider:
    return OpenAIProvider(
        api_key=api_key,
        models=models or ["gpt-4o-mini", "gpt-3.5-turbo"],
        base_url=OPENAI_TEST_URL,
        timeout_s=5.0,
        transport=transport,
    )


def gemini_provider(
    transport: httpx.AsyncBaseTransport, models: list[str] | None = None, api_key: str = "g-test"
) -> GeminiProvider:
    return GeminiProvider(
        api_key=api_key,
        models=models or ["gemini-1.5-flash", "gemini-pro"],
        base_url=GEMINI_TEST_URL,
        timeout_s=5.0,
        transport=transport,
    )


def working_openai_service() -> tuple[InsightService, list[httpx.Request]]:
    """An OpenAI-backed service whose first model answers with SAMPLE_INSIGHT."""
    transport, seen = recording_transport(
        lambda request: httpx.Response(200, json=openai_reply(json.dumps(SAMPLE_INSIGHT)))
    )
    return InsightService([openai_provider(transport)]), seen


class GatedInsightService(InsightService):
    """Holds the pipeline at the insight step until released."""

    def __init__(self):
        super().__init__([])
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def generate(self, column_schema, statistics, records):
        self.entered.set()
        await self.gate.wait()
        raise NoProviderConfigured()
