"""
Shared fixtures for FormGen backend tests.

Each test gets its own SQLite database (via aiosqlite) under pytest's tmp_path,
its own LocalStorage root, and a scripted completion client in place of Ollama.
Set TEST_DATABASE_URL to run against another database instead; tables are then
dropped after every test.
"""
from __future__ import annotations

import io
import json
import os
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional

import fitz  # PyMuPDF
import pytest
import pytest_asyncio
from docx import Document as DocxDocument
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

# Override DATABASE_URL *before* any formgen module is imported, so that
# settings.DATABASE_URL and the global engine never point at a real server.
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")
os.environ["DATABASE_URL"] = TEST_DATABASE_URL or "sqlite+aiosqlite:///./formgen_test.db"

from formgen.database import Base, get_db  # noqa: E402
from formgen.dependencies.services import (  # noqa: E402
    get_completion_client,
    get_session_factory,
    get_storage,
)
from formgen.main import app  # noqa: E402
from formgen.models.database_models import Template, TemplateStatus  # noqa: E402
from formgen.services.field_extractor import parse_fields_response, to_placeholder  # noqa: E402
from formgen.services.storage import LocalStorage  # noqa: E402
from formgen.services.template_manager import compute_etag  # noqa: E402


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeCompletionClient:
    """Returns queued responses in order; repeats the last one when the queue runs dry."""

    def __init__(self, *responses: str) -> None:
        self.responses: List[str] = list(responses)
        self.prompts: List[str] = []
        self.calls: List[dict] = []
        self.healthy = True

    def queue(self, *responses: str) -> None:
        self.responses.extend(responses)

    async def complete(self, prompt: str, *, temperature: float, max_tokens: int) -> str:
        self.prompts.append(prompt)
        self.calls.append({"temperature": temperature, "max_tokens": max_tokens})
        if not self.responses:
            return ""
        if len(self.responses) == 1:
            return self.responses[0]
        return self.responses.pop(0)

    async def check_health(self) -> bool:
        return self.healthy


# ---------------------------------------------------------------------------
# Per-test fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_session(tmp_path) -> AsyncGenerator[AsyncSession, None]:
    """Provide a DB session on a fresh schema for each test."""
    url = TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'formgen_test.db'}"
    engine = create_async_engine(url, echo=False, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(
        root=str(tmp_path / "storage"),
        signing_secret="test-secret",
        public_base_url="http://test",
    )


@pytest.fixture
def completion() -> FakeCompletionClient:
    return FakeCompletionClient(fields_json(SAMPLE_FIELDS))


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    storage: LocalStorage,
    completion: FakeCompletionClient,
) -> AsyncGenerator[AsyncClient, None]:
    """
    httpx AsyncClient wired to the FastAPI app with the DB, storage and
    completion dependencies overridden for the test.
    """

    async def _override_get_db():
        yield db_session

    @asynccontextmanager
    async def _shared_session():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_completion_client] = lambda: completion
    app.dependency_overrides[get_session_factory] = lambda: _shared_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

AUTH_HEADERS = {"X-User-Id": "admin-1"}
AUTH_HEADERS_USER2 = {"X-User-Id": "admin-2"}

SAMPLE_FIELDS = [
    {"name": "fullName", "type": "text", "label": "Full Name", "required": True},
    {"name": "email", "type": "email", "label": "Email", "required": True},
    {"name": "propertyAddress", "type": "textarea", "label": "Property Address", "required": False},
]

SAMPLE_TEXT_LINES = [
    "Lease Agreement",
    "Tenant: {{fullName}}",
    "Contact: {{email}}",
    "Premises: {{propertyAddress}}",
]


def fields_json(fields: List[dict]) -> str:
    return json.dumps({"fields": fields})


def make_pdf(lines: Optional[List[str]] = None, pages: int = 1) -> bytes:
    """Return a PDF with one text line per entry of *lines* on every page."""
    lines = SAMPLE_TEXT_LINES if lines is None else lines
    doc = fitz.open()
    for _ in range(pages):
        page = doc.new_page()
        y = 72
        for line in lines:
            page.insert_text((72, y), line, fontsize=11, fontname="helv")
            y += 20
    data = doc.tobytes()
    doc.close()
    return data


def make_docx(
    lines: Optional[List[str]] = None,
    header: Optional[str] = None,
    table_rows: Optional[List[List[str]]] = None,
) -> bytes:
    lines = SAMPLE_TEXT_LINES if lines is None else lines
    document = DocxDocument()
    for line in lines:
        document.add_paragraph(line)
    if table_rows:
        table = document.add_table(rows=len(table_rows), cols=len(table_rows[0]))
        for r, row in enumerate(table_rows):
            for c, value in enumerate(row):
                table.cell(r, c).text = value
    if header:
        document.sections[0].header.is_linked_to_previous = False
        document.sections[0].header.paragraphs[0].text = header
    out = io.BytesIO()
    document.save(out)
    return out.getvalue()


def docx_text(data: bytes) -> str:
    """All body, table and header text of a DOCX, one paragraph per line."""
    document = DocxDocument(io.BytesIO(data))
    parts = [p.text for p in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            for cell in row.cells:
                parts.append(cell.text)
    for section in document.sections:
        if not section.header.is_linked_to_previous:
            parts.extend(p.text for p in section.header.paragraphs)
    return "\n".join(parts)


def pdf_text(data: bytes) -> str:
    doc = fitz.open(stream=data, filetype="pdf")
    try:
        return "\n".join(page.get_text("text") for page in doc)
    finally:
        doc.close()


async def create_parsed_template(
    db: AsyncSession,
    storage: LocalStorage,
    file_type: str = "docx",
    fields: Optional[List[dict]] = None,
    content: Optional[bytes] = None,
    name: str = "Lease",
):
    """Insert a ``parsed`` Template whose bytes are already in *storage*."""
    template_id = str(uuid.uuid4())
    file_name = f"lease.{file_type}"
    storage_path = f"templates/{template_id}/{file_name}"
    if content is None:
        content = make_pdf() if file_type == "pdf" else make_docx()
    await storage.save(storage_path, content)

    specs = parse_fields_response(fields_json(SAMPLE_FIELDS if fields is None else fields)).fields
    field_dicts = [to_placeholder(spec).model_dump(mode="json") for spec in specs]
    template = Template(
        id=template_id,
        name=name,
        original_file_name=file_name,
        file_type=file_type,
        storage_path=storage_path,
        status=TemplateStatus.PARSED,
        extracted_fields=field_dicts,
        version=1,
        etag=compute_etag(field_dicts),
    )
    db.add(template)
    await db.flush()
    return template
