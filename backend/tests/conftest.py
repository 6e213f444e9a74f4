"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : db_engine, session_factory, search_backend, cache_backend,
                    blob_store, mock_publisher, services, app, async_client

Environment strategy:
  - The system of record is a throwaway SQLite file per test (aiosqlite).
  - Search index and cache use the in-memory backends; same semantics,
    no Elasticsearch or Redis needed.
  - Blobs go to a tmp_path directory through LocalBlobStore.
  - The Celery publisher is mocked; tests drive DocumentProcessor directly.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only (fast, no network)
  pytest -m integration           # HTTP-level tests through the ASGI app
  pytest tests/unit/test_cache.py # single file
"""

from __future__ import annotations

import io
import os
import uuid
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any courseindex imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///./courseindex_test.db")
os.environ.setdefault("SEARCH_BACKEND",        "memory")
os.environ.setdefault("CACHE_BACKEND",         "memory")
os.environ.setdefault("STORAGE_BACKEND",       "local")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("INDEX_RETRY_BASE_DELAY", "0")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "true")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from courseindex.cache.memory_cache import InMemoryCache  # noqa: E402
from courseindex.models.documents import Base  # noqa: E402
from courseindex.search.memory_index import InMemorySearchIndex  # noqa: E402
from courseindex.services.container import Services, build_services  # noqa: E402
from courseindex.services.ingestion import Requester, TaskPublisher  # noqa: E402
from courseindex.storage.local import LocalBlobStore  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# Identities
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def owner_id() -> uuid.UUID:
    """The uploading user across all tests."""
    return uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")


@pytest.fixture
def other_id() -> uuid.UUID:
    return uuid.UUID("dddddddd-dddd-dddd-dddd-dddddddddddd")


@pytest.fixture
def admin_id() -> uuid.UUID:
    return uuid.UUID("eeeeeeee-eeee-eeee-eeee-eeeeeeeeeeee")


@pytest.fixture
def owner(owner_id) -> Requester:
    return Requester(user_id=owner_id)


@pytest.fixture
def stranger(other_id) -> Requester:
    return Requester(user_id=other_id)


@pytest.fixture
def admin(admin_id) -> Requester:
    return Requester(user_id=admin_id, is_admin=True)


# ─────────────────────────────────────────────────────────────────────────────
# System of record
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Fresh SQLite database file with the schema created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'courseindex.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Backends
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def search_backend() -> InMemorySearchIndex:
    return InMemorySearchIndex()


@pytest.fixture
def cache_backend() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def mock_publisher():
    """Mocked TaskPublisher — records calls without touching Celery/broker."""
    publisher = MagicMock(spec=TaskPublisher)
    publisher.publish_processing_task = AsyncMock(return_value="task-processing")
    publisher.publish_reindex_task    = AsyncMock(return_value="task-reindex")
    return publisher


@pytest.fixture
def services(session_factory, search_backend, cache_backend, blob_store, mock_publisher) -> Services:
    return build_services(
        session_factory,
        search_backend=search_backend,
        cache_backend=cache_backend,
        blob_store=blob_store,
        publisher=mock_publisher,
        extract_timeout=5.0,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Sample file bytes
# ─────────────────────────────────────────────────────────────────────────────

def build_pdf(text: str) -> bytes:
    """Single-page PDF with one line of Helvetica text and a valid xref table."""
    content = f"BT /F1 24 Tf 72 720 Td ({text}) Tj ET".encode("latin-1")
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
        b"/Contents 4 0 R /Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length " + str(len(content)).encode() + b" >>\nstream\n" + content + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    out = io.BytesIO()
    out.write(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(out.tell())
        out.write(f"{number} 0 obj\n".encode() + body + b"\nendobj\n")
    xref_at = out.tell()
    out.write(f"xref\n0 {len(objects) + 1}\n".encode())
    out.write(b"0000000000 65535 f \n")
    for offset in offsets:
        out.write(f"{offset:010d} 00000 n \n".encode())
    out.write(f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\n".encode())
    out.write(f"startxref\n{xref_at}\n%%EOF".encode())
    return out.getvalue()


@pytest.fixture
def sample_txt_bytes() -> bytes:
    return b"Mitosis is the division of a cell nucleus.\nMeiosis produces gametes.\n"


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    return build_pdf("Photosynthesis converts light energy")


@pytest.fixture
def sample_docx_bytes() -> bytes:
    from docx import Document as DocxDocument

    document = DocxDocument()
    document.add_paragraph("Cell biology lecture notes")
    table = document.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "Ribosome"
    table.rows[0].cells[1].text = "Protein synthesis"
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def sample_pptx_bytes() -> bytes:
    from pptx import Presentation
    from pptx.util import Inches

    presentation = Presentation()
    slide = presentation.slides.add_slide(presentation.slide_layouts[5])
    slide.shapes.title.text = "Krebs cycle"
    box = slide.shapes.add_textbox(Inches(1), Inches(2), Inches(6), Inches(1))
    box.text_frame.text = "Citric acid oxidation"
    buffer = io.BytesIO()
    presentation.save(buffer)
    return buffer.getvalue()


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI test client
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def app(services):
    """
    FastAPI app with the test Services installed on app.state.

    ASGITransport does not run the lifespan, so nothing here touches the
    configured database, Elasticsearch or Redis.
    """
    from courseindex.main import create_app

    application = create_app()
    application.state.services = services
    return application


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client; httpx >= 0.28 needs ASGITransport explicitly."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
