"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  session-scoped  : rsa_private_key, rsa_private_key_pem, test_jwks
  function-scoped : engine, session_factory, make_book, book, fakes,
                    make_coordinator, make_token, app_with_overrides, async_client

Environment strategy:
  - Every test gets its own SQLite file (aiosqlite) with all tables created,
    so concurrent enrichment sessions behave like they do on PostgreSQL.
  - The document source, the LLM and the embedding provider are fakes: no
    network calls. Chat models are LangChain fake models.
  - JWT tokens are built with a test RSA key; the JWKS cache is pre-seeded.
  - Celery uses the in-memory broker; tests never publish for real.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only (fast, no I/O)
  pytest -m integration           # API tests through the ASGI app
  pytest backend/tests/unit/test_coordinator.py
"""

from __future__ import annotations

import base64
import os
import time
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("OPENAI_API_KEY",        "")
os.environ.setdefault("PROCESSOR_API_KEY",     "test-processor-key")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "true")
os.environ.setdefault("AUTH_ISSUER",           "https://test.auth.example.com/")
os.environ.setdefault("AUTH_AUDIENCE",         "test-api-audience")

TEST_KID = "test-key-id-2024"


# ─────────────────────────────────────────────────────────────────────────────
# RSA key pair + JWKS for signing test JWTs (generated once per session)
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_private_key_pem(rsa_private_key) -> bytes:
    """PEM-encoded private key bytes (used by jose.jwt.encode)."""
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def test_jwks(rsa_private_key) -> dict:
    """What the issuer's /.well-known/jwks.json would return."""
    numbers = rsa_private_key.public_key().public_numbers()

    def _b64url(n: int) -> str:
        byte_length = (n.bit_length() + 7) // 8
        return base64.urlsafe_b64encode(n.to_bytes(byte_length, "big")).rstrip(b"=").decode()

    return {
        "keys": [
            {
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "kid": TEST_KID,
                "n":   _b64url(numbers.n),
                "e":   _b64url(numbers.e),
            }
        ]
    }


@pytest.fixture
def jwks_cache(test_jwks):
    """Seed the in-process JWKS cache so verify_token never hits the network."""
    from book_pipeline.auth import token as token_module
    from book_pipeline.core.config import settings

    token_module._JWKS_CACHE[settings.auth_issuer] = (test_jwks, time.monotonic())
    yield token_module._JWKS_CACHE
    token_module._JWKS_CACHE.clear()


# ─────────────────────────────────────────────────────────────────────────────
# JWT token factory
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_token(rsa_private_key_pem):
    """
    Factory fixture: returns a function that builds signed test JWTs.

        token = make_token(role="admin")
        token = make_token(expired=True)
        token = make_token(audience="someone-else")
    """
    from jose import jwt as jose_jwt

    from book_pipeline.core.config import settings

    def _build(
        role:     str | None = "user",
        expired:  bool = False,
        audience: str | None = None,
        issuer:   str | None = None,
        kid:      str = TEST_KID,
        sub:      str = "user-123",
    ) -> str:
        now = int(time.time())
        claims: dict = {
            "sub":   sub,
            "email": "reader@library.example.com",
            "iss":   issuer or settings.auth_issuer,
            "aud":   audience or settings.auth_audience,
            "exp":   now - 60 if expired else now + 3600,
            "iat":   now,
        }
        if role is not None:
            claims["role"] = role

        return jose_jwt.encode(claims, rsa_private_key_pem, algorithm="RS256", headers={"kid": kid})

    return _build


@pytest.fixture
def admin_token(make_token) -> str:
    return make_token(role="admin", sub="admin-1")


@pytest.fixture
def user_token(make_token) -> str:
    return make_token(role="user")


@pytest.fixture
def processor_key() -> str:
    from book_pipeline.core.config import settings
    return settings.processor_api_key


# ─────────────────────────────────────────────────────────────────────────────
# Hand-built PDFs (valid xref offsets, Helvetica text)
# ─────────────────────────────────────────────────────────────────────────────

def _pdf_escape(line: str) -> str:
    return line.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def build_pdf(pages: list[str]) -> bytes:
    """One page per entry; an empty string produces a page without text."""
    page_ids = [4 + 2 * i for i in range(len(pages))]
    objects: dict[int, bytes] = {
        1: b"<< /Type /Catalog /Pages 2 0 R >>",
        2: (
            f"<< /Type /Pages /Kids [{' '.join(f'{pid} 0 R' for pid in page_ids)}] "
            f"/Count {len(pages)} >>"
        ).encode(),
        3: b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    }
    for page_id, text in zip(page_ids, pages):
        ops = ["BT", "/F1 12 Tf", "14 TL", "72 720 Td"]
        for index, line in enumerate(text.split("\n")):
            if index:
                ops.append("T*")
            ops.append(f"({_pdf_escape(line)}) Tj")
        ops.append("ET")
        stream = ("\n".join(ops) if text else "").encode("latin-1")

        objects[page_id] = (
            f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
            f"/Resources << /Font << /F1 3 0 R >> >> /Contents {page_id + 1} 0 R >>"
        ).encode()
        objects[page_id + 1] = (
            f"<< /Length {len(stream)} >>\nstream\n".encode() + stream + b"\nendstream"
        )

    out = bytearray(b"%PDF-1.4\n")
    offsets: dict[int, int] = {}
    for obj_id in sorted(objects):
        offsets[obj_id] = len(out)
        out += f"{obj_id} 0 obj\n".encode() + objects[obj_id] + b"\nendobj\n"

    xref_at = len(out)
    size = max(objects) + 1
    out += f"xref\n0 {size}\n".encode()
    out += b"0000000000 65535 f \n"
    for obj_id in range(1, size):
        out += f"{offsets[obj_id]:010d} 00000 n \n".encode()
    out += f"trailer\n<< /Size {size} /Root 1 0 R >>\nstartxref\n{xref_at}\n%%EOF\n".encode()
    return bytes(out)


@pytest.fixture
def make_pdf():
    return build_pdf


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    return build_pdf([
        "The Lighthouse Keeper\nChapter One",
        "The storm reached the island at dusk.\nThe keeper climbed the tower.",
    ])


# ─────────────────────────────────────────────────────────────────────────────
# Database: one SQLite file per test
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    from sqlalchemy.ext.asyncio import create_async_engine

    from book_pipeline.models.books import Base
    import book_pipeline.models.jobs  # noqa: F401  (registers processing_jobs)

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    from book_pipeline.db.session import make_session_factory
    return make_session_factory(engine)


@pytest.fixture
def make_book(session_factory):
    """Async factory: `book = await make_book(title="Dune")`."""
    from book_pipeline.models.books import Book

    async def _make(**overrides) -> Book:
        values = {
            "title":      "The Lighthouse Keeper",
            "authors":    ["Ada Marsh"],
            "categories": ["Fiction", "Maritime"],
            "file_url":   "https://drive.google.com/file/d/abc123XYZ/view?usp=sharing",
        }
        values.update(overrides)
        async with session_factory() as session, session.begin():
            book = Book(**values)
            session.add(book)
        return book

    return _make


@pytest_asyncio.fixture
async def book(make_book):
    return await make_book()


# ─────────────────────────────────────────────────────────────────────────────
# Fakes: document source, extractor, generators
# ─────────────────────────────────────────────────────────────────────────────

class FakeFetcher:
    """Fails `failures` times with `error`, then returns `payload`."""

    def __init__(self, payload: bytes = b"%PDF-fake", failures: int = 0, error: Exception | None = None):
        from book_pipeline.core.errors import FetchError

        self.payload = payload
        self.failures = failures
        self.error = error or FetchError("HTTP 503 while downloading")
        self.calls: list[str] = []

    async def fetch(self, source_url: str) -> bytes:
        self.calls.append(source_url)
        if len(self.calls) <= self.failures:
            raise self.error
        return self.payload


class FakeExtractor:
    """Returns a fixed ExtractionResult built from `text`, or fails `failures` times."""

    def __init__(self, text: str = "", page_count: int = 3, failures: int = 0, error: Exception | None = None):
        from book_pipeline.core.errors import ExtractError

        self.text = text or DEFAULT_BOOK_TEXT
        self.page_count = page_count
        self.failures = failures
        self.error = error or ExtractError("PDF could not be parsed")
        self.calls = 0

    async def extract(self, data: bytes):
        from book_pipeline.processing.extractor import build_result

        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return build_result(self.text, page_count=self.page_count)


class FailingGenerator:
    """Enrichment generator that always raises."""

    def __init__(self, error: Exception | None = None):
        from book_pipeline.core.errors import GenerationError

        self.error = error or GenerationError("Model returned no text")
        self.calls = 0

    async def generate(self, metadata, text):
        self.calls += 1
        raise self.error


DEFAULT_BOOK_TEXT = (
    "The Lighthouse Keeper\n\n"
    "The storm reached the island at dusk. The keeper climbed the tower and lit the lamp.\n\n"
    "For forty years the light had never failed, and the fishermen trusted it with their lives.\n\n"
    "When the ship appeared on the rocks, the keeper rowed out alone into the dark water."
)


def question_payload(count: int, malformed: int = 0) -> str:
    """JSON array of `count` elements, the last `malformed` of them invalid."""
    import json

    items: list = [
        {"question": f"Question {i}?", "answer": f"Answer {i}."}
        for i in range(1, count - malformed + 1)
    ]
    broken = [{"question": "No answer?"}, {"answer": "No question."}, {"question": "", "answer": "x"}, "text"]
    items.extend(broken[i % len(broken)] for i in range(malformed))
    return json.dumps(items)


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def fake_extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def make_fetcher():
    """Factory: `make_fetcher(failures=2)` → FakeFetcher."""
    return FakeFetcher


@pytest.fixture
def make_extractor():
    """Factory: `make_extractor(failures=10)` → FakeExtractor."""
    return FakeExtractor


@pytest.fixture
def failing_generator():
    return FailingGenerator


@pytest.fixture
def book_text() -> str:
    return DEFAULT_BOOK_TEXT


@pytest.fixture
def make_question_payload():
    return question_payload


@pytest.fixture
def fake_chat_model():
    """Factory: LangChain fake chat model cycling through `responses`."""
    from langchain_core.language_models import FakeListChatModel

    def _build(*responses: str):
        return FakeListChatModel(responses=list(responses))

    return _build


@pytest.fixture
def summary_generator(fake_chat_model):
    from book_pipeline.enrichment import SummaryGenerator
    from book_pipeline.llm import TextGenerator

    return SummaryGenerator(TextGenerator(fake_chat_model("A keeper tends the light through a storm.")))


@pytest.fixture
def question_generator(fake_chat_model):
    from book_pipeline.enrichment import QuestionGenerator
    from book_pipeline.llm import TextGenerator

    return QuestionGenerator(TextGenerator(fake_chat_model(question_payload(20))), count=20)


@pytest.fixture
def embedding_generator():
    from langchain_core.embeddings import DeterministicFakeEmbedding

    from book_pipeline.enrichment import EmbeddingGenerator

    return EmbeddingGenerator(DeterministicFakeEmbedding(size=8), "fake-embedding")


# ─────────────────────────────────────────────────────────────────────────────
# Retry policy without real sleeping
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def recorded_sleeps() -> list[float]:
    return []


@pytest.fixture
def fast_policy(recorded_sleeps):
    from book_pipeline.pipeline.retry import RetryPolicy

    async def _sleep(delay: float) -> None:
        recorded_sleeps.append(delay)

    return RetryPolicy(max_attempts=3, backoff_base=2.0, sleep=_sleep)


# ─────────────────────────────────────────────────────────────────────────────
# Coordinator factory
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_coordinator(
    session_factory, fake_fetcher, fake_extractor, summary_generator,
    question_generator, embedding_generator, fast_policy,
):
    """
    Factory: JobCoordinator wired to fakes. Any constructor argument can be
    overridden, e.g. make_coordinator(summary_generator=None).
    """
    from book_pipeline.services.coordinator import JobCoordinator, StageTimeouts

    def _build(**overrides):
        kwargs = {
            "session_factory":     session_factory,
            "fetcher":             fake_fetcher,
            "extractor":           fake_extractor,
            "summary_generator":   summary_generator,
            "question_generator":  question_generator,
            "embedding_generator": embedding_generator,
            "retry_policy":        fast_policy,
            "timeouts":            StageTimeouts(download=5, extraction=5, generation=5),
            "retry_delay_seconds": 60,
            "default_max_retries": 3,
        }
        kwargs.update(overrides)
        return JobCoordinator(**kwargs)

    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Mock task publisher
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_publisher():
    """Mocked TaskPublisher — records calls without touching Celery/broker."""
    from book_pipeline.services.dispatch import TaskPublisher

    publisher = MagicMock(spec=TaskPublisher)
    publisher.publish_processing_job = AsyncMock(return_value=None)
    publisher.publish_content_refresh = AsyncMock(return_value=None)
    return publisher


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI test client with dependency overrides
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def app_with_overrides(session_factory, make_coordinator, mock_publisher, fake_fetcher, fake_extractor, jwks_cache):
    """
    FastAPI app with infrastructure dependencies overridden:
      - get_session_factory → per-test SQLite
      - get_coordinator     → coordinator wired to fakes
      - get_publisher       → mock_publisher (no broker)
      - get_reader          → reader wired to fakes + a dispatcher on mock_publisher
    Auth is NOT overridden: requests carry real signed test JWTs.
    """
    from book_pipeline.auth.dependencies import get_coordinator, get_publisher, get_reader
    from book_pipeline.db.session import get_session_factory
    from book_pipeline.main import app
    from book_pipeline.services.dispatch import BackgroundDispatcher
    from book_pipeline.services.reader import ContentReader

    coordinator = make_coordinator()
    reader = ContentReader(
        session_factory=session_factory,
        fetcher=fake_fetcher,
        extractor=fake_extractor,
        dispatcher=BackgroundDispatcher(mock_publisher),
    )

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_coordinator]     = lambda: coordinator
    app.dependency_overrides[get_publisher]       = lambda: mock_publisher
    app.dependency_overrides[get_reader]          = lambda: reader

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app_with_overrides) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client using the overridden app (ASGITransport, no lifespan)."""
    from httpx import ASGITransport

    transport = ASGITransport(app=app_with_overrides)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_header():
    def _header(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}
    return _header
