"""
MistakeBook Backend — Test Configuration (conftest.py)
=======================================================

What:  Shared pytest fixtures for the entire test suite.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.
Who:   Used by all test files in the tests/ directory.

Fixture Hierarchy:
    Function-scoped (created fresh for each test):
    ├── mock_db_session:  Mock database session (no real DB needed)
    ├── sample_png_bytes: A real 1x1 PNG for upload tests
    ├── sample_images:    One real file per format, keyed by MIME type
    ├── png_image:        ImagePayload wrapping sample_png_bytes
    ├── make_result:      RecognitionResult factory
    ├── make_provider:    Scripted RecognitionProvider factory
    ├── make_orchestrator: RecognitionOrchestrator over scripted providers
    └── test_client:      HTTPX AsyncClient with dependency overrides

No test talks to DashScope, Baidu, Gemini or PostgreSQL.
"""

import base64
import os

# ══════════════════════════════════════════════════════════════════════════
# Environment Setup
# ══════════════════════════════════════════════════════════════════════════

# Must run before the first mistakebook import: settings, the engine and
# the orchestrator singleton are all built at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["DASHSCOPE_API_KEY"] = ""
os.environ["GEMINI_API_KEY"] = ""
os.environ["BAIDU_API_KEY"] = ""
os.environ["BAIDU_SECRET_KEY"] = ""

from typing import List, Optional, Sequence, Union  # noqa: E402
from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from mistakebook.schemas.recognition import (  # noqa: E402
    Difficulty,
    ProviderName,
    RecognitionResult,
    Subject,
)
from mistakebook.services.image_service import ImagePayload  # noqa: E402
from mistakebook.services.orchestrator import RecognitionOrchestrator  # noqa: E402
from mistakebook.services.provider_base import RecognitionProvider  # noqa: E402


Outcome = Union[Exception, List[RecognitionResult]]


class ScriptedProvider(RecognitionProvider):
    """
    RecognitionProvider whose backend call replays a script.

    Each call consumes the next outcome; the last one repeats forever.
    An outcome is either a result list or an exception to raise.
    """

    default_confidence = 0.85

    def __init__(self, name: ProviderName, outcomes: Sequence[Outcome], configured: bool = True):
        self.name = name
        super().__init__(timeout=5.0, failure_threshold=50, recovery_timeout=60)
        self.outcomes = list(outcomes)
        self.configured = configured
        self.calls = 0

    def is_configured(self) -> bool:
        return self.configured

    async def _recognize(self, image, call_id):
        index = min(self.calls, len(self.outcomes) - 1)
        self.calls += 1
        outcome = self.outcomes[index]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


# ══════════════════════════════════════════════════════════════════════════
# Function-Scoped Fixtures (created fresh for each test)
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def mock_db_session():
    """
    Provides a mock async database session.

    What:    An AsyncMock that simulates AsyncSession behavior.
    Why:     Tests should not require a real database.
    How:     Mocks execute, flush, commit, rollback and close; add/add_all
             are synchronous on a real session, so they are MagicMocks.
    """
    session = AsyncMock()
    session.execute = AsyncMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()
    session.add_all = MagicMock()
    # begin_nested() is a plain call returning an async context manager
    session.begin_nested = MagicMock()
    return session


@pytest.fixture
def sample_png_bytes():
    """
    A complete 1x1 PNG.

    Validation reads the real header bytes with libmagic, so test images
    must carry genuine signatures. The providers are always stubbed.
    """
    return base64.b64decode(
        "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
    )


@pytest.fixture
def sample_images(sample_png_bytes):
    """Smallest valid file of each format, keyed by detected MIME type."""
    return {
        "image/png": sample_png_bytes,
        "image/jpeg": b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00\xff\xd9",
        "image/gif": base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7"),
        "image/webp": (
            b"RIFF\x1a\x00\x00\x00WEBPVP8L\x0d\x00\x00\x00"
            b"\x2f\x00\x00\x00\x10\x07\x10\x11\x11\x88\x88\xfe\x07\x00"
        ),
        "application/pdf": b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n%%EOF\n",
    }


@pytest.fixture
def png_image(sample_png_bytes):
    return ImagePayload(data=sample_png_bytes, mime_type="image/png", filename="page.png")


@pytest.fixture
def make_result():
    def factory(content: str = "已知 x + 1 = 3，求 x 的值", **overrides) -> RecognitionResult:
        fields = {
            "content": content,
            "subject": Subject.MATH,
            "category": "代数",
            "difficulty": Difficulty.EASY,
            "answer": "x = 2",
            "explanation": None,
            "confidence": 0.9,
        }
        fields.update(overrides)
        return RecognitionResult(**fields)
    return factory


@pytest.fixture
def make_provider():
    """
    Usage:
        alibaba = make_provider(ProviderName.ALIBABA, [ProviderHTTPError()])
        gemini = make_provider(ProviderName.GEMINI, [[result]])
    """
    def factory(name: ProviderName, outcomes: Sequence[Outcome], configured: bool = True):
        return ScriptedProvider(name, outcomes, configured=configured)
    return factory


@pytest.fixture
def make_orchestrator(make_provider, make_result):
    """
    Builds an orchestrator from {ProviderName: outcomes}. Providers not
    listed succeed with one default result.
    """
    def factory(scripts: Optional[dict] = None) -> RecognitionOrchestrator:
        scripts = scripts or {}
        providers = {
            name: make_provider(name, scripts.get(name, [[make_result()]]))
            for name in ProviderName
        }
        return RecognitionOrchestrator(providers)
    return factory


@pytest_asyncio.fixture
async def test_client(make_orchestrator, mock_db_session):
    """
    Provides an async HTTP test client for endpoint testing.

    What:    HTTPX AsyncClient configured to talk to our FastAPI app.
    How:     ASGITransport routes requests directly to the app; the
             orchestrator and DB session dependencies are overridden.

    The client exposes the stubs it was built with:
        test_client.orchestrator, test_client.db
    Tests that need a differently scripted orchestrator replace the
    override on test_client.app.
    """
    from mistakebook.database import get_db_session
    from mistakebook.main import app
    from mistakebook.routes.deps import get_orchestrator

    orchestrator = make_orchestrator()

    async def override_db():
        yield mock_db_session

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_db_session] = override_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        client.app = app
        client.orchestrator = orchestrator
        client.db = mock_db_session
        yield client

    app.dependency_overrides.clear()
