"""
Pytest configuration and fixtures for CL4PDF Backend tests.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from io import BytesIO
from pathlib import Path
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from pypdf import PdfReader, PdfWriter

# Set test environment variables before importing the app
os.environ["CL4PDF_DB_PATH"] = str(Path(tempfile.mkdtemp(prefix="cl4pdf_test_db_")) / "app.db")
os.environ["CL4PDF_OUTPUT_DIR"] = tempfile.mkdtemp(prefix="cl4pdf_test_output_")
os.environ["CL4PDF_STORAGE_BACKEND"] = "local"

from cl4pdf_backend.configuration import load_config
from cl4pdf_backend.errors import StorageError
from cl4pdf_backend.main import create_app
from cl4pdf_backend.models import SubscriptionTier
from cl4pdf_backend.services import build_services


class FakeArtifactStore:
    """In-memory artifact store; keys matching ``fail_when`` raise StorageError."""

    def __init__(self):
        self.objects = {}
        self.fail_when = None

    def upload(self, key, data, content_type="application/pdf"):
        if self.fail_when is not None and self.fail_when(key):
            raise StorageError(f"Failed to store {key}")
        self.objects[key] = data
        return f"https://storage.test/{key}"


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def build_pdf(widths):
    """Build a PDF with one blank page per width, so pages can be told apart."""
    writer = PdfWriter()
    for width in widths:
        writer.add_blank_page(width=width, height=200)
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def page_widths(data):
    return [round(float(page.mediabox.width)) for page in PdfReader(BytesIO(data)).pages]


@pytest.fixture
def make_pdf():
    def _make(pages=1, start_width=100):
        return build_pdf([start_width + i for i in range(pages)])

    return _make


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def artifact_store():
    return FakeArtifactStore()


@pytest.fixture
def config(tmp_path):
    return load_config(
        overrides={
            "database": {"path": str(tmp_path / "cl4pdf.db")},
            "storage": {"output_dir": str(tmp_path / "output")},
        },
        environ={},
    )


@pytest.fixture
def services(config, artifact_store, clock):
    built = build_services(config, store=artifact_store, clock=clock)
    yield built
    built.close()


@pytest.fixture
def client(services):
    """Create a test client for an isolated app instance."""
    return TestClient(create_app(services))


@pytest.fixture
def make_user(services):
    """Create a user with an open session and return (user, auth headers)."""

    def _make(tier=SubscriptionTier.FREE, usage_count=0, usage_limit=None, email=None):
        user = services.accounts.create_user(
            email=email or f"user-{uuid4().hex[:8]}@example.com",
            subscription_tier=tier,
            usage_count=usage_count,
            usage_limit=usage_limit,
        )
        token = services.accounts.create_session(user.id)
        return user, {"Authorization": f"Bearer {token}"}

    return _make
