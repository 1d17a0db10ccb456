"""
Shared fixtures: a throwaway SQLite database and storage root per test, plus
helpers that open signed-in portal clients against it.
"""

import asyncio
import os

import pytest

# Settings refuse to load without service configuration
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./ekyc_portal_test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from ekyc_portal.backend import Backend  # noqa: E402
from ekyc_portal.config import Settings  # noqa: E402
from ekyc_portal.portal import PortalContext  # noqa: E402

PASSWORD = "correct-horse-battery"


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'portal.db'}",
        SECRET_KEY="test-secret-key",
        FRONTEND_URL="http://portal.test",
        SITE_URL=None,
        STORAGE_DIR=str(tmp_path / "storage"),
        ADMIN_EMAIL=None,
        ADMIN_PASSWORD=None,
    )


@pytest.fixture
def backend(test_settings):
    """Backend with all tables created."""
    backend = Backend.from_settings(test_settings)
    asyncio.run(backend.init_models())
    yield backend
    asyncio.run(backend.dispose())


@pytest.fixture
def open_portal(backend):
    """
    Returns a coroutine function that registers an account (optionally as a
    reviewer) and returns a started, signed-in PortalContext.
    """

    async def _open(email: str, admin: bool = False, auto_sync: bool = True) -> PortalContext:
        if admin:
            await backend.ensure_admin_user(email, PASSWORD)
        portal = PortalContext(backend, auto_sync=auto_sync)
        await portal.start()
        if not admin:
            result = await portal.session.sign_up(email, PASSWORD, full_name="Test Applicant")
            assert result.ok, result.error
        result = await portal.session.sign_in_with_password(email, PASSWORD)
        assert result.ok, result.error
        return portal

    return _open


@pytest.fixture
def valid_fields():
    return {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "dob": "1990-12-10",
        "address": "12 Analytical Row, London",
        "document_type": "passport",
        "document_number": "P1234567",
    }
