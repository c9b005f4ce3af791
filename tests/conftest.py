"""
Shared Test Fixtures
====================

Record stores, upstream stubs and an API client wired to them through
FastAPI dependency overrides.
"""

import httpx
import pytest
import pytest_asyncio

from app.dependencies import get_apple_verifier, get_google_verifier, get_record_store
from app.main import app
from app.services.record_store import InMemoryRecordStore

from tests.helpers import (
    Recorder,
    apple_body,
    apple_entry,
    in_days,
    make_apple_verifier,
    make_google_verifier,
    to_ms,
)


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def apple_upstream() -> Recorder:
    """Apple endpoint stub; tests replace ``responder`` as needed."""
    return Recorder(
        lambda request: httpx.Response(
            200,
            json=apple_body(0, [apple_entry(expires_at=in_days(30))]),
        )
    )


@pytest.fixture
def google_upstream() -> Recorder:
    """Android Publisher stub; tests replace ``responder`` as needed."""
    return Recorder(
        lambda request: httpx.Response(
            200,
            json={
                "orderId": "GPA.3312-4455-6677-88990",
                "expiryTimeMillis": to_ms(in_days(30)),
                "autoRenewing": True,
            },
        )
    )


@pytest_asyncio.fixture
async def client(store, apple_upstream, google_upstream):
    """API client with verifiers and store replaced by test doubles."""
    app.dependency_overrides[get_record_store] = lambda: store
    app.dependency_overrides[get_apple_verifier] = lambda: make_apple_verifier(apple_upstream)
    app.dependency_overrides[get_google_verifier] = lambda: make_google_verifier(google_upstream)

    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
