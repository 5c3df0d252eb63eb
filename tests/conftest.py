"""Shared test fixtures for all test modules."""

from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from gcwatch.core.models import Sample
from tests.helpers import FakeClock, RecordingSleep, period_samples


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock starting at an epoch-aligned instant."""
    return FakeClock()


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def samples_for() -> Callable[..., list[Sample]]:
    """Factory building constant-valued samples per period."""
    return period_samples


@pytest.fixture
def checkpoint_db_path(tmp_path: Path) -> str:
    """Provide a temporary database path for checkpoint storage tests."""
    return str(tmp_path / "checkpoint.db")


# === ASGI Test Fixtures ===


@pytest.fixture
def asgi_test_client():
    """Factory fixture that creates an httpx.AsyncClient for ASGI testing.

    Usage:
        async def test_something(asgi_test_client):
            app = create_asgi_app(engine)
            async with asgi_test_client(app) as client:
                response = await client.get("/alarms")
    """

    def _get_client(app):
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")

    return _get_client


@pytest.fixture
def asgi_scope():
    """Factory fixture for creating ASGI scope dicts."""

    def _scope(method: str = "GET", path: str = "/alarms", query_string: bytes = b"") -> dict:
        return {
            "type": "http",
            "method": method,
            "path": path,
            "query_string": query_string,
            "headers": [],
        }

    return _scope


@pytest.fixture
def asgi_send_capture():
    """Return a send callable and the list it records ASGI messages into."""
    responses: list[dict[str, object]] = []

    async def send(message: dict[str, object]) -> None:
        responses.append(message)

    return send, responses
