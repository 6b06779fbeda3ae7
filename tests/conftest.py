import os
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Use test DB and dummy provider credentials
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "genforge_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("FAL_API_KEY", "test-fal-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("X402_PAY_TO_ADDRESS", "0x1111111111111111111111111111111111111111")
os.environ.setdefault("X402_FACILITATOR_URL", "https://facilitator.test")


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from app.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[None, None]:
    """Initialized Beanie on the test database; skips when MongoDB is not reachable."""
    from pymongo.errors import PyMongoError

    from app.db.init import DOCUMENT_MODELS, close_db, get_client, init_db

    close_db()
    try:
        await get_client(server_selection_timeout_ms=500).admin.command("ping")
    except PyMongoError:
        close_db()
        pytest.skip("MongoDB not reachable")
    await init_db()
    for model in DOCUMENT_MODELS:
        await model.get_motor_collection().delete_many({})
    yield
    close_db()


class FakeFal:
    """Stands in for FalClient: records calls and replays scripted statuses."""

    configured = True

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.run_output: dict[str, Any] = {"images": [{"url": "https://cdn.test/out.png"}]}
        self.statuses: list[dict[str, Any]] = [{"status": "COMPLETED"}]
        self.result_output: dict[str, Any] = {"video": {"url": "https://cdn.test/out.mp4"}}
        self.run_error: Exception | None = None
        self.submit_error: Exception | None = None
        self.request_id = "req-123"

    async def run(self, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("run", model))
        if self.run_error:
            raise self.run_error
        return self.run_output

    async def submit(self, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("submit", model))
        if self.submit_error:
            raise self.submit_error
        return {"request_id": self.request_id}

    async def status(self, model: str, request_id: str) -> dict[str, Any]:
        self.calls.append(("status", model))
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    async def result(self, model: str, request_id: str) -> dict[str, Any]:
        self.calls.append(("result", model))
        return self.result_output


@pytest.fixture
def fake_fal() -> FakeFal:
    return FakeFal()
