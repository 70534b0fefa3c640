from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from marketplace.core.rate_limit import limiter
from marketplace.main import app


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Each test starts with a fresh in-memory rate limit window."""
    limiter.reset()


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client wired to the FastAPI app (no real server)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
