"""
Fixtures for HTTP-level tests: the FastAPI app served over httpx's ASGI
transport, with the pipeline dependency pointed at the in-memory database.
"""

from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from chatorder.dependencies import get_pipeline
from chatorder.main import app
from chatorder.routers import meta


@pytest.fixture
async def client(pipeline) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    meta.limiter.reset()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
