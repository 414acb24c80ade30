"""API test fixtures: the real app wired to FakeClusterDriver and in-memory SQLite."""

from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest

from berth.db.session import get_session_dependency
from berth.main import create_app


@pytest.fixture
async def client(db_session, fake_driver, patched_settings):
    app = create_app()
    app.state.driver = fake_driver

    async def override_session():
        yield db_session

    app.dependency_overrides[get_session_dependency] = override_session

    transport = httpx.ASGITransport(app=app)
    with (
        patch("berth.api.dependencies.get_settings", return_value=patched_settings),
        patch("berth.api.v1.admin.get_settings", return_value=patched_settings),
    ):
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
            yield c
