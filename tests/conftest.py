"""Shared test fixtures."""

from __future__ import annotations

from contextlib import ExitStack
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

import berth.models  # noqa: F401
from berth.auth import Owner, Principal, Role
from berth.config import Settings, TemplateConfig
from tests.fakes import FakeClusterDriver

# Modules that call get_settings() when a manager is constructed
SETTINGS_CONSUMERS = (
    "berth.managers.namespace.namespace.get_settings",
    "berth.managers.instance.instance.get_settings",
    "berth.managers.access.access.get_settings",
)


@pytest.fixture
def fake_settings() -> Settings:
    """Create test settings with minimal config."""
    return Settings(
        database={"url": "sqlite+aiosqlite:///:memory:"},
        templates=[
            TemplateConfig(
                id="ubuntu-ssh",
                base_image="berth-ssh:latest",
                technology="linux",
                ssh_capable=True,
            ),
            TemplateConfig(
                id="python",
                base_image="python:3.12-slim",
                technology="python",
                ssh_capable=False,
            ),
            TemplateConfig(id="bare-ssh", base_image=None, ssh_capable=True),
        ],
    )


@pytest.fixture
def patched_settings(fake_settings: Settings):
    """Make every manager see ``fake_settings``."""
    with ExitStack() as stack:
        for target in SETTINGS_CONSUMERS:
            stack.enter_context(patch(target, return_value=fake_settings))
        yield fake_settings


@pytest.fixture
async def db_session():
    """Create in-memory SQLite database and session."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    async_session_factory = sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session_factory() as session:
        yield session

    await engine.dispose()


@pytest.fixture
def fake_driver() -> FakeClusterDriver:
    """Create a FakeClusterDriver instance."""
    return FakeClusterDriver()


@pytest.fixture
def alice() -> Principal:
    return Principal(owner_id="u-alice", handle="alice", role=Role.STUDENT)


@pytest.fixture
def bob() -> Principal:
    return Principal(owner_id="u-bob", handle="bob", role=Role.STUDENT)


@pytest.fixture
def teacher() -> Principal:
    return Principal(owner_id="u-teacher", handle="prof", role=Role.TEACHER)


@pytest.fixture
def admin() -> Principal:
    return Principal(owner_id="u-admin", handle="root", role=Role.ADMIN)


@pytest.fixture
def alice_owner(alice: Principal) -> Owner:
    return alice.as_owner()
