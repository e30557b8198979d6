############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# conftest.py: Pytest configuration and shared test fixtures
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Pytest configuration and shared fixtures for Clawster tests."""

from typing import Any, AsyncGenerator, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from backend.app.core.enclave.secrets import PendingSecrets
from backend.app.core.locks import KeyedLockManager
from backend.app.core.provisioning.client import PhalaClient
from backend.app.core.provisioning.models import CvmInfo, SpawnResult
from backend.app.db import crud
from backend.app.db.models import Bot, BotStatus, User
from backend.app.db.session import (
    SessionFactory,
    create_schema,
    create_session_factory,
    session_scope,
)
from backend.app.settings import Settings


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite database."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'clawster-test.db'}",
        secret_key="test-secret",
        phala_api_url="https://phala.test/api/v1",
        phala_api_key="test-phala-key",
        provider_retry_backoff=0.0,
        meter_enabled=False,
        billing_enabled=False,
        log_format="console",
    )


@pytest_asyncio.fixture
async def session_factory(settings) -> AsyncGenerator[SessionFactory, None]:
    """Session factory over a freshly created schema."""
    engine, factory = create_session_factory(settings)
    await create_schema(engine)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def user(session_factory) -> User:
    async with session_scope(session_factory) as db:
        return await crud.get_or_create_user(db, external_id="tg-1001", display_name="alice")


@pytest.fixture
def locks() -> KeyedLockManager:
    return KeyedLockManager()


@pytest.fixture
def enclave_key() -> X25519PrivateKey:
    """Stand-in for the enclave's key manager key pair."""
    return X25519PrivateKey.generate()


@pytest.fixture
def enclave_pubkey_hex(enclave_key) -> str:
    return enclave_key.public_key().public_bytes(
        encoding=Encoding.Raw, format=PublicFormat.Raw
    ).hex()


@pytest.fixture
def secrets() -> PendingSecrets:
    return PendingSecrets(
        token="123456:telegram-token",
        api_key="sk-ant-test-key",
        owner_id="424242",
        personality="You are Jarvis.",
        config={"temperature": 0.2},
        custom={"WEATHER_API_KEY": "wx-123"},
    )


@pytest.fixture
def phala() -> MagicMock:
    """A PhalaClient whose remote operations are AsyncMocks."""
    client = MagicMock(spec=PhalaClient)
    client.spawn = AsyncMock(
        return_value=SpawnResult(
            instance=CvmInfo(id="cvm-1", app_id="app-1", status="starting"),
            enclave_pubkey="ab" * 32,
            app_id="app-1",
        )
    )
    client.get_status = AsyncMock(return_value=CvmInfo(id="cvm-1", app_id="app-1", status="running"))
    client.delete = AsyncMock(return_value=True)
    client.restart = AsyncMock(return_value=None)
    client.get_attestation = AsyncMock(return_value=None)
    client.get_logs = AsyncMock(return_value="")
    return client


@pytest.fixture
def make_bot(session_factory, user):
    """Factory for bot rows in arbitrary states."""

    async def _make_bot(
        name: str = "jarvis",
        status: BotStatus = BotStatus.PROVISIONING,
        pending: Optional[PendingSecrets] = None,
        **fields: Any,
    ) -> Bot:
        staged: Dict[str, Any] = {}
        if pending is not None:
            staged = {
                "pending_telegram_token": pending.token,
                "pending_api_key": pending.api_key,
                "pending_owner_id": pending.owner_id,
                "pending_soul": pending.personality,
                "pending_config": pending.config,
                "pending_custom_env": pending.custom or None,
            }
        async with session_scope(session_factory) as db:
            bot = await crud.create_bot(
                db,
                user_id=user.id,
                name=name,
                model=fields.pop("model", "anthropic/claude-sonnet-4-20250514"),
                instance_size=fields.pop("instance_size", "small"),
                status=status,
                pending=staged,
            )
            if fields:
                bot = await crud.update_bot_fields(db, bot.id, **fields)
            return bot

    return _make_bot


@pytest.fixture
def load_bot(session_factory):
    """Re-read a bot row from the database."""

    async def _load_bot(bot_id: str) -> Bot:
        async with session_scope(session_factory) as db:
            return await crud.get_bot(db, bot_id)

    return _load_bot
