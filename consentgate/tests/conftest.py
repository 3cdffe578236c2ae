from __future__ import annotations

import os
import tempfile

# Point settings at an isolated SQLite file and the fake backend before any module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="consentgate-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/consentgate.db")
os.environ.setdefault("PROVISIONING_BACKEND", "fake")
os.environ.setdefault("PROVISION_EXECUTION_MODE", "inline")
os.environ.setdefault("PROVISION_POLL_MAX_ATTEMPTS", "0")
os.environ.setdefault("PROVISION_POLL_INTERVAL_S", "0")
os.environ.setdefault("EXT_RETRY_BACKOFF_MS", "1")
os.environ.setdefault("ADMIN_SUBJECT_IDS", "admin-1")
os.environ.setdefault("BILLING_WEBHOOK_SECRET", "test-billing-secret")

import pytest

from consentgate.core.config import get_settings
from consentgate.domain.models import Base
from consentgate.persistence.db import engine
from consentgate.providers.provisioning.factory import (
    override_provisioning_backend,
    reset_provisioning_backend,
)
from consentgate.providers.provisioning.fake import FakeProvisioningBackend
from consentgate.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def fresh_settings() -> None:
    # Tests that monkeypatch env vars rely on a cold settings cache on both sides.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
async def database(fresh_settings) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def fake_backend() -> FakeProvisioningBackend:
    reset_provisioning_backend()
    backend = FakeProvisioningBackend()
    override_provisioning_backend(backend)
    reset_telemetry()
    yield backend
    reset_provisioning_backend()
