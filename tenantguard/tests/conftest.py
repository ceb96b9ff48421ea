from __future__ import annotations

import os

# Point every test at a throwaway in-memory database before settings are cached.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["AUDIT_EXECUTION_MODE"] = "inline"
os.environ["POLICY_REFRESH_INTERVAL_S"] = "30"

import pytest

from tenantguard.core.config import get_settings
from tenantguard.domain.models import Base
from tenantguard.persistence.db import engine
from tenantguard.services.audit import get_audit_recorder
from tenantguard.services.authz.registry import get_policy_registry
from tenantguard.services.telemetry import reset_counters


@pytest.fixture(autouse=True)
async def database_schema() -> None:
    # Fresh schema per test; disposing the static pool drops the in-memory database.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Registry, recorder and counters are process singletons; isolate them per test.
    get_settings.cache_clear()
    get_policy_registry.cache_clear()
    get_audit_recorder.cache_clear()
    reset_counters()
    yield
    get_settings.cache_clear()
