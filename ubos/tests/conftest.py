from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any ubos module builds it.
_DB_DIR = tempfile.mkdtemp(prefix="ubos-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'ubos.db')}"
os.environ.setdefault("AUTH_DEV_BYPASS", "true")
os.environ.setdefault("RL_BACKEND", "memory")

import pytest  # noqa: E402

from ubos.apps.api.rate_limit import reset_rate_limiter_state  # noqa: E402
from ubos.core.config import get_settings  # noqa: E402
from ubos.domain.models import Base  # noqa: E402
from ubos.persistence.db import engine  # noqa: E402
from ubos.services.audit import get_audit_logger, set_audit_logger  # noqa: E402


@pytest.fixture(autouse=True)
def reset_governance_state() -> None:
    # Fresh settings, counters, and audit logger for every test.
    get_settings.cache_clear()
    reset_rate_limiter_state()
    set_audit_logger(None)
    yield
    get_settings.cache_clear()
    reset_rate_limiter_state()
    set_audit_logger(None)


@pytest.fixture
async def governance_db() -> None:
    # Create the schema from model metadata; drop it after pending audit writes land.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await get_audit_logger().drain()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
