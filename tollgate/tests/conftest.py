from __future__ import annotations

import os
from pathlib import Path
import tempfile

# Point settings at a throwaway SQLite file before any tollgate module builds the engine.
_DB_DIR = Path(tempfile.mkdtemp(prefix="tollgate-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR / 'tollgate.db'}"
os.environ["LLM_PROVIDER"] = "fake"

import pytest

from tollgate.core.config import get_settings
from tollgate.domain.models import Base
from tollgate.persistence.db import engine
from tollgate.services.ai_rate_limit import reset_ai_rate_limit_service
from tollgate.services.billing_provider import reset_billing_provider_client
from tollgate.services.webhooks.reconciler import reset_webhook_reconciler


def _reset_cached_services() -> None:
    get_settings.cache_clear()
    reset_ai_rate_limit_service()
    reset_webhook_reconciler()
    reset_billing_provider_client()


@pytest.fixture(autouse=True)
def reset_cached_services() -> None:
    # Settings and service singletons must not leak monkeypatched env between tests.
    _reset_cached_services()
    yield
    _reset_cached_services()


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Recreate tables per test and dispose so pooled connections never cross event loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()
