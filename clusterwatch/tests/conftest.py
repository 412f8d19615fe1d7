from __future__ import annotations

import os
import tempfile

# Unit tests run against a throwaway SQLite file; never point them at a real bookkeeping database.
_TEST_DB_PATH = os.path.join(tempfile.mkdtemp(prefix="clusterwatch-tests-"), "clusterwatch.db")
os.environ["DATABASE_URL"] = os.environ.get(
    "CLUSTERWATCH_TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_PATH}"
)
os.environ.setdefault("HEALTHCHECK_EXECUTION_MODE", "inline")

import pytest  # noqa: E402

from clusterwatch.domain.models import Base  # noqa: E402
from clusterwatch.persistence.db import engine  # noqa: E402
from clusterwatch.services import telemetry  # noqa: E402
from clusterwatch.services.health.dispatch import wait_for_background_runs  # noqa: E402
from clusterwatch.services.monitoring import sessions as sessions_module  # noqa: E402
from clusterwatch.services.monitoring.scheduler import TaskRegistry  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Rebuild tables per test so bookkeeping state never leaks between cases.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
async def isolated_monitoring_registry(monkeypatch, fresh_schema) -> None:
    # Each test owns its own task registry; stop anything still live before the loop closes.
    registry = TaskRegistry()
    monkeypatch.setattr(sessions_module, "_registry", registry)
    yield
    await sessions_module.stop_all_tasks(timeout_s=5.0)
    await wait_for_background_runs(timeout_s=5.0)


@pytest.fixture(autouse=True)
def reset_telemetry() -> None:
    telemetry.reset()
    yield
    telemetry.reset()
