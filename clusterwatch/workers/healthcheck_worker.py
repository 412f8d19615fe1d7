from __future__ import annotations

import logging

from arq.connections import RedisSettings

from clusterwatch.core.config import get_settings
from clusterwatch.core.logging import configure_logging
from clusterwatch.persistence.db import SessionLocal
from clusterwatch.services.health.catalog import ensure_default_health_checks
from clusterwatch.services.health.dispatch import HealthCheckJobPayload
from clusterwatch.services.health.engine import execute_health_check
from clusterwatch.services.monitoring import resume_active_sessions, stop_all_tasks


logger = logging.getLogger(__name__)


async def run_health_check(ctx, payload: dict) -> str:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = HealthCheckJobPayload.model_validate(payload)
    await execute_health_check(job_payload.execution_id)
    return job_payload.execution_id


async def _startup(ctx) -> None:
    # Seed the catalog and pick up monitoring loops left active by a previous worker.
    configure_logging()
    async with SessionLocal() as session:
        await ensure_default_health_checks(session)
    ctx["resumed_sessions"] = await resume_active_sessions()


async def _shutdown(ctx) -> None:
    # Stop monitoring timers so no cycle starts while the worker exits.
    await stop_all_tasks()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.healthcheck_queue_name
    max_tries = 1
    functions = [run_health_check]
    on_startup = _startup
    on_shutdown = _shutdown
