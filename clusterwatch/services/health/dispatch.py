from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable
import weakref

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel

from clusterwatch.core.config import get_settings


logger = logging.getLogger(__name__)

HEALTH_CHECK_JOB = "run_health_check"

Runner = Callable[[str], Awaitable[None]]

_redis_pools: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, ArqRedis]" = weakref.WeakKeyDictionary()
_pool_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = weakref.WeakKeyDictionary()
# Strong references so detached inline runs are not garbage collected mid-flight.
_background_runs: set[asyncio.Task] = set()


class HealthCheckJobPayload(BaseModel):
    # Published job schema for the caller-to-worker handoff.
    execution_id: str
    cluster_id: str
    requested_by: str


async def get_redis_pool() -> ArqRedis:
    # One arq pool per event loop; a pool is bound to the loop that opened it.
    loop = asyncio.get_running_loop()
    pool = _redis_pools.get(loop)
    if pool is not None:
        return pool
    async with _pool_locks.setdefault(loop, asyncio.Lock()):
        pool = _redis_pools.get(loop)
        if pool is None:
            settings = get_settings()
            pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.healthcheck_queue_name,
            )
            _redis_pools[loop] = pool
            logger.info("health_check_queue_connected queue=%s", settings.healthcheck_queue_name)
    return pool


def _on_run_done(task: asyncio.Task) -> None:
    _background_runs.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("health_check_background_run_failed", exc_info=exc)


async def dispatch_health_check(payload: HealthCheckJobPayload, runner: Runner) -> str:
    """Hand a created execution to the configured executor and return without waiting."""
    settings = get_settings()
    if settings.healthcheck_execution_mode.lower() == "inline":
        task = asyncio.create_task(runner(payload.execution_id), name=f"health-check-{payload.execution_id}")
        _background_runs.add(task)
        task.add_done_callback(_on_run_done)
        return payload.execution_id

    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        HEALTH_CHECK_JOB,
        payload.model_dump(),
        _job_id=payload.execution_id,
        _queue_name=settings.healthcheck_queue_name,
    )
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return job.job_id if job else payload.execution_id


def pending_background_runs() -> int:
    return len(_background_runs)


async def wait_for_background_runs(timeout_s: float | None = None) -> None:
    # Drain inline runs on shutdown (and in tests) so executions reach a terminal status.
    if not _background_runs:
        return
    pending = list(_background_runs)
    await asyncio.wait(pending, timeout=timeout_s)
