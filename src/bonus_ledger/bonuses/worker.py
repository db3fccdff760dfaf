"""Bonus arq worker: daily expiry and expiration-warning cron jobs."""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from arq.connections import RedisSettings
from arq.cron import cron

from bonus_ledger.bonuses.scheduler import BonusScheduler
from bonus_ledger.config import get_settings
from bonus_ledger.database import close_db, init_db
from bonus_ledger.logging_config import bind_job_context, setup_logging

logger = logging.getLogger(__name__)


async def bonus_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize Redis + DB connections on worker startup."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    ctx["redis"] = redis_client
    ctx["scheduler"] = BonusScheduler(redis=redis_client)
    logger.info("Bonus worker started")


async def bonus_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Bonus worker shut down")


async def expire_bonuses(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: expire lapsed grants daily."""
    bind_job_context("expire_bonuses")
    scheduler: BonusScheduler = ctx["scheduler"]
    result = await scheduler.handle_bonus_expiration()
    return result.expired if result else 0


async def send_expiry_warnings(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: warn users about upcoming expiry daily."""
    bind_job_context("send_expiry_warnings")
    scheduler: BonusScheduler = ctx["scheduler"]
    result = await scheduler.handle_expiration_warnings()
    return result.notified if result else 0


_settings = get_settings()


class BonusWorkerSettings:
    """arq worker settings for the bonus scheduler."""

    functions = [expire_bonuses, send_expiry_warnings]
    cron_jobs = [
        cron(expire_bonuses, hour=_settings.expiry_cron_hour, minute=0),
        cron(send_expiry_warnings, hour=_settings.warning_cron_hour, minute=0),
    ]
    on_startup = bonus_startup
    on_shutdown = bonus_shutdown
    redis_settings = RedisSettings.from_dsn(_settings.redis_url)
    max_jobs = 2
    job_timeout = 1800  # 30 minutes max for an expiry run
    allow_abort_jobs = True
