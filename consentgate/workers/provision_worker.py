from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from consentgate.core.config import get_settings
from consentgate.core.logging import configure_logging
from consentgate.persistence.db import SessionLocal
from consentgate.services.orphan_cleanup import sweep_orphaned_stacks
from consentgate.services.provision_queue import ProvisionJobPayload, run_provision_job


logger = logging.getLogger(__name__)


async def provision_stack(ctx, payload: dict) -> str | None:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = ProvisionJobPayload.model_validate(payload)
    logger.info(
        "provision_job_received job_id=%s try=%s",
        ctx.get("job_id") or job_payload.correlation_id,
        ctx.get("job_try", 1),
        extra={"correlation_id": job_payload.correlation_id},
    )
    return await run_provision_job(job_payload)


async def sweep_orphans(ctx) -> dict:
    async with SessionLocal() as session:
        result = await sweep_orphaned_stacks(session)
    return {"examined": result.examined, "deleted": result.deleted, "failed": result.failed}


def parse_cron_minutes(value: str) -> set[int]:
    minutes = {int(item) for item in value.split(",") if item.strip()}
    invalid = sorted(minute for minute in minutes if minute < 0 or minute > 59)
    if invalid:
        raise ValueError(f"Invalid cron minutes: {invalid}")
    return minutes


def build_cron_jobs() -> list:
    # The sweep only has work under the delayed policy; manual orphans wait for an operator.
    settings = get_settings()
    if settings.orphan_cleanup_policy.lower() != "delayed":
        return []
    minutes = parse_cron_minutes(settings.orphan_cleanup_cron_minutes)
    return [cron(sweep_orphans, minute=minutes, run_at_startup=False, unique=True)]


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("provision_worker_started queue=%s", get_settings().provision_queue_name)


async def _shutdown(ctx) -> None:
    logger.info("provision_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.provision_queue_name
    # Jobs settle their own record on failure; arq never re-runs a creation attempt.
    max_tries = 1
    # Active polling can outlast arq's default 300s job timeout.
    job_timeout = int(settings.provision_poll_max_attempts * settings.provision_poll_interval_s) + 300
    functions = [provision_stack]
    cron_jobs = build_cron_jobs()
    on_startup = _startup
    on_shutdown = _shutdown
