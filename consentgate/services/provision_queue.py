from __future__ import annotations

import asyncio
import logging

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from consentgate.core.config import get_settings
from consentgate.core.logging import bind_correlation_id
from consentgate.domain.proxy_status import ProxyStatus
from consentgate.persistence.db import SessionLocal
from consentgate.persistence.repos import proxies as proxies_repo
from consentgate.providers.provisioning.base import OutcomeKind, ProvisioningBackend
from consentgate.providers.provisioning.factory import get_provisioning_backend
from consentgate.services.provision_logs import record_provision_log
from consentgate.services.reconcile import apply_observation
from consentgate.services.resilience import call_with_retry, provision_retry_policy
from consentgate.services.telemetry import increment_counter
from consentgate.services.templates import build_template


logger = logging.getLogger(__name__)

PROVISION_JOB_NAME = "provision_stack"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Hold strong references so detached creation tasks are not garbage collected mid-flight.
_background_tasks: set[asyncio.Task] = set()


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


class ProvisionJobPayload(BaseModel):
    # Owned copy of everything one creation attempt needs; the driver reads nothing else from the request.
    proxy_id: str
    subject_id: str
    domain_id: str
    domain_name: str
    stack_name: str
    correlation_id: str


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.provision_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # Return None to signal Redis unavailability to ops endpoints.
    settings = get_settings()
    if settings.provision_execution_mode.lower() != "queue":
        return 0
    try:
        redis = await get_redis_pool()
        depth = await redis.zcard(_queue_key(settings.provision_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None


def background_job_count() -> int:
    return len(_background_tasks)


async def wait_for_background_jobs(timeout_s: float | None = None) -> None:
    # Let tests and graceful shutdown drain detached creation tasks.
    if _background_tasks:
        await asyncio.wait(list(_background_tasks), timeout=timeout_s)


async def _log(payload: ProvisionJobPayload, level: str, message: str) -> None:
    await record_provision_log(
        subject_id=payload.subject_id,
        domain_id=payload.domain_id,
        proxy_id=payload.proxy_id,
        correlation_id=payload.correlation_id,
        level=level,
        message=message,
    )


async def mark_create_failed(payload: ProvisionJobPayload, message: str) -> bool:
    """Move this attempt's record to CREATE_FAILED if it still owns the record."""
    async with SessionLocal() as session:
        claimed = await proxies_repo.compare_and_set(
            session,
            payload.proxy_id,
            expected_status=ProxyStatus.CREATE_IN_PROGRESS,
            expected_correlation_id=payload.correlation_id,
            status=ProxyStatus.CREATE_FAILED,
            endpoint_url=None,
            edge_handle_ref=None,
            last_error=message,
        )
        if claimed:
            await record_provision_log(
                session=session,
                subject_id=payload.subject_id,
                domain_id=payload.domain_id,
                proxy_id=payload.proxy_id,
                correlation_id=payload.correlation_id,
                level="error",
                message=message,
            )
        await session.commit()
    if claimed:
        increment_counter("proxy_create_failed_total")
    return claimed


async def _poll_until_settled(
    payload: ProvisionJobPayload,
    backend: ProvisioningBackend,
    *,
    max_attempts: int,
    interval_s: float,
) -> str | None:
    for attempt in range(1, max_attempts + 1):
        async with SessionLocal() as session:
            proxy = await proxies_repo.get_proxy(session, payload.proxy_id)
            if (
                proxy is None
                or proxy.status != ProxyStatus.CREATE_IN_PROGRESS.value
                or proxy.correlation_id != payload.correlation_id
            ):
                # Another operation took over the record; it owns the outcome now.
                logger.info("provision_poll_superseded proxy_id=%s attempt=%s", payload.proxy_id, attempt)
                return proxy.status if proxy is not None else None
            outcome = await call_with_retry(
                lambda: backend.describe_status(payload.stack_name),
                policy=provision_retry_policy(),
                operation="describe_status",
            )
            status = await apply_observation(session, proxy, outcome, backend=backend)
        if status != ProxyStatus.CREATE_IN_PROGRESS.value:
            return status
        if attempt < max_attempts:
            await asyncio.sleep(interval_s)

    failed = await mark_create_failed(
        payload,
        f"Timed out waiting for stack creation after {max_attempts} status checks",
    )
    if failed:
        increment_counter("proxy_create_timeouts_total")
        return ProxyStatus.CREATE_FAILED.value
    return None


async def _drive(payload: ProvisionJobPayload, backend: ProvisioningBackend) -> str | None:
    settings = get_settings()
    template = build_template(payload.domain_name)
    tags = {
        "Project": "ConsentGate",
        "Domain": payload.domain_name,
        "Subject": payload.subject_id,
    }
    outcome = await call_with_retry(
        lambda: backend.start_create(payload.stack_name, template, tags=tags),
        policy=provision_retry_policy(),
        operation="start_create",
    )
    if outcome.kind == OutcomeKind.OK:
        await _log(payload, "info", f"Stack {payload.stack_name} creation started")
    elif outcome.kind in {OutcomeKind.ALREADY_EXISTS, OutcomeKind.CONFLICT_IN_PROGRESS}:
        # A prior attempt may have partially succeeded; monitor the existing stack instead.
        await _log(payload, "info", f"Stack {payload.stack_name} already exists; resuming monitoring")
    elif outcome.kind == OutcomeKind.NOT_CONFIGURED:
        await _log(payload, "warn", "Backend credentials not configured; stack creation skipped (dry run)")
        return ProxyStatus.CREATE_IN_PROGRESS.value
    else:
        await mark_create_failed(payload, f"Stack creation could not be started: {outcome.message}")
        return ProxyStatus.CREATE_FAILED.value

    max_attempts = max(0, int(settings.provision_poll_max_attempts))
    if max_attempts == 0:
        # Completion is left to read-through reconciliation on status reads.
        return ProxyStatus.CREATE_IN_PROGRESS.value
    return await _poll_until_settled(
        payload,
        backend,
        max_attempts=max_attempts,
        interval_s=max(0.0, float(settings.provision_poll_interval_s)),
    )


async def run_provision_job(
    payload: ProvisionJobPayload,
    *,
    backend: ProvisioningBackend | None = None,
) -> str | None:
    """Drive one creation attempt to a settled state.

    Never raises: any unexpected failure is logged under the attempt's
    correlation id and recorded as CREATE_FAILED. Returns the final status, or
    ``None`` when the record disappeared while the job ran.
    """
    backend = backend or get_provisioning_backend()
    with bind_correlation_id(payload.correlation_id):
        logger.info("provision_job_started proxy_id=%s stack=%s", payload.proxy_id, payload.stack_name)
        try:
            status = await _drive(payload, backend)
        except Exception as exc:  # noqa: BLE001 - the detached flow must end in a terminal state
            logger.exception("provision_job_failed proxy_id=%s", payload.proxy_id)
            try:
                await mark_create_failed(payload, f"Provisioning failed unexpectedly: {exc}")
            except SQLAlchemyError:
                logger.exception("provision_job_mark_failed_failed proxy_id=%s", payload.proxy_id)
            return ProxyStatus.CREATE_FAILED.value
        logger.info("provision_job_finished proxy_id=%s status=%s", payload.proxy_id, status)
        return status


async def dispatch_provision_job(payload: ProvisionJobPayload) -> str:
    # The correlation id doubles as the job id so queue entries trace back to log lines.
    job_id = payload.correlation_id
    settings = get_settings()
    mode = settings.provision_execution_mode.lower()
    if mode == "inline":
        await run_provision_job(payload)
        return job_id
    if mode == "queue":
        redis = await get_redis_pool()
        job = await redis.enqueue_job(
            PROVISION_JOB_NAME,
            payload.model_dump(),
            _job_id=job_id,
            _queue_name=settings.provision_queue_name,
        )
        # When a job id already exists, arq returns None; keep tracing with the same id.
        return job.job_id if job else job_id
    if mode == "background":
        task = asyncio.create_task(run_provision_job(payload), name=f"provision:{payload.proxy_id}")
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        return job_id
    raise ValueError(f"Unsupported provision execution mode: {mode}")
