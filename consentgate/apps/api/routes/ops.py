from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from consentgate.apps.api.deps import Principal, get_db, require_admin
from consentgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from consentgate.apps.api.response import SuccessEnvelope, success_response
from consentgate.core.config import get_settings
from consentgate.domain.models import OrphanedStack, Proxy
from consentgate.providers.provisioning.factory import get_provisioning_backend
from consentgate.services import provision_queue
from consentgate.services.telemetry import (
    availability,
    counters_snapshot,
    external_latency_by_integration,
)


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _db_error(message: str) -> HTTPException:
    # Keep ops errors explicit without leaking stack traces.
    return HTTPException(status_code=500, detail={"code": "DB_ERROR", "message": message})


async def _check_db_health(db: AsyncSession) -> bool:
    # Keep the DB check lightweight to avoid introducing new load.
    try:
        await db.execute(select(1))
        return True
    except SQLAlchemyError:
        return False


@router.get("/health", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_health(
    request: Request,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> dict:
    settings = get_settings()
    db_ok = await _check_db_health(db)
    queue_depth = await provision_queue.get_queue_depth()
    redis_ok = queue_depth is not None
    backend_ok = get_provisioning_backend().is_configured() or settings.provision_dry_run
    status = "ok" if db_ok and redis_ok and backend_ok else "degraded"
    payload = {
        "status": status,
        "api": "ok",
        "db": "ok" if db_ok else "degraded",
        "redis": "ok" if redis_ok else "degraded",
        "provisioning_backend": "ok" if backend_ok else "not_configured",
        "queue_depth": queue_depth,
        "timestamp": _utc_now().isoformat(),
    }
    return success_response(request=request, data=payload)


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_metrics(
    request: Request,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> dict:
    # Provide JSON metrics for dashboards when Prometheus scraping is unavailable.
    try:
        status_rows = await db.execute(select(Proxy.status, func.count()).group_by(Proxy.status))
        disabled_total = await db.scalar(select(func.count()).select_from(Proxy).where(Proxy.disabled.is_(True)))
        orphans_pending = await db.scalar(
            select(func.count())
            .select_from(OrphanedStack)
            .where(OrphanedStack.status.in_(["pending", "failed"]))
        )
    except SQLAlchemyError as exc:
        raise _db_error("Database error while aggregating proxy metrics") from exc

    payload = {
        "counters": counters_snapshot(),
        "gauges": {
            "proxies_by_status": {status: int(count) for status, count in status_rows.all()},
            "proxies_disabled": int(disabled_total or 0),
            "orphaned_stacks_pending": int(orphans_pending or 0),
            "provision_queue_depth": await provision_queue.get_queue_depth(),
            "provision_background_jobs": provision_queue.background_job_count(),
        },
        "availability_pct_1h": availability(3600),
        "external_call_latency_ms": external_latency_by_integration(3600),
    }
    return success_response(request=request, data=payload)
