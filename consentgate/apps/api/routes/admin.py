from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from consentgate.apps.api.deps import Principal, get_db, require_admin
from consentgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from consentgate.apps.api.response import SuccessEnvelope, success_response
from consentgate.apps.api.routes.proxies import (
    CleanupResultResponse,
    CreateProxyResponse,
    DisableRequest,
    LifecycleResponse,
    ProvisionLogResponse,
    ProxyStatusResponse,
    status_url,
    to_lifecycle_response,
    to_status_response,
)
from consentgate.core.config import get_settings
from consentgate.core.errors import ValidationError
from consentgate.domain.models import OrphanedStack, Proxy
from consentgate.domain.proxy_status import ProxyStatus, effective_status
from consentgate.persistence.repos import orphaned_stacks as orphans_repo
from consentgate.persistence.repos import provision_logs as provision_logs_repo
from consentgate.persistence.repos import proxies as proxies_repo
from consentgate.services import proxy_lifecycle
from consentgate.services.orphan_cleanup import cleanup_stack, sweep_orphaned_stacks


router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)

_STATUS_PATTERN = "^(" + "|".join(status.value for status in ProxyStatus) + ")$"


class AdminProxyItem(BaseModel):
    proxy_id: str
    subject_id: str
    domain_id: str
    domain_name: str
    stack_name: str
    status: str
    effective_status: str
    disabled: bool
    endpoint_url: str | None
    correlation_id: str
    last_error: str | None
    created_at: datetime
    updated_at: datetime


class AdminProxyPage(BaseModel):
    items: list[AdminProxyItem]
    total: int
    offset: int
    limit: int


class AdminReconcileResponse(BaseModel):
    proxy_id: str
    previous_status: str
    status: str


class OrphanedStackResponse(BaseModel):
    id: int
    stack_name: str
    subject_id: str
    domain_id: str
    reason: str
    status: str
    cleanup_after: datetime | None
    attempts: int
    last_error: str | None
    created_at: datetime


class SweepResponse(BaseModel):
    examined: int
    deleted: int
    failed: int
    results: list[CleanupResultResponse]


def _proxy_item(proxy: Proxy) -> AdminProxyItem:
    return AdminProxyItem(
        proxy_id=proxy.id,
        subject_id=proxy.subject_id,
        domain_id=proxy.domain_id,
        domain_name=proxy.domain_name,
        stack_name=proxy.stack_name,
        status=proxy.status,
        effective_status=effective_status(proxy.status, proxy.disabled),
        disabled=proxy.disabled,
        endpoint_url=proxy.endpoint_url,
        correlation_id=proxy.correlation_id,
        last_error=proxy.last_error,
        created_at=proxy.created_at,
        updated_at=proxy.updated_at,
    )


def _orphan_item(orphan: OrphanedStack) -> OrphanedStackResponse:
    return OrphanedStackResponse(
        id=orphan.id,
        stack_name=orphan.stack_name,
        subject_id=orphan.subject_id,
        domain_id=orphan.domain_id,
        reason=orphan.reason,
        status=orphan.status,
        cleanup_after=orphan.cleanup_after,
        attempts=orphan.attempts,
        last_error=orphan.last_error,
        created_at=orphan.created_at,
    )


@router.get("/proxies", response_model=SuccessEnvelope[AdminProxyPage])
async def list_proxies(
    request: Request,
    status: str | None = Query(default=None, pattern=_STATUS_PATTERN),
    q: str | None = Query(default=None, max_length=255),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    proxies, total = await proxies_repo.list_proxies(db, status=status, search=q, offset=offset, limit=limit)
    page = AdminProxyPage(items=[_proxy_item(proxy) for proxy in proxies], total=total, offset=offset, limit=limit)
    return success_response(request=request, data=page)


@router.get("/proxies/{proxy_id}", response_model=SuccessEnvelope[ProxyStatusResponse])
async def get_proxy(
    proxy_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    proxy = await proxy_lifecycle.get_proxy_by_id(db, proxy_id)
    view = await proxy_lifecycle.get_status(db, proxy, reconcile=False)
    return success_response(request=request, data=to_status_response(view), correlation_id=view.correlation_id)


@router.get("/proxies/{proxy_id}/logs", response_model=SuccessEnvelope[list[ProvisionLogResponse]])
async def list_proxy_logs(
    proxy_id: str,
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Logs across every correlation id of the proxy, newest first.
    await proxy_lifecycle.get_proxy_by_id(db, proxy_id)
    rows = await provision_logs_repo.list_for_proxy(db, proxy_id, limit=limit)
    data = [
        ProvisionLogResponse(
            id=row.id,
            level=row.level,
            message=row.message,
            correlation_id=row.correlation_id,
            created_at=row.created_at,
        ).model_dump(mode="json")
        for row in rows
    ]
    return success_response(request=request, data=data)


@router.post("/proxies/{proxy_id}/retry", status_code=202, response_model=SuccessEnvelope[CreateProxyResponse])
async def retry_proxy(
    proxy_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    proxy = await proxy_lifecycle.get_proxy_by_id(db, proxy_id)
    domain_id = proxy.domain_id
    result = await proxy_lifecycle.retry_proxy(db, proxy)
    data = CreateProxyResponse(
        proxy_id=result.proxy_id,
        correlation_id=result.correlation_id,
        status=result.status,
        status_url=status_url(domain_id),
    )
    return success_response(request=request, data=data, correlation_id=result.correlation_id)


@router.post("/proxies/{proxy_id}/disable", response_model=SuccessEnvelope[LifecycleResponse])
async def disable_proxy(
    proxy_id: str,
    request: Request,
    payload: DisableRequest | None = None,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    proxy = await proxy_lifecycle.get_proxy_by_id(db, proxy_id)
    reason = payload.reason if payload and payload.reason else None
    reason = f"{reason or 'disabled by admin'} (admin {principal.subject_id})"
    result = await proxy_lifecycle.disable_proxy(db, proxy, reason=reason)
    return success_response(request=request, data=to_lifecycle_response(result), correlation_id=result.correlation_id)


@router.post("/proxies/{proxy_id}/reconcile", response_model=SuccessEnvelope[AdminReconcileResponse])
async def reconcile_proxy(
    proxy_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    proxy = await proxy_lifecycle.get_proxy_by_id(db, proxy_id)
    previous = proxy.status
    status = await proxy_lifecycle.force_reconcile(db, proxy)
    data = AdminReconcileResponse(proxy_id=proxy_id, previous_status=previous, status=status)
    return success_response(request=request, data=data)


@router.get("/orphaned-stacks", response_model=SuccessEnvelope[list[OrphanedStackResponse]])
async def list_orphaned_stacks(
    request: Request,
    status: str | None = Query(default=None, pattern="^(pending|deleting|deleted|failed)$"),
    limit: int = Query(default=100, ge=1, le=500),
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    orphans = await orphans_repo.list_orphans(db, status=status, limit=limit)
    data = [_orphan_item(orphan).model_dump(mode="json") for orphan in orphans]
    return success_response(request=request, data=data)


@router.post("/orphaned-stacks/sweep", response_model=SuccessEnvelope[SweepResponse])
async def sweep_orphans(
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=500),
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await sweep_orphaned_stacks(db, limit=limit)
    data = SweepResponse(
        examined=result.examined,
        deleted=result.deleted,
        failed=result.failed,
        results=[CleanupResultResponse(**item.__dict__) for item in result.results],
    )
    return success_response(request=request, data=data)


class StackCleanupRequest(BaseModel):
    subject_id: str | None = Field(default=None, max_length=128)
    domain_id: str | None = Field(default=None, max_length=128)


@router.post("/stacks/{stack_name}/cleanup", response_model=SuccessEnvelope[CleanupResultResponse])
async def cleanup_stack_by_name(
    stack_name: str,
    request: Request,
    payload: StackCleanupRequest | None = None,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Operator path for stacks left behind by force resets, named explicitly.
    settings = get_settings()
    if not stack_name.startswith(f"{settings.stack_name_prefix}-"):
        raise ValidationError(
            "STACK_NAME_INVALID",
            "Only stacks created by this service can be cleaned up",
            {"stack_name": stack_name},
        )
    result = await cleanup_stack(
        db,
        stack_name,
        subject_id=payload.subject_id if payload else None,
        domain_id=payload.domain_id if payload else None,
    )
    return success_response(request=request, data=CleanupResultResponse(**result.__dict__))
