from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from consentgate.apps.api.deps import Principal, get_current_principal, get_db
from consentgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from consentgate.apps.api.response import API_VERSION, SuccessEnvelope, success_response
from consentgate.services import proxy_lifecycle
from consentgate.services.endpoint_check import verify_endpoint
from consentgate.services.orphan_cleanup import cleanup_orphans_for_domain


router = APIRouter(prefix="/proxies", tags=["proxies"], responses=DEFAULT_ERROR_RESPONSES)


class CreateProxyRequest(BaseModel):
    domain_id: str = Field(min_length=1, max_length=128)


class CreateProxyResponse(BaseModel):
    proxy_id: str
    correlation_id: str
    status: str
    status_url: str


class ProvisionLogResponse(BaseModel):
    id: int
    level: str
    message: str
    correlation_id: str
    created_at: datetime


class ProxyStatusResponse(BaseModel):
    proxy_id: str
    domain_id: str
    domain_name: str
    stack_name: str
    status: str
    effective_status: str
    disabled: bool
    endpoint_url: str | None
    edge_handle_ref: str | None
    correlation_id: str
    last_error: str | None
    logs: list[ProvisionLogResponse]

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "proxy_id": "3f0c2b8e-7f55-4a55-9d1b-0c1b9f0f6a11",
                    "domain_id": "dom_123",
                    "domain_name": "shop.example.com",
                    "stack_name": "consentgate-subj-1-shop-example-com-a1b2c3",
                    "status": "CREATE_COMPLETE",
                    "effective_status": "CREATE_COMPLETE",
                    "disabled": False,
                    "endpoint_url": "https://d111111abcdef8.cloudfront.net",
                    "edge_handle_ref": "arn:aws:lambda:us-east-1:123456789012:function:filter:1",
                    "correlation_id": "5b7f2b1e-2f1d-4d55-8c3b-3c7d1a4e9b20",
                    "last_error": None,
                    "logs": [],
                }
            ]
        }
    }


class LifecycleResponse(BaseModel):
    proxy_id: str
    correlation_id: str
    status: str
    disabled: bool
    message: str


class DisableRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class TeardownResponse(BaseModel):
    stack_name: str
    correlation_id: str
    teardown: str
    orphaned: bool
    message: str


class EndpointCheckResponse(BaseModel):
    url: str
    ok: bool
    status_code: int | None
    latency_ms: float
    error: str | None


class StackEventResponse(BaseModel):
    timestamp: datetime | None
    logical_resource_id: str | None
    resource_type: str | None
    resource_status: str | None
    status_reason: str | None


class CleanupResultResponse(BaseModel):
    stack_name: str
    outcome: str
    status: str
    message: str


def status_url(domain_id: str) -> str:
    return f"/{API_VERSION}/proxies/{domain_id}/status"


def to_status_response(view: proxy_lifecycle.ProxyStatusView) -> ProxyStatusResponse:
    return ProxyStatusResponse(
        proxy_id=view.proxy_id,
        domain_id=view.domain_id,
        domain_name=view.domain_name,
        stack_name=view.stack_name,
        status=view.status,
        effective_status=view.effective_status,
        disabled=view.disabled,
        endpoint_url=view.endpoint_url,
        edge_handle_ref=view.edge_handle_ref,
        correlation_id=view.correlation_id,
        last_error=view.last_error,
        logs=[ProvisionLogResponse(**line.__dict__) for line in view.logs],
    )


def to_lifecycle_response(result: proxy_lifecycle.LifecycleResult) -> LifecycleResponse:
    return LifecycleResponse(**result.__dict__)


@router.post(
    "",
    status_code=202,
    response_model=SuccessEnvelope[CreateProxyResponse],
)
async def create_proxy(
    request: Request,
    payload: CreateProxyRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Accept the request once the record is durable; provisioning continues in the background.
    result = await proxy_lifecycle.create_proxy(
        db,
        subject_id=principal.subject_id,
        domain_id=payload.domain_id,
    )
    data = CreateProxyResponse(
        proxy_id=result.proxy_id,
        correlation_id=result.correlation_id,
        status=result.status,
        status_url=status_url(payload.domain_id),
    )
    return success_response(request=request, data=data, correlation_id=result.correlation_id)


@router.get("/{domain_id}/status", response_model=SuccessEnvelope[ProxyStatusResponse])
async def get_proxy_status(
    domain_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    proxy = await proxy_lifecycle.get_owned_proxy(db, subject_id=principal.subject_id, domain_id=domain_id)
    view = await proxy_lifecycle.get_status(db, proxy)
    return success_response(request=request, data=to_status_response(view), correlation_id=view.correlation_id)


@router.post("/{domain_id}/retry", status_code=202, response_model=SuccessEnvelope[CreateProxyResponse])
async def retry_proxy(
    domain_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    proxy = await proxy_lifecycle.get_owned_proxy(db, subject_id=principal.subject_id, domain_id=domain_id)
    result = await proxy_lifecycle.retry_proxy(db, proxy)
    data = CreateProxyResponse(
        proxy_id=result.proxy_id,
        correlation_id=result.correlation_id,
        status=result.status,
        status_url=status_url(domain_id),
    )
    return success_response(request=request, data=data, correlation_id=result.correlation_id)


@router.post("/{domain_id}/disable", response_model=SuccessEnvelope[LifecycleResponse])
async def disable_proxy(
    domain_id: str,
    request: Request,
    payload: DisableRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    proxy = await proxy_lifecycle.get_owned_proxy(db, subject_id=principal.subject_id, domain_id=domain_id)
    result = await proxy_lifecycle.disable_proxy(db, proxy, reason=payload.reason if payload else None)
    return success_response(request=request, data=to_lifecycle_response(result), correlation_id=result.correlation_id)


@router.post("/{domain_id}/enable", response_model=SuccessEnvelope[LifecycleResponse])
async def enable_proxy(
    domain_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    proxy = await proxy_lifecycle.get_owned_proxy(db, subject_id=principal.subject_id, domain_id=domain_id)
    result = await proxy_lifecycle.enable_proxy(db, proxy)
    return success_response(request=request, data=to_lifecycle_response(result), correlation_id=result.correlation_id)


@router.post("/{domain_id}/reset", response_model=SuccessEnvelope[LifecycleResponse])
async def reset_proxy(
    domain_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    proxy = await proxy_lifecycle.get_owned_proxy(db, subject_id=principal.subject_id, domain_id=domain_id)
    result = await proxy_lifecycle.reset_proxy(db, proxy)
    return success_response(request=request, data=to_lifecycle_response(result), correlation_id=result.correlation_id)


@router.post("/{domain_id}/force-reset", response_model=SuccessEnvelope[TeardownResponse])
async def force_reset_proxy(
    domain_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    proxy = await proxy_lifecycle.get_owned_proxy(db, subject_id=principal.subject_id, domain_id=domain_id)
    result = await proxy_lifecycle.force_reset_proxy(db, proxy)
    return success_response(
        request=request,
        data=TeardownResponse(**result.__dict__),
        correlation_id=result.correlation_id,
    )


@router.delete("/{domain_id}", response_model=SuccessEnvelope[TeardownResponse])
async def delete_proxy(
    domain_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    proxy = await proxy_lifecycle.get_owned_proxy(db, subject_id=principal.subject_id, domain_id=domain_id)
    result = await proxy_lifecycle.delete_proxy(db, proxy)
    return success_response(
        request=request,
        data=TeardownResponse(**result.__dict__),
        correlation_id=result.correlation_id,
    )


@router.post("/{domain_id}/verify", response_model=SuccessEnvelope[EndpointCheckResponse])
async def verify_proxy_endpoint(
    domain_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    proxy = await proxy_lifecycle.get_owned_proxy(db, subject_id=principal.subject_id, domain_id=domain_id)
    result = await verify_endpoint(proxy)
    return success_response(request=request, data=EndpointCheckResponse(**result.__dict__))


@router.post("/{domain_id}/cleanup", response_model=SuccessEnvelope[list[CleanupResultResponse]])
async def cleanup_domain_stacks(
    domain_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Retry teardown of stacks a force reset or delete left behind for this domain.
    results = await cleanup_orphans_for_domain(db, subject_id=principal.subject_id, domain_id=domain_id)
    data = [CleanupResultResponse(**result.__dict__).model_dump() for result in results]
    return success_response(request=request, data=data)


@router.get("/{domain_id}/events", response_model=SuccessEnvelope[list[StackEventResponse]])
async def list_stack_events(
    domain_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    proxy = await proxy_lifecycle.get_owned_proxy(db, subject_id=principal.subject_id, domain_id=domain_id)
    events = await proxy_lifecycle.list_stack_events(proxy)
    data = [StackEventResponse(**event.__dict__).model_dump(mode="json") for event in events]
    return success_response(request=request, data=data)
