from __future__ import annotations

from datetime import datetime
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from consentgate.apps.api.deps import get_db
from consentgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from consentgate.apps.api.response import SuccessEnvelope, success_response
from consentgate.core.config import get_settings
from consentgate.services.billing_events import apply_subscription_status, verify_billing_signature


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"], responses=DEFAULT_ERROR_RESPONSES)

SUBSCRIPTION_STATUS_CHANGED = "subscription.status_changed"


class SubscriptionStatusData(BaseModel):
    subject_id: str = Field(min_length=1, max_length=128)
    status: str = Field(min_length=1, max_length=64)
    plan: str | None = Field(default=None, max_length=64)
    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    current_period_end: datetime | None = None


class BillingEventRequest(BaseModel):
    type: str
    data: SubscriptionStatusData


class BillingEventResponse(BaseModel):
    subject_id: str
    status: str
    correlation_id: str
    disabled_proxy_ids: list[str]


@router.post("/events", response_model=SuccessEnvelope[BillingEventResponse])
async def receive_billing_event(
    request: Request,
    x_billing_signature: str | None = Header(default=None, alias="X-Billing-Signature"),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Verify against the raw body so re-serialization cannot change the signed bytes.
    settings = get_settings()
    if not settings.billing_webhook_secret:
        raise HTTPException(
            status_code=503,
            detail={"code": "BILLING_NOT_CONFIGURED", "message": "Billing webhook secret is not configured"},
        )
    body = await request.body()
    if not verify_billing_signature(settings.billing_webhook_secret, body, x_billing_signature):
        logger.warning("billing_signature_invalid")
        raise HTTPException(
            status_code=401,
            detail={"code": "BILLING_SIGNATURE_INVALID", "message": "Invalid billing event signature"},
        )
    try:
        event = BillingEventRequest.model_validate_json(body)
    except PydanticValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail={
                "code": "REQUEST_VALIDATION_ERROR",
                "message": "Invalid billing event payload",
                "errors": exc.errors(include_url=False, include_context=False),
            },
        ) from exc
    if event.type != SUBSCRIPTION_STATUS_CHANGED:
        raise HTTPException(
            status_code=400,
            detail={"code": "BILLING_EVENT_UNSUPPORTED", "message": f"Unsupported event type: {event.type}"},
        )
    reaction = await apply_subscription_status(
        db,
        subject_id=event.data.subject_id,
        status=event.data.status,
        plan=event.data.plan,
        external_customer_id=event.data.external_customer_id,
        external_subscription_id=event.data.external_subscription_id,
        current_period_end=event.data.current_period_end,
    )
    data = BillingEventResponse(
        subject_id=reaction.subject_id,
        status=reaction.status,
        correlation_id=reaction.correlation_id,
        disabled_proxy_ids=reaction.disabled_proxy_ids,
    )
    return success_response(request=request, data=data, correlation_id=reaction.correlation_id)
