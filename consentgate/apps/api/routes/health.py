from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from consentgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from consentgate.apps.api.response import SuccessEnvelope, success_response
from consentgate.core.config import get_settings

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    provisioning_backend: str
    execution_mode: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Liveness only; dependency health lives under /ops.
    settings = get_settings()
    payload = HealthResponse(
        status="ok",
        provisioning_backend=settings.provisioning_backend,
        execution_mode=settings.provision_execution_mode,
    )
    return success_response(request=request, data=payload)
