from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from consentgate.core.config import get_settings
from consentgate.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity asserted by the upstream gateway; authentication happens there.
    subject_id: str
    is_admin: bool = False


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


async def get_current_principal(request: Request) -> Principal:
    settings = get_settings()
    subject_id = (request.headers.get(settings.auth_subject_header) or "").strip()
    if not subject_id:
        raise _auth_error("Missing authenticated subject")
    principal = Principal(subject_id=subject_id, is_admin=subject_id in settings.admin_subjects())
    request.state.subject_id = subject_id
    return principal


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise _forbidden_error("Admin access required")
    return principal
