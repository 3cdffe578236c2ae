from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from consentgate.core.redaction import redact_secrets
from consentgate.persistence.db import SessionLocal
from consentgate.persistence.repos import provision_logs as provision_logs_repo


logger = logging.getLogger(__name__)

LOG_LEVELS = ("info", "warn", "error")
_PY_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


async def record_provision_log(
    *,
    session: AsyncSession | None = None,
    subject_id: str,
    domain_id: str,
    correlation_id: str,
    level: str,
    message: str,
    proxy_id: str | None = None,
    best_effort: bool = True,
) -> None:
    """Append one redacted log line for a lifecycle operation.

    With a session the row joins the caller's transaction and is committed by the
    caller. Without one the row is written in its own session so background
    flows can log after their own transaction has ended.
    """
    if level not in LOG_LEVELS:
        raise ValueError(f"Unsupported log level: {level}")
    # Redact before the message leaves this function, on every path.
    redacted = redact_secrets(message)
    logger.log(
        _PY_LEVELS[level],
        "provision_log domain_id=%s message=%s",
        domain_id,
        redacted,
        extra={"correlation_id": correlation_id},
    )
    entry = provision_logs_repo.build_log(
        subject_id=subject_id,
        domain_id=domain_id,
        proxy_id=proxy_id,
        correlation_id=correlation_id,
        level=level,
        message=redacted,
    )
    if session is not None:
        session.add(entry)
        return

    async with SessionLocal() as log_session:
        try:
            log_session.add(entry)
            await log_session.commit()
        except SQLAlchemyError as exc:
            await log_session.rollback()
            if not best_effort:
                raise
            logger.warning(
                "provision_log_write_failed domain_id=%s",
                domain_id,
                exc_info=exc,
                extra={"correlation_id": correlation_id},
            )
