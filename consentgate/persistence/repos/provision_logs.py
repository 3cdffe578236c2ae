from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consentgate.domain.models import ProvisionLog


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def build_log(
    *,
    subject_id: str,
    domain_id: str,
    correlation_id: str,
    level: str,
    message: str,
    proxy_id: str | None = None,
) -> ProvisionLog:
    return ProvisionLog(
        subject_id=subject_id,
        domain_id=domain_id,
        proxy_id=proxy_id,
        correlation_id=correlation_id,
        level=level,
        message=message,
        created_at=_utc_now(),
    )


async def latest_correlation_id(session: AsyncSession, domain_id: str) -> str | None:
    # The id breaks ties between rows written within the same timestamp.
    result = await session.execute(
        select(ProvisionLog.correlation_id)
        .where(ProvisionLog.domain_id == domain_id)
        .order_by(ProvisionLog.created_at.desc(), ProvisionLog.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def recent_for_correlation(
    session: AsyncSession,
    *,
    domain_id: str,
    correlation_id: str,
    limit: int,
) -> list[ProvisionLog]:
    result = await session.execute(
        select(ProvisionLog)
        .where(ProvisionLog.domain_id == domain_id, ProvisionLog.correlation_id == correlation_id)
        .order_by(ProvisionLog.created_at.desc(), ProvisionLog.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_for_proxy(session: AsyncSession, proxy_id: str, *, limit: int) -> list[ProvisionLog]:
    result = await session.execute(
        select(ProvisionLog)
        .where(ProvisionLog.proxy_id == proxy_id)
        .order_by(ProvisionLog.created_at.desc(), ProvisionLog.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_for_correlation(session: AsyncSession, correlation_id: str) -> list[ProvisionLog]:
    result = await session.execute(
        select(ProvisionLog)
        .where(ProvisionLog.correlation_id == correlation_id)
        .order_by(ProvisionLog.created_at, ProvisionLog.id)
    )
    return list(result.scalars().all())
