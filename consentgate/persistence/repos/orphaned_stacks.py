from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consentgate.domain.models import OrphanedStack


async def get_pending(session: AsyncSession, stack_name: str) -> OrphanedStack | None:
    result = await session.execute(
        select(OrphanedStack)
        .where(OrphanedStack.stack_name == stack_name, OrphanedStack.status.in_(["pending", "failed"]))
        .order_by(OrphanedStack.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_orphans(
    session: AsyncSession,
    *,
    status: str | None = None,
    limit: int = 100,
) -> list[OrphanedStack]:
    stmt = select(OrphanedStack)
    if status:
        stmt = stmt.where(OrphanedStack.status == status)
    result = await session.execute(stmt.order_by(OrphanedStack.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def list_due(session: AsyncSession, *, now: datetime, limit: int) -> list[OrphanedStack]:
    # Rows without cleanup_after belong to the manual policy and are never swept.
    result = await session.execute(
        select(OrphanedStack)
        .where(
            OrphanedStack.status.in_(["pending", "failed"]),
            OrphanedStack.cleanup_after.is_not(None),
            OrphanedStack.cleanup_after <= now,
        )
        .order_by(OrphanedStack.cleanup_after, OrphanedStack.id)
        .limit(limit)
    )
    return list(result.scalars().all())
