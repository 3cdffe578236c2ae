from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from consentgate.domain.models import Domain, Subscription


async def get_domain(session: AsyncSession, subject_id: str, domain_id: str) -> Domain | None:
    # Return None for subject mismatch to keep 404 semantics.
    result = await session.execute(
        select(Domain).where(Domain.id == domain_id, Domain.subject_id == subject_id)
    )
    return result.scalar_one_or_none()


async def get_domain_by_id(session: AsyncSession, domain_id: str) -> Domain | None:
    # Use with care; subject checks should be enforced by callers.
    result = await session.execute(select(Domain).where(Domain.id == domain_id))
    return result.scalar_one_or_none()


async def get_subscription(session: AsyncSession, subject_id: str) -> Subscription | None:
    result = await session.execute(select(Subscription).where(Subscription.subject_id == subject_id))
    return result.scalar_one_or_none()


async def get_active_subscription(
    session: AsyncSession,
    subject_id: str,
    *,
    for_update: bool = False,
) -> Subscription | None:
    """Return the subject's active subscription, optionally locking its row.

    ``for_update`` serialises callers per subject until the transaction ends.
    The row is touched first so backends without ``SELECT ... FOR UPDATE``
    (SQLite) still take their write lock before anything is counted.
    """
    if for_update:
        await session.execute(
            update(Subscription)
            .where(Subscription.subject_id == subject_id)
            .values(updated_at=datetime.now(timezone.utc))
        )
    query = select(Subscription).where(
        Subscription.subject_id == subject_id,
        Subscription.status == "active",
    )
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalar_one_or_none()
