from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from consentgate.core.redaction import redact_secrets
from consentgate.domain.models import Proxy
from consentgate.domain.proxy_status import ProxyStatus


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _status_values(statuses: Iterable[ProxyStatus | str]) -> list[str]:
    return [status.value if isinstance(status, ProxyStatus) else status for status in statuses]


async def get_proxy(session: AsyncSession, proxy_id: str) -> Proxy | None:
    result = await session.execute(select(Proxy).where(Proxy.id == proxy_id))
    return result.scalar_one_or_none()


async def get_proxy_for_domain(session: AsyncSession, subject_id: str, domain_id: str) -> Proxy | None:
    # Subject scoping keeps 404 semantics for domains owned by someone else.
    result = await session.execute(
        select(Proxy).where(Proxy.subject_id == subject_id, Proxy.domain_id == domain_id)
    )
    return result.scalar_one_or_none()


async def list_proxies_for_subject(
    session: AsyncSession,
    subject_id: str,
    *,
    disabled: bool | None = None,
) -> list[Proxy]:
    stmt = select(Proxy).where(Proxy.subject_id == subject_id)
    if disabled is not None:
        stmt = stmt.where(Proxy.disabled.is_(disabled))
    result = await session.execute(stmt.order_by(Proxy.created_at, Proxy.id))
    return list(result.scalars().all())


async def count_proxies_in_statuses(
    session: AsyncSession,
    subject_id: str,
    statuses: Iterable[ProxyStatus | str],
) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(Proxy)
        .where(Proxy.subject_id == subject_id, Proxy.status.in_(_status_values(statuses)))
    )
    return int(result.scalar() or 0)


async def list_proxies(
    session: AsyncSession,
    *,
    status: str | None = None,
    search: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[Proxy], int]:
    # Operator listing across all subjects; callers must enforce admin access.
    conditions = []
    if status:
        conditions.append(Proxy.status == status)
    if search:
        pattern = f"%{search.lower()}%"
        conditions.append(
            or_(func.lower(Proxy.domain_name).like(pattern), func.lower(Proxy.subject_id).like(pattern))
        )
    total_result = await session.execute(select(func.count()).select_from(Proxy).where(*conditions))
    total = int(total_result.scalar() or 0)
    result = await session.execute(
        select(Proxy)
        .where(*conditions)
        .order_by(Proxy.created_at.desc(), Proxy.id)
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def insert_proxy(session: AsyncSession, **values: Any) -> Proxy:
    # Flush immediately so the unique (subject_id, domain_id) constraint fires here.
    proxy = Proxy(**values)
    session.add(proxy)
    await session.flush()
    return proxy


async def compare_and_set(
    session: AsyncSession,
    proxy_id: str,
    *,
    expected_status: ProxyStatus | str | None = None,
    expected_correlation_id: str | None = None,
    **values: Any,
) -> bool:
    """Apply ``values`` only if the row still matches the expected status/correlation.

    Returns ``True`` when exactly one row was updated. Callers use the result to
    decide whether they own the transition.
    """
    stmt = update(Proxy).where(Proxy.id == proxy_id)
    if expected_status is not None:
        expected = expected_status.value if isinstance(expected_status, ProxyStatus) else expected_status
        stmt = stmt.where(Proxy.status == expected)
    if expected_correlation_id is not None:
        stmt = stmt.where(Proxy.correlation_id == expected_correlation_id)
    values = {
        key: value.value if isinstance(value, ProxyStatus) else value for key, value in values.items()
    }
    if values.get("last_error"):
        # last_error is returned by status reads, so it gets the same masking as log lines.
        values["last_error"] = redact_secrets(values["last_error"])
    values.setdefault("updated_at", _utc_now())
    result = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
    return result.rowcount == 1


async def update_proxy(session: AsyncSession, proxy_id: str, **values: Any) -> bool:
    # Last-writer-wins partial update for flags that do not guard transitions.
    return await compare_and_set(session, proxy_id, **values)


async def delete_proxy(session: AsyncSession, proxy_id: str) -> bool:
    result = await session.execute(delete(Proxy).where(Proxy.id == proxy_id))
    return result.rowcount == 1
