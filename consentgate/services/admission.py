from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from consentgate.domain.proxy_status import ACTIVE_STATUSES
from consentgate.persistence.repos import proxies as proxies_repo


# None means unbounded.
PLAN_LIMITS: dict[str, int | None] = {
    "starter": 1,
    "pro": 5,
    "enterprise": None,
}


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    reason: str | None
    used: int
    limit: int | None


def plan_limit(plan: str | None) -> tuple[bool, int | None]:
    # Return (known, limit) so unknown plans can be denied explicitly.
    key = (plan or "").strip().lower()
    if key not in PLAN_LIMITS:
        return False, 0
    return True, PLAN_LIMITS[key]


async def check_admission(
    session: AsyncSession,
    *,
    subject_id: str,
    plan: str | None,
    domain_id: str,
) -> AdmissionDecision:
    """Decide whether ``subject_id`` may provision ``domain_id`` under ``plan``.

    Read-only. Disabled proxies still count toward the limit; a domain that
    already has a record never consumes a new slot. Run it inside the same
    transaction as the write it guards.
    """
    used = await proxies_repo.count_proxies_in_statuses(session, subject_id, ACTIVE_STATUSES)
    known, limit = plan_limit(plan)
    if not known:
        return AdmissionDecision(allowed=False, reason="PLAN_UNKNOWN", used=used, limit=0)
    existing = await proxies_repo.get_proxy_for_domain(session, subject_id, domain_id)
    if existing is not None:
        return AdmissionDecision(allowed=True, reason=None, used=used, limit=limit)
    if limit is not None and used >= limit:
        return AdmissionDecision(allowed=False, reason="PLAN_LIMIT_REACHED", used=used, limit=limit)
    return AdmissionDecision(allowed=True, reason=None, used=used, limit=limit)
