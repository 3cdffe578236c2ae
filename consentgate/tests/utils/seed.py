from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from consentgate.domain.models import Domain, Subscription
from consentgate.persistence.db import SessionLocal


async def seed_domain(
    subject_id: str,
    *,
    domain_id: str | None = None,
    domain_name: str | None = None,
    status: str = "verified",
) -> Domain:
    domain_id = domain_id or f"dom-{uuid4().hex[:8]}"
    async with SessionLocal() as session:
        domain = Domain(
            id=domain_id,
            subject_id=subject_id,
            domain_name=domain_name or f"{domain_id}.example.com",
            status=status,
            verified_at=datetime.now(timezone.utc) if status == "verified" else None,
        )
        session.add(domain)
        await session.commit()
    return domain


async def seed_subscription(subject_id: str, *, plan: str = "starter", status: str = "active") -> Subscription:
    async with SessionLocal() as session:
        subscription = Subscription(
            id=str(uuid4()),
            subject_id=subject_id,
            plan=plan,
            status=status,
        )
        session.add(subscription)
        await session.commit()
    return subscription


async def seed_account(
    subject_id: str,
    *,
    plan: str = "starter",
    domains: int = 1,
) -> list[Domain]:
    # An active subscriber with verified domains, ready to provision.
    await seed_subscription(subject_id, plan=plan)
    return [await seed_domain(subject_id) for _ in range(domains)]
