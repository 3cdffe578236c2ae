from __future__ import annotations

from sqlalchemy import select

from consentgate.domain.models import OrphanedStack, ProvisionLog, Proxy
from consentgate.persistence.db import SessionLocal
from consentgate.services import proxy_lifecycle


async def create_for(subject_id: str, domain_id: str) -> proxy_lifecycle.CreateResult:
    async with SessionLocal() as session:
        return await proxy_lifecycle.create_proxy(session, subject_id=subject_id, domain_id=domain_id)


async def load_proxy(subject_id: str, domain_id: str) -> Proxy:
    async with SessionLocal() as session:
        return await proxy_lifecycle.get_owned_proxy(session, subject_id=subject_id, domain_id=domain_id)


async def status_of(subject_id: str, domain_id: str, **kwargs) -> proxy_lifecycle.ProxyStatusView:
    async with SessionLocal() as session:
        proxy = await proxy_lifecycle.get_owned_proxy(session, subject_id=subject_id, domain_id=domain_id)
        return await proxy_lifecycle.get_status(session, proxy, **kwargs)


async def complete(backend, subject_id: str, domain_id: str) -> proxy_lifecycle.ProxyStatusView:
    # Script the stack to CREATE_COMPLETE and let a status read observe it.
    proxy = await load_proxy(subject_id, domain_id)
    backend.set_status(proxy.stack_name, "CREATE_COMPLETE", endpoint_url="https://x.test", edge_handle_ref="h-1")
    return await status_of(subject_id, domain_id)


async def logs_for_domain(domain_id: str) -> list[ProvisionLog]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(ProvisionLog).where(ProvisionLog.domain_id == domain_id).order_by(ProvisionLog.id)
        )
        return list(result.scalars().all())


async def orphans() -> list[OrphanedStack]:
    async with SessionLocal() as session:
        result = await session.execute(select(OrphanedStack).order_by(OrphanedStack.id))
        return list(result.scalars().all())
