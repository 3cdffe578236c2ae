from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from consentgate.persistence.db import SessionLocal
from consentgate.providers.provisioning.base import OutcomeKind
from consentgate.services import proxy_lifecycle
from consentgate.services.orphan_cleanup import cleanup_orphans_for_domain, cleanup_stack, sweep_orphaned_stacks
from consentgate.tests.utils.lifecycle import create_for, logs_for_domain, orphans
from consentgate.tests.utils.seed import seed_account


async def _orphan_one(fake_backend, subject_id: str = "user-1") -> tuple[str, str]:
    # Force reset with a failing delete leaves the stack behind.
    [domain] = await seed_account(subject_id)
    await create_for(subject_id, domain.id)
    fake_backend.inject("delete", OutcomeKind.TRANSIENT, "Rate exceeded", times=3)
    async with SessionLocal() as session:
        proxy = await proxy_lifecycle.get_owned_proxy(session, subject_id=subject_id, domain_id=domain.id)
        result = await proxy_lifecycle.force_reset_proxy(session, proxy)
    assert result.orphaned is True
    return domain.id, result.stack_name


def _later() -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=5)


@pytest.mark.asyncio
async def test_manual_policy_orphans_are_never_swept(fake_backend) -> None:
    _, stack_name = await _orphan_one(fake_backend)
    async with SessionLocal() as session:
        result = await sweep_orphaned_stacks(session, now=_later())
    assert result.examined == 0
    assert stack_name in fake_backend.stacks


@pytest.mark.asyncio
async def test_delayed_policy_sweeps_due_orphans(monkeypatch, fake_backend) -> None:
    from consentgate.core.config import get_settings

    monkeypatch.setenv("ORPHAN_CLEANUP_POLICY", "delayed")
    monkeypatch.setenv("ORPHAN_CLEANUP_DELAY_S", "0")
    get_settings.cache_clear()
    domain_id, stack_name = await _orphan_one(fake_backend)
    [orphan] = await orphans()
    assert orphan.cleanup_after is not None

    async with SessionLocal() as session:
        result = await sweep_orphaned_stacks(session, now=_later())
    assert (result.examined, result.deleted, result.failed) == (1, 1, 0)
    assert stack_name not in fake_backend.stacks
    [orphan] = await orphans()
    assert orphan.status == "deleted"
    assert orphan.attempts == 1
    logs = await logs_for_domain(domain_id)
    assert logs[-1].message == f"Stack {stack_name} deletion started"

    async with SessionLocal() as session:
        again = await sweep_orphaned_stacks(session, now=_later())
    assert again.examined == 0


@pytest.mark.asyncio
async def test_delayed_policy_waits_for_the_delay(monkeypatch, fake_backend) -> None:
    from consentgate.core.config import get_settings

    monkeypatch.setenv("ORPHAN_CLEANUP_POLICY", "delayed")
    monkeypatch.setenv("ORPHAN_CLEANUP_DELAY_S", "3600")
    get_settings.cache_clear()
    await _orphan_one(fake_backend)
    async with SessionLocal() as session:
        result = await sweep_orphaned_stacks(session, now=_later())
    assert result.examined == 0


@pytest.mark.asyncio
async def test_failed_sweep_keeps_orphan_for_next_window(monkeypatch, fake_backend) -> None:
    from consentgate.core.config import get_settings

    monkeypatch.setenv("ORPHAN_CLEANUP_POLICY", "delayed")
    monkeypatch.setenv("ORPHAN_CLEANUP_DELAY_S", "0")
    get_settings.cache_clear()
    await _orphan_one(fake_backend)
    fake_backend.inject("delete", OutcomeKind.FATAL, "AccessDenied")
    async with SessionLocal() as session:
        result = await sweep_orphaned_stacks(session, now=_later())
    assert result.failed == 1
    [orphan] = await orphans()
    assert orphan.status == "failed"
    assert orphan.last_error == "AccessDenied"

    async with SessionLocal() as session:
        retried = await sweep_orphaned_stacks(session, now=_later())
    assert retried.deleted == 1


@pytest.mark.asyncio
async def test_operator_cleans_up_a_manual_orphan_by_name(fake_backend) -> None:
    _, stack_name = await _orphan_one(fake_backend)
    async with SessionLocal() as session:
        result = await cleanup_stack(session, stack_name)
    assert result.status == "deleted"
    assert result.outcome == "ok"
    [orphan] = await orphans()
    assert orphan.status == "deleted"


@pytest.mark.asyncio
async def test_cleanup_of_unknown_stack_is_harmless(fake_backend) -> None:
    async with SessionLocal() as session:
        result = await cleanup_stack(session, "consentgate-ghost-example-com-000000")
    assert result.outcome == "not_found"
    assert result.status == "deleted"
    assert await orphans() == []


@pytest.mark.asyncio
async def test_domain_owner_cleans_up_own_orphans(fake_backend) -> None:
    domain_id, stack_name = await _orphan_one(fake_backend)
    async with SessionLocal() as session:
        results = await cleanup_orphans_for_domain(session, subject_id="user-1", domain_id=domain_id)
    assert [result.stack_name for result in results] == [stack_name]
    async with SessionLocal() as session:
        others = await cleanup_orphans_for_domain(session, subject_id="user-2", domain_id=domain_id)
    assert others == []
