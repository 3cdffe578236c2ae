from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from consentgate.core.config import get_settings
from consentgate.core.redaction import redact_secrets
from consentgate.domain.models import OrphanedStack
from consentgate.persistence.repos import orphaned_stacks as orphans_repo
from consentgate.providers.provisioning.base import OutcomeKind, ProvisioningBackend
from consentgate.providers.provisioning.factory import get_provisioning_backend
from consentgate.services.provision_logs import record_provision_log
from consentgate.services.resilience import call_with_retry
from consentgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CleanupResult:
    stack_name: str
    outcome: str
    status: str
    message: str


@dataclass(frozen=True)
class SweepResult:
    examined: int
    deleted: int
    failed: int
    results: list[CleanupResult]


def _cleanup_after(now: datetime) -> datetime | None:
    settings = get_settings()
    policy = settings.orphan_cleanup_policy.lower()
    if policy == "delayed":
        return now + timedelta(seconds=max(0, settings.orphan_cleanup_delay_s))
    # Manual policy: the sweep never picks these up; an operator cleans them by name.
    return None


async def register_orphan(
    session: AsyncSession,
    *,
    stack_name: str,
    subject_id: str,
    domain_id: str,
    reason: str,
    error: str | None = None,
) -> OrphanedStack:
    """Remember a stack whose local record is gone but whose teardown was not confirmed.

    Joins the caller's transaction; the caller commits.
    """
    now = _utc_now()
    error = redact_secrets(error) if error else None
    existing = await orphans_repo.get_pending(session, stack_name)
    if existing is not None:
        existing.reason = reason
        existing.last_error = error
        existing.cleanup_after = _cleanup_after(now)
        existing.status = "pending"
        existing.updated_at = now
        return existing
    orphan = OrphanedStack(
        stack_name=stack_name,
        subject_id=subject_id,
        domain_id=domain_id,
        reason=reason,
        status="pending",
        cleanup_after=_cleanup_after(now),
        attempts=0,
        last_error=error,
        created_at=now,
        updated_at=now,
    )
    session.add(orphan)
    increment_counter("orphaned_stacks_registered_total")
    logger.warning("orphaned_stack_registered stack=%s reason=%s", stack_name, reason)
    return orphan


async def _cleanup(
    session: AsyncSession,
    stack_name: str,
    orphan: OrphanedStack | None,
    *,
    subject_id: str | None,
    domain_id: str | None,
    backend: ProvisioningBackend,
) -> CleanupResult:
    outcome = await call_with_retry(lambda: backend.delete(stack_name), operation="delete")
    now = _utc_now()
    if outcome.kind == OutcomeKind.OK:
        status, message = "deleted", f"Stack {stack_name} deletion started"
    elif outcome.kind == OutcomeKind.NOT_FOUND:
        status, message = "deleted", f"Stack {stack_name} does not exist; nothing to clean up"
    elif outcome.kind == OutcomeKind.NOT_CONFIGURED:
        status, message = "pending", "Backend not configured; stack cleanup skipped"
    else:
        status, message = "failed", f"Stack {stack_name} cleanup failed: {outcome.message}"

    if orphan is not None:
        orphan.attempts = (orphan.attempts or 0) + 1
        orphan.status = status
        orphan.updated_at = now
        orphan.last_error = None if status == "deleted" else redact_secrets(outcome.message)
        if status == "failed" and orphan.cleanup_after is not None:
            # Back off to the next sweep window rather than hammering the backend.
            orphan.cleanup_after = _cleanup_after(now)
        subject_id = subject_id or orphan.subject_id
        domain_id = domain_id or orphan.domain_id

    if subject_id and domain_id:
        await record_provision_log(
            session=session,
            subject_id=subject_id,
            domain_id=domain_id,
            correlation_id=str(uuid4()),
            level="error" if status == "failed" else "info",
            message=message,
        )
    await session.commit()
    increment_counter(f"orphan_cleanup_{status}_total")
    logger.info("orphan_cleanup stack=%s outcome=%s status=%s", stack_name, outcome.kind.value, status)
    return CleanupResult(stack_name=stack_name, outcome=outcome.kind.value, status=status, message=message)


async def cleanup_stack(
    session: AsyncSession,
    stack_name: str,
    *,
    subject_id: str | None = None,
    domain_id: str | None = None,
    backend: ProvisioningBackend | None = None,
) -> CleanupResult:
    """Delete a stack by name and settle its orphan row, if any."""
    orphan = await orphans_repo.get_pending(session, stack_name)
    return await _cleanup(
        session,
        stack_name,
        orphan,
        subject_id=subject_id,
        domain_id=domain_id,
        backend=backend or get_provisioning_backend(),
    )


async def cleanup_orphans_for_domain(
    session: AsyncSession,
    *,
    subject_id: str,
    domain_id: str,
    backend: ProvisioningBackend | None = None,
) -> list[CleanupResult]:
    orphans = await orphans_repo.list_orphans(session, limit=100)
    names = [
        orphan.stack_name
        for orphan in orphans
        if orphan.subject_id == subject_id
        and orphan.domain_id == domain_id
        and orphan.status in {"pending", "failed"}
    ]
    results = []
    for stack_name in dict.fromkeys(names):
        results.append(
            await cleanup_stack(
                session,
                stack_name,
                subject_id=subject_id,
                domain_id=domain_id,
                backend=backend,
            )
        )
    return results


async def _claim(session: AsyncSession, orphan: OrphanedStack) -> bool:
    # Move pending/failed rows to deleting so concurrent sweepers skip them.
    result = await session.execute(
        update(OrphanedStack)
        .where(OrphanedStack.id == orphan.id, OrphanedStack.status == orphan.status)
        .values(status="deleting", updated_at=_utc_now())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def sweep_orphaned_stacks(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    limit: int | None = None,
    backend: ProvisioningBackend | None = None,
) -> SweepResult:
    """Clean up orphans whose delay has elapsed. Rows under the manual policy are skipped."""
    settings = get_settings()
    batch = limit if limit is not None else max(1, settings.orphan_cleanup_batch_size)
    due = await orphans_repo.list_due(session, now=now or _utc_now(), limit=batch)
    results: list[CleanupResult] = []
    for orphan in due:
        if not await _claim(session, orphan):
            continue
        await session.refresh(orphan)
        results.append(
            await _cleanup(
                session,
                orphan.stack_name,
                orphan,
                subject_id=None,
                domain_id=None,
                backend=backend or get_provisioning_backend(),
            )
        )
    deleted = sum(1 for result in results if result.status == "deleted")
    failed = sum(1 for result in results if result.status == "failed")
    logger.info("orphan_sweep_finished examined=%s deleted=%s failed=%s", len(due), deleted, failed)
    return SweepResult(examined=len(due), deleted=deleted, failed=failed, results=results)
