from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from consentgate.core.config import get_settings
from consentgate.core.errors import (
    AdmissionDenied,
    ConflictError,
    UnavailableError,
    ValidationError,
)
from consentgate.core.logging import bind_correlation_id
from consentgate.domain.models import Proxy
from consentgate.domain.proxy_status import (
    RECONCILABLE_STATUSES,
    RECREATABLE_STATUSES,
    ProxyStatus,
    effective_status,
)
from consentgate.persistence.repos import accounts as accounts_repo
from consentgate.persistence.repos import provision_logs as provision_logs_repo
from consentgate.persistence.repos import proxies as proxies_repo
from consentgate.providers.provisioning.base import OutcomeKind, ProvisioningBackend
from consentgate.providers.provisioning.factory import get_provisioning_backend
from consentgate.services.admission import check_admission
from consentgate.services.orphan_cleanup import register_orphan
from consentgate.services.provision_logs import record_provision_log
from consentgate.services.provision_queue import (
    ProvisionJobPayload,
    dispatch_provision_job,
    mark_create_failed,
)
from consentgate.services.reconcile import reconcile_proxy, reload_proxy
from consentgate.services.resilience import call_with_retry
from consentgate.services.telemetry import increment_counter
from consentgate.services.templates import build_stack_name


logger = logging.getLogger(__name__)

_RECREATABLE_VALUES = {status.value for status in RECREATABLE_STATUSES}
_RECONCILABLE_VALUES = {status.value for status in RECONCILABLE_STATUSES}


@dataclass(frozen=True)
class CreateResult:
    proxy_id: str
    correlation_id: str
    status: str


@dataclass(frozen=True)
class ProxyLogLine:
    id: int
    level: str
    message: str
    correlation_id: str
    created_at: datetime


@dataclass(frozen=True)
class ProxyStatusView:
    proxy_id: str
    domain_id: str
    domain_name: str
    stack_name: str
    status: str
    effective_status: str
    disabled: bool
    endpoint_url: str | None
    edge_handle_ref: str | None
    correlation_id: str
    last_error: str | None
    logs: list[ProxyLogLine]


@dataclass(frozen=True)
class LifecycleResult:
    proxy_id: str
    correlation_id: str
    status: str
    disabled: bool
    message: str


@dataclass(frozen=True)
class TeardownResult:
    stack_name: str
    correlation_id: str
    teardown: str
    orphaned: bool
    message: str


def _new_correlation_id() -> str:
    return str(uuid4())


def _log_line(row) -> ProxyLogLine:
    return ProxyLogLine(
        id=row.id,
        level=row.level,
        message=row.message,
        correlation_id=row.correlation_id,
        created_at=row.created_at,
    )


async def _log(
    session: AsyncSession,
    proxy: Proxy,
    correlation_id: str,
    level: str,
    message: str,
) -> None:
    await record_provision_log(
        session=session,
        subject_id=proxy.subject_id,
        domain_id=proxy.domain_id,
        proxy_id=proxy.id,
        correlation_id=correlation_id,
        level=level,
        message=message,
    )


async def get_owned_proxy(session: AsyncSession, *, subject_id: str, domain_id: str) -> Proxy:
    proxy = await proxies_repo.get_proxy_for_domain(session, subject_id, domain_id)
    if proxy is None:
        raise ValidationError("PROXY_NOT_FOUND", "No proxy exists for this domain", not_found=True)
    return proxy


async def get_proxy_by_id(session: AsyncSession, proxy_id: str) -> Proxy:
    # Admin lookup without subject scoping; routes must enforce admin access.
    proxy = await proxies_repo.get_proxy(session, proxy_id)
    if proxy is None:
        raise ValidationError("PROXY_NOT_FOUND", "Proxy not found", not_found=True)
    return proxy


def _require_backend(backend: ProvisioningBackend) -> None:
    settings = get_settings()
    if settings.provision_dry_run:
        return
    if not backend.is_configured():
        raise UnavailableError(
            "BACKEND_NOT_CONFIGURED",
            "Provisioning backend credentials are not configured",
        )


async def _dispatch(payload: ProvisionJobPayload) -> None:
    try:
        await dispatch_provision_job(payload)
    except Exception as exc:  # noqa: BLE001 - a lost dispatch must not leave the record in progress
        logger.exception("provision_dispatch_failed proxy_id=%s", payload.proxy_id)
        await mark_create_failed(payload, f"Provisioning job could not be dispatched: {exc}")


async def create_proxy(
    session: AsyncSession,
    *,
    subject_id: str,
    domain_id: str,
    backend: ProvisioningBackend | None = None,
) -> CreateResult:
    """Admit and start provisioning the proxy for one of the subject's domains.

    Preconditions are checked in order, each with its own error code:
    ``DOMAIN_NOT_VERIFIED``, ``SUBSCRIPTION_REQUIRED``, ``PLAN_LIMIT_REACHED`` and
    ``BACKEND_NOT_CONFIGURED``. A record already in ``CREATE_IN_PROGRESS`` is
    rejected with ``PROXY_IN_PROGRESS`` and never starts a second backend create,
    as is one whose stack delete is still running. A lock on the subscription row
    holds the plan count steady until the new record commits; the unique
    (subject_id, domain_id) constraint and a compare-and-set on the observed
    status close the remaining races between concurrent callers.

    Returns as soon as the record is durably written; the backend work runs on
    the configured execution mode.
    """
    settings = get_settings()
    backend = backend or get_provisioning_backend()
    domain = await accounts_repo.get_domain(session, subject_id, domain_id)
    if domain is None:
        raise ValidationError("DOMAIN_NOT_FOUND", "Domain not found", not_found=True)
    if domain.status != "verified":
        raise AdmissionDenied("DOMAIN_NOT_VERIFIED", "Domain must be verified before provisioning")
    # Lock the subscription row so the count and the insert below are serialised per subject.
    subscription = await accounts_repo.get_active_subscription(session, subject_id, for_update=True)
    if subscription is None:
        raise AdmissionDenied("SUBSCRIPTION_REQUIRED", "An active subscription is required")
    decision = await check_admission(
        session,
        subject_id=subject_id,
        plan=subscription.plan,
        domain_id=domain_id,
    )
    if not decision.allowed:
        increment_counter("proxy_admission_denied_total")
        raise AdmissionDenied(
            decision.reason or "PLAN_LIMIT_REACHED",
            "Plan limit reached for active proxies",
            {"used": decision.used, "limit": decision.limit, "plan": subscription.plan},
        )
    _require_backend(backend)

    existing = await proxies_repo.get_proxy_for_domain(session, subject_id, domain_id)
    if existing is not None and existing.status == ProxyStatus.CREATE_IN_PROGRESS.value:
        increment_counter("proxy_create_conflicts_total")
        raise ConflictError(
            "PROXY_IN_PROGRESS",
            "Provisioning is already in progress for this domain",
            {"proxy_id": existing.id},
        )
    if existing is not None and existing.status == ProxyStatus.CREATE_COMPLETE.value:
        raise ConflictError(
            "PROXY_ALREADY_EXISTS",
            "A proxy already exists for this domain",
            {"proxy_id": existing.id},
        )

    correlation_id = _new_correlation_id()
    if existing is None:
        proxy_id = str(uuid4())
        stack_name = build_stack_name(
            settings.stack_name_prefix,
            subject_id,
            domain.domain_name,
            suffix=uuid4().hex[:6],
        )
        try:
            proxy = await proxies_repo.insert_proxy(
                session,
                id=proxy_id,
                subject_id=subject_id,
                domain_id=domain_id,
                domain_name=domain.domain_name,
                stack_name=stack_name,
                status=ProxyStatus.CREATE_IN_PROGRESS.value,
                disabled=False,
                correlation_id=correlation_id,
            )
        except IntegrityError:
            # A concurrent Create inserted first; it owns this domain's in-flight operation.
            await session.rollback()
            increment_counter("proxy_create_conflicts_total")
            raise ConflictError(
                "PROXY_IN_PROGRESS",
                "Provisioning is already in progress for this domain",
            ) from None
    else:
        if existing.status not in _RECREATABLE_VALUES:
            raise ConflictError(
                "PROXY_IN_PROGRESS",
                f"Proxy is {existing.status}; try again later",
                {"proxy_id": existing.id},
            )
        claimed = await proxies_repo.compare_and_set(
            session,
            existing.id,
            expected_status=existing.status,
            status=ProxyStatus.CREATE_IN_PROGRESS,
            correlation_id=correlation_id,
            endpoint_url=None,
            edge_handle_ref=None,
            last_error=None,
        )
        if not claimed:
            await session.rollback()
            increment_counter("proxy_create_conflicts_total")
            raise ConflictError(
                "PROXY_IN_PROGRESS",
                "Provisioning is already in progress for this domain",
                {"proxy_id": existing.id},
            )
        proxy = existing
        proxy_id = existing.id
        stack_name = existing.stack_name

    with bind_correlation_id(correlation_id):
        await record_provision_log(
            session=session,
            subject_id=subject_id,
            domain_id=domain_id,
            proxy_id=proxy_id,
            correlation_id=correlation_id,
            level="info",
            message=f"Provisioning requested for {domain.domain_name} (stack {stack_name})",
        )
        await session.commit()
        increment_counter("proxy_create_total")
        logger.info("proxy_create_started proxy_id=%s stack=%s", proxy_id, stack_name)

    await _dispatch(
        ProvisionJobPayload(
            proxy_id=proxy_id,
            subject_id=subject_id,
            domain_id=domain_id,
            domain_name=domain.domain_name,
            stack_name=stack_name,
            correlation_id=correlation_id,
        )
    )
    return CreateResult(
        proxy_id=proxy.id,
        correlation_id=correlation_id,
        status=ProxyStatus.CREATE_IN_PROGRESS.value,
    )


async def get_status(
    session: AsyncSession,
    proxy: Proxy,
    *,
    reconcile: bool = True,
    backend: ProvisioningBackend | None = None,
) -> ProxyStatusView:
    """Return the proxy's status with the log lines of its latest operation.

    In-flight proxies are reconciled first with a single backend call; a
    failing backend never fails the read, the persisted state is returned.
    """
    settings = get_settings()
    if reconcile and proxy.status in _RECONCILABLE_VALUES:
        try:
            await reconcile_proxy(session, proxy, backend=backend)
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning("status_reconcile_failed proxy_id=%s", proxy.id, exc_info=exc)
    current = await reload_proxy(session, proxy.id)
    if current is None:
        raise ValidationError("PROXY_NOT_FOUND", "No proxy exists for this domain", not_found=True)
    proxy = current
    correlation_id = (
        await provision_logs_repo.latest_correlation_id(session, proxy.domain_id) or proxy.correlation_id
    )
    rows = await provision_logs_repo.recent_for_correlation(
        session,
        domain_id=proxy.domain_id,
        correlation_id=correlation_id,
        limit=settings.status_log_limit,
    )
    return ProxyStatusView(
        proxy_id=proxy.id,
        domain_id=proxy.domain_id,
        domain_name=proxy.domain_name,
        stack_name=proxy.stack_name,
        status=proxy.status,
        effective_status=effective_status(proxy.status, proxy.disabled),
        disabled=proxy.disabled,
        endpoint_url=proxy.endpoint_url,
        edge_handle_ref=proxy.edge_handle_ref,
        correlation_id=correlation_id,
        last_error=proxy.last_error,
        logs=[_log_line(row) for row in rows],
    )


async def force_reconcile(
    session: AsyncSession,
    proxy: Proxy,
    *,
    backend: ProvisioningBackend | None = None,
) -> str:
    return await reconcile_proxy(session, proxy, backend=backend)


async def disable_proxy(
    session: AsyncSession,
    proxy: Proxy,
    *,
    reason: str | None = None,
) -> LifecycleResult:
    # Flag flip only: the stack stays up and the stack operation's correlation id is kept.
    correlation_id = _new_correlation_id()
    if proxy.disabled:
        return LifecycleResult(
            proxy_id=proxy.id,
            correlation_id=proxy.correlation_id,
            status=proxy.status,
            disabled=True,
            message="Proxy is already disabled",
        )
    await proxies_repo.update_proxy(session, proxy.id, disabled=True)
    message = "Proxy disabled"
    if reason:
        message = f"Proxy disabled: {reason}"
    await _log(session, proxy, correlation_id, "warn", message)
    await session.commit()
    increment_counter("proxy_disable_total")
    return LifecycleResult(
        proxy_id=proxy.id,
        correlation_id=correlation_id,
        status=proxy.status,
        disabled=True,
        message=message,
    )


async def enable_proxy(session: AsyncSession, proxy: Proxy) -> LifecycleResult:
    """Clear ``disabled`` on a completed proxy, restoring its existing endpoint.

    Only a ``CREATE_COMPLETE`` proxy whose owner holds an active subscription can
    be re-enabled; anything else goes through Retry or Reset.
    """
    if not proxy.disabled:
        return LifecycleResult(
            proxy_id=proxy.id,
            correlation_id=proxy.correlation_id,
            status=proxy.status,
            disabled=False,
            message="Proxy is not disabled",
        )
    if proxy.status != ProxyStatus.CREATE_COMPLETE.value:
        raise ValidationError(
            "PROXY_NOT_READY",
            "Only a completed proxy can be re-enabled; retry or reset it instead",
            {"status": proxy.status},
        )
    subscription = await accounts_repo.get_active_subscription(session, proxy.subject_id)
    if subscription is None:
        raise AdmissionDenied("SUBSCRIPTION_REQUIRED", "An active subscription is required")
    correlation_id = _new_correlation_id()
    await proxies_repo.update_proxy(session, proxy.id, disabled=False)
    await _log(session, proxy, correlation_id, "info", f"Proxy re-enabled; endpoint {proxy.endpoint_url} restored")
    await session.commit()
    increment_counter("proxy_enable_total")
    return LifecycleResult(
        proxy_id=proxy.id,
        correlation_id=correlation_id,
        status=proxy.status,
        disabled=False,
        message="Proxy re-enabled",
    )


async def retry_proxy(
    session: AsyncSession,
    proxy: Proxy,
    *,
    backend: ProvisioningBackend | None = None,
) -> CreateResult:
    # Restart a failed creation under the same stack name with a fresh correlation id.
    backend = backend or get_provisioning_backend()
    if proxy.status != ProxyStatus.CREATE_FAILED.value:
        raise ValidationError(
            "PROXY_NOT_RETRYABLE",
            "Only a failed proxy can be retried",
            {"status": proxy.status},
        )
    domain = await accounts_repo.get_domain_by_id(session, proxy.domain_id)
    if domain is None or domain.status != "verified":
        raise AdmissionDenied("DOMAIN_NOT_VERIFIED", "Domain must be verified before provisioning")
    _require_backend(backend)
    correlation_id = _new_correlation_id()
    claimed = await proxies_repo.compare_and_set(
        session,
        proxy.id,
        expected_status=ProxyStatus.CREATE_FAILED,
        status=ProxyStatus.CREATE_IN_PROGRESS,
        correlation_id=correlation_id,
        endpoint_url=None,
        edge_handle_ref=None,
        last_error=None,
    )
    if not claimed:
        await session.rollback()
        raise ConflictError(
            "PROXY_IN_PROGRESS",
            "Another operation changed this proxy; reload and try again",
            {"proxy_id": proxy.id},
        )
    await _log(session, proxy, correlation_id, "info", f"Retrying provisioning (stack {proxy.stack_name})")
    await session.commit()
    increment_counter("proxy_retry_total")
    await _dispatch(
        ProvisionJobPayload(
            proxy_id=proxy.id,
            subject_id=proxy.subject_id,
            domain_id=proxy.domain_id,
            domain_name=proxy.domain_name,
            stack_name=proxy.stack_name,
            correlation_id=correlation_id,
        )
    )
    return CreateResult(
        proxy_id=proxy.id,
        correlation_id=correlation_id,
        status=ProxyStatus.CREATE_IN_PROGRESS.value,
    )


async def reset_proxy(
    session: AsyncSession,
    proxy: Proxy,
    *,
    backend: ProvisioningBackend | None = None,
) -> LifecycleResult:
    """Tear the stack down and return the record to a re-creatable state.

    Outputs are cleared before the backend is called, whatever it answers. A
    backend that refuses because creation is still running pins the record
    back to ``CREATE_IN_PROGRESS`` instead of leaving a stuck delete.
    """
    backend = backend or get_provisioning_backend()
    correlation_id = _new_correlation_id()
    observed = proxy.status
    claimed = await proxies_repo.compare_and_set(
        session,
        proxy.id,
        expected_status=observed,
        status=ProxyStatus.DELETE_IN_PROGRESS,
        correlation_id=correlation_id,
        endpoint_url=None,
        edge_handle_ref=None,
        last_error=None,
    )
    if not claimed:
        await session.rollback()
        raise ConflictError(
            "PROXY_IN_PROGRESS",
            "Another operation changed this proxy; reload and try again",
            {"proxy_id": proxy.id},
        )
    await _log(session, proxy, correlation_id, "info", f"Reset requested; deleting stack {proxy.stack_name}")
    await session.commit()
    increment_counter("proxy_reset_total")

    with bind_correlation_id(correlation_id):
        outcome = await call_with_retry(lambda: backend.delete(proxy.stack_name), operation="delete")
        logger.info("proxy_reset_delete proxy_id=%s outcome=%s", proxy.id, outcome.kind.value)

    target: ProxyStatus | None = None
    last_error: str | None = None
    if outcome.kind == OutcomeKind.OK:
        level, message = "info", "Stack deletion started"
    elif outcome.kind == OutcomeKind.NOT_FOUND:
        target = ProxyStatus.DELETE_COMPLETE
        level, message = "info", "Stack did not exist; nothing to delete"
    elif outcome.kind == OutcomeKind.NOT_CONFIGURED:
        # Nothing was provisioned without credentials, so there is no delete to wait for.
        target = ProxyStatus.DELETE_COMPLETE
        level, message = "warn", "Backend not configured; stack deletion skipped"
    elif outcome.kind == OutcomeKind.CONFLICT_IN_PROGRESS:
        target = ProxyStatus.CREATE_IN_PROGRESS
        level, message = "warn", "Stack is still being created and cannot be deleted yet; status set to CREATE_IN_PROGRESS"
    else:
        target = ProxyStatus.DELETE_FAILED
        last_error = outcome.message
        level, message = "error", f"Stack deletion failed: {outcome.message}"

    if target is not None:
        await proxies_repo.compare_and_set(
            session,
            proxy.id,
            expected_status=ProxyStatus.DELETE_IN_PROGRESS,
            expected_correlation_id=correlation_id,
            status=target,
            last_error=last_error,
        )
    await _log(session, proxy, correlation_id, level, message)
    await session.commit()
    current = await reload_proxy(session, proxy.id)
    return LifecycleResult(
        proxy_id=proxy.id,
        correlation_id=correlation_id,
        status=current.status if current is not None else ProxyStatus.DELETE_IN_PROGRESS.value,
        disabled=current.disabled if current is not None else proxy.disabled,
        message=message,
    )


async def _teardown(
    session: AsyncSession,
    proxy: Proxy,
    *,
    reason: str,
    backend: ProvisioningBackend,
    correlation_id: str,
) -> tuple[OutcomeKind, bool]:
    # Best-effort delete; anything short of an accepted or unnecessary delete becomes an orphan.
    with bind_correlation_id(correlation_id):
        outcome = await call_with_retry(lambda: backend.delete(proxy.stack_name), operation="delete")
    confirmed = outcome.kind in {OutcomeKind.OK, OutcomeKind.NOT_FOUND}
    if not confirmed:
        await register_orphan(
            session,
            stack_name=proxy.stack_name,
            subject_id=proxy.subject_id,
            domain_id=proxy.domain_id,
            reason=f"{reason}: {outcome.kind.value}",
            error=outcome.message,
        )
    return outcome.kind, not confirmed


async def force_reset_proxy(
    session: AsyncSession,
    proxy: Proxy,
    *,
    backend: ProvisioningBackend | None = None,
) -> TeardownResult:
    """Remove the local record unconditionally so the domain can be created again.

    Log lines are kept. A stack whose teardown is not confirmed is registered as
    orphaned for later cleanup under the configured policy.
    """
    backend = backend or get_provisioning_backend()
    correlation_id = _new_correlation_id()
    stack_name = proxy.stack_name
    kind, orphaned = await _teardown(
        session,
        proxy,
        reason="force_reset",
        backend=backend,
        correlation_id=correlation_id,
    )
    await proxies_repo.delete_proxy(session, proxy.id)
    message = f"Force reset: local record removed; stack {stack_name} teardown {kind.value}"
    if orphaned:
        message = f"{message}; registered for cleanup"
    await record_provision_log(
        session=session,
        subject_id=proxy.subject_id,
        domain_id=proxy.domain_id,
        correlation_id=correlation_id,
        level="warn",
        message=message,
    )
    await session.commit()
    increment_counter("proxy_force_reset_total")
    return TeardownResult(
        stack_name=stack_name,
        correlation_id=correlation_id,
        teardown=kind.value,
        orphaned=orphaned,
        message=message,
    )


async def delete_proxy(
    session: AsyncSession,
    proxy: Proxy,
    *,
    backend: ProvisioningBackend | None = None,
) -> TeardownResult:
    # The domain's provisioning history outlives the record.
    backend = backend or get_provisioning_backend()
    correlation_id = _new_correlation_id()
    stack_name = proxy.stack_name
    kind, orphaned = await _teardown(
        session,
        proxy,
        reason="delete",
        backend=backend,
        correlation_id=correlation_id,
    )
    await proxies_repo.delete_proxy(session, proxy.id)
    message = f"Proxy deleted; stack {stack_name} teardown {kind.value}"
    if orphaned:
        message = f"{message}; registered for cleanup"
    await record_provision_log(
        session=session,
        subject_id=proxy.subject_id,
        domain_id=proxy.domain_id,
        correlation_id=correlation_id,
        level="warn" if orphaned else "info",
        message=message,
    )
    await session.commit()
    increment_counter("proxy_delete_total")
    logger.info("proxy_deleted proxy_id=%s orphaned=%s", proxy.id, orphaned, extra={"correlation_id": correlation_id})
    return TeardownResult(
        stack_name=stack_name,
        correlation_id=correlation_id,
        teardown=kind.value,
        orphaned=orphaned,
        message=message,
    )


async def list_stack_events(
    proxy: Proxy,
    *,
    backend: ProvisioningBackend | None = None,
) -> list:
    # Diagnostics only; the lifecycle never branches on events.
    settings = get_settings()
    backend = backend or get_provisioning_backend()
    outcome = await call_with_retry(
        lambda: backend.list_recent_events(proxy.stack_name, settings.stack_events_limit),
        operation="list_recent_events",
    )
    if outcome.ok:
        return list(outcome.value)[: settings.stack_events_limit]
    if outcome.kind == OutcomeKind.NOT_FOUND:
        return []
    if outcome.kind == OutcomeKind.NOT_CONFIGURED:
        raise UnavailableError("BACKEND_NOT_CONFIGURED", "Provisioning backend credentials are not configured")
    raise UnavailableError("BACKEND_UNAVAILABLE", f"Stack events are unavailable: {outcome.message}")
