from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from consentgate.domain.models import Proxy
from consentgate.domain.proxy_status import RECONCILABLE_STATUSES, ProxyStatus, map_backend_status
from consentgate.persistence.repos import proxies as proxies_repo
from consentgate.providers.provisioning.base import (
    BackendOutcome,
    OutcomeKind,
    ProvisioningBackend,
    StackDescription,
)
from consentgate.providers.provisioning.factory import get_provisioning_backend
from consentgate.services.provision_logs import record_provision_log
from consentgate.services.telemetry import increment_counter
from consentgate.services.templates import build_loader_script


logger = logging.getLogger(__name__)


async def reload_proxy(session: AsyncSession, proxy_id: str) -> Proxy | None:
    # Compare-and-set updates bypass the identity map, so re-read the row explicitly.
    return await session.get(Proxy, proxy_id, populate_existing=True)


async def _log(session: AsyncSession, proxy: Proxy, level: str, message: str) -> None:
    await record_provision_log(
        session=session,
        subject_id=proxy.subject_id,
        domain_id=proxy.domain_id,
        proxy_id=proxy.id,
        correlation_id=proxy.correlation_id,
        level=level,
        message=message,
    )


async def _publish_artifact(
    session: AsyncSession,
    proxy: Proxy,
    description: StackDescription,
    backend: ProvisioningBackend,
) -> None:
    # Only the caller that won the completion transition gets here, so this runs once per stack.
    body = build_loader_script(description.endpoint_url or "")
    try:
        outcome = await backend.publish_artifact(description, body)
    except Exception as exc:  # noqa: BLE001 - artifact upload must not undo a completed stack
        outcome = BackendOutcome(OutcomeKind.FATAL, f"{exc.__class__.__name__}: {exc}")
    if outcome.ok:
        await _log(session, proxy, "info", "Serving artifact published")
    elif outcome.kind == OutcomeKind.NOT_CONFIGURED:
        await _log(session, proxy, "warn", "Serving artifact upload skipped: backend not configured")
    else:
        increment_counter("artifact_publish_failed_total")
        await _log(session, proxy, "warn", f"Serving artifact upload failed: {outcome.message}")


async def _complete(
    session: AsyncSession,
    proxy: Proxy,
    description: StackDescription,
    backend: ProvisioningBackend,
) -> str:
    if not description.endpoint_url or not description.edge_handle_ref:
        # Outputs can lag the status flip; leave the record for the next pass.
        logger.info("reconcile_outputs_pending proxy_id=%s", proxy.id)
        return proxy.status
    claimed = await proxies_repo.compare_and_set(
        session,
        proxy.id,
        expected_status=ProxyStatus.CREATE_IN_PROGRESS,
        expected_correlation_id=proxy.correlation_id,
        status=ProxyStatus.CREATE_COMPLETE,
        endpoint_url=description.endpoint_url,
        edge_handle_ref=description.edge_handle_ref,
        last_error=None,
    )
    if not claimed:
        await session.commit()
        current = await reload_proxy(session, proxy.id)
        return current.status if current is not None else proxy.status
    await _log(session, proxy, "info", f"Stack creation complete; endpoint {description.endpoint_url}")
    await session.commit()
    increment_counter("proxy_create_complete_total")
    await _publish_artifact(session, proxy, description, backend)
    await session.commit()
    return ProxyStatus.CREATE_COMPLETE.value


async def _fail_create(session: AsyncSession, proxy: Proxy, reason: str) -> str:
    claimed = await proxies_repo.compare_and_set(
        session,
        proxy.id,
        expected_status=ProxyStatus.CREATE_IN_PROGRESS,
        expected_correlation_id=proxy.correlation_id,
        status=ProxyStatus.CREATE_FAILED,
        endpoint_url=None,
        edge_handle_ref=None,
        last_error=reason,
    )
    if not claimed:
        await session.commit()
        current = await reload_proxy(session, proxy.id)
        return current.status if current is not None else proxy.status
    await _log(session, proxy, "error", f"Stack creation failed: {reason}")
    await session.commit()
    increment_counter("proxy_create_failed_total")
    return ProxyStatus.CREATE_FAILED.value


async def _settle_delete(session: AsyncSession, proxy: Proxy, target: ProxyStatus, message: str) -> str:
    claimed = await proxies_repo.compare_and_set(
        session,
        proxy.id,
        expected_status=ProxyStatus.DELETE_IN_PROGRESS,
        expected_correlation_id=proxy.correlation_id,
        status=target,
        last_error=message if target == ProxyStatus.DELETE_FAILED else None,
    )
    if not claimed:
        await session.commit()
        current = await reload_proxy(session, proxy.id)
        return current.status if current is not None else proxy.status
    level = "error" if target == ProxyStatus.DELETE_FAILED else "info"
    await _log(session, proxy, level, message)
    await session.commit()
    return target.value


async def apply_observation(
    session: AsyncSession,
    proxy: Proxy,
    outcome: BackendOutcome,
    *,
    backend: ProvisioningBackend,
) -> str:
    """Fold one ``describe_status`` outcome into the persisted record.

    Every transition is a compare-and-set on (status, correlation id), so a
    repeated observation of the same backend state is a no-op and a newer
    lifecycle operation is never overwritten. Returns the resulting status.
    """
    status = proxy.status
    if status == ProxyStatus.CREATE_IN_PROGRESS.value:
        if not outcome.ok:
            # Backend errors and missing stacks leave an in-flight create untouched.
            return status
        description: StackDescription = outcome.value
        mapped = map_backend_status(description.raw_status)
        if mapped == ProxyStatus.CREATE_COMPLETE:
            return await _complete(session, proxy, description, backend)
        if mapped == ProxyStatus.CREATE_FAILED:
            reason = description.raw_status
            if description.status_reason:
                reason = f"{reason} ({description.status_reason})"
            return await _fail_create(session, proxy, reason)
        if mapped in {ProxyStatus.DELETE_COMPLETE, ProxyStatus.DELETE_FAILED}:
            return await _fail_create(session, proxy, f"stack was deleted before creation completed ({description.raw_status})")
        return status

    if status == ProxyStatus.DELETE_IN_PROGRESS.value:
        if outcome.kind == OutcomeKind.NOT_FOUND:
            return await _settle_delete(session, proxy, ProxyStatus.DELETE_COMPLETE, "Stack deleted")
        if not outcome.ok:
            return status
        mapped = map_backend_status(outcome.value.raw_status)
        if mapped == ProxyStatus.DELETE_COMPLETE:
            return await _settle_delete(session, proxy, ProxyStatus.DELETE_COMPLETE, "Stack deleted")
        if mapped == ProxyStatus.DELETE_FAILED:
            reason = outcome.value.status_reason or outcome.value.raw_status
            return await _settle_delete(session, proxy, ProxyStatus.DELETE_FAILED, f"Stack deletion failed: {reason}")
        return status

    return status


async def reconcile_proxy(
    session: AsyncSession,
    proxy: Proxy,
    *,
    backend: ProvisioningBackend | None = None,
) -> str:
    """Refresh an in-flight proxy against the backend with one describe call.

    Idempotent and non-raising on backend failure: the persisted status is
    returned unchanged when the backend cannot answer.
    """
    if proxy.status not in {status.value for status in RECONCILABLE_STATUSES}:
        return proxy.status
    backend = backend or get_provisioning_backend()
    try:
        outcome = await backend.describe_status(proxy.stack_name)
    except Exception as exc:  # noqa: BLE001 - status reads degrade to the last persisted state
        logger.warning("reconcile_describe_failed proxy_id=%s", proxy.id, exc_info=exc)
        return proxy.status
    if outcome.kind not in {OutcomeKind.OK, OutcomeKind.NOT_FOUND}:
        logger.info(
            "reconcile_backend_unavailable proxy_id=%s kind=%s",
            proxy.id,
            outcome.kind.value,
        )
    return await apply_observation(session, proxy, outcome, backend=backend)
