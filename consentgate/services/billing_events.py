from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from consentgate.domain.models import Subscription
from consentgate.persistence.repos import accounts as accounts_repo
from consentgate.persistence.repos import proxies as proxies_repo
from consentgate.services.provision_logs import record_provision_log
from consentgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Subscription states that revoke service; every live proxy of the subject is disabled.
DISABLING_STATUSES = frozenset({"canceled", "past_due", "unpaid", "incomplete_expired"})


@dataclass(frozen=True)
class BillingReaction:
    subject_id: str
    status: str
    correlation_id: str
    disabled_proxy_ids: list[str]


def build_billing_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signatures for billing event payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_billing_signature(secret: str, payload: bytes, signature: str | None) -> bool:
    if not signature:
        return False
    expected = build_billing_signature(secret, payload)
    return hmac.compare_digest(expected, signature.strip().lower())


async def _upsert_subscription(
    session: AsyncSession,
    *,
    subject_id: str,
    status: str,
    plan: str | None,
    external_customer_id: str | None,
    external_subscription_id: str | None,
    current_period_end: datetime | None,
) -> Subscription:
    now = datetime.now(timezone.utc)
    subscription = await accounts_repo.get_subscription(session, subject_id)
    if subscription is None:
        subscription = Subscription(
            id=str(uuid4()),
            subject_id=subject_id,
            plan=plan or "starter",
            status=status,
            created_at=now,
            updated_at=now,
        )
        session.add(subscription)
    subscription.status = status
    if plan:
        subscription.plan = plan
    if external_customer_id:
        subscription.external_customer_id = external_customer_id
    if external_subscription_id:
        subscription.external_subscription_id = external_subscription_id
    if current_period_end is not None:
        subscription.current_period_end = current_period_end
    subscription.updated_at = now
    return subscription


async def apply_subscription_status(
    session: AsyncSession,
    *,
    subject_id: str,
    status: str,
    plan: str | None = None,
    external_customer_id: str | None = None,
    external_subscription_id: str | None = None,
    current_period_end: datetime | None = None,
) -> BillingReaction:
    """React to ``SubscriptionStatusChanged(subject_id, status)``.

    Records the new subscription state, and for revoking states disables every
    proxy the subject still has enabled. All log lines of one event share a
    single correlation id. Stacks are left in place; disabling never deletes.
    """
    normalized = status.strip().lower()
    correlation_id = str(uuid4())
    await _upsert_subscription(
        session,
        subject_id=subject_id,
        status=normalized,
        plan=plan,
        external_customer_id=external_customer_id,
        external_subscription_id=external_subscription_id,
        current_period_end=current_period_end,
    )
    disabled_ids: list[str] = []
    if normalized in DISABLING_STATUSES:
        proxies = await proxies_repo.list_proxies_for_subject(session, subject_id, disabled=False)
        for proxy in proxies:
            await proxies_repo.update_proxy(session, proxy.id, disabled=True)
            await record_provision_log(
                session=session,
                subject_id=subject_id,
                domain_id=proxy.domain_id,
                proxy_id=proxy.id,
                correlation_id=correlation_id,
                level="warn",
                message=f"Proxy for {proxy.domain_name} disabled: subscription {normalized}",
            )
            disabled_ids.append(proxy.id)
    await session.commit()
    if disabled_ids:
        increment_counter("proxy_billing_disabled_total", len(disabled_ids))
    logger.info(
        "billing_status_applied subject_id=%s status=%s disabled=%s",
        subject_id,
        normalized,
        len(disabled_ids),
        extra={"correlation_id": correlation_id},
    )
    return BillingReaction(
        subject_id=subject_id,
        status=normalized,
        correlation_id=correlation_id,
        disabled_proxy_ids=disabled_ids,
    )
