from __future__ import annotations

import httpx
import pytest

from consentgate.core.errors import AdmissionDenied, ConflictError, UnavailableError, ValidationError
from consentgate.persistence.db import SessionLocal
from consentgate.persistence.repos import provision_logs as provision_logs_repo
from consentgate.providers.provisioning.base import OutcomeKind
from consentgate.providers.provisioning.factory import override_provisioning_backend
from consentgate.providers.provisioning.fake import FakeProvisioningBackend
from consentgate.services import proxy_lifecycle
from consentgate.services.billing_events import apply_subscription_status
from consentgate.services.endpoint_check import verify_endpoint
from consentgate.tests.utils.lifecycle import complete, create_for, load_proxy, logs_for_domain, orphans, status_of
from consentgate.tests.utils.seed import seed_account


async def _run(operation, subject_id: str, domain_id: str, **kwargs):
    async with SessionLocal() as session:
        proxy = await proxy_lifecycle.get_owned_proxy(session, subject_id=subject_id, domain_id=domain_id)
        return await operation(session, proxy, **kwargs)


@pytest.mark.asyncio
async def test_disable_keeps_stack_and_correlation(fake_backend) -> None:
    [domain] = await seed_account("user-1")
    created = await create_for("user-1", domain.id)
    await complete(fake_backend, "user-1", domain.id)

    result = await _run(proxy_lifecycle.disable_proxy, "user-1", domain.id, reason="chargeback")
    assert result.disabled is True
    assert result.message == "Proxy disabled: chargeback"
    assert result.correlation_id != created.correlation_id

    proxy = await load_proxy("user-1", domain.id)
    assert proxy.disabled is True
    assert proxy.status == "CREATE_COMPLETE"
    assert proxy.correlation_id == created.correlation_id
    assert proxy.endpoint_url == "https://x.test"
    assert fake_backend.delete_calls == 0

    view = await status_of("user-1", domain.id)
    assert view.effective_status == "DISABLED"
    assert view.correlation_id == result.correlation_id
    assert [line.message for line in view.logs] == ["Proxy disabled: chargeback"]

    again = await _run(proxy_lifecycle.disable_proxy, "user-1", domain.id)
    assert again.message == "Proxy is already disabled"


@pytest.mark.asyncio
async def test_enable_restores_the_existing_endpoint(fake_backend) -> None:
    [domain] = await seed_account("user-1")
    await create_for("user-1", domain.id)
    await complete(fake_backend, "user-1", domain.id)
    await _run(proxy_lifecycle.disable_proxy, "user-1", domain.id)

    result = await _run(proxy_lifecycle.enable_proxy, "user-1", domain.id)
    assert result.disabled is False
    view = await status_of("user-1", domain.id)
    assert view.effective_status == "CREATE_COMPLETE"
    assert view.endpoint_url == "https://x.test"
    assert fake_backend.create_calls == 1

    noop = await _run(proxy_lifecycle.enable_proxy, "user-1", domain.id)
    assert noop.message == "Proxy is not disabled"


@pytest.mark.asyncio
async def test_enable_requires_completed_proxy_and_active_subscription(fake_backend) -> None:
    [domain] = await seed_account("user-1")
    await create_for("user-1", domain.id)
    await _run(proxy_lifecycle.disable_proxy, "user-1", domain.id)
    with pytest.raises(ValidationError) as not_ready:
        await _run(proxy_lifecycle.enable_proxy, "user-1", domain.id)
    assert not_ready.value.code == "PROXY_NOT_READY"

    await complete(fake_backend, "user-1", domain.id)
    async with SessionLocal() as session:
        await apply_subscription_status(session, subject_id="user-1", status="canceled")
    with pytest.raises(AdmissionDenied) as unsubscribed:
        await _run(proxy_lifecycle.enable_proxy, "user-1", domain.id)
    assert unsubscribed.value.code == "SUBSCRIPTION_REQUIRED"


@pytest.mark.asyncio
async def test_billing_cancellation_disables_every_proxy_under_one_correlation(fake_backend) -> None:
    domains = await seed_account("user-b", plan="pro", domains=3)
    for domain in domains:
        await create_for("user-b", domain.id)

    async with SessionLocal() as session:
        reaction = await apply_subscription_status(session, subject_id="user-b", status="canceled")
    assert len(reaction.disabled_proxy_ids) == 3

    async with SessionLocal() as session:
        rows = await provision_logs_repo.list_for_correlation(session, reaction.correlation_id)
    assert len(rows) == 3
    assert {row.domain_id for row in rows} == {domain.id for domain in domains}
    assert all(row.level == "warn" for row in rows)
    for domain in domains:
        proxy = await load_proxy("user-b", domain.id)
        assert proxy.disabled is True
    assert fake_backend.delete_calls == 0

    async with SessionLocal() as session:
        reactivated = await apply_subscription_status(session, subject_id="user-b", status="active")
    assert reactivated.disabled_proxy_ids == []
    proxy = await load_proxy("user-b", domains[0].id)
    assert proxy.disabled is True


@pytest.mark.asyncio
async def test_retry_restarts_a_failed_create(fake_backend) -> None:
    [domain] = await seed_account("user-1")
    fake_backend.inject("start_create", OutcomeKind.FATAL, "InsufficientCapabilities")
    first = await create_for("user-1", domain.id)
    failed = await load_proxy("user-1", domain.id)
    assert failed.status == "CREATE_FAILED"

    retried = await _run(proxy_lifecycle.retry_proxy, "user-1", domain.id)
    assert retried.status == "CREATE_IN_PROGRESS"
    assert retried.correlation_id != first.correlation_id
    proxy = await load_proxy("user-1", domain.id)
    assert proxy.status == "CREATE_IN_PROGRESS"
    assert proxy.stack_name == failed.stack_name
    assert proxy.last_error is None
    assert fake_backend.create_calls == 2

    with pytest.raises(ValidationError) as excinfo:
        await _run(proxy_lifecycle.retry_proxy, "user-1", domain.id)
    assert excinfo.value.code == "PROXY_NOT_RETRYABLE"


@pytest.mark.asyncio
async def test_reset_clears_outputs_and_allows_recreate(fake_backend) -> None:
    [domain] = await seed_account("user-1")
    await create_for("user-1", domain.id)
    await complete(fake_backend, "user-1", domain.id)
    stack_name = (await load_proxy("user-1", domain.id)).stack_name

    result = await _run(proxy_lifecycle.reset_proxy, "user-1", domain.id)
    assert result.status == "DELETE_IN_PROGRESS"
    proxy = await load_proxy("user-1", domain.id)
    assert proxy.endpoint_url is None
    assert proxy.edge_handle_ref is None
    assert fake_backend.delete_calls == 1

    view = await status_of("user-1", domain.id)
    assert view.status == "DELETE_COMPLETE"

    recreated = await create_for("user-1", domain.id)
    assert recreated.status == "CREATE_IN_PROGRESS"
    proxy = await load_proxy("user-1", domain.id)
    assert proxy.stack_name == stack_name
    assert fake_backend.create_calls == 2


@pytest.mark.asyncio
async def test_create_waits_for_a_running_reset_delete() -> None:
    backend = FakeProvisioningBackend(complete_deletes=False)
    override_provisioning_backend(backend)
    [domain] = await seed_account("user-1")
    await create_for("user-1", domain.id)
    await complete(backend, "user-1", domain.id)
    proxy = await load_proxy("user-1", domain.id)

    reset = await _run(proxy_lifecycle.reset_proxy, "user-1", domain.id)
    assert reset.status == "DELETE_IN_PROGRESS"
    with pytest.raises(ConflictError) as excinfo:
        await create_for("user-1", domain.id)
    assert excinfo.value.code == "PROXY_IN_PROGRESS"
    assert excinfo.value.details["proxy_id"] == proxy.id
    assert backend.create_calls == 1
    assert (await load_proxy("user-1", domain.id)).correlation_id == reset.correlation_id

    # The stack finishes tearing down; the next status read settles the delete.
    del backend.stacks[proxy.stack_name]
    view = await status_of("user-1", domain.id)
    assert view.status == "DELETE_COMPLETE"
    recreated = await create_for("user-1", domain.id)
    assert recreated.status == "CREATE_IN_PROGRESS"
    assert backend.create_calls == 2


@pytest.mark.asyncio
async def test_reset_without_backend_credentials_settles_immediately(fake_backend) -> None:
    [domain] = await seed_account("user-1")
    await create_for("user-1", domain.id)
    await complete(fake_backend, "user-1", domain.id)
    fake_backend.configured = False

    result = await _run(proxy_lifecycle.reset_proxy, "user-1", domain.id)
    assert result.status == "DELETE_COMPLETE"
    assert result.message == "Backend not configured; stack deletion skipped"
    proxy = await load_proxy("user-1", domain.id)
    assert proxy.endpoint_url is None
    assert proxy.edge_handle_ref is None


@pytest.mark.asyncio
async def test_reset_while_stack_is_creating_pins_create_in_progress() -> None:
    backend = FakeProvisioningBackend(block_delete_while_creating=True)
    override_provisioning_backend(backend)
    [domain] = await seed_account("user-1")
    await create_for("user-1", domain.id)

    result = await _run(proxy_lifecycle.reset_proxy, "user-1", domain.id)
    assert result.status == "CREATE_IN_PROGRESS"
    assert "cannot be deleted yet" in result.message
    proxy = await load_proxy("user-1", domain.id)
    assert proxy.status == "CREATE_IN_PROGRESS"
    assert proxy.correlation_id == result.correlation_id


@pytest.mark.asyncio
async def test_reset_with_failed_delete_still_clears_outputs(fake_backend) -> None:
    [domain] = await seed_account("user-1")
    await create_for("user-1", domain.id)
    await complete(fake_backend, "user-1", domain.id)
    fake_backend.inject("delete", OutcomeKind.FATAL, "AccessDenied")

    result = await _run(proxy_lifecycle.reset_proxy, "user-1", domain.id)
    assert result.status == "DELETE_FAILED"
    proxy = await load_proxy("user-1", domain.id)
    assert proxy.endpoint_url is None
    assert proxy.edge_handle_ref is None
    assert proxy.last_error == "AccessDenied"


@pytest.mark.asyncio
async def test_reset_of_missing_stack_completes_delete(fake_backend) -> None:
    [domain] = await seed_account("user-1")
    await create_for("user-1", domain.id)
    fake_backend.stacks.clear()
    result = await _run(proxy_lifecycle.reset_proxy, "user-1", domain.id)
    assert result.status == "DELETE_COMPLETE"


@pytest.mark.asyncio
async def test_stale_reset_is_rejected(fake_backend) -> None:
    [domain] = await seed_account("user-1")
    await create_for("user-1", domain.id)
    async with SessionLocal() as session:
        stale = await proxy_lifecycle.get_owned_proxy(session, subject_id="user-1", domain_id=domain.id)
        await _run(proxy_lifecycle.reset_proxy, "user-1", domain.id)
        with pytest.raises(ConflictError):
            await proxy_lifecycle.reset_proxy(session, stale)


@pytest.mark.asyncio
async def test_force_reset_with_delete_error_registers_orphan_and_allows_recreate(fake_backend) -> None:
    [domain] = await seed_account("user-1")
    await create_for("user-1", domain.id)
    old_stack = (await load_proxy("user-1", domain.id)).stack_name
    fake_backend.inject("delete", OutcomeKind.FATAL, "AccessDenied")

    result = await _run(proxy_lifecycle.force_reset_proxy, "user-1", domain.id)
    assert result.orphaned is True
    assert result.teardown == "fatal"
    with pytest.raises(ValidationError):
        await load_proxy("user-1", domain.id)

    [orphan] = await orphans()
    assert orphan.stack_name == old_stack
    assert orphan.status == "pending"
    assert orphan.cleanup_after is None
    logs = await logs_for_domain(domain.id)
    assert logs[-1].message.startswith("Force reset")
    assert logs[-1].proxy_id is None

    recreated = await create_for("user-1", domain.id)
    assert recreated.status == "CREATE_IN_PROGRESS"
    proxy = await load_proxy("user-1", domain.id)
    assert proxy.stack_name != old_stack


@pytest.mark.asyncio
async def test_delete_removes_record_but_keeps_history(fake_backend) -> None:
    [domain] = await seed_account("user-1")
    created = await create_for("user-1", domain.id)
    result = await _run(proxy_lifecycle.delete_proxy, "user-1", domain.id)
    assert result.orphaned is False
    assert result.teardown == "ok"
    assert fake_backend.stacks == {}
    assert await orphans() == []
    with pytest.raises(ValidationError):
        await load_proxy("user-1", domain.id)

    logs = await logs_for_domain(domain.id)
    assert any(row.correlation_id == created.correlation_id for row in logs)
    assert logs[-1].message.startswith("Proxy deleted")
    assert logs[-1].correlation_id == result.correlation_id
    assert logs[-1].proxy_id is None


@pytest.mark.asyncio
async def test_stack_events_are_newest_first(fake_backend) -> None:
    [domain] = await seed_account("user-1")
    await create_for("user-1", domain.id)
    proxy = await load_proxy("user-1", domain.id)
    fake_backend.set_status(proxy.stack_name, "CREATE_COMPLETE", endpoint_url="https://x.test", edge_handle_ref="h-1")

    events = await proxy_lifecycle.list_stack_events(proxy)
    assert [event.resource_status for event in events] == ["CREATE_COMPLETE", "CREATE_IN_PROGRESS"]

    fake_backend.stacks.clear()
    assert await proxy_lifecycle.list_stack_events(proxy) == []

    fake_backend.configured = False
    with pytest.raises(UnavailableError) as excinfo:
        await proxy_lifecycle.list_stack_events(proxy)
    assert excinfo.value.code == "BACKEND_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_verify_endpoint_reports_reachability(fake_backend) -> None:
    [domain] = await seed_account("user-1")
    await create_for("user-1", domain.id)
    pending = await load_proxy("user-1", domain.id)
    with pytest.raises(ValidationError) as excinfo:
        await verify_endpoint(pending)
    assert excinfo.value.code == "PROXY_NOT_READY"

    await complete(fake_backend, "user-1", domain.id)
    proxy = await load_proxy("user-1", domain.id)
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    ok = await verify_endpoint(proxy, transport=httpx.MockTransport(handler))
    assert ok.ok is True
    assert ok.status_code == 200
    assert seen[0].method == "HEAD"
    assert seen[0].url.host == "x.test"

    down = await verify_endpoint(proxy, transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    assert down.ok is False
    assert down.error == "HTTP 503"

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    unreachable = await verify_endpoint(proxy, transport=httpx.MockTransport(refuse))
    assert unreachable.ok is False
    assert unreachable.status_code is None
    assert "ConnectError" in unreachable.error
