from __future__ import annotations

from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque

from consentgate.providers.provisioning.base import (
    BackendOutcome,
    OutcomeKind,
    StackDescription,
    StackEvent,
)


@dataclass
class FakeStack:
    raw_status: str
    template: dict[str, Any]
    tags: dict[str, str]
    endpoint_url: str | None = None
    edge_handle_ref: str | None = None
    artifact_bucket: str | None = None
    events: list[StackEvent] = field(default_factory=list)


class FakeProvisioningBackend:
    """In-memory control plane for local development and tests.

    Statuses and outputs are scripted per stack with ``set_status``; failures are
    injected per operation with ``inject`` (returned outcome) or ``inject_error``
    (raised exception). Every call is counted in ``calls``.
    """

    def __init__(
        self,
        *,
        configured: bool = True,
        create_status: str = "CREATE_IN_PROGRESS",
        complete_deletes: bool = True,
        block_delete_while_creating: bool = False,
    ) -> None:
        self.configured = configured
        self.create_status = create_status
        # Removing stacks on delete lets the same stack name be created again immediately.
        self.complete_deletes = complete_deletes
        self.block_delete_while_creating = block_delete_while_creating
        self.stacks: dict[str, FakeStack] = {}
        self.calls: Counter[str] = Counter()
        self.published: list[tuple[str | None, str]] = []
        self._injected: dict[str, Deque[BackendOutcome | Exception]] = defaultdict(deque)

    @property
    def create_calls(self) -> int:
        return self.calls["start_create"]

    @property
    def delete_calls(self) -> int:
        return self.calls["delete"]

    def is_configured(self) -> bool:
        return self.configured

    def set_status(
        self,
        stack_name: str,
        raw_status: str,
        *,
        endpoint_url: str | None = None,
        edge_handle_ref: str | None = None,
        artifact_bucket: str | None = "fake-artifacts",
    ) -> None:
        stack = self.stacks.get(stack_name)
        if stack is None:
            stack = FakeStack(raw_status=raw_status, template={}, tags={})
            self.stacks[stack_name] = stack
        stack.raw_status = raw_status
        stack.endpoint_url = endpoint_url
        stack.edge_handle_ref = edge_handle_ref
        stack.artifact_bucket = artifact_bucket
        self._add_event(stack, "AWS::CloudFormation::Stack", raw_status)

    def inject(self, operation: str, kind: OutcomeKind, message: str = "", *, times: int = 1) -> None:
        for _ in range(times):
            self._injected[operation].append(BackendOutcome(kind, message or f"injected {kind.value}"))

    def inject_error(self, operation: str, exc: Exception, *, times: int = 1) -> None:
        for _ in range(times):
            self._injected[operation].append(exc)

    def _next_injected(self, operation: str) -> BackendOutcome | None:
        queue = self._injected.get(operation)
        if not queue:
            return None
        item = queue.popleft()
        if isinstance(item, Exception):
            raise item
        return item

    def _enter(self, operation: str) -> BackendOutcome | None:
        self.calls[operation] += 1
        if not self.configured:
            return BackendOutcome(OutcomeKind.NOT_CONFIGURED, "Fake backend is not configured")
        return self._next_injected(operation)

    def _add_event(self, stack: FakeStack, resource_type: str, status: str) -> None:
        stack.events.append(
            StackEvent(
                timestamp=datetime.now(timezone.utc),
                logical_resource_id="Stack",
                resource_type=resource_type,
                resource_status=status,
                status_reason=None,
            )
        )

    async def start_create(
        self,
        stack_name: str,
        template: dict[str, Any],
        *,
        tags: dict[str, str],
    ) -> BackendOutcome:
        early = self._enter("start_create")
        if early is not None:
            return early
        if stack_name in self.stacks:
            return BackendOutcome(OutcomeKind.ALREADY_EXISTS, f"Stack [{stack_name}] already exists")
        stack = FakeStack(raw_status=self.create_status, template=template, tags=dict(tags))
        self.stacks[stack_name] = stack
        self._add_event(stack, "AWS::CloudFormation::Stack", self.create_status)
        return BackendOutcome.success(f"fake-stack-id/{stack_name}")

    async def describe_status(self, stack_name: str) -> BackendOutcome:
        early = self._enter("describe_status")
        if early is not None:
            return early
        stack = self.stacks.get(stack_name)
        if stack is None:
            return BackendOutcome(OutcomeKind.NOT_FOUND, f"Stack with id {stack_name} does not exist")
        outputs = {
            key: value
            for key, value in {
                "EndpointUrl": stack.endpoint_url,
                "EdgeFunctionVersionArn": stack.edge_handle_ref,
                "ArtifactBucketName": stack.artifact_bucket,
            }.items()
            if value
        }
        return BackendOutcome.success(
            StackDescription(
                raw_status=stack.raw_status,
                endpoint_url=stack.endpoint_url,
                edge_handle_ref=stack.edge_handle_ref,
                artifact_bucket=stack.artifact_bucket,
                outputs=outputs,
            )
        )

    async def delete(self, stack_name: str) -> BackendOutcome:
        early = self._enter("delete")
        if early is not None:
            return early
        stack = self.stacks.get(stack_name)
        if stack is None:
            return BackendOutcome(OutcomeKind.NOT_FOUND, f"Stack with id {stack_name} does not exist")
        if self.block_delete_while_creating and stack.raw_status == "CREATE_IN_PROGRESS":
            return BackendOutcome(
                OutcomeKind.CONFLICT_IN_PROGRESS,
                f"Stack [{stack_name}] cannot be deleted while in status CREATE_IN_PROGRESS",
            )
        if self.complete_deletes:
            del self.stacks[stack_name]
        else:
            stack.raw_status = "DELETE_IN_PROGRESS"
            self._add_event(stack, "AWS::CloudFormation::Stack", "DELETE_IN_PROGRESS")
        return BackendOutcome.success()

    async def list_recent_events(self, stack_name: str, limit: int) -> BackendOutcome:
        early = self._enter("list_recent_events")
        if early is not None:
            return early
        stack = self.stacks.get(stack_name)
        if stack is None:
            return BackendOutcome(OutcomeKind.NOT_FOUND, f"Stack with id {stack_name} does not exist")
        return BackendOutcome.success(list(reversed(stack.events))[: max(limit, 0)])

    async def publish_artifact(self, description: StackDescription, body: str) -> BackendOutcome:
        early = self._enter("publish_artifact")
        if early is not None:
            return early
        self.published.append((description.artifact_bucket, body))
        return BackendOutcome.success()
