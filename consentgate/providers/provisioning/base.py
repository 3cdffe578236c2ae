from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol


class OutcomeKind(str, Enum):
    OK = "ok"
    NOT_CONFIGURED = "not_configured"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    CONFLICT_IN_PROGRESS = "conflict_in_progress"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class BackendOutcome:
    # Explicit result of one control-plane call; call sites branch on kind instead of catching.
    kind: OutcomeKind
    message: str = ""
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.OK

    @classmethod
    def success(cls, value: Any = None, message: str = "") -> "BackendOutcome":
        return cls(kind=OutcomeKind.OK, message=message, value=value)


@dataclass(frozen=True)
class StackDescription:
    # Raw backend status plus outputs; endpoint/handle are only meaningful once complete.
    raw_status: str
    endpoint_url: str | None = None
    edge_handle_ref: str | None = None
    artifact_bucket: str | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    status_reason: str | None = None


@dataclass(frozen=True)
class StackEvent:
    timestamp: datetime | None
    logical_resource_id: str | None
    resource_type: str | None
    resource_status: str | None
    status_reason: str | None


class ProvisioningBackend(Protocol):
    def is_configured(self) -> bool:
        ...

    async def start_create(self, stack_name: str, template: dict[str, Any], *, tags: dict[str, str]) -> BackendOutcome:
        ...

    async def describe_status(self, stack_name: str) -> BackendOutcome:
        ...

    async def delete(self, stack_name: str) -> BackendOutcome:
        ...

    async def list_recent_events(self, stack_name: str, limit: int) -> BackendOutcome:
        ...

    async def publish_artifact(self, description: StackDescription, body: str) -> BackendOutcome:
        ...
