from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from consentgate.core.config import get_settings
from consentgate.providers.provisioning.base import (
    BackendOutcome,
    OutcomeKind,
    StackDescription,
    StackEvent,
)
from consentgate.services.telemetry import record_external_call
from consentgate.services.templates import (
    ARTIFACT_KEY,
    OUTPUT_ARTIFACT_BUCKET,
    OUTPUT_EDGE_HANDLE,
    OUTPUT_ENDPOINT_URL,
    render_template_body,
)


logger = logging.getLogger(__name__)

_THROTTLING_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "InternalFailure",
}
_TRANSIENT_BOTO_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)
# Outcomes that are expected answers from the control plane, not failed calls.
_ANSWERED_KINDS = {OutcomeKind.OK, OutcomeKind.ALREADY_EXISTS, OutcomeKind.NOT_FOUND}


def _event_sort_key(event: StackEvent) -> float:
    return event.timestamp.timestamp() if event.timestamp is not None else 0.0


def classify_exception(exc: Exception) -> BackendOutcome:
    """Translate a botocore failure into an explicit outcome.

    ``ValidationError`` is overloaded by CloudFormation: it carries both the
    "stack does not exist" answer and the "cannot delete while in progress"
    refusal, so the message text decides which one applies.
    """
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return BackendOutcome(OutcomeKind.NOT_CONFIGURED, "AWS credentials are not configured")
    if isinstance(exc, _TRANSIENT_BOTO_ERRORS):
        return BackendOutcome(OutcomeKind.TRANSIENT, str(exc))
    if isinstance(exc, ClientError):
        response = exc.response if isinstance(exc.response, dict) else {}
        error = response.get("Error", {})
        code = str(error.get("Code") or "")
        message = str(error.get("Message") or exc)
        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code == "AlreadyExistsException":
            return BackendOutcome(OutcomeKind.ALREADY_EXISTS, message)
        if code == "ValidationError":
            lowered = message.lower()
            if "does not exist" in lowered:
                return BackendOutcome(OutcomeKind.NOT_FOUND, message)
            if "in_progress" in lowered or "cannot be deleted" in lowered:
                return BackendOutcome(OutcomeKind.CONFLICT_IN_PROGRESS, message)
        if code in _THROTTLING_CODES or (isinstance(status, int) and status >= 500):
            return BackendOutcome(OutcomeKind.TRANSIENT, message)
        return BackendOutcome(OutcomeKind.FATAL, f"{code or 'ClientError'}: {message}")
    if isinstance(exc, BotoCoreError):
        return BackendOutcome(OutcomeKind.FATAL, str(exc))
    raise exc


class CloudFormationBackend:
    def __init__(
        self,
        *,
        region: str | None = None,
        client: Any | None = None,
        s3_client: Any | None = None,
    ) -> None:
        settings = get_settings()
        self._region = region or settings.aws_region
        self._access_key_id = settings.aws_access_key_id
        self._secret_access_key = settings.aws_secret_access_key
        self._session_token = settings.aws_session_token
        self._client = client
        self._s3_client = s3_client

    def is_configured(self) -> bool:
        # Injected clients carry their own credentials.
        if self._client is not None:
            return True
        return bool(self._access_key_id and self._secret_access_key)

    def _client_kwargs(self) -> dict[str, Any]:
        return {
            "region_name": self._region,
            "aws_access_key_id": self._access_key_id,
            "aws_secret_access_key": self._secret_access_key,
            "aws_session_token": self._session_token,
        }

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("cloudformation", **self._client_kwargs())
        return self._client

    def _get_s3_client(self) -> Any:
        if self._s3_client is None:
            self._s3_client = boto3.client("s3", **self._client_kwargs())
        return self._s3_client

    async def _invoke(self, operation: str, method: Callable[..., Any], **request: Any) -> BackendOutcome:
        # Run blocking boto3 calls off the event loop and classify any failure.
        start = time.monotonic()
        try:
            response = await asyncio.to_thread(method, **request)
        except (BotoCoreError, ClientError) as exc:
            outcome = classify_exception(exc)
            record_external_call(
                integration=f"cloudformation.{operation}",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=outcome.kind in _ANSWERED_KINDS,
            )
            logger.info(
                "backend_call_outcome operation=%s kind=%s message=%s",
                operation,
                outcome.kind.value,
                outcome.message,
            )
            return outcome
        record_external_call(
            integration=f"cloudformation.{operation}",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        return BackendOutcome.success(response)

    async def start_create(
        self,
        stack_name: str,
        template: dict[str, Any],
        *,
        tags: dict[str, str],
    ) -> BackendOutcome:
        if not self.is_configured():
            return BackendOutcome(OutcomeKind.NOT_CONFIGURED, "AWS credentials are not configured")
        request = {
            "StackName": stack_name,
            "TemplateBody": render_template_body(template),
            # Edge functions need an execution role, so IAM capabilities are required.
            "Capabilities": ["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"],
            "OnFailure": "ROLLBACK",
            "Tags": [{"Key": key, "Value": value} for key, value in sorted(tags.items())],
        }
        outcome = await self._invoke("create_stack", self._get_client().create_stack, **request)
        if outcome.ok:
            stack_id = outcome.value.get("StackId") if isinstance(outcome.value, dict) else None
            return BackendOutcome.success(stack_id)
        return outcome

    async def describe_status(self, stack_name: str) -> BackendOutcome:
        if not self.is_configured():
            return BackendOutcome(OutcomeKind.NOT_CONFIGURED, "AWS credentials are not configured")
        outcome = await self._invoke("describe_stacks", self._get_client().describe_stacks, StackName=stack_name)
        if not outcome.ok:
            return outcome
        stacks = outcome.value.get("Stacks", []) if isinstance(outcome.value, dict) else []
        if not stacks:
            return BackendOutcome(OutcomeKind.NOT_FOUND, f"Stack {stack_name} does not exist")
        stack = stacks[0]
        outputs = {
            item["OutputKey"]: item["OutputValue"]
            for item in stack.get("Outputs", []) or []
            if item.get("OutputKey") and item.get("OutputValue")
        }
        return BackendOutcome.success(
            StackDescription(
                raw_status=str(stack.get("StackStatus") or ""),
                endpoint_url=outputs.get(OUTPUT_ENDPOINT_URL),
                edge_handle_ref=outputs.get(OUTPUT_EDGE_HANDLE),
                artifact_bucket=outputs.get(OUTPUT_ARTIFACT_BUCKET),
                outputs=outputs,
                status_reason=stack.get("StackStatusReason"),
            )
        )

    async def delete(self, stack_name: str) -> BackendOutcome:
        # Fire the delete and return; completion is observed through describe_status.
        if not self.is_configured():
            return BackendOutcome(OutcomeKind.NOT_CONFIGURED, "AWS credentials are not configured")
        return await self._invoke("delete_stack", self._get_client().delete_stack, StackName=stack_name)

    async def list_recent_events(self, stack_name: str, limit: int) -> BackendOutcome:
        if not self.is_configured():
            return BackendOutcome(OutcomeKind.NOT_CONFIGURED, "AWS credentials are not configured")
        outcome = await self._invoke(
            "describe_stack_events",
            self._get_client().describe_stack_events,
            StackName=stack_name,
        )
        if not outcome.ok:
            return outcome
        raw_events = outcome.value.get("StackEvents", []) if isinstance(outcome.value, dict) else []
        events = [
            StackEvent(
                timestamp=item.get("Timestamp"),
                logical_resource_id=item.get("LogicalResourceId"),
                resource_type=item.get("ResourceType"),
                resource_status=item.get("ResourceStatus"),
                status_reason=item.get("ResourceStatusReason"),
            )
            for item in raw_events
        ]
        events.sort(key=_event_sort_key, reverse=True)
        return BackendOutcome.success(events[: max(limit, 0)])

    async def publish_artifact(self, description: StackDescription, body: str) -> BackendOutcome:
        if not self.is_configured():
            return BackendOutcome(OutcomeKind.NOT_CONFIGURED, "AWS credentials are not configured")
        if not description.artifact_bucket:
            return BackendOutcome(OutcomeKind.FATAL, f"Stack output {OUTPUT_ARTIFACT_BUCKET} is missing")
        return await self._invoke(
            "put_object",
            self._get_s3_client().put_object,
            Bucket=description.artifact_bucket,
            Key=ARTIFACT_KEY,
            Body=body.encode("utf-8"),
            ContentType="application/javascript",
            CacheControl="public, max-age=3600",
        )
