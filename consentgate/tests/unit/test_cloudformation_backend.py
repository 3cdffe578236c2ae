from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from consentgate.providers.provisioning.base import OutcomeKind, StackDescription
from consentgate.providers.provisioning.cloudformation import CloudFormationBackend, classify_exception
from consentgate.services.templates import build_template


def _client_error(code: str, message: str, status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": message}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "DescribeStacks",
    )


@pytest.mark.parametrize(
    ("exc", "kind"),
    [
        (_client_error("AlreadyExistsException", "Stack [s] already exists"), OutcomeKind.ALREADY_EXISTS),
        (_client_error("ValidationError", "Stack with id s does not exist"), OutcomeKind.NOT_FOUND),
        (
            _client_error("ValidationError", "Stack [s] cannot be deleted while in status CREATE_IN_PROGRESS"),
            OutcomeKind.CONFLICT_IN_PROGRESS,
        ),
        (_client_error("Throttling", "Rate exceeded"), OutcomeKind.TRANSIENT),
        (_client_error("InternalError", "oops", status=503), OutcomeKind.TRANSIENT),
        (_client_error("InsufficientCapabilitiesException", "Requires CAPABILITY_IAM"), OutcomeKind.FATAL),
        (NoCredentialsError(), OutcomeKind.NOT_CONFIGURED),
        (EndpointConnectionError(endpoint_url="https://cloudformation.us-east-1.amazonaws.com"), OutcomeKind.TRANSIENT),
    ],
)
def test_classify_exception(exc: Exception, kind: OutcomeKind) -> None:
    assert classify_exception(exc).kind == kind


class _StubCloudFormation:
    # Records requests and replays canned responses or errors per operation.
    def __init__(self, responses: dict) -> None:
        self.responses = responses
        self.requests: list[tuple[str, dict]] = []

    def _reply(self, operation: str, request: dict):
        self.requests.append((operation, request))
        reply = self.responses.get(operation, {})
        if isinstance(reply, Exception):
            raise reply
        return reply

    def create_stack(self, **request):
        return self._reply("create_stack", request)

    def describe_stacks(self, **request):
        return self._reply("describe_stacks", request)

    def delete_stack(self, **request):
        return self._reply("delete_stack", request)

    def describe_stack_events(self, **request):
        return self._reply("describe_stack_events", request)

    def put_object(self, **request):
        return self._reply("put_object", request)


@pytest.mark.asyncio
async def test_backend_without_credentials_reports_not_configured(monkeypatch) -> None:
    from consentgate.core.config import get_settings

    monkeypatch.delenv("AWS_ACCESS_KEY_ID", raising=False)
    monkeypatch.delenv("AWS_SECRET_ACCESS_KEY", raising=False)
    get_settings.cache_clear()
    backend = CloudFormationBackend()
    assert backend.is_configured() is False
    for outcome in (
        await backend.start_create("s", build_template("example.com"), tags={}),
        await backend.describe_status("s"),
        await backend.delete("s"),
        await backend.list_recent_events("s", 5),
    ):
        assert outcome.kind == OutcomeKind.NOT_CONFIGURED


@pytest.mark.asyncio
async def test_start_create_sends_iam_capabilities_and_tags() -> None:
    client = _StubCloudFormation({"create_stack": {"StackId": "arn:stack/s/1"}})
    backend = CloudFormationBackend(client=client)
    outcome = await backend.start_create("s", build_template("example.com"), tags={"Project": "ConsentGate"})
    assert outcome.ok
    assert outcome.value == "arn:stack/s/1"
    operation, request = client.requests[0]
    assert operation == "create_stack"
    assert "CAPABILITY_IAM" in request["Capabilities"]
    assert request["Tags"] == [{"Key": "Project", "Value": "ConsentGate"}]


@pytest.mark.asyncio
async def test_start_create_maps_already_exists() -> None:
    client = _StubCloudFormation({"create_stack": _client_error("AlreadyExistsException", "exists")})
    outcome = await CloudFormationBackend(client=client).start_create("s", {}, tags={})
    assert outcome.kind == OutcomeKind.ALREADY_EXISTS


@pytest.mark.asyncio
async def test_describe_status_parses_outputs() -> None:
    client = _StubCloudFormation(
        {
            "describe_stacks": {
                "Stacks": [
                    {
                        "StackStatus": "CREATE_COMPLETE",
                        "Outputs": [
                            {"OutputKey": "EndpointUrl", "OutputValue": "https://x.test"},
                            {"OutputKey": "EdgeFunctionVersionArn", "OutputValue": "h-1"},
                            {"OutputKey": "ArtifactBucketName", "OutputValue": "bucket-1"},
                        ],
                    }
                ]
            }
        }
    )
    outcome = await CloudFormationBackend(client=client).describe_status("s")
    assert outcome.ok
    description = outcome.value
    assert description.raw_status == "CREATE_COMPLETE"
    assert description.endpoint_url == "https://x.test"
    assert description.edge_handle_ref == "h-1"
    assert description.artifact_bucket == "bucket-1"


@pytest.mark.asyncio
async def test_delete_of_missing_stack_is_not_found() -> None:
    client = _StubCloudFormation({"delete_stack": _client_error("ValidationError", "Stack with id s does not exist")})
    outcome = await CloudFormationBackend(client=client).delete("s")
    assert outcome.kind == OutcomeKind.NOT_FOUND


@pytest.mark.asyncio
async def test_list_recent_events_is_newest_first_and_bounded() -> None:
    now = datetime.now(timezone.utc)
    events = [
        {"Timestamp": now - timedelta(minutes=minutes), "LogicalResourceId": f"R{minutes}", "ResourceStatus": "X"}
        for minutes in (5, 1, 3)
    ]
    client = _StubCloudFormation({"describe_stack_events": {"StackEvents": events}})
    outcome = await CloudFormationBackend(client=client).list_recent_events("s", 2)
    assert [event.logical_resource_id for event in outcome.value] == ["R1", "R3"]


@pytest.mark.asyncio
async def test_publish_artifact_requires_bucket_output() -> None:
    client = _StubCloudFormation({})
    backend = CloudFormationBackend(client=client, s3_client=client)
    missing = await backend.publish_artifact(StackDescription(raw_status="CREATE_COMPLETE"), "body")
    assert missing.kind == OutcomeKind.FATAL
    published = await backend.publish_artifact(
        StackDescription(raw_status="CREATE_COMPLETE", artifact_bucket="bucket-1"),
        "body",
    )
    assert published.ok
    assert client.requests[-1][1]["Key"] == "consentgate/loader.js"
