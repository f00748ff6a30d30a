import json

import httpx
import pytest

from followup_engine.channels.router import ChannelRouter, build_router, destination_for
from followup_engine.channels.senders import StubSender, WebhookSender
from followup_engine.common.errors import (
    InvalidDestination,
    ProviderRejected,
    ProviderThrottled,
    ProviderTimeout,
    ProviderUnavailable,
)
from followup_engine.domain.models import Student

pytestmark = pytest.mark.asyncio

STUDENT = Student(id="s1", full_name="Ana Lima", email="ana@example.com", phone="+15555550123")


def _webhook(handler) -> WebhookSender:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookSender("https://hook.example.com/followups", client=client)


async def test_stub_sender_records_and_returns_stub_id():
    stub = StubSender()
    result = await stub.send("sms", "+15555550123", "hi")
    assert result.provider_id.startswith("stub-sms-")
    assert result.status == "queued"
    assert stub.sent[0]["to"] == "+15555550123"


async def test_webhook_sender_posts_payload_and_reads_provider_id():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"message_id": "mk-42"})

    result = await _webhook(handler).send(
        "email", "ana@example.com", "Hello", subject="Hi", metadata={"run_id": "r1"}
    )

    assert result.provider_id == "mk-42"
    assert result.status == "sent"
    assert seen["body"]["channel"] == "email"
    assert seen["body"]["to"] == "ana@example.com"
    assert seen["body"]["subject"] == "Hi"
    assert seen["body"]["metadata"]["run_id"] == "r1"


async def test_webhook_sender_without_json_body_mints_id():
    result = await _webhook(lambda r: httpx.Response(200, text="Accepted")).send("sms", "+1", "x")
    assert result.provider_id.startswith("webhook-sms-")


@pytest.mark.parametrize("status, err", [
    (408, ProviderTimeout),
    (429, ProviderThrottled),
    (500, ProviderUnavailable),
    (503, ProviderUnavailable),
    (504, ProviderTimeout),
    (400, ProviderRejected),
    (404, ProviderRejected),
])
async def test_webhook_sender_maps_http_status(status, err):
    with pytest.raises(err) as exc:
        await _webhook(lambda r: httpx.Response(status)).send("sms", "+1", "x")
    assert exc.value.provider_status == status


async def test_webhook_sender_maps_transport_errors():
    def timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ProviderTimeout):
        await _webhook(timeout).send("sms", "+1", "x")
    with pytest.raises(ProviderUnavailable):
        await _webhook(refused).send("sms", "+1", "x")


async def test_destination_per_channel():
    assert destination_for("email", STUDENT) == "ana@example.com"
    for channel in ("sms", "whatsapp", "call"):
        assert destination_for(channel, STUDENT) == "+15555550123"
    with pytest.raises(InvalidDestination):
        destination_for("sms", Student(id="s2", full_name="No Phone", email="x@example.com"))


async def test_router_overrides_per_channel():
    default, email = StubSender(), StubSender()
    router = ChannelRouter(default, {"email": email})
    await router.send("email", STUDENT, "mail")
    await router.send("sms", STUDENT, "text")
    assert [s["channel"] for s in email.sent] == ["email"]
    assert [s["channel"] for s in default.sent] == ["sms"]


async def test_build_router_defaults_to_stub(settings):
    assert isinstance(build_router(settings).default, StubSender)
    live = settings.model_copy(update={"LIVE_CHANNELS": True, "FOLLOWUP_WEBHOOK_URL": "https://hook.example.com"})
    assert isinstance(build_router(live).default, WebhookSender)
    no_url = settings.model_copy(update={"LIVE_CHANNELS": True, "FOLLOWUP_WEBHOOK_URL": None})
    assert isinstance(build_router(no_url).default, StubSender)


async def test_webhook_sender_forwards_trace_id():
    from followup_engine.common.tracing import trace_scope

    seen = {}

    def handler(request):
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"id": "p-1"})

    with trace_scope("trace-abc"):
        await _webhook(handler).send("sms", "+1", "x")
    assert seen["metadata"]["trace_id"] == "trace-abc"
