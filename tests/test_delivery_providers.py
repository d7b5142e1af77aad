import json

import httpx
import pytest

from concierge.db.enums import DeliveryMethod
from concierge.services.delivery_providers import (
    NOOP_FAILURE_MARKER,
    RESEND_SEND_URL,
    DeliveryMessage,
    DeliveryRouter,
    HttpSmsProvider,
    NoOpDeliveryProvider,
    ResendEmailProvider,
)


def _message(method=DeliveryMethod.EMAIL, content="Your results are ready."):
    return DeliveryMessage(
        to="jane.doe@example.com" if method == DeliveryMethod.EMAIL else "+15555550123",
        subject="Medical Communication - 2026-03-02",
        content=content,
        message_id="3f1c8e9a-5a0e-4b55-9d7c-0d2b9c1f0a11",
        priority="normal",
        delivery_method=method,
    )


@pytest.mark.asyncio
async def test_resend_success_sends_idempotency_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "re_abc"})

    provider = ResendEmailProvider("key", "care@example.com", transport=httpx.MockTransport(handler))
    result = await provider.send(_message())

    assert result.success
    assert result.external_id == "re_abc"
    assert result.provider == "resend"
    assert seen["url"] == RESEND_SEND_URL
    assert seen["headers"]["Idempotency-Key"] == "3f1c8e9a-5a0e-4b55-9d7c-0d2b9c1f0a11"
    assert seen["headers"]["Authorization"] == "Bearer key"
    assert seen["body"]["to"] == ["jane.doe@example.com"]
    assert seen["body"]["text"] == "Your results are ready."


@pytest.mark.asyncio
async def test_resend_conflict_counts_as_accepted():
    transport = httpx.MockTransport(lambda request: httpx.Response(409, json={}))
    result = await ResendEmailProvider("key", "care@example.com", transport=transport).send(_message())
    assert result.success


@pytest.mark.asyncio
async def test_resend_error_includes_detail():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(422, json={"message": "Invalid email address"})
    )
    result = await ResendEmailProvider("key", "care@example.com", transport=transport).send(_message())
    assert not result.success
    assert result.error == "Resend API error: 422 (Invalid email address)"
    assert result.permanent


@pytest.mark.asyncio
async def test_transport_timeout_is_reported():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    provider = ResendEmailProvider("key", "care@example.com", transport=httpx.MockTransport(handler))
    result = await provider.send(_message())
    assert result.error == "Provider timeout"


@pytest.mark.asyncio
async def test_connection_error_is_reported():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    provider = HttpSmsProvider(
        "https://sms.example.test/send", "key", "+15550000000",
        transport=httpx.MockTransport(handler),
    )
    result = await provider.send(_message(DeliveryMethod.SMS))
    assert result.error == "Connection error: ConnectError"


@pytest.mark.asyncio
async def test_sms_gateway_payload():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "sms_1"})

    provider = HttpSmsProvider(
        "https://sms.example.test/send", "key", "+15550000000",
        transport=httpx.MockTransport(handler),
    )
    result = await provider.send(_message(DeliveryMethod.SMS))

    assert result.success
    assert result.external_id == "sms_1"
    assert seen["body"] == {
        "from": "+15550000000",
        "to": "+15555550123",
        "body": "Your results are ready.",
        "reference": "3f1c8e9a-5a0e-4b55-9d7c-0d2b9c1f0a11",
    }


@pytest.mark.asyncio
async def test_router_without_provider_fails_cleanly():
    router = DeliveryRouter({DeliveryMethod.EMAIL: NoOpDeliveryProvider()})
    result = await router.send(_message(DeliveryMethod.SMS))
    assert not result.success
    assert result.error == "No provider configured for sms"
    assert result.permanent


@pytest.mark.asyncio
async def test_noop_provider_failure_marker():
    provider = NoOpDeliveryProvider()
    assert (await provider.send(_message())).success
    failed = await provider.send(_message(content=f"please {NOOP_FAILURE_MARKER}"))
    assert not failed.success


@pytest.mark.asyncio
async def test_server_errors_stay_retryable():
    transport = httpx.MockTransport(lambda request: httpx.Response(503, json={"message": "unavailable"}))
    result = await ResendEmailProvider("key", "care@example.com", transport=transport).send(_message())
    assert not result.success
    assert not result.permanent

    transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"error": "bad number"}))
    provider = HttpSmsProvider(
        "https://sms.example.test/send", "key", "+15550000000", transport=transport
    )
    result = await provider.send(_message(DeliveryMethod.SMS))
    assert result.error == "SMS gateway error: 400 (bad number)"
    assert result.permanent
