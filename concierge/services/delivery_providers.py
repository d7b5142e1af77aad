"""Delivery provider interface and transports (email via Resend, SMS via HTTP gateway)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import uuid4

import httpx

from concierge.core.config import settings
from concierge.db.enums import DeliveryMethod

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"
PROVIDER_TIMEOUT_SECONDS = 20.0

# Request validation rejections; resending the same message cannot succeed
PERMANENT_STATUS_CODES = frozenset({400, 422})

# Content marker that makes the no-op provider fail (local failure injection)
NOOP_FAILURE_MARKER = "test-failure"


@dataclass(frozen=True)
class DeliveryMessage:
    to: str
    subject: str
    content: str
    message_id: str
    priority: str
    delivery_method: DeliveryMethod
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderResult:
    success: bool
    external_id: str | None = None
    error: str | None = None
    provider: str | None = None
    # The provider rejected the message itself; retrying is pointless
    permanent: bool = False


class DeliveryProvider(Protocol):
    name: str

    async def send(self, message: DeliveryMessage) -> ProviderResult:
        """Transmit one message. Expected failures are returned, not raised."""


class NoOpDeliveryProvider:
    """Accepts everything except content containing the failure marker."""

    name = "noop"

    async def send(self, message: DeliveryMessage) -> ProviderResult:
        if NOOP_FAILURE_MARKER in message.content:
            return ProviderResult(
                success=False, error="Simulated delivery failure", provider=self.name
            )
        logger.info(
            "[DRY RUN] %s delivery skipped for message=%s",
            message.delivery_method.value,
            message.message_id,
        )
        return ProviderResult(success=True, external_id=f"noop-{uuid4()}", provider=self.name)


def _error_detail(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        detail = data.get("message") or data.get("error")
        return str(detail) if detail else None
    return None


async def _post(
    url: str,
    *,
    headers: dict[str, str],
    payload: dict[str, Any],
    transport: httpx.AsyncBaseTransport | None,
) -> httpx.Response | str:
    """POST and return the response, or an error string for transport failures."""
    try:
        async with httpx.AsyncClient(timeout=PROVIDER_TIMEOUT_SECONDS, transport=transport) as client:
            return await client.post(url, headers=headers, json=payload)
    except httpx.TimeoutException:
        return "Provider timeout"
    except httpx.HTTPError as e:
        logger.warning("Provider connection error: %s", e.__class__.__name__)
        return f"Connection error: {e.__class__.__name__}"


class ResendEmailProvider:
    name = "resend"

    def __init__(
        self,
        api_key: str,
        from_email: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self._transport = transport

    async def send(self, message: DeliveryMessage) -> ProviderResult:
        payload: dict[str, Any] = {
            "from": self.from_email,
            "to": [message.to],
            "subject": message.subject,
            "text": message.content,
            "tags": [{"name": "priority", "value": message.priority}],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            # Queue redelivery of the same entry must not send twice
            "Idempotency-Key": message.message_id,
        }
        response = await _post(
            RESEND_SEND_URL, headers=headers, payload=payload, transport=self._transport
        )
        if isinstance(response, str):
            return ProviderResult(success=False, error=response, provider=self.name)

        if 200 <= response.status_code < 300 or response.status_code == 409:
            # 409 = idempotency conflict, already accepted
            external_id = None
            try:
                external_id = response.json().get("id")
            except ValueError:
                pass
            return ProviderResult(success=True, external_id=external_id, provider=self.name)

        error_msg = f"Resend API error: {response.status_code}"
        detail = _error_detail(response)
        if detail:
            error_msg = f"{error_msg} ({detail})"
        return ProviderResult(
            success=False,
            error=error_msg,
            provider=self.name,
            permanent=response.status_code in PERMANENT_STATUS_CODES,
        )


class HttpSmsProvider:
    """Generic JSON SMS gateway: POST {from, to, body, reference} -> {id}."""

    name = "sms_gateway"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        from_number: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.from_number = from_number
        self._transport = transport

    async def send(self, message: DeliveryMessage) -> ProviderResult:
        payload = {
            "from": self.from_number,
            "to": message.to,
            "body": message.content,
            "reference": message.message_id,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        response = await _post(
            self.api_url, headers=headers, payload=payload, transport=self._transport
        )
        if isinstance(response, str):
            return ProviderResult(success=False, error=response, provider=self.name)

        if 200 <= response.status_code < 300:
            external_id = None
            try:
                external_id = response.json().get("id")
            except ValueError:
                pass
            return ProviderResult(success=True, external_id=external_id, provider=self.name)

        error_msg = f"SMS gateway error: {response.status_code}"
        detail = _error_detail(response)
        if detail:
            error_msg = f"{error_msg} ({detail})"
        return ProviderResult(
            success=False,
            error=error_msg,
            provider=self.name,
            permanent=response.status_code in PERMANENT_STATUS_CODES,
        )


class DeliveryRouter:
    """Picks the transport for a message by its delivery method."""

    name = "router"

    def __init__(self, providers: dict[DeliveryMethod, DeliveryProvider]) -> None:
        self.providers = providers

    async def send(self, message: DeliveryMessage) -> ProviderResult:
        provider = self.providers.get(message.delivery_method)
        if provider is None:
            return ProviderResult(
                success=False,
                error=f"No provider configured for {message.delivery_method.value}",
                provider=self.name,
                permanent=True,
            )
        return await provider.send(message)


def build_delivery_provider() -> DeliveryProvider:
    """Provider stack from settings (noop unless DELIVERY_PROVIDER=http)."""
    if settings.DELIVERY_PROVIDER != "http":
        noop = NoOpDeliveryProvider()
        return DeliveryRouter({DeliveryMethod.EMAIL: noop, DeliveryMethod.SMS: noop})

    providers: dict[DeliveryMethod, DeliveryProvider] = {}
    if settings.RESEND_API_KEY:
        providers[DeliveryMethod.EMAIL] = ResendEmailProvider(
            settings.RESEND_API_KEY, settings.EMAIL_FROM
        )
    else:
        logger.warning("RESEND_API_KEY not set - email delivery disabled")
    if settings.SMS_API_URL and settings.SMS_API_KEY:
        providers[DeliveryMethod.SMS] = HttpSmsProvider(
            settings.SMS_API_URL, settings.SMS_API_KEY, settings.SMS_FROM
        )
    else:
        logger.warning("SMS_API_URL/SMS_API_KEY not set - SMS delivery disabled")
    return DeliveryRouter(providers)
