"""HMAC verification for inbound delivery-confirmation webhooks.

Accepted signature formats (HMAC-SHA256, hex):

- ``sha256=<hex>`` over the raw body
- ``t=<unix>,v1=<hex>`` over ``"<t>.<body>"``; ``t`` must be within the
  configured tolerance of now (replay protection)
"""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Mapping

from concierge.core.exceptions import WebhookVerificationError

SIGNATURE_HEADERS = ("X-Webhook-Signature", "X-Signature", "Signature")


@dataclass(frozen=True)
class ParsedSignature:
    signatures: tuple[str, ...]
    timestamp: int | None = None


def get_signature_header(headers: Mapping[str, str]) -> str | None:
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


def parse_signature_header(header: str) -> ParsedSignature:
    header = header.strip()
    if header.startswith("sha256="):
        return ParsedSignature(signatures=(header[len("sha256="):].strip(),))

    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookVerificationError("invalid_timestamp")
        elif key == "v1":
            signatures.append(value.strip())
    if not signatures:
        raise WebhookVerificationError("malformed_signature")
    if timestamp is None:
        raise WebhookVerificationError("missing_timestamp")
    return ParsedSignature(signatures=tuple(signatures), timestamp=timestamp)


def compute_signature(body: bytes, secret: str, timestamp: int | None = None) -> str:
    """Hex HMAC-SHA256 of the body (prefixed with ``"<t>."`` when timestamped)."""
    payload = body if timestamp is None else f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    body: bytes,
    header: str | None,
    secret: str,
    *,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> ParsedSignature:
    """Raise WebhookVerificationError unless ``header`` signs ``body``."""
    if not secret:
        raise WebhookVerificationError("webhook_secret_not_configured")
    if not header:
        raise WebhookVerificationError("missing_signature")

    parsed = parse_signature_header(header)
    if parsed.timestamp is not None:
        current = time.time() if now is None else now
        if abs(current - parsed.timestamp) > tolerance_seconds:
            raise WebhookVerificationError("timestamp_out_of_tolerance")

    expected = compute_signature(body, secret, parsed.timestamp)
    for candidate in parsed.signatures:
        if hmac.compare_digest(candidate.lower(), expected):
            return parsed
    raise WebhookVerificationError("invalid_signature")
