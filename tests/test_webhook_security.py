import time

import pytest

from concierge.core.exceptions import WebhookVerificationError
from concierge.services.webhook_security import (
    compute_signature,
    get_signature_header,
    parse_signature_header,
    verify_webhook_signature,
)

SECRET = "whsec_test"
BODY = b'{"message_id":"1","status":"delivered"}'


def _reason(body, header, secret=SECRET, **kwargs):
    with pytest.raises(WebhookVerificationError) as exc_info:
        verify_webhook_signature(body, header, secret, **kwargs)
    return exc_info.value.reason


def test_plain_sha256_signature():
    header = f"sha256={compute_signature(BODY, SECRET)}"
    parsed = verify_webhook_signature(BODY, header, SECRET)
    assert parsed.timestamp is None


def test_uppercase_hex_is_accepted():
    header = f"sha256={compute_signature(BODY, SECRET).upper()}"
    verify_webhook_signature(BODY, header, SECRET)


def test_timestamped_signature_within_tolerance():
    now = time.time()
    ts = int(now) - 60
    header = f"t={ts},v1={compute_signature(BODY, SECRET, ts)}"
    parsed = verify_webhook_signature(BODY, header, SECRET, now=now)
    assert parsed.timestamp == ts


def test_any_listed_v1_signature_may_match():
    ts = 1_700_000_000
    header = f"t={ts},v1=deadbeef,v1={compute_signature(BODY, SECRET, ts)}"
    verify_webhook_signature(BODY, header, SECRET, now=ts)


def test_stale_timestamp_is_rejected():
    ts = 1_700_000_000
    header = f"t={ts},v1={compute_signature(BODY, SECRET, ts)}"
    assert _reason(BODY, header, now=ts + 301) == "timestamp_out_of_tolerance"


def test_tampered_body_is_rejected():
    header = f"sha256={compute_signature(BODY, SECRET)}"
    assert _reason(BODY + b" ", header) == "invalid_signature"


def test_wrong_secret_is_rejected():
    header = f"sha256={compute_signature(BODY, 'other')}"
    assert _reason(BODY, header) == "invalid_signature"


@pytest.mark.parametrize(
    "header,reason",
    [
        (None, "missing_signature"),
        ("", "missing_signature"),
        ("t=abc,v1=00", "invalid_timestamp"),
        ("t=1700000000", "malformed_signature"),
        ("v1=00", "missing_timestamp"),
    ],
)
def test_malformed_headers(header, reason):
    assert _reason(BODY, header) == reason


def test_missing_secret_fails_closed():
    header = f"sha256={compute_signature(BODY, SECRET)}"
    assert _reason(BODY, header, secret="") == "webhook_secret_not_configured"


def test_signature_header_lookup_order():
    assert get_signature_header({"Signature": "c", "X-Signature": "b"}) == "b"
    assert get_signature_header({"X-Webhook-Signature": "a", "Signature": "c"}) == "a"
    assert get_signature_header({}) is None


def test_parse_plain_header():
    assert parse_signature_header(" sha256=abc ").signatures == ("abc",)
