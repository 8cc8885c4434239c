from __future__ import annotations

import base64
from datetime import datetime, timezone
import time

import pytest

from tollgate.core.errors import WebhookHeadersMissingError
from tollgate.services.webhooks.signatures import (
    compute_signature,
    compute_svix_signature,
    parse_svix_headers,
    verify_signature,
    verify_svix_signature,
)


_BODY = b'{"type":"subscription.updated","data":{"id":"sub_1"}}'
_POLAR_SECRET = base64.b64encode(b"polar-test-secret").decode("ascii")
_SVIX_SECRET = "whsec_" + base64.b64encode(b"svix-test-secret-key").decode("ascii")


def test_hex_signature_round_trip() -> None:
    signature = compute_signature(_BODY, "plain-secret")
    assert len(signature) == 64
    assert verify_signature(_BODY, signature, "plain-secret") is True


def test_base64_secret_and_digest_match_provider_scheme() -> None:
    signature = compute_signature(_BODY, _POLAR_SECRET, digest_encoding="base64", secret_encoding="base64")
    assert verify_signature(
        _BODY, signature, _POLAR_SECRET, digest_encoding="base64", secret_encoding="base64"
    )


def test_text_body_is_signed_as_utf8_bytes() -> None:
    text_body = '{"a":1,"name":"café"}'
    signature = compute_signature(text_body.encode("utf-8"), "abc")
    assert compute_signature(text_body, "abc") == signature
    assert verify_signature(text_body, signature, "abc") is True
    assert verify_signature('{"a":2}', signature, "abc") is False


def test_svix_verifies_text_body() -> None:
    timestamp = str(int(time.time()))
    signature = compute_svix_signature("msg_1", timestamp, _BODY, _SVIX_SECRET)
    headers = {"svix-id": "msg_1", "svix-timestamp": timestamp, "svix-signature": signature}
    assert verify_svix_signature(headers, _BODY.decode("utf-8"), _SVIX_SECRET).ok is True


def test_tampered_body_is_rejected() -> None:
    signature = compute_signature(_BODY, "plain-secret")
    assert verify_signature(_BODY + b" ", signature, "plain-secret") is False


def test_same_length_wrong_signature_is_rejected() -> None:
    signature = compute_signature(_BODY, "plain-secret")
    forged = ("0" if signature[0] != "0" else "1") + signature[1:]
    assert verify_signature(_BODY, forged, "plain-secret") is False


@pytest.mark.parametrize("signature", ["", None, "abc"])
def test_empty_or_short_signature_is_rejected(signature: str | None) -> None:
    assert verify_signature(_BODY, signature, "plain-secret") is False


@pytest.mark.parametrize("secret", ["", None])
def test_missing_secret_fails_closed(secret: str | None) -> None:
    signature = compute_signature(_BODY, "plain-secret")
    assert verify_signature(_BODY, signature, secret) is False


def test_invalid_base64_secret_fails_closed_without_raising() -> None:
    assert (
        verify_signature(_BODY, "c2ln", "not base64 at all!", digest_encoding="base64", secret_encoding="base64")
        is False
    )


def test_parse_svix_headers_lists_missing_names() -> None:
    with pytest.raises(WebhookHeadersMissingError) as exc_info:
        parse_svix_headers({"svix-id": "msg_1"})
    assert exc_info.value.missing == ["svix-timestamp", "svix-signature"]
    assert str(exc_info.value) == "missing_required_headers:svix-timestamp,svix-signature"


def test_parse_svix_headers_is_case_insensitive() -> None:
    parsed = parse_svix_headers({"Svix-Id": " msg_1 ", "SVIX-TIMESTAMP": "123", "svix-signature": "v1,abc"})
    assert parsed.message_id == "msg_1"
    assert parsed.timestamp == "123"


def test_svix_signature_accepts_any_matching_entry() -> None:
    timestamp = str(int(time.time()))
    valid = compute_svix_signature("msg_1", timestamp, _BODY, _SVIX_SECRET)
    headers = {
        "svix-id": "msg_1",
        "svix-timestamp": timestamp,
        "svix-signature": f"v1,Zm9yZ2Vk {valid}",
    }
    result = verify_svix_signature(headers, _BODY, _SVIX_SECRET)
    assert result.ok is True
    assert result.reason == "ok"


def test_svix_signature_mismatch_reports_reason() -> None:
    timestamp = str(int(time.time()))
    valid = compute_svix_signature("msg_1", timestamp, _BODY, _SVIX_SECRET)
    headers = {"svix-id": "msg_2", "svix-timestamp": timestamp, "svix-signature": valid}
    result = verify_svix_signature(headers, _BODY, _SVIX_SECRET)
    assert result.ok is False
    assert result.reason == "signature_mismatch"


def test_svix_signature_outside_tolerance_is_rejected() -> None:
    sent_at = 1_700_000_000
    signature = compute_svix_signature("msg_1", str(sent_at), _BODY, _SVIX_SECRET)
    headers = {"svix-id": "msg_1", "svix-timestamp": str(sent_at), "svix-signature": signature}
    later = datetime.fromtimestamp(sent_at + 301, tz=timezone.utc)
    result = verify_svix_signature(headers, _BODY, _SVIX_SECRET, tolerance_seconds=300, now=later)
    assert result.ok is False
    assert result.reason == "timestamp_skew"

    within = datetime.fromtimestamp(sent_at + 299, tz=timezone.utc)
    assert verify_svix_signature(headers, _BODY, _SVIX_SECRET, tolerance_seconds=300, now=within).ok


def test_svix_without_secret_fails_closed() -> None:
    headers = {"svix-id": "msg_1", "svix-timestamp": "1", "svix-signature": "v1,abc"}
    result = verify_svix_signature(headers, _BODY, None)
    assert result.ok is False
    assert result.reason == "secret_missing"
