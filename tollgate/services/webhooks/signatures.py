from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import logging
from typing import Literal, Mapping

from tollgate.core.errors import WebhookHeadersMissingError


logger = logging.getLogger(__name__)

DigestEncoding = Literal["hex", "base64"]
SecretEncoding = Literal["utf8", "base64"]

HEADER_SVIX_ID = "svix-id"
HEADER_SVIX_TIMESTAMP = "svix-timestamp"
HEADER_SVIX_SIGNATURE = "svix-signature"

_SVIX_SECRET_PREFIX = "whsec_"
_SVIX_SIGNATURE_VERSION = "v1"


@dataclass(frozen=True)
class SvixHeaders:
    message_id: str
    timestamp: str
    signature: str


@dataclass(frozen=True)
class VerificationResult:
    # Reason codes let operators diagnose rejected deliveries without logging secrets.
    ok: bool
    reason: str


def _body_bytes(raw_body: bytes | str) -> bytes:
    # Text bodies are signed as their UTF-8 bytes.
    if isinstance(raw_body, str):
        return raw_body.encode("utf-8")
    return raw_body


def _decode_secret(secret: str | bytes, secret_encoding: SecretEncoding) -> bytes:
    if isinstance(secret, bytes):
        raw = secret
    else:
        raw = secret.encode("utf-8")
    if secret_encoding == "base64":
        return base64.b64decode(raw, validate=True)
    return raw


def compute_signature(
    raw_body: bytes | str,
    secret: str | bytes,
    *,
    digest_encoding: DigestEncoding = "hex",
    secret_encoding: SecretEncoding = "utf8",
) -> str:
    # HMAC-SHA256 over the exact raw bytes; re-serialized JSON would not match the provider.
    key = _decode_secret(secret, secret_encoding)
    digest = hmac.new(key, _body_bytes(raw_body), hashlib.sha256).digest()
    if digest_encoding == "base64":
        return base64.b64encode(digest).decode("ascii")
    return digest.hex()


def verify_signature(
    raw_body: bytes | str,
    signature: str | None,
    secret: str | bytes | None,
    *,
    digest_encoding: DigestEncoding = "hex",
    secret_encoding: SecretEncoding = "utf8",
) -> bool:
    """Return True only when ``signature`` is the HMAC-SHA256 of ``raw_body``.

    Never raises. A missing or empty secret fails closed and is logged as a
    configuration error; malformed secrets or signatures simply do not match.
    """
    if not secret:
        logger.error("webhook_signature_secret_missing")
        return False
    try:
        key = _decode_secret(secret, secret_encoding)
    except (binascii.Error, ValueError):
        logger.error("webhook_signature_secret_invalid encoding=%s", secret_encoding)
        return False
    if not key:
        logger.error("webhook_signature_secret_empty encoding=%s", secret_encoding)
        return False
    if not signature:
        return False
    candidate = signature.strip()
    expected = compute_signature(raw_body, key, digest_encoding=digest_encoding, secret_encoding="utf8")
    if len(candidate) != len(expected):
        return False
    return hmac.compare_digest(expected.encode("ascii"), candidate.encode("utf-8", errors="replace"))


def _normalize_header_mapping(headers: Mapping[str, str] | Mapping[str, object]) -> dict[str, str]:
    # Header names are case-insensitive on the wire; values are compared stripped.
    normalized: dict[str, str] = {}
    for raw_key, raw_value in headers.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        normalized[key] = str(raw_value).strip()
    return normalized


def parse_svix_headers(headers: Mapping[str, str] | Mapping[str, object]) -> SvixHeaders:
    normalized = _normalize_header_mapping(headers)
    missing = [
        name
        for name in (HEADER_SVIX_ID, HEADER_SVIX_TIMESTAMP, HEADER_SVIX_SIGNATURE)
        if not normalized.get(name)
    ]
    if missing:
        raise WebhookHeadersMissingError(missing)
    return SvixHeaders(
        message_id=normalized[HEADER_SVIX_ID],
        timestamp=normalized[HEADER_SVIX_TIMESTAMP],
        signature=normalized[HEADER_SVIX_SIGNATURE],
    )


def _svix_secret(secret: str) -> str:
    # Svix secrets carry a whsec_ prefix ahead of the base64 key material.
    if secret.startswith(_SVIX_SECRET_PREFIX):
        return secret[len(_SVIX_SECRET_PREFIX):]
    return secret


def compute_svix_signature(message_id: str, timestamp: str, raw_body: bytes | str, secret: str) -> str:
    signed_content = f"{message_id}.{timestamp}.".encode("utf-8") + _body_bytes(raw_body)
    digest = compute_signature(
        signed_content,
        _svix_secret(secret),
        digest_encoding="base64",
        secret_encoding="base64",
    )
    return f"{_SVIX_SIGNATURE_VERSION},{digest}"


def verify_svix_signature(
    headers: SvixHeaders | Mapping[str, str] | Mapping[str, object],
    raw_body: bytes | str,
    secret: str | None,
    *,
    tolerance_seconds: int = 300,
    now: datetime | None = None,
) -> VerificationResult:
    # Any space-separated v1 entry may match; rotated secrets publish several at once.
    if not secret:
        logger.error("webhook_signature_secret_missing scheme=svix")
        return VerificationResult(ok=False, reason="secret_missing")
    if isinstance(headers, SvixHeaders):
        parsed = headers
    else:
        try:
            parsed = parse_svix_headers(headers)
        except WebhookHeadersMissingError:
            return VerificationResult(ok=False, reason="missing_headers")
    try:
        sent_at = int(parsed.timestamp)
    except ValueError:
        return VerificationResult(ok=False, reason="invalid_timestamp")
    if tolerance_seconds > 0:
        reference = now or datetime.now(timezone.utc)
        skew = abs(reference.timestamp() - sent_at)
        if skew > tolerance_seconds:
            return VerificationResult(ok=False, reason="timestamp_skew")

    signed_content = f"{parsed.message_id}.{parsed.timestamp}.".encode("utf-8") + _body_bytes(raw_body)
    for entry in parsed.signature.split():
        version, separator, value = entry.partition(",")
        if separator != "," or version != _SVIX_SIGNATURE_VERSION:
            continue
        if verify_signature(
            signed_content,
            value,
            _svix_secret(secret),
            digest_encoding="base64",
            secret_encoding="base64",
        ):
            return VerificationResult(ok=True, reason="ok")
    return VerificationResult(ok=False, reason="signature_mismatch")
