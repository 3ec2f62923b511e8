"""Webhook signing — HMAC-SHA256 over ``"{timestamp}.{payload}"``.

Senders call :func:`build_signature_headers`; receivers (and our own tests)
call :func:`verify` or :func:`extract_and_verify_signature`. Timestamps are
unix milliseconds.
"""

import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

SIGNATURE_VERSION = "v1"
SECRET_BYTES = 32
DEFAULT_TOLERANCE_SECONDS = 300

TIMESTAMP_HEADER = "X-Webhook-Timestamp"
SIGNATURE_HEADER = "X-Webhook-Signature"
SIGNATURE_VERSION_HEADER = "X-Webhook-Signature-Version"


@dataclass(frozen=True)
class WebhookSignature:
    timestamp: int
    signature: str


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    error: Optional[str] = None


def now_millis() -> int:
    return int(time.time() * 1000)


def serialize_payload(payload: Any) -> str:
    """Deterministic JSON; this exact string is what gets signed and sent."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _digest(serialized: str, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.{serialized}"
    return hmac.new(secret.encode(), signed.encode(), hashlib.sha256).hexdigest()


def sign(payload: Any, secret: str, timestamp: Optional[int] = None) -> WebhookSignature:
    """Sign ``payload`` with ``secret``; ``timestamp`` defaults to now."""
    ts = timestamp if timestamp is not None else now_millis()
    return WebhookSignature(timestamp=ts, signature=_digest(serialize_payload(payload), secret, ts))


def verify(
    payload: Any,
    signature: str,
    timestamp: int,
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> bool:
    """Check a signature. Never raises: malformed input verifies as False."""
    if not signature or not isinstance(signature, str) or not secret:
        return False
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False

    if abs(now_millis() - ts) > tolerance_seconds * 1000:
        return False

    try:
        expected = _digest(serialize_payload(payload), secret, ts)
    except (TypeError, ValueError):
        return False
    return hmac.compare_digest(signature.encode(), expected.encode())


def generate_secret() -> str:
    """Random signing secret, hex-encoded (64 chars)."""
    return secrets.token_hex(SECRET_BYTES)


def build_signature_headers(payload: Any, secret: str, timestamp: Optional[int] = None) -> dict[str, str]:
    sig = sign(payload, secret, timestamp)
    return {
        TIMESTAMP_HEADER: str(sig.timestamp),
        SIGNATURE_HEADER: sig.signature,
        SIGNATURE_VERSION_HEADER: SIGNATURE_VERSION,
    }


def extract_and_verify_signature(
    headers: Mapping[str, Any],
    payload: Any,
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> VerificationResult:
    """Receiver-side check of the signature headers of an incoming delivery."""
    lowered = {str(k).lower(): v for k, v in headers.items()}
    timestamp = lowered.get(TIMESTAMP_HEADER.lower())
    signature = lowered.get(SIGNATURE_HEADER.lower())

    if not timestamp or not isinstance(timestamp, str):
        return VerificationResult(False, "Missing or invalid timestamp header")
    if not signature or not isinstance(signature, str):
        return VerificationResult(False, "Missing or invalid signature header")
    # ASCII digits only: int() rejects some characters isdigit() accepts
    timestamp = timestamp.strip()
    if not (timestamp.isascii() and timestamp.isdigit()):
        return VerificationResult(False, "Invalid timestamp format")

    valid = verify(payload, signature, int(timestamp), secret, tolerance_seconds)
    return VerificationResult(valid, None if valid else "Invalid signature")
