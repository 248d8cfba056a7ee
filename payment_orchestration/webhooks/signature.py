"""
Webhook signing and verification.

Outgoing deliveries carry two headers:

    X-Webhook-Timestamp: <unix seconds>
    X-Webhook-Signature: hex(HMAC-SHA256(secret, "<timestamp>.<raw body>"))

Receivers recompute the HMAC over the same string, compare in constant time,
and refuse timestamps outside the replay window.
"""
import hashlib
import hmac
import ipaddress
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

import structlog

from payment_orchestration.core.clock import to_unix_seconds, utcnow
from payment_orchestration.core.errors import SignatureError

logger = structlog.get_logger(__name__)

TIMESTAMP_HEADER = "X-Webhook-Timestamp"
SIGNATURE_HEADER = "X-Webhook-Signature"
DEFAULT_TOLERANCE_SECONDS = 300
DEFAULT_USER_AGENT = "PaymentOrchestrator-Webhooks/1.0"

Payload = Union[str, bytes]


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of a signature check. ``reason`` is set when invalid."""

    valid: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.valid


def _as_bytes(value: Payload) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def signed_message(timestamp: Union[int, str], payload: Payload) -> bytes:
    """Build the ``"<timestamp>.<payload>"`` message that gets signed."""
    return str(timestamp).encode("utf-8") + b"." + _as_bytes(payload)


def sign(payload: Payload, secret: str, timestamp: Union[int, str, None] = None) -> str:
    """
    Compute a hex HMAC-SHA256 signature.

    Args:
        payload: Raw body
        secret: Endpoint secret
        timestamp: When given, the timestamp-bound message is signed instead
            of the bare payload

    Returns:
        str: Lowercase hex digest
    """
    message = _as_bytes(payload) if timestamp is None else signed_message(timestamp, payload)
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify(
    payload: Payload,
    signature: str,
    secret: str,
    timestamp: Union[int, str],
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[datetime] = None,
) -> VerificationResult:
    """
    Verify a timestamp-bound signature.

    The timestamp is checked first so stale (replayed) requests are refused
    without touching the HMAC.

    Args:
        payload: Raw body exactly as received
        signature: Hex signature from the request
        secret: Endpoint secret
        timestamp: Unix seconds from the request
        tolerance_seconds: Replay window
        now: Override of the current time

    Returns:
        VerificationResult: valid flag and failure reason
    """
    if not signature:
        return VerificationResult(False, "missing_signature")

    try:
        sent_at = int(str(timestamp).strip())
    except (TypeError, ValueError):
        return VerificationResult(False, "malformed_timestamp")

    current = to_unix_seconds(now or utcnow())
    if abs(current - sent_at) > tolerance_seconds:
        logger.warning(
            "webhook_timestamp_outside_tolerance",
            current=current,
            timestamp=sent_at,
            tolerance_seconds=tolerance_seconds,
        )
        return VerificationResult(False, "timestamp_outside_tolerance")

    expected = sign(payload, secret, sent_at)
    if not hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8")):
        return VerificationResult(False, "signature_mismatch")

    return VerificationResult(True)


def headers_for(
    payload: Payload,
    secret: str,
    now: Optional[datetime] = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> Dict[str, str]:
    """Produce fresh timestamp and signature transport headers for a body."""
    timestamp = to_unix_seconds(now or utcnow())
    return {
        TIMESTAMP_HEADER: str(timestamp),
        SIGNATURE_HEADER: sign(payload, secret, timestamp),
        "Content-Type": "application/json",
        "User-Agent": user_agent,
    }


def verify_headers(
    payload: Payload,
    headers: Mapping[str, str],
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[datetime] = None,
) -> VerificationResult:
    """Verify a request using its ``X-Webhook-*`` headers (case-insensitive)."""
    lowered = {k.lower(): v for k, v in headers.items()}
    timestamp = lowered.get(TIMESTAMP_HEADER.lower())
    signature = lowered.get(SIGNATURE_HEADER.lower())
    if timestamp is None:
        return VerificationResult(False, "missing_timestamp")
    return verify(payload, signature or "", secret, timestamp, tolerance_seconds, now)


def require_valid(
    payload: Payload,
    headers: Mapping[str, str],
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[datetime] = None,
) -> None:
    """
    Verify headers and raise on failure.

    Raises:
        SignatureError: If the request must be rejected
    """
    result = verify_headers(payload, headers, secret, tolerance_seconds, now)
    if not result.valid:
        raise SignatureError(result.reason or "invalid")


def parse_signature_header(header: str) -> Tuple[Optional[str], List[str]]:
    """
    Parse a provider-style ``t=<ts>,v1=<sig>[,v1=<sig>]`` header.

    Returns:
        Tuple of (timestamp or None, list of v1 signatures)
    """
    timestamp: Optional[str] = None
    signatures: List[str] = []
    for element in header.split(","):
        key, sep, value = element.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def generate_secret() -> str:
    """Generate a 256-bit random secret, hex encoded."""
    return secrets.token_hex(32)


def _is_private_host(hostname: str) -> bool:
    if hostname == "localhost" or hostname.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_unspecified
        or address.is_multicast
    )


def is_allowed_url(
    url: str,
    hardened: bool = False,
    allowed_schemes: Sequence[str] = ("https", "http"),
) -> bool:
    """
    URL admission check for subscriber endpoints.

    Args:
        url: Candidate URL
        hardened: Require https and refuse private/loopback targets
        allowed_schemes: Schemes accepted outside hardened mode

    Returns:
        bool: True if the URL may be registered
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return False

    scheme = parsed.scheme.lower()
    hostname = (parsed.hostname or "").lower()
    if not hostname or scheme not in allowed_schemes:
        return False

    if hardened:
        if scheme != "https":
            return False
        if _is_private_host(hostname):
            return False

    return True
