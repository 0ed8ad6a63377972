from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Final, Optional, Union

SIGNATURE_HEADER: Final[str] = "paymongo-signature"
DEFAULT_TOLERANCE_SECONDS: Final[int] = 300

_TIMESTAMP_KEY: Final[str] = "t"
_LIVE_KEY: Final[str] = "li"
_TEST_KEY: Final[str] = "te"


@dataclass(frozen=True)
class SignatureCheck:
    valid: bool
    error: Optional[str] = None
    timestamp: Optional[int] = None
    mode: Optional[str] = None


def _as_text(raw_body: Union[bytes, str]) -> str:
    if isinstance(raw_body, bytes):
        return raw_body.decode("utf-8", errors="replace")
    return str(raw_body)


def parse_signature_header(header: Optional[str]) -> dict[str, str]:
    """
    Split `t=<unix>,te=<hex>,li=<hex>` into a dict.

    Malformed segments are skipped; the first occurrence of a key wins.
    """

    fields: dict[str, str] = {}
    for segment in str(header or "").split(","):
        if "=" not in segment:
            continue
        key, value = segment.split("=", 1)
        key = key.strip()
        if key and key not in fields:
            fields[key] = value.strip()
    return fields


def compute_signature(secret: str, timestamp: Union[int, str], raw_body: Union[bytes, str]) -> str:
    message = f"{timestamp}.{_as_text(raw_body)}".encode("utf-8")
    return hmac.new(str(secret).encode("utf-8"), message, hashlib.sha256).hexdigest()


def build_signature_header(
    raw_body: Union[bytes, str],
    secret: str,
    *,
    timestamp: Optional[int] = None,
    live: bool = False,
) -> str:
    """Sign a body the way PayMongo does. Used by tests and the webhook replay tool."""

    ts = int(timestamp if timestamp is not None else time.time())
    digest = compute_signature(secret, ts, raw_body)
    if live:
        return f"t={ts},te=,li={digest}"
    return f"t={ts},te={digest},li="


def verify_paymongo_signature(
    raw_body: Union[bytes, str],
    signature_header: Optional[str],
    secret: str,
    *,
    now: Optional[float] = None,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> SignatureCheck:
    """
    Verify a PayMongo webhook signature.

    - Algorithm: HMAC-SHA256(secret, "{t}.{raw_body}") as hex.
    - The live-mode `li` signature is preferred over the test-mode `te` one.
    - Constant-time compare via `hmac.compare_digest`.
    - Deliveries whose `t` is more than `tolerance_seconds` away from now are
      rejected. This bounds replay exposure only; duplicates inside the window
      still verify and must be handled by idempotent settlement.
    """

    if not str(secret or ""):
        return SignatureCheck(valid=False, error="webhook secret is not configured")
    if not str(signature_header or "").strip():
        return SignatureCheck(valid=False, error="missing signature header")

    fields = parse_signature_header(signature_header)
    raw_timestamp = fields.get(_TIMESTAMP_KEY, "")
    if not raw_timestamp:
        return SignatureCheck(valid=False, error="missing timestamp in signature header")
    try:
        timestamp = int(raw_timestamp)
    except ValueError:
        return SignatureCheck(valid=False, error="invalid timestamp in signature header")

    if fields.get(_LIVE_KEY):
        provided, mode = fields[_LIVE_KEY], "live"
    elif fields.get(_TEST_KEY):
        provided, mode = fields[_TEST_KEY], "test"
    else:
        return SignatureCheck(valid=False, error="missing li/te signature", timestamp=timestamp)

    expected = compute_signature(secret, raw_timestamp, raw_body)
    if not hmac.compare_digest(expected, provided.lower()):
        return SignatureCheck(valid=False, error="signature mismatch", timestamp=timestamp, mode=mode)

    current = float(now if now is not None else time.time())
    if abs(current - timestamp) > int(tolerance_seconds):
        return SignatureCheck(valid=False, error="timestamp outside tolerance", timestamp=timestamp, mode=mode)

    return SignatureCheck(valid=True, timestamp=timestamp, mode=mode)
