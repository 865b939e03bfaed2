import hmac
import hashlib
import logging
import re
import time
from typing import Optional

from fastapi import Request

from coordinator.api.deps import ServicesDep
from coordinator.api.v1.metrics import SIGNATURE_FAILURES_TOTAL
from coordinator.domain.errors import AuthenticationError

logger = logging.getLogger(__name__)

_HEX_DIGEST_LEN = hashlib.sha256().digest_size * 2
_HEX_RE = re.compile(r"^[0-9a-f]+$")


def sign_payload(raw_body: bytes, secret: str) -> str:
    """Signs a body the way senders do, in the `sha256=<hex>` form."""
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def parse_signature_header(signature_header: Optional[str]) -> Optional[str]:
    """
    Extracts the lowercase hex digest from a signature header.

    Accepted forms: `sha256=<hex>`, `v1,<hex>` and bare `<hex>`.
    Returns None for anything else.
    """
    if not signature_header:
        return None
    value = signature_header.strip()
    if value.lower().startswith("sha256="):
        value = value[len("sha256="):]
    elif value.lower().startswith("v1,"):
        value = value[len("v1,"):]
    value = value.strip().lower()
    if len(value) != _HEX_DIGEST_LEN or not _HEX_RE.match(value):
        return None
    return value


def _check_timestamp(
    timestamp_header: Optional[str],
    skew_seconds: int,
    require_timestamp: bool,
    now: float,
) -> Optional[str]:
    # Returns a failure reason, or None when the timestamp is acceptable
    if timestamp_header is None or timestamp_header.strip() == "":
        return "missing_timestamp" if require_timestamp else None
    try:
        ts = int(timestamp_header.strip())
    except ValueError:
        return "malformed_timestamp"
    if ts < 0:
        return "malformed_timestamp"
    if abs(now - ts) > skew_seconds:
        return "stale_timestamp"
    return None


def verify_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    timestamp_header: Optional[str] = None,
    *,
    skew_seconds: int = 300,
    require_timestamp: bool = False,
    now: Optional[float] = None,
) -> bool:
    """
    Checks an HMAC-SHA256 signature over the raw request bytes.

    Never raises: every failure (bad format, wrong digest, stale or missing
    timestamp, missing secret) collapses into False, with the reason logged
    at WARNING. The digest is computed and compared even when the timestamp
    already failed, so callers can't tell the cases apart by timing.
    """
    if now is None:
        now = time.time()

    reasons = []

    # 1. Timestamp window
    ts_reason = _check_timestamp(timestamp_header, skew_seconds, require_timestamp, now)
    if ts_reason:
        reasons.append(ts_reason)

    # 2. Signature, always computed
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    provided = parse_signature_header(signature_header)
    if provided is None:
        reasons.append("invalid_format")
        # Same-length dummy keeps the comparison cost identical
        provided = "0" * _HEX_DIGEST_LEN
    if not secret:
        reasons.append("missing_secret")

    matches = hmac.compare_digest(expected, provided)
    if not matches and "invalid_format" not in reasons:
        reasons.append("mismatch")

    if reasons:
        logger.warning(f"Webhook signature rejected: {','.join(reasons)}")
        return False
    return True


class WebhookSignatureVerifier:
    """
    Class-based dependency guarding inbound webhook routes.

    Returns the raw body on success so the route parses exactly the bytes
    that were signed.
    """

    async def __call__(self, request: Request, services: ServicesDep) -> bytes:
        cfg = services.settings
        body = await request.body()

        valid = verify_signature(
            body,
            request.headers.get(cfg.WEBHOOK_SIGNATURE_HEADER),
            cfg.WEBHOOK_SECRET,
            request.headers.get(cfg.WEBHOOK_TIMESTAMP_HEADER),
            skew_seconds=cfg.WEBHOOK_TIMESTAMP_SKEW_SECONDS,
            require_timestamp=bool(cfg.WEBHOOK_REQUIRE_TIMESTAMP),
        )
        if not valid:
            SIGNATURE_FAILURES_TOTAL.inc()
            # Reason stays in the logs, the sender only learns it failed
            raise AuthenticationError("Invalid signature")

        return body
