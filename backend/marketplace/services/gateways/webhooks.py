"""Inbound gateway webhooks: signature verification and event normalisation.

All providers sign with the same scheme: header ``t=<unix>,v1=<hex>`` where
the digest is HMAC-SHA256 over ``"{t}.{raw_body}"`` with the provider's
webhook secret.
"""

import hashlib
import hmac
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from marketplace.core.config import settings

SIGNATURE_HEADER = "X-Webhook-Signature"

PAYOUT_COMPLETED = "payout_completed"
PAYOUT_FAILED = "payout_failed"


class WebhookVerificationError(Exception):
    pass


def sign_payload(secret: str, raw_body: bytes, timestamp: int) -> str:
    """Build a signature header value; used by tests and local tooling."""
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.".encode("utf-8") + raw_body,
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


def verify_signature(
    secret: str,
    header: str | None,
    raw_body: bytes,
    *,
    tolerance: int | None = None,
    now: float | None = None,
) -> int:
    """Validate a signature header and return its timestamp.

    Raises WebhookVerificationError on a missing secret, malformed header,
    digest mismatch or a timestamp outside the tolerance window.
    """
    if not secret:
        raise WebhookVerificationError("Webhook secret not configured")
    if not header:
        raise WebhookVerificationError("Missing signature header")

    parts: dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key] = value

    try:
        timestamp = int(parts["t"])
        received = parts["v1"]
    except (KeyError, ValueError):
        raise WebhookVerificationError("Malformed signature header")

    expected = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.".encode("utf-8") + raw_body,
        hashlib.sha256,
    ).hexdigest()
    if not hmac.compare_digest(expected, received):
        raise WebhookVerificationError("Signature mismatch")

    window = settings.webhook_tolerance_seconds if tolerance is None else tolerance
    current = time.time() if now is None else now
    if abs(current - timestamp) > window:
        raise WebhookVerificationError("Signature timestamp outside tolerance (replay protection)")

    return timestamp


@dataclass
class NormalizedEvent:
    provider: str
    event_id: str
    event_type: str
    occurred_at: datetime | None = None
    payout_ref: str | None = None
    outcome: str | None = None
    failure_reason: str | None = None


def _ts(value: Any) -> datetime | None:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _stripe(payload: dict[str, Any]) -> NormalizedEvent:
    obj = (payload.get("data") or {}).get("object") or {}
    event_type = payload.get("type", "")
    outcome = {"payout.paid": PAYOUT_COMPLETED, "payout.failed": PAYOUT_FAILED}.get(event_type)
    return NormalizedEvent(
        provider="stripe",
        event_id=str(payload.get("id", "")),
        event_type=event_type,
        occurred_at=_ts(payload.get("created")),
        payout_ref=obj.get("id") if outcome else None,
        outcome=outcome,
        failure_reason=obj.get("failure_message"),
    )


def _xendit(payload: dict[str, Any]) -> NormalizedEvent:
    data = payload.get("data") or payload
    event_type = payload.get("event") or ""
    if not event_type and data.get("status") in ("COMPLETED", "FAILED"):
        event_type = f"disbursement.{data['status'].lower()}"
    outcome = {
        "disbursement.completed": PAYOUT_COMPLETED,
        "disbursement.failed": PAYOUT_FAILED,
    }.get(event_type)
    return NormalizedEvent(
        provider="xendit",
        event_id=str(payload.get("id") or data.get("id") or ""),
        event_type=event_type,
        occurred_at=_ts(payload.get("created") or data.get("updated")),
        payout_ref=data.get("id") if outcome else None,
        outcome=outcome,
        failure_reason=data.get("failure_code"),
    )


def _paypal(payload: dict[str, Any]) -> NormalizedEvent:
    resource = payload.get("resource") or {}
    event_type = payload.get("event_type", "")
    outcome = None
    if event_type == "PAYMENT.PAYOUTS-ITEM.SUCCEEDED":
        outcome = PAYOUT_COMPLETED
    elif event_type in (
        "PAYMENT.PAYOUTS-ITEM.FAILED",
        "PAYMENT.PAYOUTS-ITEM.BLOCKED",
        "PAYMENT.PAYOUTS-ITEM.RETURNED",
        "PAYMENT.PAYOUTS-ITEM.DENIED",
    ):
        outcome = PAYOUT_FAILED
    return NormalizedEvent(
        provider="paypal",
        event_id=str(payload.get("id", "")),
        event_type=event_type,
        occurred_at=_ts(payload.get("create_time")),
        payout_ref=resource.get("payout_batch_id") if outcome else None,
        outcome=outcome,
        failure_reason=(resource.get("errors") or {}).get("message"),
    )


def _paymongo(payload: dict[str, Any]) -> NormalizedEvent:
    data = payload.get("data") or {}
    attrs = data.get("attributes") or {}
    return NormalizedEvent(
        provider="paymongo",
        event_id=str(data.get("id", "")),
        event_type=attrs.get("type", ""),
        occurred_at=_ts(attrs.get("created_at")),
    )


def _paymaya(payload: dict[str, Any]) -> NormalizedEvent:
    return NormalizedEvent(
        provider="paymaya",
        event_id=str(payload.get("id", "")),
        event_type=str(payload.get("paymentStatus") or payload.get("status") or ""),
        occurred_at=_ts(payload.get("updatedAt")),
    )


_NORMALIZERS = {
    "stripe": _stripe,
    "xendit": _xendit,
    "paypal": _paypal,
    "paymongo": _paymongo,
    "paymaya": _paymaya,
}


def normalize_event(provider: str, payload: dict[str, Any]) -> NormalizedEvent:
    """Map a provider payload to a NormalizedEvent. ``outcome`` is set only for payout results."""
    return _NORMALIZERS[provider](payload)
