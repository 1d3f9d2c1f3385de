"""
interview_billing/features/webhooks/service.py

Identity-provider (Clerk/Svix) webhook verification and dispatch.

Signature scheme: HMAC-SHA256 over "{svix-id}.{svix-timestamp}.{raw body}"
keyed with the base64 part of the ``whsec_`` secret; ``svix-signature``
carries space separated "v1,<base64 digest>" entries.
"""

import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from interview_billing.core.config import settings
from interview_billing.core.errors import AppError, ValidationError, WebhookVerificationError
from interview_billing.core.idempotency import claim_event, mark_failed, mark_processed
from interview_billing.features.plans.service import normalize_plan_key
from interview_billing.features.subscriptions.service import cancel_subscription, transition
from interview_billing.features.users.service import reconcile, record_user_deleted, sync_user_payload
from interview_billing.models.identity import MinimalProfile

logger = logging.getLogger("interview_billing")

SIGNATURE_VERSION = "v1"
SECRET_PREFIX = "whsec_"

CANCELLATION_EVENTS = {
    "subscription.cancelled",
    "subscription.canceled",
    "subscription.ended",
    "subscription.deleted",
}


def _secret_bytes(secret: str) -> bytes:
    raw = secret[len(SECRET_PREFIX):] if secret.startswith(SECRET_PREFIX) else secret
    try:
        return base64.b64decode(raw, validate=True)
    except ValueError:
        raise WebhookVerificationError("Webhook secret is not valid base64")


def sign_payload(secret: str, msg_id: str, timestamp: int, body: bytes) -> str:
    """Signature header value for a payload (used by tests and local tooling)."""
    signed_content = f"{msg_id}.{timestamp}.".encode() + body
    digest = hmac.new(_secret_bytes(secret), signed_content, hashlib.sha256).digest()
    return f"{SIGNATURE_VERSION},{base64.b64encode(digest).decode()}"


def verify_signature(
    secret: str,
    headers: Mapping[str, str],
    body: bytes,
    tolerance_seconds: Optional[int] = None,
    now: Optional[int] = None,
) -> str:
    """Verify svix headers against the raw body; returns the message id."""
    msg_id = headers.get("svix-id")
    timestamp_raw = headers.get("svix-timestamp")
    signature_header = headers.get("svix-signature")
    if not msg_id or not timestamp_raw or not signature_header:
        raise WebhookVerificationError("Missing svix headers")

    try:
        timestamp = int(timestamp_raw)
    except ValueError:
        raise WebhookVerificationError("Invalid svix-timestamp")

    tolerance = tolerance_seconds if tolerance_seconds is not None else settings.WEBHOOK_TOLERANCE_SECONDS
    current = now if now is not None else int(datetime.now(timezone.utc).timestamp())
    if abs(current - timestamp) > tolerance:
        raise WebhookVerificationError("Webhook timestamp outside tolerance")

    expected = sign_payload(secret, msg_id, timestamp, body).split(",", 1)[1]
    for candidate in signature_header.split():
        version, _, provided = candidate.partition(",")
        if version == SIGNATURE_VERSION and hmac.compare_digest(provided, expected):
            return msg_id

    raise WebhookVerificationError("Webhook signature mismatch")


def _parse_period(value: Any) -> Optional[datetime]:
    """Clerk sends epoch milliseconds; ISO strings and seconds are accepted too."""
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10**11 else value
        return datetime.fromtimestamp(seconds, timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _payer_id(data: Dict[str, Any]) -> Optional[str]:
    payer = data.get("payer")
    if isinstance(payer, dict) and payer.get("user_id"):
        return payer["user_id"]
    return data.get("user_id")


def _handle_subscription_change(data: Dict[str, Any]) -> str:
    user_id = _payer_id(data)
    if not user_id:
        logger.warning("[webhooks] subscription event without payer", extra={"subscription_id": data.get("id")})
        return "ignored"

    items = data.get("items") or []
    chosen = next((item for item in items if item.get("status") == "active"), None)
    if chosen is None:
        chosen = next((item for item in items if item.get("status") == "upcoming"), None)
    if chosen is None:
        logger.warning("[webhooks] no active or upcoming item", extra={"external_id": user_id})
        return "ignored"

    slug = (chosen.get("plan") or {}).get("slug") or chosen.get("plan_slug")
    if normalize_plan_key(slug) is None:
        logger.warning("[webhooks] unknown plan slug", extra={"external_id": user_id, "plan": slug})
        return "ignored"

    transition(
        user_id,
        slug,
        period_start=_parse_period(chosen.get("period_start")),
        period_end=_parse_period(chosen.get("period_end")),
    )
    return "subscription_transitioned"


def _handle_session_created(data: Dict[str, Any]) -> str:
    user_id = data.get("user_id")
    email = data.get("email") or (data.get("user") or {}).get("email")
    if user_id and email:
        reconcile(MinimalProfile(external_id=user_id, email=email))
        return "user_minimal"
    logger.info("[webhooks] session created", extra={"external_id": user_id})
    return "logged"


def dispatch_event(event: Dict[str, Any]) -> str:
    """Apply one event; every branch is safe to replay."""
    event_type = event.get("type") or ""
    data = event.get("data") or {}

    if event_type in ("user.created", "user.updated"):
        sync_user_payload(data)
        return "user_synced"
    if event_type == "user.deleted":
        record_user_deleted(data.get("id"))
        return "logged"
    if event_type == "session.created":
        return _handle_session_created(data)
    if event_type in ("subscription.created", "subscription.updated"):
        return _handle_subscription_change(data)
    if event_type in CANCELLATION_EVENTS:
        user_id = _payer_id(data)
        if not user_id:
            return "ignored"
        cancel_subscription(user_id)
        return "subscription_cancelled"

    logger.info("[webhooks] unhandled event type", extra={"event_type": event_type})
    return "ignored"


def process_clerk_webhook(headers: Mapping[str, str], body: bytes) -> Dict[str, Any]:
    """
    Verify, dedupe and dispatch a Clerk webhook delivery.

    A failed dispatch is recorded and re-raised so the provider redelivers.
    """
    secret = settings.CLERK_WEBHOOK_SECRET
    if not secret:
        raise AppError("Webhook secret is not configured", code="webhook_not_configured", status_code=503)

    event_id = verify_signature(secret, headers, body)

    try:
        event = json.loads(body)
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(event, dict):
        raise ValidationError("Webhook body must be an object")

    event_type = event.get("type") or "unknown"
    payload_hash = hashlib.sha256(body).hexdigest()
    if not claim_event(event_id, event_type, payload_hash):
        logger.info("[webhooks] duplicate delivery", extra={"event_id": event_id, "event_type": event_type})
        return {"status": "duplicate", "event_id": event_id, "event_type": event_type}

    try:
        action = dispatch_event(event)
    except Exception as exc:
        mark_failed(event_id, str(exc))
        logger.error(
            "[webhooks] processing failed",
            extra={"event_id": event_id, "event_type": event_type, "error": str(exc)},
        )
        raise

    mark_processed(event_id)
    logger.info(
        "[webhooks] processed",
        extra={"event_id": event_id, "event_type": event_type, "action": action},
    )
    return {"status": "processed", "event_id": event_id, "event_type": event_type, "action": action}
