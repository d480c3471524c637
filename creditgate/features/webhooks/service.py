"""
Webhook processor.

Verifies, parses and dispatches processor notifications to the subscription
state machine. Never raises into the HTTP layer: every outcome is an HTTP
status, and anything but 2xx makes the processor redeliver later.
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy import insert

from creditgate.core.database import get_db_session, billing_events
from creditgate.core.errors import NotFoundError
from creditgate.features.billing.provider import BillingGateway
from creditgate.features.subscriptions.service import SubscriptionService

logger = logging.getLogger("creditgate.webhooks")

TRANSITION_EVENTS = {
    "subscription.charged": "renew",
    "subscription.cancelled": "expire",
}

INFORMATIONAL_EVENTS = {
    "subscription.activated",
    "subscription.completed",
    "subscription.paused",
    "subscription.resumed",
}


@dataclass
class WebhookOutcome:
    status_code: int
    body: Dict[str, Any] = field(default_factory=lambda: {"received": True})


def _payload_hash(raw_payload: bytes) -> str:
    return hashlib.sha256(raw_payload).hexdigest()


def _subscription_id(event: Dict[str, Any]) -> Optional[str]:
    payload = event.get("payload")
    if not isinstance(payload, dict):
        return None
    subscription = payload.get("subscription")
    if not isinstance(subscription, dict):
        return None
    entity = subscription.get("entity")
    if not isinstance(entity, dict):
        return None
    sub_id = entity.get("id")
    return sub_id if isinstance(sub_id, str) and sub_id else None


class WebhookProcessor:
    def __init__(self, gateway: BillingGateway, subscriptions: SubscriptionService, session_scope=get_db_session):
        self.gateway = gateway
        self.subscriptions = subscriptions
        self._session_scope = session_scope

    def _record(self, event_type: str, sub_id: Optional[str], payload_hash: str, outcome: str, error: Optional[str] = None) -> None:
        with self._session_scope() as session:
            session.execute(
                insert(billing_events).values(
                    event_type=event_type,
                    provider_subscription_id=sub_id,
                    payload_hash=payload_hash,
                    outcome=outcome,
                    error=error[:1000] if error else None,
                )
            )

    def handle(self, raw_payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        """
        Process one delivery.

        Returns:
            200 for applied, duplicate, informational and unknown events,
            400 for a bad signature or malformed body,
            500 when a transition failed and should be redelivered.
        """
        if not signature or not self.gateway.verify_webhook_signature(raw_payload, signature):
            logger.warning("webhook.invalid_signature", extra={"has_signature": bool(signature)})
            return WebhookOutcome(400, {"error": "Invalid signature"})

        payload_hash = _payload_hash(raw_payload)
        try:
            event = json.loads(raw_payload)
        except (ValueError, UnicodeDecodeError):
            logger.warning("webhook.malformed", extra={"payload_hash": payload_hash})
            return WebhookOutcome(400, {"error": "Malformed payload"})

        event_type = event.get("event") if isinstance(event, dict) else None
        if not isinstance(event_type, str) or not event_type:
            logger.warning("webhook.missing_event", extra={"payload_hash": payload_hash})
            return WebhookOutcome(400, {"error": "Missing event type"})

        sub_id = _subscription_id(event)
        logger.info("webhook.received", extra={"event_type": event_type, "provider_subscription_id": sub_id})

        try:
            transition = TRANSITION_EVENTS.get(event_type)
            if transition is None:
                if event_type in INFORMATIONAL_EVENTS:
                    logger.info("webhook.informational", extra={"event_type": event_type, "provider_subscription_id": sub_id})
                else:
                    logger.info("webhook.unhandled_event", extra={"event_type": event_type})
                self._record(event_type, sub_id, payload_hash, "ignored")
                return WebhookOutcome(200)

            if not sub_id:
                self._record(event_type, None, payload_hash, "failed", "missing subscription id")
                return WebhookOutcome(400, {"error": "Missing subscription id"})

            try:
                applied = getattr(self.subscriptions, transition)(sub_id)
            except NotFoundError as exc:
                # Nothing local to update; redelivery would not help.
                logger.warning("webhook.unknown_subscription", extra={"event_type": event_type, "provider_subscription_id": sub_id})
                self._record(event_type, sub_id, payload_hash, "ignored", exc.message)
                return WebhookOutcome(200)

            self._record(event_type, sub_id, payload_hash, "applied" if applied else "duplicate")
            return WebhookOutcome(200)
        except Exception as exc:
            logger.error(
                "webhook.processing_failed",
                exc_info=True,
                extra={"event_type": event_type, "provider_subscription_id": sub_id},
            )
            try:
                self._record(event_type, sub_id, payload_hash, "failed", f"{type(exc).__name__}: {exc}")
            except Exception:
                logger.error("webhook.audit_failed", exc_info=True, extra={"event_type": event_type})
            return WebhookOutcome(500, {"error": "Webhook processing failed"})
