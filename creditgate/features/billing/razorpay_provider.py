"""
Razorpay implementation of the billing gateway.

Talks to the Razorpay REST API with httpx (basic auth with the key pair).
Transport failures, timeouts and 5xx answers are retried with exponential
backoff; 4xx answers are surfaced immediately as BillingProviderError.
"""
import hashlib
import hmac
import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from creditgate.core.clock import from_epoch
from creditgate.core.errors import ExternalServiceError
from creditgate.features.billing.provider import (
    BillingProviderError,
    GatewaySubscription,
    GatewaySubscriptionRef,
)

logger = logging.getLogger("creditgate.billing.razorpay")

CUSTOMER_PAGE_SIZE = 100


def sign_payment(key_secret: str, payment_id: str, subscription_id: str) -> str:
    """HMAC-SHA256 over "<payment_id>|<subscription_id>", hex encoded."""
    message = f"{payment_id}|{subscription_id}".encode()
    return hmac.new(key_secret.encode(), message, hashlib.sha256).hexdigest()


def sign_webhook(webhook_secret: str, raw_payload: bytes) -> str:
    """HMAC-SHA256 over the raw webhook body, hex encoded."""
    return hmac.new(webhook_secret.encode(), raw_payload, hashlib.sha256).hexdigest()


def _signatures_match(expected: str, provided: Optional[str]) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(expected.encode(), provided.strip().encode("utf-8"))


def verify_payment(key_secret: Optional[str], payment_id: str, subscription_id: str, signature: Optional[str]) -> bool:
    if not key_secret or not payment_id or not subscription_id:
        return False
    return _signatures_match(sign_payment(key_secret, payment_id, subscription_id), signature)


def verify_webhook(webhook_secret: Optional[str], raw_payload: bytes, signature: Optional[str]) -> bool:
    if not webhook_secret:
        return False
    return _signatures_match(sign_webhook(webhook_secret, raw_payload), signature)


def _error_description(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("description") or error.get("code") or f"HTTP {response.status_code}"
    return f"HTTP {response.status_code}"


class RazorpayGateway:
    """
    Billing gateway backed by the Razorpay REST API.

    Example:
        gateway = RazorpayGateway.from_settings(settings)
        ref = gateway.create_subscription("plan_123", "a@example.com")
    """

    def __init__(
        self,
        key_id: Optional[str],
        key_secret: Optional[str],
        webhook_secret: Optional[str],
        *,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        max_attempts: int = 2,
        retry_delay: float = 2.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            auth=(key_id or "", key_secret or ""),
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings_obj, **kwargs) -> "RazorpayGateway":
        return cls(
            settings_obj.RAZORPAY_KEY_ID,
            settings_obj.RAZORPAY_KEY_SECRET,
            settings_obj.RAZORPAY_WEBHOOK_SECRET,
            base_url=settings_obj.RAZORPAY_API_BASE,
            timeout=settings_obj.GATEWAY_TIMEOUT_SECONDS,
            max_attempts=settings_obj.GATEWAY_MAX_ATTEMPTS,
            retry_delay=settings_obj.GATEWAY_RETRY_DELAY_SECONDS,
            **kwargs,
        )

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def close(self) -> None:
        self._client.close()

    def _compute_backoff(self, attempt: int) -> float:
        return self.retry_delay * (2 ** attempt)

    def _request(self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.configured:
            raise ExternalServiceError("Payment processor is not configured")

        last_error = "unknown error"
        for attempt in range(self.max_attempts):
            try:
                response = self._client.request(method, path, json=json, params=params)
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                if response.status_code >= 500:
                    last_error = f"HTTP {response.status_code}"
                elif response.status_code >= 400:
                    description = _error_description(response)
                    logger.warning(
                        "gateway.rejected",
                        extra={"method": method, "path": path, "status": response.status_code, "error": description},
                    )
                    raise BillingProviderError(description)
                else:
                    try:
                        return response.json()
                    except ValueError:
                        logger.error(
                            "gateway.invalid_response",
                            extra={"method": method, "path": path, "status": response.status_code},
                        )
                        raise ExternalServiceError("Payment processor returned an invalid response")

            logger.warning(
                "gateway.retryable_failure",
                extra={"method": method, "path": path, "attempt": attempt + 1, "error": last_error},
            )
            if attempt + 1 < self.max_attempts:
                self._sleep(self._compute_backoff(attempt))

        raise ExternalServiceError(f"Payment processor unavailable: {last_error}")

    def _find_customer_by_email(self, email: str) -> Optional[str]:
        skip = 0
        while True:
            page = self._request("GET", "/customers", params={"count": CUSTOMER_PAGE_SIZE, "skip": skip})
            items = page.get("items") or []
            for item in items:
                if (item.get("email") or "").lower() == email.lower():
                    return item["id"]
            if len(items) < CUSTOMER_PAGE_SIZE:
                return None
            skip += CUSTOMER_PAGE_SIZE

    def create_customer(self, email: str, name: Optional[str] = None, user_id: Optional[str] = None) -> str:
        body: Dict[str, Any] = {"email": email, "name": name or email.split("@")[0]}
        if user_id:
            body["notes"] = {"user_id": user_id}
        try:
            customer = self._request("POST", "/customers", json=body)
        except BillingProviderError as exc:
            if "already exists" not in exc.message.lower():
                raise
            existing = self._find_customer_by_email(email)
            if not existing:
                raise
            logger.info("gateway.customer_reused", extra={"customer_id": existing})
            return existing
        return customer["id"]

    def create_subscription(
        self,
        provider_plan_id: str,
        customer_email: str,
        customer_name: Optional[str] = None,
        total_cycles: int = 12,
    ) -> GatewaySubscriptionRef:
        notes = {"customer_email": customer_email}
        if customer_name:
            notes["customer_name"] = customer_name
        sub = self._request(
            "POST",
            "/subscriptions",
            json={
                "plan_id": provider_plan_id,
                "customer_notify": 1,
                "total_count": total_cycles,
                "quantity": 1,
                "notes": notes,
            },
        )
        return GatewaySubscriptionRef(
            provider_subscription_id=sub["id"],
            provider_plan_id=sub.get("plan_id") or provider_plan_id,
        )

    def get_subscription(self, provider_subscription_id: str) -> GatewaySubscription:
        sub = self._request("GET", f"/subscriptions/{provider_subscription_id}")
        return GatewaySubscription(
            provider_subscription_id=sub.get("id", provider_subscription_id),
            status=sub.get("status", "unknown"),
            provider_plan_id=sub.get("plan_id"),
            current_period_start=from_epoch(sub.get("current_start")),
            current_period_end=from_epoch(sub.get("current_end")),
            customer_id=sub.get("customer_id"),
            notes=sub.get("notes") or {},
        )

    def cancel_subscription(self, provider_subscription_id: str, cancel_at_cycle_end: bool) -> None:
        self._request(
            "POST",
            f"/subscriptions/{provider_subscription_id}/cancel",
            json={"cancel_at_cycle_end": 1 if cancel_at_cycle_end else 0},
        )

    def verify_payment_signature(self, payment_id: str, subscription_id: str, signature: str) -> bool:
        return verify_payment(self.key_secret, payment_id, subscription_id, signature)

    def verify_webhook_signature(self, raw_payload: bytes, signature: str) -> bool:
        return verify_webhook(self.webhook_secret, raw_payload, signature)
