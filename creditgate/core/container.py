"""
Service wiring.

The entry point (app factory, worker script, tests) builds one Services
bundle and owns its lifecycle; nothing below reaches for module globals.
"""
from dataclasses import dataclass
from typing import Optional

from creditgate.core.clock import utc_now
from creditgate.core.database import get_db_session
from creditgate.features.billing.provider import BillingGateway
from creditgate.features.billing.razorpay_provider import RazorpayGateway
from creditgate.features.entitlements.service import EntitlementService
from creditgate.features.ledger.service import CreditLedger
from creditgate.features.subscriptions.service import SubscriptionService
from creditgate.features.users.service import UserService
from creditgate.features.webhooks.service import WebhookProcessor


@dataclass
class Services:
    gateway: BillingGateway
    users: UserService
    ledger: CreditLedger
    subscriptions: SubscriptionService
    entitlements: EntitlementService
    webhooks: WebhookProcessor

    def close(self) -> None:
        close = getattr(self.gateway, "close", None)
        if callable(close):
            close()


def build_services(
    settings_obj,
    gateway: Optional[BillingGateway] = None,
    session_scope=get_db_session,
    clock=utc_now,
) -> Services:
    gateway = gateway or RazorpayGateway.from_settings(settings_obj)
    ledger = CreditLedger(
        session_scope=session_scope,
        clock=clock,
        max_cas_attempts=settings_obj.LEDGER_MAX_CAS_ATTEMPTS,
    )
    subscriptions = SubscriptionService(
        gateway,
        ledger,
        settings_obj,
        session_scope=session_scope,
        clock=clock,
        max_attempts=settings_obj.LEDGER_MAX_CAS_ATTEMPTS,
    )
    return Services(
        gateway=gateway,
        users=UserService(session_scope=session_scope),
        ledger=ledger,
        subscriptions=subscriptions,
        entitlements=EntitlementService(ledger, subscriptions),
        webhooks=WebhookProcessor(gateway, subscriptions, session_scope=session_scope),
    )
