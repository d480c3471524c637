"""
Scheduled reconciliation job.

Flips subscriptions that were cancelled at period end, and whose period has
now passed, to CANCELLED so their users fall back to the free plan on the
next credit sync, even if no request or webhook touches them first.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from creditgate.core.clock import utc_now
from creditgate.features.subscriptions.service import SubscriptionService

logger = logging.getLogger("creditgate.reconcile")


def run_reconcile_job(service: SubscriptionService, now: Optional[datetime] = None) -> Dict[str, Any]:
    started = now or utc_now()
    expired = service.expire_lapsed(now=started)
    logger.info("reconcile.complete", extra={"expired": expired})
    return {
        "expired": expired,
        "timestamp": started.isoformat(),
    }
