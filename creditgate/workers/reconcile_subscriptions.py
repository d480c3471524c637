"""Worker: expire cancel-at-period-end subscriptions whose period has passed."""
import argparse
import logging
from datetime import datetime, timezone

from creditgate.core.config import settings
from creditgate.core.container import build_services
from creditgate.core.database import create_all_tables
from creditgate.core.logging import configure_logging
from creditgate.features.subscriptions.reconcile_job import run_reconcile_job

logger = logging.getLogger("creditgate.workers.reconcile")


def _parse_now(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def main(argv=None) -> dict:
    parser = argparse.ArgumentParser(description="Expire lapsed subscriptions")
    parser.add_argument("--now", type=_parse_now, default=None, help="ISO timestamp to reconcile against (default: now, UTC)")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    if args.create_tables:
        create_all_tables()

    logger.info("reconcile.worker_start", extra={"now": args.now.isoformat() if args.now else None})
    services = build_services(settings)
    try:
        return run_reconcile_job(services.subscriptions, now=args.now)
    finally:
        services.close()


if __name__ == "__main__":
    result = main()
    print(result)
