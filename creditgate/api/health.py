"""
Health endpoints.

/healthz answers as long as the process is up. /readyz also needs the
database reachable and the billing tables in place. Neither exposes config.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from creditgate.core.database import billing_events, check_connection, get_engine, subscriptions, users

logger = logging.getLogger("creditgate.health")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = [users.name, subscriptions.name, billing_events.name]


def _not_ready(detail: str) -> JSONResponse:
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@router.get("/healthz")
def healthz():
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    if not check_connection():
        return _not_ready("database unreachable")

    try:
        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except SQLAlchemyError as e:
        logger.error("readyz.inspect_failed", extra={"error": str(e)})
        return _not_ready("database unreachable")

    if missing:
        logger.warning("readyz.missing_tables", extra={"missing": missing})
        return _not_ready(f"missing tables: {', '.join(missing)}")
    return {"status": "ok"}
