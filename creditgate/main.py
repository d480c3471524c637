import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from the working directory .env (skipped under pytest)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from creditgate.core.config import settings, validate_config
from creditgate.core.container import Services, build_services
from creditgate.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from creditgate.core.logging import configure_logging
from creditgate.core.middleware.request_id import RequestIdMiddleware
from creditgate.core.rate_limit import RateLimiterRegistry, RateLimitMiddleware, build_rate_limit_config
from creditgate.core.validation import validate_env
from creditgate.api import credits, health, subscription, webhooks

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

logger = logging.getLogger("creditgate")


async def _rate_limit_cleanup_loop(registry: RateLimiterRegistry, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        removed = registry.cleanup()
        if removed:
            logger.debug("rate_limit.cleanup", extra={"removed": removed})


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting creditgate...")
    app.state.startup_time = time.time()
    cleanup_task = asyncio.create_task(
        _rate_limit_cleanup_loop(app.state.rate_limiters, settings.RATE_LIMIT_CLEANUP_SECONDS)
    )
    try:
        yield
    finally:
        cleanup_task.cancel()
        with suppress(asyncio.CancelledError):
            await cleanup_task
        app.state.services.close()
        logger.info("Stopping creditgate...")


def create_app(
    services: Optional[Services] = None,
    rate_limiters: Optional[RateLimiterRegistry] = None,
) -> FastAPI:
    app = FastAPI(title="creditgate", lifespan=lifespan)
    app.state.services = services or build_services(settings)
    if rate_limiters is None:
        rate_limiters = RateLimiterRegistry(build_rate_limit_config() if settings.RATE_LIMIT_ENABLED else {})
    app.state.rate_limiters = rate_limiters

    # Middlewares (last added runs first)
    app.add_middleware(RateLimitMiddleware, registry=rate_limiters)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(webhooks.router)
    app.include_router(subscription.router)
    app.include_router(credits.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("creditgate.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
