"""Payment processor webhook route."""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from creditgate.api.deps import get_services
from creditgate.core.container import Services

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/billing")
async def billing_webhook(
    request: Request,
    x_provider_signature: Optional[str] = Header(None, alias="X-Provider-Signature"),
    services: Services = Depends(get_services),
):
    # Signature covers the exact bytes received; never re-serialize.
    raw_body = await request.body()
    outcome = await run_in_threadpool(services.webhooks.handle, raw_body, x_provider_signature)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
