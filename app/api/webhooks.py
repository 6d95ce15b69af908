"""Billing provider webhook routes."""

import logging

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool
from starlette.responses import JSONResponse

from app.api.deps import get_webhook_router
from app.services.billing.webhooks import BillingWebhookRouter

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    webhook_router: BillingWebhookRouter = Depends(get_webhook_router),
) -> JSONResponse:
    """Receive Stripe events. No auth: the signature header is the credential."""
    body = await request.body()
    signature = request.headers.get("stripe-signature")
    result = await run_in_threadpool(webhook_router.handle, body, signature)
    return JSONResponse(status_code=result.status_code, content=result.body)
