from functools import lru_cache

from app.db import SessionLocal
from app.services.billing.webhooks import BillingWebhookRouter


@lru_cache(maxsize=1)
def get_webhook_router() -> BillingWebhookRouter:
    return BillingWebhookRouter(SessionLocal)
