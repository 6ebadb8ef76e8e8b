from __future__ import annotations
import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db, get_processor, get_reconciler
from api.errors import SignatureError, WebhookConfigError
from api.webhook_reconciler import WebhookReconciler

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

@router.post("/payment")
async def payment_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    processor=Depends(get_processor),
    reconciler: WebhookReconciler = Depends(get_reconciler),
    db: AsyncSession = Depends(get_db),
):
    # signature is checked before the body is parsed or the store is touched
    raw = await request.body()
    try:
        event = processor.verify_webhook_signature(raw, stripe_signature)
    except WebhookConfigError as e:
        logger.error("webhook.not_configured", error=str(e))
        raise HTTPException(status_code=500, detail="Webhook endpoint is not configured")
    except SignatureError as e:
        logger.warning("webhook.signature_invalid", error=str(e),
                       client=request.client.host if request.client else None)
        raise HTTPException(status_code=400, detail=str(e))

    # handler failures propagate as 500 so the processor redelivers
    outcome = await reconciler.handle(db, event)
    return {"received": True, "event_id": event["id"], "outcome": outcome}
