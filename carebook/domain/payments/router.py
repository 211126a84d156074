"""Payment webhook router - signature-verified gateway callbacks"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ... import config
from ...database import get_db
from ...webhook_security import verify_payment_webhook
from .service import PaymentEventService

logger = logging.getLogger(__name__)

webhooks_router = APIRouter(tags=["Webhooks"])


@webhooks_router.post("/webhooks/payments")
async def payment_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Gateway capture/failure callback.

    The signature is checked against the raw body before anything is parsed
    or written; the webhook id doubles as the escrow idempotency key.
    """
    webhook_id, raw_body = await verify_payment_webhook(request, config.PAYMENT_WEBHOOK_SECRET)

    try:
        event = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error(f"❌ Failed to parse webhook JSON for {webhook_id}: {e}")
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e

    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid event payload")

    service = PaymentEventService(db)
    # Ledger calls block on entity locks; keep them off the event loop
    return await run_in_threadpool(service.handle_event, webhook_id, event)
