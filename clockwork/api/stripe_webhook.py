"""
Stripe Webhook API Endpoint
Handles incoming webhook events from Stripe
"""

from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from clockwork.services.stripe_webhook import webhook_handler
from clockwork.utils.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])


@router.post("/billing/webhook")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> JSONResponse:
    """
    Handle Stripe webhook events

    The raw body is verified against the Stripe-Signature header before
    anything is parsed. A failed signature answers 400 and touches nothing;
    a processing failure propagates as a 500 so Stripe redelivers.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    event = webhook_handler.verify_webhook_signature(payload, sig_header)
    result = await webhook_handler.process_event(db, event)

    logger.info(f"Webhook processed: {event['type']} ({event['id']})")

    return JSONResponse(
        status_code=200,
        content={
            "event_type": event["type"],
            "event_id": event["id"],
            **result,
        }
    )
