"""Stripe webhook route."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from tierpay.api.deps import get_db
from tierpay.schemas.billing import WebhookAck
from tierpay.services.billing import webhooks as webhook_service

router = APIRouter(prefix="/stripe", tags=["webhooks"])


def _verify_and_process(db: Session, body: bytes, signature: str | None) -> None:
    event = webhook_service.verify_event(body, signature)
    webhook_service.process(db, event)


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(request: Request, db: Session = Depends(get_db)) -> WebhookAck:
    """Handle Stripe webhook; no auth, signature verified against the raw body.

    The raw body is read on the event loop; verification and the database
    work run in the threadpool.
    """
    body = await request.body()
    await run_in_threadpool(
        _verify_and_process, db, body, request.headers.get("stripe-signature")
    )
    return WebhookAck()
