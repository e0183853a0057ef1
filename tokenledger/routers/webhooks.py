"""Webhook routes — Stripe and the identity provider."""

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.db.session import get_db
from tokenledger.schemas.billing import WebhookAck
from tokenledger.services.identity_service import process_identity_event, verify_signature
from tokenledger.services.reconciliation_service import construct_event, process_event

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="stripe-signature"),
    db: AsyncSession = Depends(get_db),
):
    payload = await request.body()
    event = construct_event(payload, stripe_signature)
    return WebhookAck(status=await process_event(db, event))


@router.post("/identity", response_model=WebhookAck)
async def identity_webhook(
    request: Request,
    svix_id: str | None = Header(None, alias="svix-id"),
    svix_timestamp: str | None = Header(None, alias="svix-timestamp"),
    svix_signature: str | None = Header(None, alias="svix-signature"),
    db: AsyncSession = Depends(get_db),
):
    payload = await request.body()
    evt = verify_signature(payload, svix_id, svix_timestamp, svix_signature)
    return WebhookAck(status=await process_identity_event(db, evt))
