"""Idempotency record for payment-provider webhook events."""

import json
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.models.webhook_event import WebhookEvent
from tokenledger.utils import now_utc

logger = logging.getLogger(__name__)


async def get_event(db: AsyncSession, event_id: str) -> WebhookEvent | None:
    result = await db.execute(
        select(WebhookEvent)
        .where(WebhookEvent.id == event_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def record_event(db: AsyncSession, event_id: str, event_type: str) -> bool:
    """Insert and commit the event row before any business effect.

    Returns False if another delivery recorded it first.
    """
    db.add(WebhookEvent(id=event_id, event_type=event_type))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Webhook event %s already recorded by a concurrent delivery", event_id)
        return False
    return True


async def claim_event(db: AsyncSession, event_id: str) -> bool:
    """Mark the event processed inside the caller's open transaction.

    Only one transaction can flip ``processed_at`` from NULL; the loser gets
    False and must roll back. The caller commits this together with the
    event's ledger effects.
    """
    result = await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id, WebhookEvent.processed_at.is_(None))
        .values(processed_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def set_event_user(
    db: AsyncSession, event_id: str, user_id: str, metadata: dict | None = None
) -> None:
    """Back-fill the resolved user (and optional details) on the event row."""
    values: dict = {WebhookEvent.user_id: user_id}
    if metadata:
        values[WebhookEvent.metadata_json] = json.dumps(metadata, sort_keys=True)
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id)
        .values(values)
        .execution_options(synchronize_session=False)
    )
