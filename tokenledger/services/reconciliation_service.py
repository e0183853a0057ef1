"""Stripe webhook reconciliation — maps payment events onto ledger operations.

Order of work for every delivery:

1. verify the signature (``construct_event``),
2. skip events already completed,
3. record the event id and commit,
4. fetch the Stripe objects the event needs, with no transaction open,
5. claim the event and apply its ledger effects in one transaction.

A failure in steps 4 or 5 rolls back both the claim and the effects, so
the provider's retry re-applies them exactly once.
"""

import logging
from dataclasses import dataclass

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.config import get_settings
from tokenledger.constants import (
    EVENT_CHECKOUT_COMPLETED,
    EVENT_INVOICE_PAYMENT_SUCCEEDED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
    RENEWAL_BILLING_REASON,
    WEBHOOK_DUPLICATE,
    WEBHOOK_IGNORED,
    WEBHOOK_PROCESSED,
)
from tokenledger.errors import InvalidSignature, WebhookProcessingError
from tokenledger.schemas.billing import SubscriptionFields
from tokenledger.services import billing_service
from tokenledger.services.ledger_service import (
    credit_tokens,
    delete_subscription,
    find_user_id_by_customer,
    upsert_subscription_metadata,
)
from tokenledger.services.webhook_ledger import claim_event, get_event, record_event, set_event_user

logger = logging.getLogger(__name__)


def construct_event(payload: bytes, signature: str | None):
    """Verify the Stripe-Signature header and parse the event; fail closed."""
    settings = get_settings()
    if not signature:
        logger.warning("Stripe webhook rejected: no signature header")
        raise InvalidSignature("No signature")
    if not settings.stripe_webhook_secret:
        logger.error("Stripe webhook rejected: STRIPE_WEBHOOK_SECRET is not configured")
        raise InvalidSignature("Webhook secret not configured")
    try:
        return stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning("Stripe webhook signature verification failed: %s", e)
        raise InvalidSignature() from e


@dataclass
class StripeContext:
    """Provider objects an event needs, fetched before any ledger transaction."""

    stripe_sub: dict | None = None
    customer_id: str | None = None
    customer: dict | None = None


async def _load_customer(ctx: StripeContext) -> StripeContext:
    if ctx.customer_id:
        ctx.customer = await billing_service.retrieve_customer(ctx.customer_id)
    return ctx


async def resolve_user_id(db: AsyncSession, ctx: StripeContext) -> str | None:
    """User id from customer metadata, else from the row linked to the customer."""
    if not ctx.customer_id:
        return None
    user_id = billing_service.customer_user_id(ctx.customer)
    if user_id:
        return user_id
    return await find_user_id_by_customer(db, ctx.customer_id)


def _subscription_fields(stripe_sub, customer_id: str | None) -> SubscriptionFields:
    return SubscriptionFields(
        stripe_customer_id=customer_id,
        stripe_subscription_id=stripe_sub["id"],
        stripe_subscription_price_id=billing_service.get_price_id(stripe_sub),
        stripe_subscription_status=stripe_sub.get("status"),
        stripe_subscription_current_period_end=billing_service.get_period_end(stripe_sub),
    )


def _invoice_subscription_id(invoice) -> str | None:
    """Invoice subscription id; newer API versions nest it under parent."""
    subscription = invoice.get("subscription")
    if subscription:
        return billing_service.object_id(subscription)
    try:
        return billing_service.object_id(invoice["parent"]["subscription_details"]["subscription"])
    except (KeyError, TypeError):
        return None


# --- Loaders: Stripe lookups only, no database access ---

async def load_checkout(session) -> StripeContext:
    subscription_id = billing_service.object_id(session.get("subscription"))
    if not subscription_id:
        return StripeContext()
    stripe_sub = await billing_service.retrieve_subscription(subscription_id)
    customer_id = billing_service.object_id(session.get("customer") or stripe_sub.get("customer"))
    return await _load_customer(StripeContext(stripe_sub=stripe_sub, customer_id=customer_id))


async def load_subscription(stripe_sub) -> StripeContext:
    customer_id = billing_service.object_id(stripe_sub.get("customer"))
    return await _load_customer(StripeContext(stripe_sub=stripe_sub, customer_id=customer_id))


async def load_invoice(invoice) -> StripeContext:
    if invoice.get("billing_reason") != RENEWAL_BILLING_REASON:
        return StripeContext()
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return StripeContext()
    stripe_sub = await billing_service.retrieve_subscription(subscription_id)
    customer_id = billing_service.object_id(stripe_sub.get("customer") or invoice.get("customer"))
    return await _load_customer(StripeContext(stripe_sub=stripe_sub, customer_id=customer_id))


# --- Handlers: ledger effects inside the claiming transaction ---

async def handle_checkout_completed(db: AsyncSession, event_id: str, session, ctx: StripeContext) -> None:
    """Link billing ids to the user and grant the plan's tokens."""
    if ctx.stripe_sub is None:
        logger.error("Checkout session %s has no subscription", session.get("id"))
        return

    subscription_id = ctx.stripe_sub["id"]
    user_id = await resolve_user_id(db, ctx)
    if not user_id:
        logger.error("No userId found for customer %s (event %s)", ctx.customer_id, event_id)
        return

    price_id = billing_service.get_price_id(ctx.stripe_sub)
    grant = get_settings().token_grant_for(price_id) if price_id else 0
    await set_event_user(
        db, event_id, user_id,
        {"customer": ctx.customer_id, "subscription": subscription_id, "price": price_id, "grant": grant},
    )
    await upsert_subscription_metadata(
        db, user_id, _subscription_fields(ctx.stripe_sub, ctx.customer_id), commit=False
    )
    if grant:
        await credit_tokens(db, user_id, grant, commit=False)
    logger.info("Checkout completed for user %s: subscription %s, +%d tokens", user_id, subscription_id, grant)


async def handle_subscription_updated(db: AsyncSession, event_id: str, stripe_sub, ctx: StripeContext) -> None:
    """Refresh status / price / period end of an existing row. No token effect."""
    user_id = await resolve_user_id(db, ctx)
    if not user_id:
        logger.warning("Subscription %s updated for unknown customer %s", stripe_sub.get("id"), ctx.customer_id)
        return

    await set_event_user(db, event_id, user_id)
    # Deliveries can arrive after customer.subscription.deleted; never recreate the row
    await upsert_subscription_metadata(
        db, user_id, _subscription_fields(stripe_sub, ctx.customer_id), create=False, commit=False
    )


async def handle_subscription_deleted(db: AsyncSession, event_id: str, stripe_sub, ctx: StripeContext) -> None:
    user_id = await resolve_user_id(db, ctx)
    if not user_id:
        logger.warning("Subscription %s deleted for unknown customer %s", stripe_sub.get("id"), ctx.customer_id)
        return

    await set_event_user(db, event_id, user_id)
    await delete_subscription(db, user_id, commit=False)


async def handle_invoice_payment_succeeded(db: AsyncSession, event_id: str, invoice, ctx: StripeContext) -> None:
    """Grant renewal tokens; the first invoice is covered by checkout."""
    if ctx.stripe_sub is None:
        logger.info("Invoice %s is not a renewal (%s), skipping", invoice.get("id"), invoice.get("billing_reason"))
        return

    subscription_id = ctx.stripe_sub["id"]
    user_id = await resolve_user_id(db, ctx)
    if not user_id:
        logger.error("No userId found for renewal of subscription %s", subscription_id)
        return

    price_id = billing_service.get_price_id(ctx.stripe_sub)
    if not price_id:
        return
    grant = get_settings().token_grant_for(price_id)
    await set_event_user(db, event_id, user_id, {"subscription": subscription_id, "price": price_id, "grant": grant})
    await credit_tokens(db, user_id, grant, commit=False)
    logger.info("Renewal for user %s: +%d tokens", user_id, grant)


_EVENT_HANDLERS = {
    EVENT_CHECKOUT_COMPLETED: (load_checkout, handle_checkout_completed),
    EVENT_SUBSCRIPTION_UPDATED: (load_subscription, handle_subscription_updated),
    EVENT_SUBSCRIPTION_DELETED: (load_subscription, handle_subscription_deleted),
    EVENT_INVOICE_PAYMENT_SUCCEEDED: (load_invoice, handle_invoice_payment_succeeded),
}


async def process_event(db: AsyncSession, event) -> str:
    """Apply a verified Stripe event at most once. Returns the outcome."""
    event = billing_service.to_plain(event)
    event_id = event["id"]
    event_type = event["type"]
    logger.info(f"Stripe webhook: {event_type} ({event_id})")

    existing = await get_event(db, event_id)
    if existing and existing.processed_at:
        logger.info("Stripe event %s already processed", event_id)
        return WEBHOOK_DUPLICATE
    if existing is None:
        await record_event(db, event_id, event_type)
    else:
        await db.rollback()  # end the read before calling Stripe

    handlers = _EVENT_HANDLERS.get(event_type)
    obj = event["data"]["object"]
    try:
        # No transaction is open while Stripe is called
        ctx = await handlers[0](obj) if handlers else None

        if not await claim_event(db, event_id):
            await db.rollback()
            logger.info("Stripe event %s completed by a concurrent delivery", event_id)
            return WEBHOOK_DUPLICATE

        if handlers:
            await handlers[1](db, event_id, obj, ctx)
        else:
            logger.info(f"Unhandled Stripe event type: {event_type}")
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.exception("Stripe event %s (%s) failed", event_id, event_type)
        raise WebhookProcessingError() from e

    return WEBHOOK_PROCESSED if handlers else WEBHOOK_IGNORED
