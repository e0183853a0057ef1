"""Stripe billing: customers, checkout and portal sessions, object lookups."""

import asyncio
import logging

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.config import get_settings
from tokenledger.constants import CUSTOMER_METADATA_USER_KEY, LIVE_SUBSCRIPTION_STATUSES, STRIPE_API_VERSION
from tokenledger.errors import AlreadySubscribed, BillingError, NotFound, ValidationError
from tokenledger.services.auth_service import CurrentUser
from tokenledger.services.ledger_service import get_subscription

logger = logging.getLogger(__name__)


def init_stripe() -> None:
    """Set the Stripe API key from settings. Call once at startup."""
    settings = get_settings()
    stripe.api_key = settings.stripe_secret_key
    stripe.api_version = STRIPE_API_VERSION


async def _call_stripe(func, *args, **kwargs):
    """Run a blocking Stripe SDK call off the event loop."""
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except stripe.StripeError as e:
        logger.error("Stripe call %s failed: %s", getattr(func, "__qualname__", func), e)
        raise BillingError(str(e)) from e


def to_plain(obj) -> dict:
    """StripeObject → plain dict, so handlers can use ``.get`` on any SDK version."""
    if obj is None or type(obj) is dict:
        return obj
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    return obj.to_dict()


def object_id(value) -> str | None:
    """Stripe fields hold either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return value["id"]


def get_period_end(stripe_sub) -> int | None:
    """Extract current_period_end, handling Stripe API version differences.

    Newer API versions (2025-03-31+) moved this field to items.data[0].
    """
    try:
        value = stripe_sub["current_period_end"]
        if value is not None:
            return value
    except (KeyError, TypeError):
        pass
    try:
        return stripe_sub["items"]["data"][0]["current_period_end"]
    except (KeyError, TypeError, IndexError):
        return None


def get_price_id(stripe_sub) -> str | None:
    try:
        return stripe_sub["items"]["data"][0]["price"]["id"]
    except (KeyError, TypeError, IndexError):
        return None


async def retrieve_subscription(subscription_id: str) -> dict:
    return to_plain(await _call_stripe(stripe.Subscription.retrieve, subscription_id))


async def retrieve_customer(customer_id: str) -> dict:
    return to_plain(await _call_stripe(stripe.Customer.retrieve, customer_id))


def customer_user_id(customer) -> str | None:
    """The provisioning user id stored on a (non-deleted) customer."""
    if not customer or customer.get("deleted"):
        return None
    metadata = customer.get("metadata") or {}
    return metadata.get(CUSTOMER_METADATA_USER_KEY) or None


async def create_or_retrieve_customer(user_id: str, email: str, linked_customer_id: str | None = None) -> str:
    """Return a Stripe customer id for the user, creating one if needed."""
    if linked_customer_id:
        return linked_customer_id

    existing = await _call_stripe(stripe.Customer.list, email=email, limit=1)
    if existing.data:
        customer = to_plain(existing.data[0])
        # Webhooks resolve the user from this metadata key
        if customer_user_id(customer) != user_id:
            await _call_stripe(
                stripe.Customer.modify, customer["id"], metadata={CUSTOMER_METADATA_USER_KEY: user_id}
            )
        return customer["id"]

    customer = await _call_stripe(
        stripe.Customer.create,
        email=email,
        metadata={CUSTOMER_METADATA_USER_KEY: user_id},
    )
    logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
    return customer.id


async def create_checkout_session(db: AsyncSession, user: CurrentUser, price_id: str | None):
    """Create a Stripe Checkout session for ``price_id`` and return it."""
    settings = get_settings()

    if not price_id:
        raise ValidationError("Price ID is required")
    if settings.stripe_price_ids and price_id not in settings.stripe_price_ids:
        raise ValidationError(f"Unknown price ID: {price_id}")

    subscription = await get_subscription(db, user.user_id)
    status = subscription.stripe_subscription_status if subscription else None
    linked_customer_id = subscription.stripe_customer_id if subscription else None
    # Release the read transaction (and SQLite's write lock) before calling Stripe
    await db.rollback()

    if status in LIVE_SUBSCRIPTION_STATUSES:
        raise AlreadySubscribed()

    if not user.email:
        raise ValidationError("User email not found")

    customer_id = await create_or_retrieve_customer(user.user_id, user.email, linked_customer_id)

    session = await _call_stripe(
        stripe.checkout.Session.create,
        customer=customer_id,
        mode="subscription",
        line_items=[{"price": price_id, "quantity": 1}],
        success_url=f"{settings.app_url}/dashboard/billing?success=true",
        cancel_url=f"{settings.app_url}/dashboard/billing?canceled=true",
        subscription_data={"metadata": {CUSTOMER_METADATA_USER_KEY: user.user_id}},
    )
    logger.info("Checkout session %s created for user %s (price %s)", session.id, user.user_id, price_id)
    return session


async def create_portal_session(db: AsyncSession, user_id: str) -> str:
    """Create a Stripe Customer Portal session and return the URL."""
    settings = get_settings()

    subscription = await get_subscription(db, user_id)
    customer_id = subscription.stripe_customer_id if subscription else None
    await db.rollback()
    if not customer_id:
        raise NotFound("No subscription found")

    session = await _call_stripe(
        stripe.billing_portal.Session.create,
        customer=customer_id,
        return_url=f"{settings.app_url}/dashboard/billing",
    )
    return session.url
