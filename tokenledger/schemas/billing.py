"""Billing and subscription schemas."""

from pydantic import BaseModel

from .base import CamelModel


class SubscriptionFields(BaseModel):
    """Non-token billing fields; ``None`` leaves a field untouched on update."""

    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    stripe_subscription_price_id: str | None = None
    stripe_subscription_status: str | None = None
    stripe_subscription_current_period_end: int | None = None


class CheckoutRequest(CamelModel):
    price_id: str | None = None


class CheckoutOut(CamelModel):
    session_id: str
    url: str | None = None


class PortalOut(CamelModel):
    url: str


class WebhookAck(BaseModel):
    status: str
