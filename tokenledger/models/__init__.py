"""SQLAlchemy models for the token ledger."""

from .base import Base
from .subscription import UserSubscription
from .content import UserContent
from .webhook_event import WebhookEvent

__all__ = [
    "Base",
    "UserSubscription",
    "UserContent",
    "WebhookEvent",
]
