"""Token ledger engine — the only code that writes balances or content rows.

Every balance change is a single guarded UPDATE whose predicate carries the
clamp (``token > 0`` on debit, ``LEAST``-style CASE on credit), so no
read-then-write window exists and no application lock is needed; the
database's row locking serialises concurrent requests for the same user.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.config import get_settings
from tokenledger.errors import (
    InsufficientTokens,
    InvalidAmount,
    NotFound,
    NotProvisioned,
    StoreFailure,
    ValidationError,
)
from tokenledger.models.content import UserContent
from tokenledger.models.subscription import UserSubscription
from tokenledger.schemas.billing import SubscriptionFields
from tokenledger.utils import blank_to_none, now_utc

logger = logging.getLogger(__name__)

_BILLING_ID_FIELDS = ("stripe_customer_id", "stripe_subscription_id", "stripe_subscription_price_id")


@asynccontextmanager
async def _store_guard(db: AsyncSession, action: str) -> AsyncIterator[None]:
    """Roll back and surface driver errors as StoreFailure."""
    try:
        yield
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Store failure during %s: %s", action, e)
        raise StoreFailure() from e


def _require_user_id(user_id: str) -> None:
    if not isinstance(user_id, str) or not user_id:
        raise ValidationError("User id is required")


async def get_subscription(db: AsyncSession, user_id: str) -> UserSubscription | None:
    result = await db.execute(
        select(UserSubscription)
        .where(UserSubscription.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_user_id_by_customer(db: AsyncSession, customer_id: str) -> str | None:
    """Map a linked Stripe customer id back to its owner."""
    return await db.scalar(
        select(UserSubscription.user_id).where(UserSubscription.stripe_customer_id == customer_id)
    )


async def get_balance(db: AsyncSession, user_id: str) -> int:
    """Current token count. Raises NotProvisioned when the user has no row."""
    _require_user_id(user_id)
    async with _store_guard(db, "get_balance"):
        token = await db.scalar(
            select(UserSubscription.token).where(UserSubscription.user_id == user_id)
        )
    if token is None:
        raise NotProvisioned()
    return token


async def provision(db: AsyncSession, user_id: str) -> tuple[UserSubscription, bool]:
    """Create the user's subscription row with the starting balance.

    Idempotent: an existing row is returned unchanged. Returns ``(row, created)``.
    """
    _require_user_id(user_id)
    settings = get_settings()

    async with _store_guard(db, "provision"):
        existing = await get_subscription(db, user_id)
        if existing:
            return existing, False

        sub = UserSubscription(user_id=user_id, token=settings.starting_tokens)
        db.add(sub)
        try:
            await db.commit()
        except IntegrityError:
            # Lost a race with a concurrent provision for the same user
            await db.rollback()
            existing = await get_subscription(db, user_id)
            if existing is None:
                raise
            return existing, False

    logger.info("Provisioned user %s with %d tokens", user_id, sub.token)
    return sub, True


async def debit_and_create_content(
    db: AsyncSession, user_id: str, content: str, created_by: str
) -> tuple[UserContent, int]:
    """Spend one token and store the content in the same transaction.

    Returns ``(content_row, remaining_tokens)``. Raises InsufficientTokens when
    the balance is already zero and NotProvisioned when no row exists.
    """
    _require_user_id(user_id)
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Content is required and must be a string")

    async with _store_guard(db, "debit_and_create_content"):
        result = await db.execute(
            update(UserSubscription)
            .where(UserSubscription.user_id == user_id, UserSubscription.token > 0)
            .values(token=UserSubscription.token - 1, updated_at=now_utc())
            .returning(UserSubscription.token)
            .execution_options(synchronize_session=False)
        )
        remaining = result.scalar_one_or_none()

        if remaining is None:
            await db.rollback()
            if await get_subscription(db, user_id) is None:
                raise NotProvisioned()
            logger.info("Debit refused for user %s: balance is 0", user_id)
            raise InsufficientTokens()

        item = UserContent(user_id=user_id, content=content, created_by=created_by or "", is_public=False)
        db.add(item)
        await db.commit()

    logger.info("User %s created content %d, %d tokens left", user_id, item.id, remaining)
    return item, remaining


async def credit_tokens(
    db: AsyncSession, user_id: str, amount: int, *, commit: bool = True
) -> UserSubscription:
    """Add ``amount`` tokens, clamped to the configured balance ceiling.

    With ``commit=False`` the change joins the caller's transaction.
    """
    _require_user_id(user_id)
    settings = get_settings()
    if isinstance(amount, bool) or not isinstance(amount, int) or not 0 < amount <= settings.max_token_credit:
        raise InvalidAmount(f"Token amount must be between 1 and {settings.max_token_credit}")

    ceiling = settings.max_token_balance
    new_balance = case(
        (UserSubscription.token + amount > ceiling, ceiling),
        else_=UserSubscription.token + amount,
    )

    async with _store_guard(db, "credit_tokens"):
        result = await db.execute(
            update(UserSubscription)
            .where(UserSubscription.user_id == user_id)
            .values(token=new_balance, updated_at=now_utc())
            .returning(UserSubscription.token)
            .execution_options(synchronize_session=False)
        )
        balance = result.scalar_one_or_none()
        if balance is None:
            await db.rollback()
            raise NotProvisioned()

        sub = await get_subscription(db, user_id)
        if commit:
            await db.commit()

    logger.info("Credited %d tokens to user %s, balance now %d", amount, user_id, balance)
    return sub


async def upsert_subscription_metadata(
    db: AsyncSession,
    user_id: str,
    fields: SubscriptionFields,
    *,
    create: bool = True,
    commit: bool = True,
) -> UserSubscription | None:
    """Create or update the non-token billing fields for ``user_id``.

    Fields left as ``None`` (or blank ids) are not touched on update. A row
    created here starts with the regular starting balance. With
    ``create=False`` a missing row is left missing and ``None`` is returned.
    """
    _require_user_id(user_id)
    values = fields.model_dump()
    for key in _BILLING_ID_FIELDS:
        values[key] = blank_to_none(values[key])
    values = {k: v for k, v in values.items() if v is not None}

    async with _store_guard(db, "upsert_subscription_metadata"):
        sub = await get_subscription(db, user_id)
        if sub:
            for key, value in values.items():
                setattr(sub, key, value)
        elif create:
            sub = UserSubscription(user_id=user_id, token=get_settings().starting_tokens, **values)
            db.add(sub)
        else:
            logger.info("No subscription row for user %s, metadata update skipped", user_id)
            return None

        await db.flush()
        if commit:
            await db.commit()

    logger.info(
        "Subscription metadata for user %s: status=%s customer=%s",
        user_id, sub.stripe_subscription_status, sub.stripe_customer_id,
    )
    return sub


async def delete_subscription(db: AsyncSession, user_id: str, *, commit: bool = True) -> bool:
    """Remove the subscription row. Content history is kept."""
    _require_user_id(user_id)
    async with _store_guard(db, "delete_subscription"):
        result = await db.execute(
            delete(UserSubscription)
            .where(UserSubscription.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        if commit:
            await db.commit()

    deleted = result.rowcount > 0
    logger.info("Subscription for user %s %s", user_id, "deleted" if deleted else "already absent")
    return deleted


async def list_content(db: AsyncSession, user_id: str) -> list[UserContent]:
    """The user's content, newest first."""
    _require_user_id(user_id)
    async with _store_guard(db, "list_content"):
        result = await db.execute(
            select(UserContent)
            .where(UserContent.user_id == user_id)
            .order_by(UserContent.created_at.desc(), UserContent.id.desc())
        )
        return list(result.scalars().all())


async def delete_content(db: AsyncSession, content_id: int, user_id: str) -> UserContent:
    """Delete a content row owned by ``user_id``; anyone else gets NotFound."""
    _require_user_id(user_id)
    if isinstance(content_id, bool) or not isinstance(content_id, int):
        raise ValidationError("Invalid content ID")

    async with _store_guard(db, "delete_content"):
        result = await db.execute(
            select(UserContent).where(UserContent.id == content_id, UserContent.user_id == user_id)
        )
        item = result.scalar_one_or_none()
        if item is None:
            raise NotFound("Content not found or access denied")

        await db.delete(item)
        await db.commit()

    logger.info("User %s deleted content %d", user_id, content_id)
    return item
