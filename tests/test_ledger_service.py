"""Token ledger engine tests (provision, debit, credit, metadata, deletion)"""
import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from tokenledger.errors import (
    InsufficientTokens,
    InvalidAmount,
    NotFound,
    NotProvisioned,
    StoreFailure,
    ValidationError,
)
from tokenledger.models import UserContent, UserSubscription
from tokenledger.schemas.billing import SubscriptionFields
from tokenledger.services import ledger_service


async def _content_count(session, user_id: str) -> int:
    return await session.scalar(
        select(func.count()).select_from(UserContent).where(UserContent.user_id == user_id)
    )


async def _set_balance(session, user_id: str, token: int) -> None:
    sub = await ledger_service.get_subscription(session, user_id)
    sub.token = token
    await session.commit()


class TestProvision:
    """Starting balance and idempotent provisioning"""

    async def test_provision_creates_row_with_starting_balance(self, session):
        sub, created = await ledger_service.provision(session, "U1")

        assert created is True
        assert sub.user_id == "U1"
        assert sub.token == 10
        assert sub.stripe_customer_id is None
        assert await ledger_service.get_balance(session, "U1") == 10

    async def test_provision_twice_is_a_noop(self, session):
        """Second call returns the existing row unchanged"""
        first, _ = await ledger_service.provision(session, "U1")
        await _set_balance(session, "U1", 3)

        second, created = await ledger_service.provision(session, "U1")

        assert created is False
        assert second.id == first.id
        assert second.token == 3
        rows = await session.scalar(select(func.count()).select_from(UserSubscription))
        assert rows == 1

    async def test_get_balance_for_unknown_user_raises_not_provisioned(self, session):
        with pytest.raises(NotProvisioned):
            await ledger_service.get_balance(session, "nobody")

    async def test_provision_requires_user_id(self, session):
        with pytest.raises(ValidationError):
            await ledger_service.provision(session, "")


class TestDebitAndCreateContent:
    """Atomic debit-on-create"""

    async def test_debit_decrements_and_creates_one_row(self, session):
        await ledger_service.provision(session, "U1")

        item, remaining = await ledger_service.debit_and_create_content(session, "U1", "hello", "Ada Lovelace")

        assert remaining == 9
        assert item.id is not None
        assert item.content == "hello"
        assert item.user_id == "U1"
        assert item.created_by == "Ada Lovelace"
        assert item.is_public is False
        assert await ledger_service.get_balance(session, "U1") == 9
        assert await _content_count(session, "U1") == 1

    async def test_debit_at_zero_raises_and_creates_nothing(self, session):
        await ledger_service.provision(session, "U1")
        await _set_balance(session, "U1", 0)

        with pytest.raises(InsufficientTokens):
            await ledger_service.debit_and_create_content(session, "U1", "hello", "Ada")

        assert await ledger_service.get_balance(session, "U1") == 0
        assert await _content_count(session, "U1") == 0

    async def test_debit_for_unprovisioned_user_is_distinct_from_empty_balance(self, session):
        with pytest.raises(NotProvisioned):
            await ledger_service.debit_and_create_content(session, "ghost", "hello", "Ghost")
        assert await _content_count(session, "ghost") == 0

    @pytest.mark.parametrize("content", ["", "   ", None, 42, ["hello"]])
    async def test_invalid_content_is_rejected_before_debit(self, session, content):
        await ledger_service.provision(session, "U1")

        with pytest.raises(ValidationError):
            await ledger_service.debit_and_create_content(session, "U1", content, "Ada")

        assert await ledger_service.get_balance(session, "U1") == 10

    async def test_balance_drains_to_zero_and_stops(self, session):
        await ledger_service.provision(session, "U1")
        await _set_balance(session, "U1", 2)

        await ledger_service.debit_and_create_content(session, "U1", "one", "Ada")
        _, remaining = await ledger_service.debit_and_create_content(session, "U1", "two", "Ada")
        assert remaining == 0

        with pytest.raises(InsufficientTokens):
            await ledger_service.debit_and_create_content(session, "U1", "three", "Ada")
        assert await _content_count(session, "U1") == 2

    async def test_store_failure_leaves_no_half_applied_debit(self, session, database, monkeypatch):
        """A failed commit rolls back the decrement together with the insert"""
        await ledger_service.provision(session, "U1")

        async def failing_commit():
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(session, "commit", failing_commit)

        with pytest.raises(StoreFailure):
            await ledger_service.debit_and_create_content(session, "U1", "hello", "Ada")

        async with database.session() as check:
            assert await ledger_service.get_balance(check, "U1") == 10
            assert await _content_count(check, "U1") == 0

    async def test_concurrent_debits_on_last_token(self, database):
        """Two simultaneous requests with one token left: exactly one wins"""
        async with database.session() as setup:
            await ledger_service.provision(setup, "U1")
            await _set_balance(setup, "U1", 1)

        async def attempt(text: str):
            async with database.session() as db:
                return await ledger_service.debit_and_create_content(db, "U1", text, "Ada")

        results = await asyncio.gather(attempt("first"), attempt("second"), return_exceptions=True)

        successes = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientTokens)
        assert successes[0][1] == 0

        async with database.session() as check:
            assert await ledger_service.get_balance(check, "U1") == 0
            assert await _content_count(check, "U1") == 1

    async def test_concurrent_debits_never_overspend(self, database):
        """Many parallel requests against a small balance"""
        async with database.session() as setup:
            await ledger_service.provision(setup, "U1")
            await _set_balance(setup, "U1", 3)

        async def attempt(i: int):
            async with database.session() as db:
                return await ledger_service.debit_and_create_content(db, "U1", f"item {i}", "Ada")

        results = await asyncio.gather(*(attempt(i) for i in range(8)), return_exceptions=True)

        assert sum(1 for r in results if not isinstance(r, BaseException)) == 3
        assert all(isinstance(r, InsufficientTokens) for r in results if isinstance(r, BaseException))
        async with database.session() as check:
            assert await ledger_service.get_balance(check, "U1") == 0
            assert await _content_count(check, "U1") == 3


class TestCreditTokens:
    """Credits with range check and ceiling clamp"""

    async def test_credit_adds_amount(self, session):
        await ledger_service.provision(session, "U1")

        sub = await ledger_service.credit_tokens(session, "U1", 100)

        assert sub.token == 110
        assert await ledger_service.get_balance(session, "U1") == 110

    async def test_credit_is_clamped_to_ceiling(self, session):
        await ledger_service.provision(session, "U1")
        await _set_balance(session, "U1", 99_995)

        sub = await ledger_service.credit_tokens(session, "U1", 10)

        assert sub.token == 100_000

    async def test_credit_at_ceiling_stays_at_ceiling(self, session):
        await ledger_service.provision(session, "U1")
        await _set_balance(session, "U1", 100_000)

        sub = await ledger_service.credit_tokens(session, "U1", 10_000)

        assert sub.token == 100_000

    @pytest.mark.parametrize("amount", [0, -1, 10_001, True, 1.5, "10"])
    async def test_credit_rejects_out_of_range_amounts(self, session, amount):
        await ledger_service.provision(session, "U1")

        with pytest.raises(InvalidAmount):
            await ledger_service.credit_tokens(session, "U1", amount)

        assert await ledger_service.get_balance(session, "U1") == 10

    async def test_credit_upper_bound_is_inclusive(self, session):
        await ledger_service.provision(session, "U1")

        sub = await ledger_service.credit_tokens(session, "U1", 10_000)

        assert sub.token == 10_010

    async def test_credit_for_unprovisioned_user(self, session):
        with pytest.raises(NotProvisioned):
            await ledger_service.credit_tokens(session, "ghost", 10)

    async def test_uncommitted_credit_rolls_back_with_caller(self, session):
        """commit=False joins the caller's transaction"""
        await ledger_service.provision(session, "U1")

        await ledger_service.credit_tokens(session, "U1", 50, commit=False)
        await session.rollback()

        assert await ledger_service.get_balance(session, "U1") == 10


class TestSubscriptionMetadata:
    """Upsert and delete of billing fields"""

    async def test_upsert_creates_row_with_starting_balance(self, session):
        fields = SubscriptionFields(
            stripe_customer_id="cus_1",
            stripe_subscription_id="sub_1",
            stripe_subscription_price_id="price_1",
            stripe_subscription_status="active",
            stripe_subscription_current_period_end=1_900_000_000,
        )

        sub = await ledger_service.upsert_subscription_metadata(session, "U2", fields)

        assert sub.token == 10
        assert sub.stripe_customer_id == "cus_1"
        assert sub.stripe_subscription_status == "active"
        assert sub.stripe_subscription_current_period_end == 1_900_000_000

    async def test_upsert_updates_only_given_fields_and_keeps_tokens(self, session):
        await ledger_service.provision(session, "U2")
        await ledger_service.upsert_subscription_metadata(
            session, "U2", SubscriptionFields(stripe_customer_id="cus_1", stripe_subscription_status="active")
        )

        sub = await ledger_service.upsert_subscription_metadata(
            session, "U2", SubscriptionFields(stripe_subscription_status="past_due")
        )

        assert sub.stripe_customer_id == "cus_1"
        assert sub.stripe_subscription_status == "past_due"
        assert sub.token == 10

    async def test_update_only_does_not_create_row(self, session):
        result = await ledger_service.upsert_subscription_metadata(
            session, "U2", SubscriptionFields(stripe_subscription_status="canceled"), create=False
        )

        assert result is None
        assert await ledger_service.get_subscription(session, "U2") is None

    async def test_blank_billing_ids_are_stored_as_null(self, session):
        sub = await ledger_service.upsert_subscription_metadata(
            session, "U2", SubscriptionFields(stripe_customer_id="", stripe_subscription_price_id="  ")
        )

        assert sub.stripe_customer_id is None
        assert sub.stripe_subscription_price_id is None

    async def test_find_user_by_customer(self, session):
        await ledger_service.upsert_subscription_metadata(
            session, "U2", SubscriptionFields(stripe_customer_id="cus_9")
        )

        assert await ledger_service.find_user_id_by_customer(session, "cus_9") == "U2"
        assert await ledger_service.find_user_id_by_customer(session, "cus_missing") is None

    async def test_delete_subscription_keeps_content(self, session):
        await ledger_service.provision(session, "U1")
        await ledger_service.debit_and_create_content(session, "U1", "keep me", "Ada")

        assert await ledger_service.delete_subscription(session, "U1") is True
        assert await ledger_service.delete_subscription(session, "U1") is False

        with pytest.raises(NotProvisioned):
            await ledger_service.get_balance(session, "U1")
        assert await _content_count(session, "U1") == 1


class TestContentOwnership:
    """Listing and per-owner deletion"""

    async def test_list_content_newest_first(self, session):
        await ledger_service.provision(session, "U1")
        for text in ("first", "second", "third"):
            await ledger_service.debit_and_create_content(session, "U1", text, "Ada")

        items = await ledger_service.list_content(session, "U1")

        assert [i.content for i in items] == ["third", "second", "first"]

    async def test_list_content_only_returns_own_rows(self, session):
        await ledger_service.provision(session, "U1")
        await ledger_service.provision(session, "U4")
        await ledger_service.debit_and_create_content(session, "U4", "not yours", "Bob")

        assert await ledger_service.list_content(session, "U1") == []

    async def test_delete_content_by_other_user_is_not_found(self, session):
        await ledger_service.provision(session, "U4")
        item, _ = await ledger_service.debit_and_create_content(session, "U4", "mine", "Bob")

        with pytest.raises(NotFound):
            await ledger_service.delete_content(session, item.id, "U3")

        assert await _content_count(session, "U4") == 1

    async def test_owner_can_delete_content(self, session):
        await ledger_service.provision(session, "U4")
        item, _ = await ledger_service.debit_and_create_content(session, "U4", "mine", "Bob")

        deleted = await ledger_service.delete_content(session, item.id, "U4")

        assert deleted.id == item.id
        assert await _content_count(session, "U4") == 0
        # Deleting content does not refund the token
        assert await ledger_service.get_balance(session, "U4") == 9

    async def test_delete_content_rejects_non_integer_id(self, session):
        with pytest.raises(ValidationError):
            await ledger_service.delete_content(session, "abc", "U4")
