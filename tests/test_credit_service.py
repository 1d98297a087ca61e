"""Tests for the credit ledger operations of CreditService."""

import pytest
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.balance import UserBalance
from app.models.credit import CreditTransaction, TransactionType
from app.schemas.credit_schemas import CreditFailureReason
from app.services.credit import CreditService
from tests.helpers import period

USER = "user-ledger-1"


async def ledger(db: AsyncSession, user_id: str = USER):
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.id)
    )
    return result.scalars().all()


async def stored_balance(db: AsyncSession, user_id: str = USER) -> UserBalance:
    result = await db.execute(
        select(UserBalance)
        .where(UserBalance.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def drain_to_zero(credit_service: CreditService, user_id: str = USER):
    await credit_service.get_or_create_balance(user_id)
    result = await credit_service.consume(user_id, settings.INITIAL_CREDIT_GRANT)
    assert result.success


class TestGetOrCreateBalance:

    async def test_new_user_gets_initial_grant(self, credit_service: CreditService, db: AsyncSession):
        """First access creates the row with 5 credits and one initial transaction."""
        balance = await credit_service.get_or_create_balance(USER)

        assert balance.balance == 5
        assert balance.wallet_balance == 5
        assert balance.total_recharged == 5
        assert balance.total_consumed == 0

        transactions = await ledger(db)
        assert len(transactions) == 1
        assert transactions[0].transaction_type == TransactionType.INITIAL.value
        assert transactions[0].amount == 5
        assert transactions[0].balance_after == 5

    async def test_second_access_returns_same_row(self, credit_service: CreditService, db: AsyncSession):
        first = await credit_service.get_or_create_balance(USER)
        second = await credit_service.get_or_create_balance(USER)

        assert first.id == second.id
        count = await db.execute(select(func.count()).select_from(UserBalance))
        assert count.scalar_one() == 1
        assert len(await ledger(db)) == 1

    async def test_get_balance_creates_lazily(self, credit_service: CreditService):
        response = await credit_service.get_balance("fresh-user")

        assert response.user_id == "fresh-user"
        assert response.balance == 5
        assert response.subscription_balance == 0
        assert response.total_recharged == 5
        assert response.total_consumed == 0


class TestConsume:

    async def test_three_sequential_consumptions(self, credit_service: CreditService, db: AsyncSession):
        """Balance 5 -> 4 -> 3 -> 2, each entry snapshotting the new balance."""
        await credit_service.get_or_create_balance(USER)

        results = [await credit_service.consume(USER, 1, description="Face swap") for _ in range(3)]

        assert [r.balance_after for r in results] == [4, 3, 2]
        consumptions = [t for t in await ledger(db) if t.transaction_type == TransactionType.CONSUMPTION.value]
        assert [t.balance_after for t in consumptions] == [4, 3, 2]
        assert all(t.amount == -1 for t in consumptions)

        balance = await stored_balance(db)
        assert balance.balance == 2
        assert balance.total_consumed == 3

    async def test_insufficient_funds_with_zero_balance(self, credit_service: CreditService, db: AsyncSession):
        await drain_to_zero(credit_service)
        before = await ledger(db)

        result = await credit_service.consume(USER, 1)

        assert result.success is False
        assert result.reason == CreditFailureReason.INSUFFICIENT_FUNDS
        assert result.balance == 0
        assert result.required == 1
        assert len(await ledger(db)) == len(before)

    async def test_refused_consumption_changes_nothing(self, credit_service: CreditService, db: AsyncSession):
        await credit_service.get_or_create_balance(USER)
        before = await stored_balance(db)
        before_state = (before.balance, before.wallet_balance, before.total_consumed)
        before_count = len(await ledger(db))

        result = await credit_service.consume(USER, 6)

        assert result.success is False
        after = await stored_balance(db)
        assert (after.balance, after.wallet_balance, after.total_consumed) == before_state
        assert len(await ledger(db)) == before_count

    async def test_refused_consumption_of_unknown_user_leaves_no_row(self, credit_service: CreditService, db: AsyncSession):
        result = await credit_service.consume("nobody-yet", 10)

        assert result.success is False
        count = await db.execute(select(func.count()).select_from(UserBalance))
        assert count.scalar_one() == 0

    @pytest.mark.parametrize("amount", [0, -1, -10])
    async def test_invalid_amount(self, credit_service: CreditService, db: AsyncSession, amount):
        result = await credit_service.consume(USER, amount)

        assert result.success is False
        assert result.reason == CreditFailureReason.INVALID_AMOUNT
        assert await ledger(db) == []

    async def test_consumption_records_wallet_split(self, credit_service: CreditService, db: AsyncSession):
        result = await credit_service.consume(USER, 2)

        assert result.wallet_amount == 2
        assert result.subscription_amount == 0
        entry = await db.get(CreditTransaction, result.transaction_id)
        assert entry.metadata_["wallet_amount"] == 2
        assert entry.metadata_["subscription_sources"] == []


class TestRecharge:

    async def test_recharge_adds_to_wallet(self, credit_service: CreditService, db: AsyncSession):
        result = await credit_service.recharge(USER, 50, idempotency_key="pi_123")

        assert result.success is True
        assert result.duplicate is False
        assert result.amount_added == 50
        assert result.balance_after == 55

        balance = await stored_balance(db)
        assert balance.wallet_balance == 55
        assert balance.total_recharged == 55

        entry = await db.get(CreditTransaction, result.transaction_id)
        assert entry.transaction_type == TransactionType.RECHARGE.value
        assert entry.idempotency_key == "pi_123"
        assert entry.metadata_["idempotency_key"] == "pi_123"

    async def test_same_key_applies_once(self, credit_service: CreditService, db: AsyncSession):
        first = await credit_service.recharge(USER, 50, idempotency_key="pi_dup")
        second = await credit_service.recharge(USER, 50, idempotency_key="pi_dup")

        assert second.success is True
        assert second.duplicate is True
        assert second.balance_after == first.balance_after
        assert second.transaction_id == first.transaction_id

        recharges = [t for t in await ledger(db) if t.transaction_type == TransactionType.RECHARGE.value]
        assert len(recharges) == 1
        assert (await stored_balance(db)).balance == 55

    async def test_recharge_without_key_is_not_deduplicated(self, credit_service: CreditService):
        await credit_service.recharge(USER, 10)
        result = await credit_service.recharge(USER, 10)

        assert result.duplicate is False
        assert result.balance_after == 25

    @pytest.mark.parametrize("amount", [0, -5])
    async def test_invalid_amount(self, credit_service: CreditService, db: AsyncSession, amount):
        result = await credit_service.recharge(USER, amount, idempotency_key="pi_bad")

        assert result.success is False
        assert result.reason == CreditFailureReason.INVALID_AMOUNT
        assert await ledger(db) == []

    async def test_bonus_is_tagged_with_reason(self, credit_service: CreditService, db: AsyncSession):
        result = await credit_service.grant_bonus(USER, 3, "launch promo", metadata={"campaign": "autumn"})

        assert result.success is True
        entry = await db.get(CreditTransaction, result.transaction_id)
        assert entry.transaction_type == TransactionType.BONUS.value
        assert entry.description == "launch promo"
        assert entry.metadata_["reason"] == "launch promo"
        assert entry.metadata_["campaign"] == "autumn"
        assert result.balance_after == 8


class TestRefund:

    async def test_refund_restores_wallet_once(self, credit_service: CreditService, db: AsyncSession):
        consumed = await credit_service.consume(USER, 2)

        refund = await credit_service.refund(USER, consumed.transaction_id, reason="Face swap failed")
        again = await credit_service.refund(USER, consumed.transaction_id)

        assert refund.success is True
        assert refund.amount_refunded == 2
        assert refund.balance_after == 5
        assert again.duplicate is True
        assert again.transaction_id == refund.transaction_id

        balance = await stored_balance(db)
        assert balance.balance == 5
        # Lifetime totals are not rewritten by a refund
        assert balance.total_consumed == 2
        assert balance.total_recharged == 5

    async def test_refund_of_non_consumption_is_refused(self, credit_service: CreditService):
        recharge = await credit_service.recharge(USER, 10)

        result = await credit_service.refund(USER, recharge.transaction_id)

        assert result.success is False
        assert result.reason == CreditFailureReason.NOT_REFUNDABLE

    async def test_refund_of_other_users_consumption_is_refused(self, credit_service: CreditService):
        consumed = await credit_service.consume("someone-else", 1)

        result = await credit_service.refund(USER, consumed.transaction_id)

        assert result.success is False
        assert result.reason == CreditFailureReason.NOT_REFUNDABLE

    async def test_refund_returns_credits_to_running_period(self, credit_service: CreditService, db: AsyncSession):
        start, end = period(-1, 29)
        await credit_service.grant_subscription_period(USER, "sub_r", 10, start, end)
        consumed = await credit_service.consume(USER, 4)
        assert consumed.subscription_amount == 4

        await credit_service.refund(USER, consumed.transaction_id)

        status = await credit_service.get_subscription_status(USER)
        assert status.periods[0].remaining_credits == 10
        assert (await stored_balance(db)).wallet_balance == 5


class TestLedgerInvariants:

    async def test_replaying_ledger_reproduces_balance(self, credit_service: CreditService, db: AsyncSession):
        """Summing signed amounts in creation order ends at the stored balance."""
        start, end = period(-2, 28)
        await credit_service.recharge(USER, 20, idempotency_key="pi_rt")
        await credit_service.grant_subscription_period(USER, "sub_rt", 120, start, end)
        consumed = await credit_service.consume(USER, 30)
        await credit_service.grant_bonus(USER, 2, "support gesture")
        await credit_service.refund(USER, consumed.transaction_id)
        await credit_service.consume(USER, 7)
        await credit_service.cancel_subscription_credits("sub_rt")
        await credit_service.consume(USER, 1)

        transactions = await ledger(db)
        running = 0
        for transaction in transactions:
            running += transaction.amount
            assert transaction.balance_after == running
            assert transaction.balance_after >= 0

        balance = await stored_balance(db)
        assert running == balance.balance
        assert balance.balance >= 0
        assert balance.total_consumed >= 0
        assert balance.total_recharged >= 0

    async def test_recalculate_corrects_drift(self, credit_service: CreditService, db: AsyncSession):
        start, end = period(-1, 29)
        await credit_service.grant_subscription_period(USER, "sub_drift", 120, start, end)
        balance = await stored_balance(db)
        balance.balance = 999
        await db.commit()

        recalculated = await credit_service.recalculate_balance(USER)

        assert recalculated.balance == 125
        assert (await stored_balance(db)).balance == 125

    async def test_balance_equals_subscription_sum_for_empty_wallet(self, credit_service: CreditService, db: AsyncSession):
        await drain_to_zero(credit_service)
        start, end = period(-1, 29)
        await credit_service.grant_subscription_period(USER, "sub_only", 120, start, end)
        await credit_service.consume(USER, 20)

        recalculated = await credit_service.recalculate_balance(USER)
        status = await credit_service.get_subscription_status(USER)

        assert recalculated.balance == status.active_credits == 100


class TestTransactionHistory:

    async def test_history_is_newest_first_and_paginated(self, credit_service: CreditService):
        for _ in range(4):
            await credit_service.consume(USER, 1)

        page = await credit_service.get_transactions(USER, limit=2, offset=0)
        rest = await credit_service.get_transactions(USER, limit=10, offset=2)

        assert page.total_count == 5
        assert [t.balance_after for t in page.transactions] == [1, 2]
        assert [t.balance_after for t in rest.transactions] == [3, 4, 5]
        assert rest.transactions[-1].transaction_type == TransactionType.INITIAL.value

    async def test_limit_is_clamped(self, credit_service: CreditService):
        await credit_service.get_or_create_balance(USER)

        history = await credit_service.get_transactions(USER, limit=1000, offset=-3)

        assert history.limit == 100
        assert history.offset == 0

    async def test_history_exposes_metadata(self, credit_service: CreditService):
        await credit_service.recharge(USER, 5, idempotency_key="pi_meta")

        history = await credit_service.get_transactions(USER)

        assert history.transactions[0].metadata["idempotency_key"] == "pi_meta"
