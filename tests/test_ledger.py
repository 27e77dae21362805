"""Tests for the token ledger."""

import asyncio
import pytest
from datetime import datetime, timedelta
from pathlib import Path

from neuranote.config import TokenConfig
from neuranote.errors import InsufficientTokensError, ValidationError
from neuranote.models.tokens import TokenPackage, TokenSource, TransactionType
from neuranote.store.documents import DocumentStore
from neuranote.tokens.ledger import BALANCES, TRANSACTIONS, TokenLedger

NOW = datetime(2026, 3, 10, 12, 0)


@pytest.fixture
def store(tmp_path: Path) -> DocumentStore:
    return DocumentStore(tmp_path / "data")


@pytest.fixture
def ledger(store: DocumentStore) -> TokenLedger:
    return TokenLedger(store, TokenConfig(signup_bonus=100), clock=lambda: NOW)


class TestDebit:
    @pytest.mark.asyncio
    async def test_debit_records_before_and_after(self, ledger: TokenLedger):
        await ledger.open_account("u1")
        tx = await ledger.debit("u1", 30, TokenSource.IMAGE_SUMMARY, "s1")

        assert tx.type is TransactionType.DEBIT
        assert tx.balance_before == 100
        assert tx.balance_after == 70
        assert tx.reference_id == "s1"
        balance = await ledger.get_balance("u1")
        assert balance.remaining_tokens == 70
        assert balance.used_tokens == 30

    @pytest.mark.asyncio
    async def test_insufficient_leaves_state_untouched(self, ledger: TokenLedger, store: DocumentStore):
        await ledger.open_account("u1")
        with pytest.raises(InsufficientTokensError) as info:
            await ledger.debit("u1", 150, TokenSource.VOICE_SUMMARY, "s1")

        assert info.value.required == 150
        assert info.value.available == 100
        assert (await ledger.get_balance("u1")).remaining_tokens == 100
        assert len(await ledger.history("u1")) == 1  # only the signup grant
        assert store.version_of(BALANCES, "u1") == 1

    @pytest.mark.asyncio
    async def test_no_account_means_zero(self, ledger: TokenLedger):
        assert not await ledger.has_account("ghost")
        assert (await ledger.get_balance("ghost")).remaining_tokens == 0
        with pytest.raises(InsufficientTokensError):
            await ledger.debit("ghost", 1, TokenSource.IMAGE_SUMMARY, "s1")

    @pytest.mark.asyncio
    async def test_rejects_negative_amount(self, ledger: TokenLedger):
        with pytest.raises(ValidationError):
            await ledger.debit("u1", -5, TokenSource.IMAGE_SUMMARY, "s1")
        with pytest.raises(ValidationError):
            await ledger.credit("u1", -5)

    @pytest.mark.asyncio
    async def test_concurrent_debits_never_overspend(self, ledger: TokenLedger):
        await ledger.open_account("u1")
        results = await asyncio.gather(
            *(ledger.debit("u1", 10, TokenSource.IMAGE_SUMMARY, f"s{i}") for i in range(12)),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 2
        assert all(isinstance(f, InsufficientTokensError) for f in failures)

        balance = await ledger.get_balance("u1")
        assert balance.remaining_tokens == 0
        debits = await ledger.history("u1", TransactionType.DEBIT)
        assert len(debits) == 10
        # Each debit saw the balance the previous one left behind
        assert sorted(t.balance_after for t in debits) == list(range(0, 100, 10))

    @pytest.mark.asyncio
    async def test_ledger_reconciles_with_balance(self, ledger: TokenLedger):
        await ledger.open_account("u1")
        await ledger.debit("u1", 10, TokenSource.IMAGE_SUMMARY, "s1")
        await ledger.credit("u1", 25, TokenSource.PURCHASE)
        await ledger.refund("u1", 5, "s1")
        await ledger.bonus("u1", 3, "Daily check-in")

        balance = await ledger.get_balance("u1")
        assert sum(t.signed_amount for t in await ledger.history("u1")) == balance.remaining_tokens


class TestCredits:
    @pytest.mark.asyncio
    async def test_open_account_is_idempotent(self, ledger: TokenLedger):
        first = await ledger.open_account("u1")
        second = await ledger.open_account("u1")

        assert first is not None
        assert first.source is TokenSource.SIGNUP
        assert first.amount == 100
        assert second is None
        assert (await ledger.get_balance("u1")).total_tokens == 100

    @pytest.mark.asyncio
    async def test_refund_clamps_used_tokens(self, ledger: TokenLedger):
        await ledger.open_account("u1")
        await ledger.debit("u1", 30, TokenSource.IMAGE_SUMMARY, "s1")
        tx = await ledger.refund("u1", 50, "s1")

        assert tx.type is TransactionType.REFUND
        assert tx.amount == 50
        balance = await ledger.get_balance("u1")
        assert balance.used_tokens == 0
        assert balance.remaining_tokens == 100

    @pytest.mark.asyncio
    async def test_purchase(self, ledger: TokenLedger):
        package = TokenPackage("p1", "Starter", 200, 4.99)
        tx = await ledger.purchase("u1", package, "pay_123")

        assert tx.type is TransactionType.CREDIT
        assert tx.source is TokenSource.PURCHASE
        assert tx.description == "Purchased Starter"
        assert tx.metadata["packageId"] == "p1"
        assert (await ledger.get_balance("u1")).remaining_tokens == 200

    @pytest.mark.asyncio
    async def test_referral_bonus(self, store: DocumentStore):
        ledger = TokenLedger(store, TokenConfig(referral_bonus=50), clock=lambda: NOW)
        tx = await ledger.referral_bonus("u1", "friend")

        assert tx.type is TransactionType.BONUS
        assert tx.source is TokenSource.REFERRAL
        assert tx.reference_id == "friend"
        assert (await ledger.get_balance("u1")).total_tokens == 50


class TestSubscription:
    @pytest.mark.asyncio
    async def test_reset_monthly_records_transaction(self, ledger: TokenLedger):
        await ledger.open_account("u1")
        await ledger.debit("u1", 40, TokenSource.IMAGE_SUMMARY, "s1")
        tx = await ledger.reset_monthly("u1", 500)

        assert tx.source is TokenSource.SUBSCRIPTION
        assert tx.balance_before == 60
        assert tx.balance_after == 500
        balance = await ledger.get_balance("u1")
        assert balance.used_tokens == 0
        assert balance.expires_at == NOW + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_expire(self, ledger: TokenLedger):
        await ledger.reset_monthly("u1", 50)
        await ledger.debit("u1", 20, TokenSource.VOICE_SUMMARY, "s1")

        assert await ledger.expire("u1", NOW + timedelta(days=29)) is None
        tx = await ledger.expire("u1", NOW + timedelta(days=31))
        assert tx is not None
        assert tx.type is TransactionType.EXPIRED
        assert tx.amount == 30
        assert (await ledger.get_balance("u1")).remaining_tokens == 0
        # Nothing left to forfeit
        assert await ledger.expire("u1", NOW + timedelta(days=32)) is None

    @pytest.mark.asyncio
    async def test_expire_all(self, ledger: TokenLedger):
        await ledger.reset_monthly("u1", 50)
        await ledger.reset_monthly("u2", 50)
        await ledger.open_account("u3")  # never expires

        assert await ledger.expire_all(NOW + timedelta(days=31)) == 2
        assert (await ledger.get_balance("u3")).remaining_tokens == 100


class TestHistory:
    @pytest.mark.asyncio
    async def test_newest_first_and_filtered(self, ledger: TokenLedger):
        await ledger.open_account("u1")
        await ledger.debit("u1", 1, TokenSource.IMAGE_SUMMARY, "s1")
        await ledger.debit("u1", 2, TokenSource.VOICE_SUMMARY, "s2")

        history = await ledger.history("u1")
        assert [t.amount for t in history] == [2, 1, 100]
        assert [t.amount for t in await ledger.history("u1", limit=1)] == [2]
        assert len(await ledger.history("u1", TransactionType.CREDIT)) == 1

    @pytest.mark.asyncio
    async def test_usage_statistics(self, ledger: TokenLedger):
        await ledger.open_account("u1")
        await ledger.debit("u1", 1, TokenSource.IMAGE_SUMMARY, "s1")
        await ledger.debit("u1", 1, TokenSource.IMAGE_SUMMARY, "s2")
        await ledger.debit("u1", 2, TokenSource.VOICE_SUMMARY, "s3")

        stats = await ledger.usage_statistics("u1")
        assert stats.total_credits == 100
        assert stats.total_debits == 4
        assert stats.image_summaries == 2
        assert stats.voice_summaries == 1
        assert stats.total_transactions == 4

    @pytest.mark.asyncio
    async def test_transactions_are_per_user(self, ledger: TokenLedger, store: DocumentStore):
        await ledger.open_account("u1")
        await ledger.open_account("u2")
        assert len(await ledger.history("u1")) == 1
        page = await store.query(TRANSACTIONS)
        assert len(page.items) == 2

    @pytest.mark.asyncio
    async def test_stream_history(self, ledger: TokenLedger):
        await ledger.open_account("u1")
        sub = ledger.stream_history("u1", limit=2)
        assert [t.amount for t in await sub.__anext__()] == [100]

        await ledger.debit("u1", 1, TokenSource.IMAGE_SUMMARY, "s1")
        assert [t.amount for t in await sub.__anext__()] == [1, 100]

        await ledger.debit("u1", 2, TokenSource.VOICE_SUMMARY, "s2")
        latest = await sub.__anext__()
        assert [t.amount for t in latest] == [2, 1]
        assert latest[0].type is TransactionType.DEBIT

        await ledger.open_account("u2")
        sub.cancel()
        with pytest.raises(StopAsyncIteration):
            await sub.__anext__()
