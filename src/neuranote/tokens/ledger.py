"""Token ledger: per-user balance plus an append-only transaction log.

Every mutation reads the balance, computes the next one and commits the
balance together with its transaction in a single store batch guarded by
the balance's version. Mutations for one user are also serialized through
a per-user lane lock, so two debits never interleave in-process; the
version check catches writers outside this process and is retried.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from neuranote.config import TokenConfig
from neuranote.errors import ConcurrencyConflictError, InsufficientTokensError, ValidationError
from neuranote.models.tokens import (
    TokenBalance,
    TokenPackage,
    TokenSource,
    TokenTransaction,
    TransactionType,
)
from neuranote.store.documents import VERSION_FIELD, DocumentStore, Subscription, Write

logger = logging.getLogger(__name__)

BALANCES = "token_balances"
TRANSACTIONS = "token_transactions"

SUBSCRIPTION_PERIOD = timedelta(days=30)

_EMPTY = TokenBalance(total_tokens=0, used_tokens=0)


@dataclass(frozen=True)
class _Mutation:
    balance: TokenBalance
    type: TransactionType
    source: TokenSource
    amount: int
    description: str | None = None


@dataclass(frozen=True)
class UsageStatistics:
    total_credits: int
    total_debits: int
    image_summaries: int
    voice_summaries: int
    total_transactions: int


def _check_amount(amount: int) -> None:
    if not isinstance(amount, int) or amount < 0:
        raise ValidationError(f"Token amount must be a non-negative integer, got {amount!r}")


class TokenLedger:
    """Atomic debit/credit/refund/bonus over the document store."""

    def __init__(
        self,
        store: DocumentStore,
        config: TokenConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._config = config or TokenConfig()
        self._clock = clock
        self._lane_locks: dict[str, asyncio.Lock] = {}  # per-user serialization

    def _get_lane_lock(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._lane_locks:
            self._lane_locks[user_id] = asyncio.Lock()
        return self._lane_locks[user_id]

    # ── Reads ────────────────────────────────────────────────

    async def get_balance(self, user_id: str) -> TokenBalance:
        """Current balance; a user without an account has zero tokens."""
        doc = await self._store.get(BALANCES, user_id)
        return TokenBalance.from_dict(doc) if doc else _EMPTY

    async def has_account(self, user_id: str) -> bool:
        return await self._store.get(BALANCES, user_id) is not None

    async def can_afford(self, user_id: str, amount: int) -> bool:
        return (await self.get_balance(user_id)).can_afford(amount)

    async def history(
        self,
        user_id: str,
        type: TransactionType | None = None,
        limit: int | None = None,
    ) -> list[TokenTransaction]:
        """Transactions, newest first."""
        filters = {"type": type.value} if type else None
        page = await self._store.query(
            TRANSACTIONS, user_id, filters, order=["-createdAt", "-sequence"], limit=limit
        )
        return [TokenTransaction.from_dict(d) for d in page.items]

    def stream_history(self, user_id: str, limit: int | None = None) -> Subscription[TokenTransaction]:
        """Live transaction history, newest first. Cancel the subscription when done."""
        return self._store.stream(
            TRANSACTIONS,
            user_id,
            order=["-createdAt", "-sequence"],
            transform=TokenTransaction.from_dict,
            limit=limit,
        )

    async def usage_statistics(self, user_id: str) -> UsageStatistics:
        transactions = await self.history(user_id)
        credits = sum(t.amount for t in transactions if t.is_credit)
        debits = sum(t.amount for t in transactions if t.is_debit)
        return UsageStatistics(
            total_credits=credits,
            total_debits=debits,
            image_summaries=sum(1 for t in transactions if t.source is TokenSource.IMAGE_SUMMARY),
            voice_summaries=sum(1 for t in transactions if t.source is TokenSource.VOICE_SUMMARY),
            total_transactions=len(transactions),
        )

    # ── Core mutation ────────────────────────────────────────

    async def _apply(
        self,
        user_id: str,
        compute: Callable[[TokenBalance, datetime], _Mutation],
        *,
        reference_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TokenTransaction:
        """Read-compute-commit with version check. Caller holds the lane lock."""
        last_error: ConcurrencyConflictError | None = None
        for attempt in range(1, self._config.max_retries + 1):
            doc = await self._store.get(BALANCES, user_id)
            version = int(doc.get(VERSION_FIELD, 0)) if doc else 0
            before = TokenBalance.from_dict(doc) if doc else _EMPTY
            now = self._clock()

            mutation = compute(before, now)
            after = mutation.balance
            if after.used_tokens < 0 or after.remaining_tokens < 0:
                raise ValidationError(
                    f"Refusing to write invalid balance for {user_id}: "
                    f"total={after.total_tokens} used={after.used_tokens}"
                )

            tx = TokenTransaction(
                id=uuid.uuid4().hex,
                user_id=user_id,
                type=mutation.type,
                source=mutation.source,
                amount=mutation.amount,
                balance_before=before.remaining_tokens,
                balance_after=after.remaining_tokens,
                created_at=now,
                reference_id=reference_id,
                description=description or mutation.description,
                metadata=metadata or {},
            )
            try:
                await self._store.commit(
                    [
                        Write(BALANCES, user_id, {**after.to_dict(), "userId": user_id}, version),
                        Write(TRANSACTIONS, tx.id, {**tx.to_dict(), "sequence": version + 1}, 0),
                    ]
                )
            except ConcurrencyConflictError as e:
                last_error = e
                logger.warning(
                    "Ledger write conflict for %s (attempt %d/%d)",
                    user_id,
                    attempt,
                    self._config.max_retries,
                )
                continue

            logger.info(
                "Ledger %s %s %d for %s: %d -> %d",
                tx.type.value,
                tx.source.value,
                tx.amount,
                user_id,
                tx.balance_before,
                tx.balance_after,
            )
            return tx

        raise last_error or ConcurrencyConflictError(f"Ledger update for {user_id} failed")

    # ── Mutations ────────────────────────────────────────────

    async def debit(
        self,
        user_id: str,
        amount: int,
        source: TokenSource,
        reference_id: str,
        description: str | None = None,
    ) -> TokenTransaction:
        """Spend tokens. Raises InsufficientTokensError without mutating anything."""
        _check_amount(amount)

        def compute(balance: TokenBalance, now: datetime) -> _Mutation:
            if balance.remaining_tokens < amount:
                raise InsufficientTokensError(required=amount, available=balance.remaining_tokens)
            return _Mutation(
                replace(balance, used_tokens=balance.used_tokens + amount),
                TransactionType.DEBIT,
                source,
                amount,
                "Summarization",
            )

        async with self._get_lane_lock(user_id):
            return await self._apply(
                user_id, compute, reference_id=reference_id, description=description
            )

    async def credit(
        self,
        user_id: str,
        amount: int,
        source: TokenSource = TokenSource.PURCHASE,
        reference_id: str | None = None,
        description: str | None = None,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> TokenTransaction:
        _check_amount(amount)

        def compute(balance: TokenBalance, now: datetime) -> _Mutation:
            return _Mutation(
                replace(balance, total_tokens=balance.total_tokens + amount, last_refreshed_at=now),
                TransactionType.CREDIT,
                source,
                amount,
                source.display_name,
            )

        async with self._get_lane_lock(user_id):
            return await self._apply(
                user_id, compute, reference_id=reference_id, description=description, metadata=metadata
            )

    async def refund(
        self,
        user_id: str,
        amount: int,
        reference_id: str,
        description: str | None = None,
    ) -> TokenTransaction:
        """Give back used tokens. ``used_tokens`` is clamped at zero; the
        transaction still records the requested amount."""
        _check_amount(amount)

        def compute(balance: TokenBalance, now: datetime) -> _Mutation:
            used = max(0, min(balance.used_tokens - amount, balance.total_tokens))
            return _Mutation(
                replace(balance, used_tokens=used),
                TransactionType.REFUND,
                TokenSource.ADMIN,
                amount,
                "Refund",
            )

        async with self._get_lane_lock(user_id):
            return await self._apply(
                user_id, compute, reference_id=reference_id, description=description
            )

    async def bonus(
        self,
        user_id: str,
        amount: int,
        description: str,
        reference_id: str | None = None,
        *,
        source: TokenSource = TokenSource.DAILY_BONUS,
    ) -> TokenTransaction:
        _check_amount(amount)

        def compute(balance: TokenBalance, now: datetime) -> _Mutation:
            return _Mutation(
                replace(balance, total_tokens=balance.total_tokens + amount, last_refreshed_at=now),
                TransactionType.BONUS,
                source,
                amount,
            )

        async with self._get_lane_lock(user_id):
            return await self._apply(
                user_id, compute, reference_id=reference_id, description=description
            )

    # ── Account lifecycle ────────────────────────────────────

    async def open_account(self, user_id: str) -> TokenTransaction | None:
        """Create the balance with the signup grant. No-op if it already exists."""
        amount = self._config.signup_bonus

        def compute(balance: TokenBalance, now: datetime) -> _Mutation:
            return _Mutation(
                TokenBalance(total_tokens=amount, used_tokens=0, last_refreshed_at=now),
                TransactionType.CREDIT,
                TokenSource.SIGNUP,
                amount,
                "Welcome bonus",
            )

        async with self._get_lane_lock(user_id):
            if await self.has_account(user_id):
                return None
            return await self._apply(user_id, compute)

    async def purchase(
        self, user_id: str, package: TokenPackage, payment_reference: str
    ) -> TokenTransaction:
        return await self.credit(
            user_id,
            package.token_amount,
            TokenSource.PURCHASE,
            reference_id=payment_reference,
            description=f"Purchased {package.name}",
            metadata={"packageId": package.id, "price": package.price, "currency": package.currency},
        )

    async def referral_bonus(self, user_id: str, referred_user_id: str) -> TokenTransaction:
        return await self.bonus(
            user_id,
            self._config.referral_bonus,
            "Referral bonus",
            reference_id=referred_user_id,
            source=TokenSource.REFERRAL,
        )

    async def reset_monthly(self, user_id: str, monthly_tokens: int) -> TokenTransaction:
        """Subscription renewal: a fresh allowance valid for 30 days."""
        _check_amount(monthly_tokens)

        def compute(balance: TokenBalance, now: datetime) -> _Mutation:
            return _Mutation(
                TokenBalance(
                    total_tokens=monthly_tokens,
                    used_tokens=0,
                    last_refreshed_at=now,
                    expires_at=now + SUBSCRIPTION_PERIOD,
                ),
                TransactionType.CREDIT,
                TokenSource.SUBSCRIPTION,
                monthly_tokens,
                "Monthly token reset",
            )

        async with self._get_lane_lock(user_id):
            return await self._apply(user_id, compute)

    async def expire(self, user_id: str, now: datetime | None = None) -> TokenTransaction | None:
        """Forfeit the remainder once ``expires_at`` has passed. Returns None if nothing expired."""
        async with self._get_lane_lock(user_id):
            balance = await self.get_balance(user_id)
            moment = now or self._clock()
            if not balance.is_expired(moment) or balance.remaining_tokens <= 0:
                return None

            def compute(current: TokenBalance, _: datetime) -> _Mutation:
                return _Mutation(
                    replace(current, used_tokens=current.total_tokens),
                    TransactionType.EXPIRED,
                    TokenSource.SUBSCRIPTION,
                    current.remaining_tokens,
                    "Tokens expired",
                )

            return await self._apply(user_id, compute)

    async def expire_all(self, now: datetime | None = None) -> int:
        """Run ``expire`` for every account; returns how many expired."""
        page = await self._store.query(BALANCES)
        expired = 0
        for doc in page.items:
            if await self.expire(doc["userId"], now):
                expired += 1
        return expired
