"""Token balance, transaction log entries and purchasable packages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from neuranote.models.base import iso, parse_iso


class TransactionType(str, Enum):
    CREDIT = "credit"  # purchase, reward
    DEBIT = "debit"  # summarization
    REFUND = "refund"
    EXPIRED = "expired"
    BONUS = "bonus"  # promotions

    @classmethod
    def parse(cls, value: str | None) -> TransactionType:
        try:
            return cls(value)
        except ValueError:
            return cls.DEBIT


_CREDIT_TYPES = {TransactionType.CREDIT, TransactionType.REFUND, TransactionType.BONUS}


class TokenSource(str, Enum):
    IMAGE_SUMMARY = "imageSummary"
    VOICE_SUMMARY = "voiceSummary"
    PURCHASE = "purchase"
    SIGNUP = "signup"
    REFERRAL = "referral"
    DAILY_BONUS = "dailyBonus"
    SUBSCRIPTION = "subscription"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: str | None) -> TokenSource:
        try:
            return cls(value)
        except ValueError:
            return cls.ADMIN

    @property
    def display_name(self) -> str:
        return {
            TokenSource.IMAGE_SUMMARY: "Image Summary",
            TokenSource.VOICE_SUMMARY: "Voice Summary",
            TokenSource.PURCHASE: "Purchase",
            TokenSource.SIGNUP: "Sign-up Bonus",
            TokenSource.REFERRAL: "Referral Bonus",
            TokenSource.DAILY_BONUS: "Daily Bonus",
            TokenSource.SUBSCRIPTION: "Subscription",
            TokenSource.ADMIN: "Admin Adjustment",
        }[self]


@dataclass(frozen=True)
class TokenBalance:
    total_tokens: int = 100
    used_tokens: int = 0
    last_refreshed_at: datetime | None = None
    expires_at: datetime | None = None

    @property
    def remaining_tokens(self) -> int:
        return self.total_tokens - self.used_tokens

    def can_afford(self, amount: int) -> bool:
        return self.remaining_tokens >= amount

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTokens": self.total_tokens,
            "usedTokens": self.used_tokens,
            "lastRefreshedAt": iso(self.last_refreshed_at),
            "expiresAt": iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenBalance:
        return cls(
            total_tokens=int(data.get("totalTokens", 100)),
            used_tokens=int(data.get("usedTokens", 0)),
            last_refreshed_at=parse_iso(data.get("lastRefreshedAt")),
            expires_at=parse_iso(data.get("expiresAt")),
        )


@dataclass(frozen=True)
class TokenTransaction:
    """One append-only ledger entry. Balances are ``remaining_tokens`` snapshots."""

    id: str
    user_id: str
    type: TransactionType
    source: TokenSource
    amount: int
    balance_before: int
    balance_after: int
    created_at: datetime
    reference_id: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_credit(self) -> bool:
        return self.type in _CREDIT_TYPES

    @property
    def is_debit(self) -> bool:
        return not self.is_credit

    @property
    def signed_amount(self) -> int:
        return self.amount if self.is_credit else -self.amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.type.value,
            "source": self.source.value,
            "amount": self.amount,
            "balanceBefore": self.balance_before,
            "balanceAfter": self.balance_after,
            "referenceId": self.reference_id,
            "description": self.description,
            "createdAt": iso(self.created_at),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenTransaction:
        return cls(
            id=data["id"],
            user_id=data["userId"],
            type=TransactionType.parse(data.get("type")),
            source=TokenSource.parse(data.get("source")),
            amount=int(data["amount"]),
            balance_before=int(data["balanceBefore"]),
            balance_after=int(data["balanceAfter"]),
            reference_id=data.get("referenceId"),
            description=data.get("description"),
            created_at=parse_iso(data["createdAt"]),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class TokenPackage:
    id: str
    name: str
    token_amount: int
    price: float
    currency: str = "USD"
    discount_percentage: float | None = None
    is_featured: bool = False
    description: str | None = None

    @property
    def price_per_token(self) -> float:
        return self.price / self.token_amount if self.token_amount > 0 else 0.0

    @property
    def has_discount(self) -> bool:
        return bool(self.discount_percentage) and self.discount_percentage > 0

    @property
    def original_price(self) -> float:
        if not self.has_discount:
            return self.price
        return self.price / (1 - self.discount_percentage / 100)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "tokenAmount": self.token_amount,
            "price": self.price,
            "currency": self.currency,
            "discountPercentage": self.discount_percentage,
            "isFeatured": self.is_featured,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenPackage:
        discount = data.get("discountPercentage")
        return cls(
            id=data["id"],
            name=data["name"],
            token_amount=int(data["tokenAmount"]),
            price=float(data["price"]),
            currency=data.get("currency", "USD"),
            discount_percentage=float(discount) if discount is not None else None,
            is_featured=bool(data.get("isFeatured", False)),
            description=data.get("description"),
        )
