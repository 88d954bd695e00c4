"""Credit ledger: purchased balances, usage deductions and the credit cost model."""
from __future__ import annotations

import logging
import math
from typing import Mapping, Optional, Protocol, Sequence

from ..entitlements.catalog import (
    AI_CHAT,
    AI_INTEGRITY,
    CERTIFICATE,
    CITATION_AUDIT,
    DRAFT_COMPARISON,
    ORIGINALITY_SCAN,
    PAPER_SEARCH,
    REPHRASE_SUGGESTIONS,
    SCANS_PER_MONTH,
    canonical_feature_key,
)
from .models import CreditBalance, CreditTransaction, CreditTransactionType

logger = logging.getLogger("credits")

# Processed words that one credit pays for.
WORDS_PER_CREDIT: Mapping[str, int] = {
    SCANS_PER_MONTH: 1000,
    ORIGINALITY_SCAN: 1000,
    CITATION_AUDIT: 1000,
    AI_INTEGRITY: 1000,
    REPHRASE_SUGGESTIONS: 1000,
    AI_CHAT: 1000,
    DRAFT_COMPARISON: 1000,
}

# Features billed on input plus output words.
PAIRED_FEATURES = frozenset({REPHRASE_SUGGESTIONS, AI_CHAT, DRAFT_COMPARISON})

FALLBACK_COSTS: Mapping[str, int] = {
    SCANS_PER_MONTH: 1,
    ORIGINALITY_SCAN: 1,
    CITATION_AUDIT: 1,
    REPHRASE_SUGGESTIONS: 1,
    PAPER_SEARCH: 1,
    AI_INTEGRITY: 2,
    AI_CHAT: 1,
    DRAFT_COMPARISON: 2,
    CERTIFICATE: 1,
}


class InsufficientCredits(Exception):
    """Raised by the ledger when a deduction exceeds the available balance."""

    def __init__(self, user_id: str, required: int, balance: int) -> None:
        self.user_id = user_id
        self.required = required
        self.balance = balance
        super().__init__(f"Insufficient credit balance: required={required} balance={balance}")


class CreditRepository(Protocol):
    """Transactional storage for credit balances and ledger rows.

    ``apply_grant`` and ``apply_deduction`` each run as one transaction.
    ``apply_grant`` returns ``None`` when a row with the same reference id and
    type already exists. ``apply_deduction`` raises :class:`InsufficientCredits`
    without writing anything when the locked balance is too low.
    """

    async def get_balance(self, user_id: str) -> Optional[CreditBalance]:
        ...

    async def apply_grant(
        self,
        user_id: str,
        amount: int,
        transaction_type: CreditTransactionType,
        *,
        reference_id: Optional[str],
        description: Optional[str],
    ) -> Optional[CreditBalance]:
        ...

    async def apply_deduction(
        self,
        user_id: str,
        amount: int,
        *,
        reference_id: Optional[str],
        description: Optional[str],
    ) -> CreditBalance:
        ...

    async def list_transactions(self, user_id: str, *, limit: int) -> Sequence[CreditTransaction]:
        ...


def _as_word_count(value: object) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        count = int(float(value))
    except (TypeError, ValueError):
        return 0
    return max(0, count)


def _processed_words(feature: str, metadata: Optional[Mapping[str, object]]) -> int:
    if not metadata:
        return 0
    if feature in PAIRED_FEATURES:
        paired = _as_word_count(metadata.get("input_words")) + _as_word_count(metadata.get("output_words"))
        if paired > 0:
            return paired
    return _as_word_count(metadata.get("word_count", metadata.get("words")))


def calculate_cost(feature: str, metadata: Optional[Mapping[str, object]] = None) -> int:
    """Return the credit cost of one use of ``feature``.

    One credit per ``WORDS_PER_CREDIT`` processed words, rounded up. Without a
    usable word count the fixed per-feature cost applies; unknown features
    cost nothing.
    """

    key = canonical_feature_key(feature)
    divisor = WORDS_PER_CREDIT.get(key)
    words = _processed_words(key, metadata)
    if divisor and words > 0:
        return math.ceil(words / divisor)
    return FALLBACK_COSTS.get(key, 0)


class CreditLedger:
    """Coordinates balance reads, grants and usage deductions."""

    calculate_cost = staticmethod(calculate_cost)

    def __init__(self, repository: CreditRepository) -> None:
        self._repository = repository

    async def get_balance(self, user_id: str) -> int:
        record = await self._repository.get_balance(user_id)
        return record.balance if record else 0

    async def get_balance_record(self, user_id: str) -> CreditBalance:
        record = await self._repository.get_balance(user_id)
        return record or CreditBalance(user_id=user_id)

    async def has_enough_credits(self, user_id: str, cost: int) -> bool:
        """Advisory check only; ``deduct_credits`` is the authoritative gate."""

        return await self.get_balance(user_id) >= cost

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        transaction_type: CreditTransactionType = CreditTransactionType.PURCHASE,
        *,
        reference_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CreditBalance:
        if amount <= 0:
            raise ValueError("amount must be > 0")
        if transaction_type == CreditTransactionType.USAGE:
            raise ValueError("usage entries are written by deduct_credits")

        balance = await self._repository.apply_grant(
            user_id,
            amount,
            transaction_type,
            reference_id=reference_id,
            description=description,
        )
        if balance is None:
            logger.info(
                "Duplicate credit grant ignored user=%s type=%s reference=%s",
                user_id,
                transaction_type.value,
                reference_id,
            )
            return await self.get_balance_record(user_id)

        logger.info(
            "Credits added user=%s amount=%s type=%s balance=%s",
            user_id,
            amount,
            transaction_type.value,
            balance.balance,
        )
        return balance

    async def deduct_credits(
        self,
        user_id: str,
        amount: int,
        *,
        reference_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CreditBalance:
        if amount <= 0:
            raise ValueError("amount must be > 0")
        try:
            balance = await self._repository.apply_deduction(
                user_id,
                amount,
                reference_id=reference_id,
                description=description,
            )
        except InsufficientCredits as exc:
            logger.info(
                "Credit deduction refused user=%s required=%s balance=%s",
                user_id,
                exc.required,
                exc.balance,
            )
            raise
        logger.info("Credits deducted user=%s amount=%s balance=%s", user_id, amount, balance.balance)
        return balance

    async def refund(
        self,
        user_id: str,
        amount: int,
        *,
        reference_id: str,
        description: Optional[str] = None,
    ) -> CreditBalance:
        """Grant back credits for a charge that should not have been made."""

        return await self.add_credits(
            user_id,
            amount,
            CreditTransactionType.REFUND,
            reference_id=reference_id,
            description=description or "Credit refund",
        )

    async def list_transactions(self, user_id: str, *, limit: int = 50) -> Sequence[CreditTransaction]:
        return await self._repository.list_transactions(user_id, limit=max(1, min(limit, 200)))


__all__ = [
    "CreditLedger",
    "CreditRepository",
    "FALLBACK_COSTS",
    "InsufficientCredits",
    "PAIRED_FEATURES",
    "WORDS_PER_CREDIT",
    "calculate_cost",
]
