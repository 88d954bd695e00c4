from __future__ import annotations

import pytest

from backend.app.billing import CreditLedger, CreditTransactionType, InsufficientCredits, calculate_cost


@pytest.mark.parametrize(
    "feature, metadata, expected",
    [
        ("scan", {"word_count": 900}, 1),
        ("scans_per_month", {"word_count": 1000}, 1),
        ("scans_per_month", {"word_count": 1001}, 2),
        ("citation_audit", {"words": "2500"}, 3),
        ("rephrase", {"input_words": 600, "output_words": 600}, 2),
        ("scan", None, 1),
        ("ai_integrity", {}, 2),
        ("scan", {"word_count": True}, 1),
        ("teleport", {"word_count": 5000}, 0),
    ],
)
def test_calculate_cost(feature, metadata, expected) -> None:
    assert calculate_cost(feature, metadata) == expected
    assert CreditLedger.calculate_cost(feature, metadata) == expected


@pytest.mark.asyncio
async def test_purchase_is_idempotent_per_order(ledger: CreditLedger, credit_repo) -> None:
    first = await ledger.add_credits("u1", 500, CreditTransactionType.PURCHASE, reference_id="ord_1")
    second = await ledger.add_credits("u1", 500, CreditTransactionType.PURCHASE, reference_id="ord_1")

    assert first.balance == 500
    assert second.balance == 500
    assert await ledger.get_balance("u1") == 500
    assert len(credit_repo.transactions) == 1


@pytest.mark.asyncio
async def test_deduction_never_goes_below_zero(ledger: CreditLedger, credit_repo) -> None:
    await ledger.add_credits("u1", 5, CreditTransactionType.BONUS)

    with pytest.raises(InsufficientCredits) as exc:
        await ledger.deduct_credits("u1", 10)

    assert exc.value.required == 10
    assert exc.value.balance == 5
    assert await ledger.get_balance("u1") == 5
    assert all(tx.type != CreditTransactionType.USAGE for tx in credit_repo.transactions)


@pytest.mark.asyncio
async def test_deduction_updates_lifetime_counters(ledger: CreditLedger) -> None:
    await ledger.add_credits("u1", 20, CreditTransactionType.PURCHASE, reference_id="ord_9")

    balance = await ledger.deduct_credits("u1", 3, description="scan usage")

    assert balance.balance == 17
    assert balance.lifetime_purchased == 20
    assert balance.lifetime_used == 3
    assert await ledger.has_enough_credits("u1", 17) is True
    assert await ledger.has_enough_credits("u1", 18) is False


@pytest.mark.asyncio
async def test_unknown_user_has_zero_balance(ledger: CreditLedger) -> None:
    assert await ledger.get_balance("nobody") == 0
    record = await ledger.get_balance_record("nobody")
    assert record.balance == 0 and record.lifetime_used == 0


@pytest.mark.asyncio
async def test_add_credits_rejects_invalid_grants(ledger: CreditLedger) -> None:
    with pytest.raises(ValueError):
        await ledger.add_credits("u1", 0)
    with pytest.raises(ValueError):
        await ledger.add_credits("u1", 5, CreditTransactionType.USAGE)
    with pytest.raises(ValueError):
        await ledger.deduct_credits("u1", 0)


@pytest.mark.asyncio
async def test_refund_grants_credits_back_once(ledger: CreditLedger) -> None:
    await ledger.add_credits("u1", 10, CreditTransactionType.PURCHASE, reference_id="ord_2")
    await ledger.deduct_credits("u1", 4, reference_id="scan-42")

    await ledger.refund("u1", 4, reference_id="scan-42")
    await ledger.refund("u1", 4, reference_id="scan-42")

    assert await ledger.get_balance("u1") == 10


@pytest.mark.asyncio
async def test_list_transactions_newest_first(ledger: CreditLedger) -> None:
    await ledger.add_credits("u1", 10, CreditTransactionType.PURCHASE, reference_id="ord_3")
    await ledger.deduct_credits("u1", 2)

    transactions = await ledger.list_transactions("u1", limit=0)

    assert len(transactions) == 1
    assert transactions[0].amount == -2
    assert transactions[0].type == CreditTransactionType.USAGE
