from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from backend.app.billing import CreditTransactionType
from backend.app.entitlements import EntitlementSnapshot, PlanKey, build_feature_map
from backend.app.feature_gates import (
    INSUFFICIENT_CREDITS,
    EntitlementContext,
    FeatureGateError,
    InsufficientCreditsError,
    PlanLimitReachedError,
    evaluate_character_cap,
    require_entitlement,
    require_feature,
    upsell_http_exception,
)
from backend.app.routes import billing as billing_routes
from backend.app.routes import credits as credit_routes
from backend.app.routes import subscription as subscription_routes
from backend.app.schemas.billing import BillingWebhookPayload

LINKS = {"upgrade_url": "https://app.test/pricing", "top_up_url": "https://app.test/credits"}
USER = SimpleNamespace(id="u1", email="student@example.com", role="user")


@pytest.fixture
def student_snapshot(clock) -> EntitlementSnapshot:
    return EntitlementSnapshot(
        user_id="u1",
        plan=PlanKey.STUDENT,
        features=build_feature_map(PlanKey.STUDENT, {"scans_per_month": 12}),
        billing_cycle_start=clock(),
        billing_cycle_end=clock(),
    )


def test_require_entitlement_allows_enabled_flag(student_snapshot: EntitlementSnapshot) -> None:
    require_entitlement(student_snapshot.features, "export_formats")


def test_require_entitlement_raises_when_missing(student_snapshot: EntitlementSnapshot) -> None:
    with pytest.raises(FeatureGateError) as exc:
        require_entitlement(student_snapshot.features, "priority_scanning")

    assert exc.value.code == "entitlement_required"
    assert exc.value.payload["missing_entitlement"] == "priority_scanning"


def test_entitlement_context_helpers(student_snapshot: EntitlementSnapshot) -> None:
    context = EntitlementContext(student_snapshot)

    assert context.plan == PlanKey.STUDENT
    assert context.has("export_formats") is True
    assert context.has("advanced_analytics") is False
    assert context.remaining("scan") == 38
    assert context.remaining("export_formats") is None
    assert context.max_scan_characters == 300_000

    context.require("export_formats")
    with pytest.raises(FeatureGateError):
        context.require("priority_scanning", error_code="upgrade_required")


def test_character_cap_warns_before_blocking(student_snapshot: EntitlementSnapshot) -> None:
    context = EntitlementContext(student_snapshot)

    near = context.evaluate_character_cap(character_count=280_000)
    assert near.allowed is True
    assert near.should_warn is True

    with pytest.raises(FeatureGateError) as exc:
        context.assert_character_cap(character_count=300_001)

    assert exc.value.status_code == 413
    assert exc.value.payload["max_characters"] == 300_000


def test_character_cap_without_limit_blocks_everything() -> None:
    evaluation = evaluate_character_cap(character_count=1, max_characters=0)

    assert evaluation.allowed is False
    assert evaluation.to_dict()["should_warn"] is True


def test_gate_errors_convert_to_http_exceptions() -> None:
    error = PlanLimitReachedError("scans_per_month", "free", auto_use_disabled=True)

    http_error = error.to_http_exception()

    assert http_error.status_code == 403
    assert http_error.detail["error"] == "plan_limit_reached"
    assert "auto-use" in http_error.detail["message"]


def test_upsell_links_depend_on_error() -> None:
    short = upsell_http_exception(
        InsufficientCreditsError("scans_per_month", "payg", required=3, balance=1), **LINKS
    )
    limited = upsell_http_exception(PlanLimitReachedError("scans_per_month", "free"), **LINKS)

    assert short.status_code == 402
    assert short.detail["error"] == INSUFFICIENT_CREDITS
    assert short.detail["top_up_url"] == LINKS["top_up_url"]
    assert "top_up_url" not in limited.detail
    assert limited.detail["upgrade_url"] == LINKS["upgrade_url"]


@pytest.mark.asyncio
async def test_require_feature_dependency_charges_and_upsells(engine) -> None:
    dependency = require_feature("scan", engine_provider=lambda: engine, links_provider=lambda: LINKS)

    decisions = [await dependency(word_count=900, current_user=USER) for _ in range(3)]
    assert [d.remaining for d in decisions] == [2, 1, 0]

    with pytest.raises(HTTPException) as exc:
        await dependency(word_count=900, current_user=USER)

    assert exc.value.status_code == 402
    assert exc.value.detail["top_up_url"] == LINKS["top_up_url"]


@pytest.mark.asyncio
async def test_webhook_route_validates_event_type(monkeypatch, billing_service, rebuilder) -> None:
    monkeypatch.setattr(billing_routes, "get_billing_service", lambda: billing_service)

    with pytest.raises(HTTPException) as exc:
        await billing_routes.receive_webhook(BillingWebhookPayload(id="evt_1", type="bogus", payload={}))
    assert exc.value.status_code == 400

    response = await billing_routes.receive_webhook(
        BillingWebhookPayload(id="evt_2", type="created", payload={"user_id": "u1", "plan": "student"})
    )
    await rebuilder.drain()
    assert response.status_code == 204


@pytest.mark.asyncio
async def test_webhook_route_maps_payload_errors_to_400(monkeypatch, billing_service) -> None:
    monkeypatch.setattr(billing_routes, "get_billing_service", lambda: billing_service)

    with pytest.raises(HTTPException) as exc:
        await billing_routes.receive_webhook(
            BillingWebhookPayload(id="evt_3", type="order_created", payload={"user_id": "u1", "pack": "credits_pro"})
        )

    assert exc.value.status_code == 400
    assert "order_id" in exc.value.detail


@pytest.mark.asyncio
async def test_credit_routes_use_current_user(monkeypatch, ledger) -> None:
    monkeypatch.setattr(credit_routes, "get_credit_ledger", lambda: ledger)
    await ledger.add_credits("u1", 25, CreditTransactionType.PURCHASE, reference_id="ord_1")

    balance = await credit_routes.get_credit_balance(current_user=USER)
    history = await credit_routes.list_credit_transactions(limit=10, current_user=USER)

    assert balance.balance == 25
    assert balance.model_dump(by_alias=True)["lifetimePurchased"] == 25
    assert [tx.reference_id for tx in history.transactions] == ["ord_1"]


@pytest.mark.asyncio
async def test_eligibility_and_cancel_routes(monkeypatch, engine, billing_service) -> None:
    monkeypatch.setattr(subscription_routes, "get_entitlement_engine", lambda: engine)
    monkeypatch.setattr(subscription_routes, "get_billing_service", lambda: billing_service)

    eligibility = await subscription_routes.get_feature_eligibility("citation_check", current_user=USER)
    assert eligibility.allowed is False
    assert eligibility.reason == "plan_limit_reached"

    with pytest.raises(HTTPException) as exc:
        await subscription_routes.cancel_subscription(current_user=USER)
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_plans_route_lists_catalog() -> None:
    response = await subscription_routes.list_plans()

    assert [plan.id for plan in response.plans][0] == PlanKey.FREE
    assert response.model_dump(by_alias=True)["plans"][2]["priceCents"] == 499


@pytest.mark.asyncio
async def test_credit_preference_routes_round_trip(monkeypatch, preferences) -> None:
    from backend.app.routes import user_preferences as preference_routes
    from backend.app.schemas.billing import CreditPreferencesUpdate
    from backend.app.services import entitlements as entitlement_services

    monkeypatch.setattr(entitlement_services, "get_credit_preferences", lambda: preferences)

    before = await preference_routes.get_credit_preferences(current_user=USER)
    updated = await preference_routes.update_credit_preferences(
        CreditPreferencesUpdate(autoUseCredits=False), current_user=USER
    )

    assert before.auto_use_credits is True
    assert updated.model_dump(by_alias=True) == {"autoUseCredits": False}
    assert await preferences.get_auto_use_credits("u1") is False
