"""Feature gating utilities coordinating entitlement enforcement."""
from .context import EntitlementContext
from .enforcement import require_entitlement, require_feature, upsell_http_exception
from .exceptions import (
    FEATURE_NOT_ON_PLAN,
    INSUFFICIENT_CREDITS,
    PLAN_LIMIT_REACHED,
    FeatureGateError,
    FeatureNotOnPlanError,
    InsufficientCreditsError,
    PlanLimitReachedError,
)
from .quota import CharacterCapEvaluation, assert_character_cap, evaluate_character_cap

__all__ = [
    "CharacterCapEvaluation",
    "EntitlementContext",
    "FEATURE_NOT_ON_PLAN",
    "FeatureGateError",
    "FeatureNotOnPlanError",
    "INSUFFICIENT_CREDITS",
    "InsufficientCreditsError",
    "PLAN_LIMIT_REACHED",
    "PlanLimitReachedError",
    "assert_character_cap",
    "evaluate_character_cap",
    "require_entitlement",
    "require_feature",
    "upsell_http_exception",
]
