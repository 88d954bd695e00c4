"""Convenience wrapper around entitlement snapshots for feature gating."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from ..entitlements.catalog import PlanTier, canonical_feature_key, get_plan_tier
from ..entitlements.models import EntitlementSnapshot, FeatureRights, PlanKey
from .enforcement import require_entitlement
from .quota import CharacterCapEvaluation, assert_character_cap, evaluate_character_cap


@dataclass(frozen=True)
class EntitlementContext:
    """Facade exposing gating-centric helpers for a user's snapshot."""

    snapshot: EntitlementSnapshot

    @property
    def features(self) -> Dict[str, FeatureRights]:
        return dict(self.snapshot.features)

    @property
    def plan(self) -> PlanKey:
        return self.snapshot.plan

    @property
    def tier(self) -> PlanTier:
        return get_plan_tier(self.snapshot.plan)

    @property
    def max_scan_characters(self) -> int:
        return self.tier.max_scan_characters

    def has(self, flag: str) -> bool:
        """Return whether the provided flag is switched on for the plan."""

        rights = self.snapshot.feature(flag)
        return bool(rights and rights.enabled and rights.unlimited)

    def remaining(self, feature: str) -> Optional[int]:
        """Remaining plan quota, ``None`` for unlimited or unknown features."""

        rights = self.snapshot.feature(canonical_feature_key(feature))
        if rights is None or rights.unlimited:
            return None
        return rights.remaining

    def require(self, flag: str, *, error_code: str = "entitlement_required") -> None:
        """Ensure an entitlement flag is present and enabled."""

        require_entitlement(self.snapshot.features, flag, error_code=error_code)

    def evaluate_character_cap(self, *, character_count: int) -> CharacterCapEvaluation:
        """Inspect whether a document should proceed or warn."""

        return evaluate_character_cap(
            character_count=character_count,
            max_characters=self.max_scan_characters,
        )

    def assert_character_cap(
        self,
        *,
        character_count: int,
        error_code: str = "character_limit_exceeded",
    ) -> CharacterCapEvaluation:
        """Raise when a document exceeds the plan's character cap."""

        return assert_character_cap(
            character_count=character_count,
            max_characters=self.max_scan_characters,
            error_code=error_code,
        )
