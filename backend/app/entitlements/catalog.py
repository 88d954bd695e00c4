"""Static catalog definitions for plan tiers and their feature limits."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple, Union

from .models import FeatureRights, PlanKey

Limit = Union[bool, int]

UNLIMITED = -1
CREDIT_ONLY = -2

SCANS_PER_MONTH = "scans_per_month"
ORIGINALITY_SCAN = "originality_scan"
CITATION_AUDIT = "citation_audit"
REPHRASE_SUGGESTIONS = "rephrase_suggestions"
PAPER_SEARCH = "paper_search"
AI_INTEGRITY = "ai_integrity"
AI_CHAT = "ai_chat"
DRAFT_COMPARISON = "draft_comparison"
CERTIFICATE = "certificate"

FEATURE_ALIASES: Dict[str, str] = {
    "scan": SCANS_PER_MONTH,
    "citation_check": CITATION_AUDIT,
    "rephrase": REPHRASE_SUGGESTIONS,
    "originality": ORIGINALITY_SCAN,
    "chat": AI_CHAT,
}

# Features whose stored limits are compared against the catalog on every read.
CRITICAL_FEATURES: Tuple[str, ...] = (
    SCANS_PER_MONTH,
    ORIGINALITY_SCAN,
    CITATION_AUDIT,
    REPHRASE_SUGGESTIONS,
)

_PLAN_ALIASES: Dict[str, PlanKey] = {
    "student pro": PlanKey.STUDENT_PRO,
    "student-pro": PlanKey.STUDENT_PRO,
    "studentpro": PlanKey.STUDENT_PRO,
    "pay as you go": PlanKey.PAYG,
    "pay_as_you_go": PlanKey.PAYG,
    "pay-as-you-go": PlanKey.PAYG,
    "pro": PlanKey.RESEARCHER,
}


@dataclass(frozen=True)
class PlanTier:
    """Describes a subscription plan and its per-feature limits."""

    key: PlanKey
    display_name: str
    monthly_price_cents: int
    features: Mapping[str, Limit]
    max_scan_characters: int
    certificate_retention_days: int
    highlights: Tuple[str, ...] = ()
    public: bool = True
    popular: bool = False

    def limit_for(self, feature: str) -> Optional[Limit]:
        return self.features.get(feature)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.key.value,
            "name": self.display_name,
            "price_cents": self.monthly_price_cents,
            "interval": "month",
            "features": list(self.highlights),
            "limits": dict(self.features),
            "max_scan_characters": self.max_scan_characters,
            "certificate_retention_days": self.certificate_retention_days,
            "popular": self.popular,
        }


PLAN_CATALOG: Dict[PlanKey, PlanTier] = {
    PlanKey.FREE: PlanTier(
        key=PlanKey.FREE,
        display_name="Free",
        monthly_price_cents=0,
        features={
            SCANS_PER_MONTH: 3,
            ORIGINALITY_SCAN: 3,
            CITATION_AUDIT: 0,
            DRAFT_COMPARISON: False,
            REPHRASE_SUGGESTIONS: 3,
            PAPER_SEARCH: 3,
            AI_INTEGRITY: 0,
            AI_CHAT: 5,
            CERTIFICATE: 10,
            "watermark": True,
            "export_formats": False,
            "priority_scanning": False,
            "advanced_citations": False,
            "advanced_analytics": False,
        },
        max_scan_characters=100_000,
        certificate_retention_days=7,
        highlights=(
            "3 document scans per month",
            "3 rephrase suggestions",
            "3 paper searches",
            "Max 100,000 characters",
            "Watermarked certificate",
        ),
    ),
    PlanKey.PAYG: PlanTier(
        key=PlanKey.PAYG,
        display_name="Pay as you go",
        monthly_price_cents=0,
        features={
            SCANS_PER_MONTH: CREDIT_ONLY,
            ORIGINALITY_SCAN: CREDIT_ONLY,
            CITATION_AUDIT: CREDIT_ONLY,
            DRAFT_COMPARISON: CREDIT_ONLY,
            REPHRASE_SUGGESTIONS: CREDIT_ONLY,
            PAPER_SEARCH: CREDIT_ONLY,
            AI_INTEGRITY: CREDIT_ONLY,
            AI_CHAT: CREDIT_ONLY,
            CERTIFICATE: CREDIT_ONLY,
            "watermark": False,
            "export_formats": True,
            "priority_scanning": False,
            "advanced_citations": False,
            "advanced_analytics": False,
        },
        max_scan_characters=300_000,
        certificate_retention_days=0,
        highlights=("Pay only for what you use", "Max 300,000 characters"),
    ),
    PlanKey.STUDENT: PlanTier(
        key=PlanKey.STUDENT,
        display_name="Student",
        monthly_price_cents=499,
        features={
            SCANS_PER_MONTH: 50,
            ORIGINALITY_SCAN: 50,
            CITATION_AUDIT: 50,
            DRAFT_COMPARISON: False,
            REPHRASE_SUGGESTIONS: 50,
            PAPER_SEARCH: 50,
            AI_INTEGRITY: 0,
            AI_CHAT: 50,
            CERTIFICATE: 50,
            "watermark": False,
            "export_formats": True,
            "priority_scanning": False,
            "advanced_citations": False,
            "advanced_analytics": False,
        },
        max_scan_characters=300_000,
        certificate_retention_days=30,
        highlights=(
            "50 document scans per month",
            "50 rephrase suggestions",
            "Citation confidence auditor",
            "Max 300,000 characters",
            "Certificate without watermark",
        ),
        popular=True,
    ),
    PlanKey.STUDENT_PRO: PlanTier(
        key=PlanKey.STUDENT_PRO,
        display_name="Student Pro",
        monthly_price_cents=899,
        features={
            SCANS_PER_MONTH: 150,
            ORIGINALITY_SCAN: 150,
            CITATION_AUDIT: 150,
            DRAFT_COMPARISON: True,
            REPHRASE_SUGGESTIONS: 150,
            PAPER_SEARCH: 150,
            AI_INTEGRITY: 25,
            AI_CHAT: 150,
            CERTIFICATE: 150,
            "watermark": False,
            "export_formats": True,
            "priority_scanning": False,
            "advanced_citations": True,
            "advanced_analytics": False,
        },
        max_scan_characters=400_000,
        certificate_retention_days=90,
        highlights=(
            "150 document scans per month",
            "Draft comparison",
            "Advanced citation suggestions",
            "Max 400,000 characters",
        ),
    ),
    PlanKey.RESEARCHER: PlanTier(
        key=PlanKey.RESEARCHER,
        display_name="Researcher",
        monthly_price_cents=1299,
        features={
            SCANS_PER_MONTH: UNLIMITED,
            ORIGINALITY_SCAN: UNLIMITED,
            CITATION_AUDIT: UNLIMITED,
            DRAFT_COMPARISON: UNLIMITED,
            REPHRASE_SUGGESTIONS: UNLIMITED,
            PAPER_SEARCH: UNLIMITED,
            AI_INTEGRITY: UNLIMITED,
            AI_CHAT: UNLIMITED,
            CERTIFICATE: UNLIMITED,
            "watermark": False,
            "export_formats": True,
            "priority_scanning": True,
            "advanced_citations": True,
            "advanced_analytics": True,
        },
        max_scan_characters=500_000,
        certificate_retention_days=-1,
        highlights=(
            "Unlimited document scans",
            "Unlimited rephrase suggestions",
            "Priority scanning",
            "Safe AI integrity assistant",
            "Max 500,000 characters",
        ),
    ),
}


def normalize_plan_id(plan_id: Union[str, PlanKey, None]) -> PlanKey:
    """Map a raw plan identifier to its canonical key, defaulting to free."""

    if isinstance(plan_id, PlanKey):
        return plan_id
    if not plan_id:
        return PlanKey.FREE
    lowered = str(plan_id).strip().lower()
    if lowered in _PLAN_ALIASES:
        return _PLAN_ALIASES[lowered]
    try:
        return PlanKey(lowered)
    except ValueError:
        return PlanKey.FREE


def get_plan_tier(plan_id: Union[str, PlanKey, None]) -> PlanTier:
    """Return the tier for a plan id, falling back to the free tier."""

    return PLAN_CATALOG.get(normalize_plan_id(plan_id), PLAN_CATALOG[PlanKey.FREE])


def get_plan_limits(plan_id: Union[str, PlanKey, None]) -> Mapping[str, Limit]:
    """Return the feature limit map for a plan id."""

    return dict(get_plan_tier(plan_id).features)


def canonical_feature_key(feature: str) -> str:
    """Translate legacy feature names into the keys stored in snapshots."""

    key = feature.strip().lower()
    return FEATURE_ALIASES.get(key, key)


def compute_feature_rights(limit: Limit, used: int = 0) -> FeatureRights:
    """Combine a catalog limit with a usage count into snapshot rights."""

    used = max(0, int(used))
    # bool is checked first because it is a subclass of int.
    if isinstance(limit, bool):
        if limit:
            return FeatureRights(limit=UNLIMITED, used=used, remaining=UNLIMITED, unlimited=True)
        return FeatureRights(limit=0, used=used, remaining=0, enabled=False)
    if limit == UNLIMITED:
        return FeatureRights(limit=UNLIMITED, used=used, remaining=UNLIMITED, unlimited=True)
    if limit == CREDIT_ONLY:
        return FeatureRights(limit=0, used=used, remaining=0, credit_only=True)
    limit = max(0, int(limit))
    return FeatureRights(limit=limit, used=used, remaining=max(0, limit - used))


def build_feature_map(plan_id: Union[str, PlanKey, None], usage: Mapping[str, int]) -> Dict[str, FeatureRights]:
    """Compute rights for every feature in the plan's limit map."""

    return {
        feature: compute_feature_rights(limit, usage.get(feature, 0))
        for feature, limit in get_plan_limits(plan_id).items()
    }


def rights_match_catalog(plan_id: Union[str, PlanKey, None], feature: str, rights: Optional[FeatureRights]) -> bool:
    """Return whether stored rights still reflect the configured catalog limit."""

    limit = get_plan_tier(plan_id).limit_for(feature)
    if limit is None or rights is None:
        return limit is None and rights is None
    expected = compute_feature_rights(limit)
    return (
        rights.limit == expected.limit
        and rights.unlimited == expected.unlimited
        and rights.enabled == expected.enabled
        and rights.credit_only == expected.credit_only
    )


def list_available_plans() -> List[Dict[str, object]]:
    return [tier.to_dict() for tier in PLAN_CATALOG.values() if tier.public]


__all__ = [
    "CREDIT_ONLY",
    "CRITICAL_FEATURES",
    "FEATURE_ALIASES",
    "PLAN_CATALOG",
    "PlanTier",
    "UNLIMITED",
    "build_feature_map",
    "canonical_feature_key",
    "compute_feature_rights",
    "get_plan_limits",
    "get_plan_tier",
    "list_available_plans",
    "normalize_plan_id",
    "rights_match_catalog",
]
