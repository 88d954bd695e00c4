"""Custom exceptions used for feature gating enforcement."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status

FEATURE_NOT_ON_PLAN = "feature_not_on_plan"
PLAN_LIMIT_REACHED = "plan_limit_reached"
INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass
class FeatureGateError(Exception):
    """Represents an actionable gating failure surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_403_FORBIDDEN
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class FeatureNotOnPlanError(FeatureGateError):
    """The feature is not part of the user's resolved plan."""

    def __init__(self, feature: str, plan: str) -> None:
        super().__init__(
            code=FEATURE_NOT_ON_PLAN,
            message=f"'{feature}' is not available on the {plan} plan.",
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"feature": feature, "plan": plan},
        )


class PlanLimitReachedError(FeatureGateError):
    """Plan quota is exhausted and credits were not used."""

    def __init__(self, feature: str, plan: str, *, auto_use_disabled: bool = False) -> None:
        if auto_use_disabled:
            message = (
                f"You have used all '{feature}' allowed on the {plan} plan this cycle. "
                "Enable auto-use of credits to continue."
            )
        else:
            message = f"You have used all '{feature}' allowed on the {plan} plan this cycle."
        super().__init__(
            code=PLAN_LIMIT_REACHED,
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"feature": feature, "plan": plan, "auto_use_disabled": auto_use_disabled},
        )


class InsufficientCreditsError(FeatureGateError):
    """Plan quota is exhausted and the credit balance cannot cover the cost."""

    def __init__(self, feature: str, plan: str, *, required: int, balance: int) -> None:
        super().__init__(
            code=INSUFFICIENT_CREDITS,
            message=f"'{feature}' needs {required} credits but only {balance} are available.",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"feature": feature, "plan": plan, "required": required, "balance": balance},
        )
