"""Helpers for enforcing entitlement checks on API and service layers."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from fastapi import Depends, Header, HTTPException

from ..entitlements.models import ConsumptionDecision, FeatureRights
from ..routes.dependencies import get_request_user
from .exceptions import INSUFFICIENT_CREDITS, FeatureGateError


def require_entitlement(
    features: Mapping[str, FeatureRights],
    flag: str,
    *,
    error_code: str = "entitlement_required",
    message: str | None = None,
) -> None:
    """Ensure a boolean feature flag is enabled before proceeding.

    Parameters
    ----------
    features:
        Feature rights as stored on an :class:`EntitlementSnapshot`.
    flag:
        The catalog flag (for example ``"export_formats"``) that must be on.
    error_code:
        Optional override for the surfaced error code when the entitlement is
        not granted. Defaults to ``"entitlement_required"``.
    message:
        Optional human-friendly message explaining the failure. If omitted, a
        default message mentioning the missing flag is used.
    """

    rights = features.get(flag)
    is_enabled = rights is not None and rights.enabled and rights.unlimited

    if not is_enabled:
        failure_message = message or f"Entitlement '{flag}' is required."
        raise FeatureGateError(
            code=error_code,
            message=failure_message,
            detail={"missing_entitlement": flag},
        )


def upsell_http_exception(error: FeatureGateError, *, upgrade_url: str, top_up_url: str) -> HTTPException:
    """Convert a gate error into an HTTP error carrying the matching purchase link."""

    detail: Dict[str, Any] = dict(error.payload)
    if error.code == INSUFFICIENT_CREDITS:
        detail["top_up_url"] = top_up_url
    detail["upgrade_url"] = upgrade_url
    return HTTPException(status_code=error.status_code, detail=detail)


def _default_engine_provider() -> Any:  # pragma: no cover - resolved at request time
    from ..services.entitlements import get_entitlement_engine

    return get_entitlement_engine()


def _default_upsell_links() -> Mapping[str, str]:  # pragma: no cover - resolved at request time
    from ..services.entitlements import get_entitlement_config

    config = get_entitlement_config()
    return {"upgrade_url": config.upgrade_url, "top_up_url": config.top_up_url}


def require_feature(
    feature: str,
    *,
    engine_provider: Optional[Callable[[], Any]] = None,
    links_provider: Optional[Callable[[], Mapping[str, str]]] = None,
) -> Callable[..., Awaitable[ConsumptionDecision]]:
    """Build a FastAPI dependency that charges ``feature`` before the handler runs.

    A word count sent in the ``X-Word-Count`` header prices the credit
    fallback; without it the fixed per-feature cost applies.
    """

    async def dependency(
        word_count: Optional[int] = Header(None, alias="X-Word-Count", ge=0),
        current_user=Depends(get_request_user),
    ) -> ConsumptionDecision:
        engine = (engine_provider or _default_engine_provider)()
        metadata = {"word_count": word_count} if word_count else None
        try:
            return await engine.assert_can_use(str(current_user.id), feature, metadata)
        except FeatureGateError as exc:
            links = (links_provider or _default_upsell_links)()
            raise upsell_http_exception(
                exc,
                upgrade_url=links["upgrade_url"],
                top_up_url=links["top_up_url"],
            ) from exc

    return dependency
