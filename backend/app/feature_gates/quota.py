"""Document size evaluation utilities for feature gating."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import status

from .exceptions import FeatureGateError

_DEFAULT_WARN_THRESHOLD = 0.90


@dataclass(frozen=True)
class CharacterCapEvaluation:
    """Represents the outcome of a per-document character cap check."""

    max_characters: int
    character_count: int
    usage_ratio: float
    warn_threshold: float
    should_warn: bool
    allowed: bool

    def to_dict(self) -> dict[str, float | int | bool]:
        """Serialize the evaluation for logging or telemetry."""

        return {
            "max_characters": self.max_characters,
            "character_count": self.character_count,
            "usage_ratio": self.usage_ratio,
            "warn_threshold": self.warn_threshold,
            "should_warn": self.should_warn,
            "allowed": self.allowed,
        }


def evaluate_character_cap(
    *,
    character_count: int,
    max_characters: int,
    warn_threshold: float = _DEFAULT_WARN_THRESHOLD,
) -> CharacterCapEvaluation:
    """Determine whether a document fits the plan's character cap."""

    count = max(character_count, 0)
    ratio = count / max_characters if max_characters > 0 else float("inf")

    return CharacterCapEvaluation(
        max_characters=max_characters,
        character_count=count,
        usage_ratio=ratio,
        warn_threshold=warn_threshold,
        should_warn=ratio >= warn_threshold,
        allowed=count <= max_characters,
    )


def assert_character_cap(
    *,
    character_count: int,
    max_characters: int,
    warn_threshold: float = _DEFAULT_WARN_THRESHOLD,
    error_code: str = "character_limit_exceeded",
) -> CharacterCapEvaluation:
    """Raise when a document is longer than the plan allows."""

    evaluation = evaluate_character_cap(
        character_count=character_count,
        max_characters=max_characters,
        warn_threshold=warn_threshold,
    )

    if not evaluation.allowed:
        raise FeatureGateError(
            code=error_code,
            message=f"Documents on this plan are limited to {max_characters:,} characters.",
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail={
                "max_characters": max_characters,
                "character_count": evaluation.character_count,
            },
        )

    return evaluation
