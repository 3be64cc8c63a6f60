"""Named custom metric strategies keyed by a stable enum."""

from __future__ import annotations

import enum
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..exceptions import UnknownStrategyError

EXPECTED_DAILY_ACTIVITY = 100


class CustomStrategy(str, enum.Enum):
    COLLABORATION_INDEX = "collaboration_index"
    ENGAGEMENT_SCORE = "engagement_score"


@dataclass(frozen=True, slots=True)
class StrategySpec:
    """Which canonical records a strategy reads and how it reduces them to a value."""

    sources: tuple[str, ...]
    entity_types: tuple[str, ...] | None
    compute: Callable[[Sequence[Mapping[str, Any]], datetime, datetime], float]


def collaboration_index(
    documents: Sequence[Mapping[str, Any]], period_start: datetime, period_end: datetime
) -> float:
    """Unique message authors divided by total messages."""

    if not documents:
        return 0.0
    actors = {doc.get("actorId") for doc in documents if doc.get("actorId")}
    return len(actors) / len(documents)


def engagement_score(
    documents: Sequence[Mapping[str, Any]], period_start: datetime, period_end: datetime
) -> float:
    """Total activity relative to the activity expected for the period length, capped at 1."""

    days = max(1.0, (period_end - period_start).total_seconds() / 86400)
    expected = EXPECTED_DAILY_ACTIVITY * days
    return min(1.0, len(documents) / expected)


STRATEGIES: dict[CustomStrategy, StrategySpec] = {
    CustomStrategy.COLLABORATION_INDEX: StrategySpec(
        sources=("slack", "teams"),
        entity_types=("message",),
        compute=collaboration_index,
    ),
    CustomStrategy.ENGAGEMENT_SCORE: StrategySpec(
        sources=("slack", "teams", "jira"),
        entity_types=("message", "issue"),
        compute=engagement_score,
    ),
}


def resolve_strategy(key: CustomStrategy | str) -> StrategySpec:
    """Return the strategy registered for ``key`` or raise :class:`UnknownStrategyError`."""

    try:
        return STRATEGIES[CustomStrategy(key)]
    except (KeyError, ValueError):
        available = ", ".join(strategy.value for strategy in CustomStrategy)
        raise UnknownStrategyError(
            f"Unknown custom strategy '{key}'. Available strategies: {available}."
        ) from None


def resolve_all() -> dict[CustomStrategy, StrategySpec]:
    """Resolve every enum member up front so a missing registration fails at startup."""

    missing = [strategy.value for strategy in CustomStrategy if strategy not in STRATEGIES]
    if missing:
        raise UnknownStrategyError(f"Custom strategies without an implementation: {missing}")
    return dict(STRATEGIES)
