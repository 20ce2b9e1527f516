"""
Provider scoring policy.

Urgent/important work buys reliability and speed regardless of cost;
routine work optimizes cost:

    critical: reliability*100 + (1/response_time)*10000
    high:     reliability*80  + (1/response_time)*5000
    medium:   reliability*60  + (1/cost_per_token)*100
    low:      (1/cost_per_token)*200

plus a +50 capability-match base and a health bonus. A provider that
cannot serve the request's task type scores 0.

The constants are the compatibility baseline carried over from the
deployed router. They were tuned by hand and are not derived from
anything; treat them as arbitrary.
"""

from __future__ import annotations

from typing import Callable, Iterable, Optional

from relay.llm.llm_config import Priority
from relay.llm.registry import HealthRecord, HealthStatus, Provider
from relay.llm.types import LLMRequest

CAPABILITY_MATCH_BONUS = 50.0

CRITICAL_RELIABILITY_WEIGHT = 100.0
CRITICAL_SPEED_WEIGHT = 10000.0
HIGH_RELIABILITY_WEIGHT = 80.0
HIGH_SPEED_WEIGHT = 5000.0
MEDIUM_RELIABILITY_WEIGHT = 60.0
MEDIUM_COST_WEIGHT = 100.0
LOW_COST_WEIGHT = 200.0

HEALTH_BONUS: dict[HealthStatus, float] = {
    HealthStatus.HEALTHY: 20.0,
    HealthStatus.DEGRADED: 5.0,
    HealthStatus.DOWN: 0.0,
}

# Guards 1/x for free local models and uninitialised latency seeds
_EPSILON = 1e-9


def _inverse(value: float) -> float:
    return 1.0 / max(value, _EPSILON)


def priority_term(provider: Provider, priority: Priority) -> float:
    """The priority-dependent part of the score."""
    if priority is Priority.CRITICAL:
        return (
            provider.reliability * CRITICAL_RELIABILITY_WEIGHT
            + _inverse(provider.response_time) * CRITICAL_SPEED_WEIGHT
        )
    if priority is Priority.HIGH:
        return (
            provider.reliability * HIGH_RELIABILITY_WEIGHT
            + _inverse(provider.response_time) * HIGH_SPEED_WEIGHT
        )
    if priority is Priority.MEDIUM:
        return (
            provider.reliability * MEDIUM_RELIABILITY_WEIGHT
            + _inverse(provider.cost_per_token) * MEDIUM_COST_WEIGHT
        )
    return _inverse(provider.cost_per_token) * LOW_COST_WEIGHT


def health_bonus(health: Optional[HealthRecord]) -> float:
    # No probe yet counts as healthy
    if health is None or health.last_check is None:
        return HEALTH_BONUS[HealthStatus.HEALTHY]
    return HEALTH_BONUS[health.status]


def score(
    provider: Provider,
    request: LLMRequest,
    health: Optional[HealthRecord] = None,
) -> float:
    """Fitness of ``provider`` for ``request``. Higher is better."""
    if not provider.supports(request.task_type):
        return 0.0

    total = CAPABILITY_MATCH_BONUS
    total += priority_term(provider, request.priority)
    total += health_bonus(health)
    return total


def rank(
    providers: Iterable[Provider],
    request: LLMRequest,
    health_lookup: Callable[[str], Optional[HealthRecord]] = lambda _id: None,
) -> list[tuple[Provider, float]]:
    """
    Score every provider and sort best-first.

    The sort is stable, so equal scores keep registry order and the first
    maximum encountered wins.
    """
    scored = [(p, score(p, request, health_lookup(p.id))) for p in providers]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored
