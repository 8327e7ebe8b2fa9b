"""Usage accounting and cost estimation for cache operations."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from mnemo.types import UsageEvent, UsageStats


@dataclass(slots=True)
class ModelPricing:
    """USD per 1M tokens."""

    input_per_1m: float
    cached_input_per_1m: float
    output_per_1m: float


FREE = ModelPricing(0.0, 0.0, 0.0)

DEFAULT_PRICING: dict[str, ModelPricing] = {
    "gemini-2.0-flash-001": ModelPricing(0.10, 0.025, 0.40),
    "local": FREE,
    "nemotron-3-nano": FREE,
}


@dataclass(slots=True)
class CostModel:
    pricing: dict[str, ModelPricing] = field(default_factory=lambda: dict(DEFAULT_PRICING))
    default: ModelPricing = field(default_factory=lambda: ModelPricing(0.10, 0.025, 0.40))

    def price_for(self, model: str) -> ModelPricing:
        if model in self.pricing:
            return self.pricing[model]
        if model.startswith("local") or "nemotron" in model:
            return FREE
        return self.default

    def estimate_cost(self, event: UsageEvent) -> float:
        """Cached tokens bill at the cached rate, the rest at the input rate.

        Events carry one combined count, so output tokens are not split out.
        """
        price = self.price_for(event.model)
        fresh = max(0, event.tokens_used - event.cached_tokens_used)
        return (
            fresh * price.input_per_1m + event.cached_tokens_used * price.cached_input_per_1m
        ) / 1_000_000


class UsageLogger(Protocol):
    def log(self, event: UsageEvent) -> None:
        ...

    def stats(self, cache_name: str | None = None) -> UsageStats:
        ...


class InMemoryUsageLogger:
    """Keeps usage events in process memory."""

    def __init__(self, cost_model: CostModel | None = None) -> None:
        self._events: list[UsageEvent] = []
        self._cost_model = cost_model or CostModel()

    def log(self, event: UsageEvent) -> None:
        if event.timestamp is None:
            event.timestamp = datetime.now(timezone.utc)
        self._events.append(event)

    def recent(self, limit: int = 20) -> list[UsageEvent]:
        return self._events[-limit:]

    def stats(self, cache_name: str | None = None) -> UsageStats:
        events = [e for e in self._events if cache_name is None or e.cache_name == cache_name]
        by_operation: dict[str, int] = {}
        for event in events:
            by_operation[event.operation] = by_operation.get(event.operation, 0) + 1
        return UsageStats(
            total_operations=len(events),
            total_tokens=sum(e.tokens_used for e in events),
            total_cached_tokens=sum(e.cached_tokens_used for e in events),
            estimated_cost_usd=sum(self._cost_model.estimate_cost(e) for e in events),
            by_operation=by_operation,
        )


class Timer:
    """Context timer for operation latency."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
