import pytest

from mnemo.obs.usage import CostModel, InMemoryUsageLogger, ModelPricing, Timer
from mnemo.types import UsageEvent


def test_cached_tokens_bill_at_the_cached_rate() -> None:
    cost = CostModel().estimate_cost(
        UsageEvent(
            cache_name="cachedContents/a",
            operation="query",
            tokens_used=1_000_000,
            cached_tokens_used=400_000,
            model="gemini-2.0-flash-001",
        )
    )

    assert cost == pytest.approx(0.07)


def test_local_models_are_free_and_unknown_models_use_the_default() -> None:
    model = CostModel(default=ModelPricing(1.0, 0.5, 2.0))

    assert model.price_for("nemotron-3-nano-q4") == ModelPricing(0.0, 0.0, 0.0)
    assert model.price_for("local:custom") == ModelPricing(0.0, 0.0, 0.0)
    assert model.price_for("some-hosted-model").input_per_1m == 1.0


def test_usage_logger_aggregates_per_cache() -> None:
    logger = InMemoryUsageLogger()
    logger.log(UsageEvent(cache_name="a", operation="load", tokens_used=500, model="local"))
    logger.log(UsageEvent(cache_name="a", operation="query", tokens_used=600, cached_tokens_used=500, model="local"))
    logger.log(UsageEvent(cache_name="b", operation="query", tokens_used=50, model="local"))

    only_a = logger.stats("a")
    everything = logger.stats()

    assert only_a.total_operations == 2
    assert only_a.total_tokens == 1100
    assert only_a.total_cached_tokens == 500
    assert only_a.estimated_cost_usd == 0.0
    assert everything.by_operation == {"load": 1, "query": 2}
    assert all(event.timestamp is not None for event in logger.recent())


def test_timer_measures_elapsed_milliseconds() -> None:
    with Timer() as timer:
        sum(range(1000))

    assert timer.elapsed_ms >= 0.0
