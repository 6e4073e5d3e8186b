"""
End-to-end tests for the usage aggregator over a fake counter store.

Tests totals, cost rollup, batch isolation, trends and round-trip bounds.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from conftest import FakeCounterStore
from usage_rollup.config.loader import EngineConfig
from usage_rollup.core.aggregator import UsageAggregator
from usage_rollup.core.errors import InvalidRange, RangeTooLarge, StoreUnavailable
from usage_rollup.core.keys import Dimension
from usage_rollup.core.pricing import ModelPricing, calculate_cost
from usage_rollup.core.ranges import TimeRangeSpec
from usage_rollup.core.usage import UsageTotals, ZERO_USAGE, normalize_usage_hash

OPUS_FALLBACK = {Dimension.API_KEY: "claude-3-opus", Dimension.ACCOUNT: "claude-3-opus"}


@pytest.fixture
def aggregator_for(now):
    """Build an aggregator over a fake store with a fixed clock."""
    def build(store, config=None):
        return UsageAggregator(store, config=config, clock=lambda: now)
    return build


class TestGetUsage:
    """Test single-entity usage and cost."""

    def test_today_priced_by_model(self, aggregator_for):
        """Verify today's usage is priced from its model sub-bucket."""
        record = {"requests": "10", "inputTokens": "1000", "outputTokens": "500", "allTokens": "1500"}
        store = FakeCounterStore({
            "usage:daily:k1:2024-05-15": record,
            "usage:k1:model:daily:claude-3-5-sonnet:2024-05-15": record,
        })
        aggregator = aggregator_for(store, EngineConfig(fallback_models=OPUS_FALLBACK))

        result = aggregator.get_usage("k1", Dimension.API_KEY, "today")

        assert result.totals.all_tokens == 1500
        assert result.totals.requests == 10
        assert result.cost.total == Decimal("0.0105")
        assert not result.used_fallback_pricing
        assert result.cost.total != calculate_cost(result.totals, "claude-3-opus").total

    def test_fallback_pricing_without_model_data(self, aggregator_for):
        store = FakeCounterStore({
            "usage:daily:k1:2024-05-15": {"inputTokens": "1000", "outputTokens": "500"},
        })
        result = aggregator_for(store).get_usage("k1", "api_key", "today")

        assert result.used_fallback_pricing
        assert result.cost == calculate_cost(result.totals, "claude-3-5-sonnet-20241022")

    def test_seven_days_with_gaps(self, aggregator_for):
        """Verify missing days count as zero and present days are summed."""
        store = FakeCounterStore({
            "usage:daily:k1:2024-05-09": {"requests": "1", "inputTokens": "10"},
            "usage:daily:k1:2024-05-12": {"requests": "2", "totalInputTokens": "20"},
            "usage:daily:k1:2024-05-15": {"requests": "3", "inputTokens": "30", "outputTokens": "5"},
            "usage:daily:k1:2024-05-08": {"requests": "100"},
        })
        result = aggregator_for(store).get_usage("k1", Dimension.API_KEY, "7days")

        assert result.totals == UsageTotals(
            requests=6, input_tokens=60, output_tokens=5, all_tokens=65)

    def test_monthly_account(self, aggregator_for):
        store = FakeCounterStore({
            "account_usage:monthly:a1:2024-05": {"requests": "4", "inputTokens": "400"},
            "account_usage:model:monthly:a1:gpt-4o:2024-05": {"inputTokens": "400"},
        })
        result = aggregator_for(store).get_usage("a1", Dimension.ACCOUNT, "monthly")

        assert result.totals.requests == 4
        assert result.cost.total == calculate_cost(UsageTotals(input_tokens=400), "gpt-4o").total

    def test_lifetime_usage(self, aggregator_for):
        """Verify 'all' reads the running total and prices every monthly model bucket."""
        store = FakeCounterStore({
            "usage:k1": {"totalRequests": "10", "totalInputTokens": "2000000"},
            "usage:k1:model:monthly:claude-3-5-sonnet:2024-04": {"inputTokens": "1000000"},
            "usage:k1:model:monthly:claude-3-5-sonnet:2024-05": {"inputTokens": "1000000"},
        })
        result = aggregator_for(store).get_usage("k1", Dimension.API_KEY, "all")

        assert result.totals.requests == 10
        assert result.totals.all_tokens == 2000000
        assert result.cost.total == Decimal("6.00")

    def test_unknown_entity_is_zero(self, aggregator_for, store):
        result = aggregator_for(store).get_usage("nobody", Dimension.API_KEY, "7days")
        assert result.totals == ZERO_USAGE
        assert result.cost.total == Decimal("0")
        assert not result.used_fallback_pricing

    def test_round_trips_bounded(self, aggregator_for):
        """Verify a year-long range costs at most three round trips."""
        start = date(2023, 5, 16)
        store = FakeCounterStore({
            "usage:daily:k1:2024-01-01": {"inputTokens": "10"},
            "usage:k1:model:daily:gpt-4o:2024-01-01": {"inputTokens": "10"},
        })
        spec = TimeRangeSpec.custom(start, start + timedelta(days=364))

        aggregator_for(store).get_usage("k1", Dimension.API_KEY, spec)

        assert [name for name, _ in store.calls] == ["pipeline", "scan", "pipeline"]
        assert store.calls[0] == ("pipeline", 365)

    def test_invalid_range_before_store(self, aggregator_for, store):
        spec = TimeRangeSpec.custom(date(2024, 5, 2), date(2024, 5, 1))
        with pytest.raises(InvalidRange):
            aggregator_for(store).get_usage("k1", Dimension.API_KEY, spec)
        assert store.round_trips == 0

    def test_range_too_large(self, aggregator_for, store):
        spec = TimeRangeSpec.custom(date(2023, 1, 1), date(2024, 1, 1))
        with pytest.raises(RangeTooLarge):
            aggregator_for(store).get_usage("k1", Dimension.API_KEY, spec)

    def test_store_unavailable_propagates(self, aggregator_for, store):
        store.unavailable = True
        with pytest.raises(StoreUnavailable):
            aggregator_for(store).get_usage("k1", Dimension.API_KEY, "today")

    def test_unknown_dimension(self, aggregator_for, store):
        with pytest.raises(ValueError, match="Unknown dimension"):
            aggregator_for(store).get_usage("k1", "team", "today")

    def test_malformed_entity_id(self, aggregator_for, store):
        with pytest.raises(ValueError, match="Invalid entity id"):
            aggregator_for(store).get_usage("a:b", Dimension.API_KEY, "today")

    def test_family_fallback_model(self, aggregator_for):
        """Verify a window without model data is priced with its product family model."""
        store = FakeCounterStore({
            "account_usage:daily:gem1:2024-05-15": {"inputTokens": "1000000"},
        })
        aggregator = aggregator_for(store)

        gemini = aggregator.get_usage("gem1", Dimension.ACCOUNT, "today", family="gemini")
        default = aggregator.get_usage("gem1", Dimension.ACCOUNT, "today")

        assert gemini.used_fallback_pricing
        assert gemini.cost.total == Decimal("0.075000")
        assert default.cost.total == Decimal("3.00")

    def test_unknown_family_uses_dimension_fallback(self, aggregator_for):
        store = FakeCounterStore({
            "account_usage:daily:a1:2024-05-15": {"inputTokens": "1000000"},
        })
        config = EngineConfig(fallback_models=OPUS_FALLBACK)
        result = aggregator_for(store, config).get_usage(
            "a1", Dimension.ACCOUNT, "today", family="mistral")
        assert result.cost.total == Decimal("15.00")

    def test_family_ignored_when_models_present(self, aggregator_for):
        store = FakeCounterStore({
            "usage:daily:k1:2024-05-15": {"inputTokens": "1000000"},
            "usage:k1:model:daily:gpt-4o-mini:2024-05-15": {"inputTokens": "1000000"},
        })
        result = aggregator_for(store).get_usage("k1", Dimension.API_KEY, "today", family="gemini")
        assert not result.used_fallback_pricing
        assert result.cost.total == Decimal("0.15")

    def test_pricing_overrides_from_config(self, aggregator_for):
        store = FakeCounterStore({
            "usage:daily:k1:2024-05-15": {"inputTokens": "1000000"},
            "usage:k1:model:daily:in-house-model:2024-05-15": {"inputTokens": "1000000"},
        })
        config = EngineConfig(pricing_overrides={
            "in-house-model": ModelPricing(Decimal("0.50"), Decimal("1.00")),
        })
        result = aggregator_for(store, config).get_usage("k1", Dimension.API_KEY, "today")
        assert result.cost.total == Decimal("0.50")

    def test_as_dict(self, aggregator_for):
        store = FakeCounterStore({"usage:daily:k1:2024-05-15": {"inputTokens": "1000"}})
        data = aggregator_for(store).get_usage("k1", Dimension.API_KEY, "today").as_dict()
        assert data["allTokens"] == 1000
        assert data["formattedCost"] == "$0.0030"
        assert data["costs"]["input"] == pytest.approx(0.003)


class TestGetUsageBatch:
    """Test multi-entity totals."""

    def test_empty_ids_skip_everything(self, aggregator_for, store):
        """Verify an empty batch returns immediately without store calls."""
        spec = TimeRangeSpec.custom(date(2024, 5, 2), date(2024, 5, 1))
        assert aggregator_for(store).get_usage_batch([], Dimension.API_KEY, spec) == {}
        assert store.round_trips == 0

    def test_single_round_trip(self, aggregator_for):
        store = FakeCounterStore({
            "usage:daily:k1:2024-05-15": {"requests": "1"},
            "usage:daily:k2:2024-05-14": {"requests": "2"},
        })
        results = aggregator_for(store).get_usage_batch(["k1", "k2", "k3"], Dimension.API_KEY, "7days")

        assert store.calls == [("pipeline", 21)]
        assert results["k1"].requests == 1
        assert results["k2"].requests == 2
        assert results["k3"] == ZERO_USAGE

    def test_failing_entity_isolated(self, aggregator_for):
        """Verify one entity failing to normalize reports zero without affecting others."""
        store = FakeCounterStore({
            "usage:daily:good:2024-05-15": {"requests": "3"},
            "usage:daily:bad:2024-05-15": {"requests": "7", "poison": "1"},
        })

        def normalize(row):
            if row and row.get("poison"):
                raise RuntimeError("corrupt row")
            return normalize_usage_hash(row)

        with patch("usage_rollup.storage.reader.normalize_usage_hash", side_effect=normalize):
            results = aggregator_for(store).get_usage_batch(["good", "bad"], Dimension.API_KEY, "today")

        assert results["good"].requests == 3
        assert results["bad"] == ZERO_USAGE

    def test_malformed_id_in_batch(self, aggregator_for):
        store = FakeCounterStore({"usage:daily:k1:2024-05-15": {"requests": "1"}})
        results = aggregator_for(store).get_usage_batch(["bad:id", "k1"], Dimension.API_KEY, "today")
        assert results["bad:id"] == ZERO_USAGE
        assert results["k1"].requests == 1

    def test_generator_ids(self, aggregator_for):
        """Verify ids given as a one-shot iterator are all read."""
        store = FakeCounterStore({
            "usage:daily:k1:2024-05-15": {"requests": "1"},
            "usage:daily:k2:2024-05-15": {"requests": "2"},
        })
        ids = (entity_id for entity_id in ["k1", "k2"])
        results = aggregator_for(store).get_usage_batch(ids, Dimension.API_KEY, "today")

        assert set(results) == {"k1", "k2"}
        assert results["k2"].requests == 2
        assert store.calls == [("pipeline", 2)]

    def test_store_unavailable_fails_batch(self, aggregator_for, store):
        store.unavailable = True
        with pytest.raises(StoreUnavailable):
            aggregator_for(store).get_usage_batch(["k1"], Dimension.API_KEY, "today")


class TestGetUsageTrend:
    """Test daily trends."""

    @pytest.fixture
    def trend_store(self):
        return FakeCounterStore({
            "usage:daily:k1:2024-05-13": {"requests": "2", "inputTokens": "1000000"},
            "usage:daily:k1:2024-05-15": {"requests": "5", "inputTokens": "1000000"},
            "usage:k1:model:daily:gpt-4o-mini:2024-05-15": {"inputTokens": "1000000"},
        })

    def test_points_and_costs(self, aggregator_for, trend_store):
        """Verify each day is costed on its own, with fallback only where needed."""
        trend = aggregator_for(trend_store).get_usage_trend("k1", Dimension.API_KEY, days=3)

        assert [p.date for p in trend.points] == ["2024-05-13", "2024-05-14", "2024-05-15"]
        assert [p.label for p in trend.points] == ["05/13", "05/14", "05/15"]
        assert trend.points[0].cost.total == Decimal("3.00")
        assert trend.points[1].cost.total == Decimal("0")
        assert trend.points[2].cost.total == Decimal("0.15")

    def test_summary(self, aggregator_for, trend_store):
        summary = aggregator_for(trend_store).get_usage_trend("k1", Dimension.API_KEY, days=3).summary

        assert summary.days == 3
        assert summary.totals.requests == 7
        assert summary.total_cost == Decimal("3.15")
        assert summary.avg_daily_cost == Decimal("1.05")
        assert summary.avg_daily_requests == pytest.approx(7 / 3)
        assert summary.highest_cost_day.date == "2024-05-13"
        assert summary.highest_request_day.date == "2024-05-15"

    def test_days_clamped(self, aggregator_for, store):
        aggregator = aggregator_for(store)
        assert len(aggregator.get_usage_trend("k1", Dimension.API_KEY, days=500).points) == 60
        assert len(aggregator.get_usage_trend("k1", Dimension.API_KEY, days=0).points) == 1

    def test_round_trips_bounded(self, aggregator_for, trend_store):
        aggregator_for(trend_store).get_usage_trend("k1", Dimension.API_KEY, days=30)
        assert trend_store.round_trips <= 3

    def test_day_trend_between_dates(self, aggregator_for, trend_store):
        trend = aggregator_for(trend_store).get_usage_trend(
            "k1", Dimension.API_KEY, start=date(2024, 5, 13), end=date(2024, 5, 14))

        assert [p.date for p in trend.points] == ["2024-05-13", "2024-05-14"]
        assert trend.summary.total_cost == Decimal("3.00")

    def test_day_trend_with_one_bound(self, aggregator_for, store):
        with pytest.raises(InvalidRange, match="requires both start and end"):
            aggregator_for(store).get_usage_trend("k1", Dimension.API_KEY, start=date(2024, 5, 13))

    def test_family_fallback_per_point(self, aggregator_for, trend_store):
        trend = aggregator_for(trend_store).get_usage_trend(
            "k1", Dimension.API_KEY, days=3, family="gemini")
        assert trend.points[0].cost.total == Decimal("0.075")
        assert trend.points[2].cost.total == Decimal("0.15")


class TestHourlyTrend:
    """Test hourly trends."""

    @pytest.fixture
    def hourly_store(self):
        return FakeCounterStore({
            "usage:hourly:k1:2024-05-15:11": {"requests": "2", "inputTokens": "1000000"},
            "usage:hourly:k1:2024-05-15:12": {"requests": "3", "inputTokens": "1000000"},
            "usage:k1:model:hourly:gpt-4o-mini:2024-05-15:12": {"inputTokens": "1000000"},
            "usage:daily:k1:2024-05-15": {"requests": "99"},
        })

    def test_hourly_points(self, aggregator_for, hourly_store, now):
        """Verify hour buckets are read, labelled and costed one by one."""
        start = datetime(2024, 5, 15, 3, 0, tzinfo=timezone.utc)
        trend = aggregator_for(hourly_store).get_usage_trend(
            "k1", Dimension.API_KEY, granularity="hour", start=start, end=now)

        assert [p.date for p in trend.points] == ["2024-05-15:11", "2024-05-15:12"]
        assert [p.label for p in trend.points] == ["05/15 11:00", "05/15 12:00"]
        assert [p.usage.requests for p in trend.points] == [2, 3]
        assert trend.points[0].cost.total == Decimal("3.00")
        assert trend.points[1].cost.total == Decimal("0.15")
        assert trend.summary.highest_cost_day.date == "2024-05-15:11"

    def test_hourly_round_trips_bounded(self, aggregator_for, hourly_store, now):
        start = datetime(2024, 5, 15, 3, 0, tzinfo=timezone.utc)
        aggregator_for(hourly_store).get_usage_trend(
            "k1", Dimension.API_KEY, granularity="hour", start=start, end=now)

        assert hourly_store.round_trips <= 3
        assert [name for name, _ in hourly_store.calls] == ["pipeline", "scan", "pipeline"]
        assert hourly_store.calls[0] == ("pipeline", 2)

    def test_default_window_is_last_day(self, aggregator_for, hourly_store):
        trend = aggregator_for(hourly_store).get_usage_trend(
            "k1", Dimension.API_KEY, granularity="HOUR")

        assert len(trend.points) == 25
        assert trend.points[0].date == "2024-05-14:12"
        assert trend.points[-1].date == "2024-05-15:12"
        assert trend.summary.totals.requests == 5

    def test_hourly_family_fallback(self, aggregator_for, hourly_store, now):
        start = datetime(2024, 5, 15, 3, 0, tzinfo=timezone.utc)
        trend = aggregator_for(hourly_store).get_usage_trend(
            "k1", Dimension.API_KEY, granularity="hour", start=start, end=now, family="openai")
        assert trend.points[0].cost.total == Decimal("0.15")

    def test_window_over_a_day_rejected(self, aggregator_for, store, now):
        with pytest.raises(RangeTooLarge, match="24 hours"):
            aggregator_for(store).get_usage_trend(
                "k1", Dimension.API_KEY, granularity="hour",
                start=now - timedelta(hours=25), end=now)
        assert store.round_trips == 0

    def test_unknown_granularity(self, aggregator_for, store):
        with pytest.raises(InvalidRange, match="Unknown trend granularity"):
            aggregator_for(store).get_usage_trend("k1", Dimension.API_KEY, granularity="week")
        assert store.round_trips == 0


class TestGetModelBreakdown:
    """Test per-model breakdowns."""

    def test_sorted_by_tokens(self, aggregator_for):
        store = FakeCounterStore({
            "usage:monthly:k1:2024-05": {"inputTokens": "1100"},
            "usage:k1:model:monthly:gpt-4o:2024-05": {"inputTokens": "100"},
            "usage:k1:model:monthly:claude-3-5-sonnet:2024-05": {"inputTokens": "1000"},
        })
        lines = aggregator_for(store).get_model_breakdown("k1", Dimension.API_KEY, "monthly")

        assert [line.model for line in lines] == ["claude-3-5-sonnet", "gpt-4o"]
        assert not any(line.is_fallback for line in lines)

    def test_fallback_line(self, aggregator_for):
        store = FakeCounterStore({"usage:monthly:k1:2024-05": {"inputTokens": "1100"}})
        lines = aggregator_for(store).get_model_breakdown("k1", Dimension.API_KEY, "monthly")

        assert len(lines) == 1
        assert lines[0].is_fallback
        assert lines[0].model == "claude-3-5-sonnet-20241022"

    def test_empty(self, aggregator_for, store):
        assert aggregator_for(store).get_model_breakdown("k1", Dimension.API_KEY, "today") == []

    def test_family_fallback_line(self, aggregator_for):
        store = FakeCounterStore({"usage:monthly:k1:2024-05": {"inputTokens": "1000000"}})
        lines = aggregator_for(store).get_model_breakdown(
            "k1", Dimension.API_KEY, "monthly", family="gemini")

        assert lines[0].model == "gemini-1.5-flash"
        assert lines[0].cost.total == Decimal("0.075")
