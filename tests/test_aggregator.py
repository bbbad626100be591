"""
Unit tests for usage aggregation.

Tests bucket updates, conversation counting and invariant checks.
"""

import pytest

from chat_usage_meter.core.aggregator import (
    UNKNOWN_DAY,
    Aggregator,
    check_invariants,
    record_conversation,
    update_usage,
)
from chat_usage_meter.core.pricing import ModelRegistry
from chat_usage_meter.core.token_counter import ImageUsage, TextUsage


class TestUpdateUsage:
    """Test the single mutation entry point."""

    def setup_method(self):
        """Set up an empty aggregator and default pricing."""
        self.aggregator = Aggregator()
        self.registry = ModelRegistry()

    def test_creates_buckets_lazily(self):
        """Day and model buckets appear on first update."""
        update_usage(self.aggregator, self.registry, "2024-03-01", 9, "gpt-4o", TextUsage(100, 50))

        day = self.aggregator.usage_by_day["2024-03-01"]
        assert set(day.models) == {"gpt-4o"}
        assert len(day.total.hours) == 24

    def test_four_locations_move_together(self):
        """Model hour, model day, total hour and total day get the same deltas."""
        cost = update_usage(self.aggregator, self.registry, "2024-03-01", 9, "gpt-4o", TextUsage(1_000_000, 1_000_000))

        day = self.aggregator.usage_by_day["2024-03-01"]
        model = day.models["gpt-4o"]
        for bucket in (model, model.hours[9], day.total, day.total.hours[9]):
            assert bucket.input_tokens == 1_000_000
            assert bucket.output_tokens == 1_000_000
            assert bucket.cost == pytest.approx(20.0)
            assert bucket.message_count == 1
            assert bucket.conversation_count == 0
        assert cost == pytest.approx(20.0)

    def test_image_usage_stored_as_output(self):
        """Image counts land in the output fields and are priced per image."""
        update_usage(self.aggregator, self.registry, "2024-03-01", 0, "dalle-3", ImageUsage(image_count=2))

        bucket = self.aggregator.usage_by_day["2024-03-01"].models["dalle-3"]
        assert bucket.input_tokens == 0
        assert bucket.output_tokens == 2
        assert bucket.cost == pytest.approx(0.16)

    def test_unknown_slug_costs_nothing(self):
        """Unpriced slugs are tracked at zero cost."""
        cost = update_usage(self.aggregator, self.registry, "2024-03-01", 1, "foo-bar", TextUsage(500, 500))

        assert cost == 0.0
        assert self.aggregator.usage_by_day["2024-03-01"].models["foo-bar"].message_count == 1

    def test_hour_out_of_range(self):
        """Hours outside 0-23 are rejected."""
        with pytest.raises(ValueError, match="hour must be between 0 and 23"):
            update_usage(self.aggregator, self.registry, "2024-03-01", 24, "gpt-4o", TextUsage(1, 1))

    def test_hours_sum_to_totals_after_many_updates(self):
        """Hour buckets always sum to their totals."""
        for hour in range(24):
            slug = "gpt-4o" if hour % 2 else "o3"
            update_usage(self.aggregator, self.registry, "2024-03-01", hour, slug, TextUsage(hour * 10, hour))
            update_usage(self.aggregator, self.registry, "2024-03-02", 23 - hour, slug, TextUsage(7, 3))
        self.aggregator.all_model_slugs |= {"gpt-4o", "o3"}
        self.aggregator.total_cost_all_models = sum(
            day.total.cost for day in self.aggregator.usage_by_day.values()
        )

        assert check_invariants(self.aggregator) == []


class TestRecordConversation:
    """Test conversation counting."""

    def test_counts_day_and_each_model_once(self):
        """One conversation adds one to the day and one per model."""
        aggregator = Aggregator()
        record_conversation(aggregator, "2024-03-01", 5, ["gpt-4o", "dalle-3", "gpt-4o"])

        day = aggregator.usage_by_day["2024-03-01"]
        assert day.total.conversation_count == 1
        assert day.total.hours[5].conversation_count == 1
        assert day.models["gpt-4o"].conversation_count == 1
        assert day.models["dalle-3"].conversation_count == 1
        assert day.total.message_count == 0


class TestCheckInvariants:
    """Test invariant detection."""

    def _filled(self):
        aggregator = Aggregator()
        registry = ModelRegistry()
        update_usage(aggregator, registry, "2024-03-01", 3, "gpt-4o", TextUsage(10, 5))
        record_conversation(aggregator, "2024-03-01", 3, ["gpt-4o"])
        aggregator.all_model_slugs.add("gpt-4o")
        aggregator.total_cost_all_models = aggregator.usage_by_day["2024-03-01"].total.cost
        return aggregator

    def test_consistent_aggregator(self):
        assert check_invariants(self._filled()) == []

    def test_detects_hour_mismatch(self):
        aggregator = self._filled()
        aggregator.usage_by_day["2024-03-01"].total.hours[0].input_tokens += 1
        assert any("hours sum" in v for v in check_invariants(aggregator))

    def test_detects_model_total_mismatch(self):
        aggregator = self._filled()
        aggregator.usage_by_day["2024-03-01"].models["gpt-4o"].message_count += 1
        aggregator.usage_by_day["2024-03-01"].models["gpt-4o"].hours[3].message_count += 1
        assert any("models sum" in v for v in check_invariants(aggregator))

    def test_detects_missing_slug(self):
        aggregator = self._filled()
        aggregator.all_model_slugs.clear()
        assert any("not in all_model_slugs" in v for v in check_invariants(aggregator))

    def test_detects_total_cost_mismatch(self):
        aggregator = self._filled()
        aggregator.total_cost_all_models += 1.0
        assert any("total_cost_all_models" in v for v in check_invariants(aggregator))

    def test_unknown_day_excluded_from_total_cost(self):
        """The sentinel day never counts towards the run total."""
        aggregator = self._filled()
        update_usage(aggregator, ModelRegistry(), UNKNOWN_DAY, 0, "gpt-4o", TextUsage(1_000_000, 0))
        assert check_invariants(aggregator) == []


class TestSerialization:
    """Test the plain-dict view handed to readers."""

    def test_to_dict(self):
        aggregator = Aggregator()
        update_usage(aggregator, ModelRegistry(), "2024-03-01", 2, "gpt-4o", TextUsage(3, 4))
        aggregator.all_model_slugs.add("gpt-4o")

        data = aggregator.to_dict()

        assert data["all_model_slugs"] == ["gpt-4o"]
        day = data["usage_by_day"]["2024-03-01"]
        assert day["total"]["hours"][2]["input_tokens"] == 3
        assert day["models"]["gpt-4o"]["output_tokens"] == 4
        assert "lock" not in data
