"""
Usage aggregation by day, hour and model.

Owns the counter structure filled by one aggregation run.
"""

import math
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from .pricing import ModelRegistry
from .token_counter import ImageUsage, Usage

HOURS_PER_DAY = 24
UNKNOWN_DAY = "unknown-day"

_COUNTER_FIELDS = ("input_tokens", "output_tokens", "cost", "message_count", "conversation_count")


@dataclass
class HourBucket:
    """Usage statistics for a single hour."""
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    message_count: int = 0
    conversation_count: int = 0

    def add(self, input_tokens: int, output_tokens: int, cost: float) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.cost += cost
        self.message_count += 1

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in _COUNTER_FIELDS}


def _empty_hours() -> List[HourBucket]:
    return [HourBucket() for _ in range(HOURS_PER_DAY)]


@dataclass
class BucketWithHours(HourBucket):
    """Daily totals plus the 24 hour buckets they are made of."""
    hours: List[HourBucket] = field(default_factory=_empty_hours)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["hours"] = [hour.to_dict() for hour in self.hours]
        return data


@dataclass
class DayBucket:
    """Usage on one day: the total across models and one bucket per model."""
    total: BucketWithHours = field(default_factory=BucketWithHours)
    models: Dict[str, BucketWithHours] = field(default_factory=dict)

    def model_bucket(self, model_slug: str) -> BucketWithHours:
        if model_slug not in self.models:
            self.models[model_slug] = BucketWithHours()
        return self.models[model_slug]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total.to_dict(),
            "models": {slug: bucket.to_dict() for slug, bucket in self.models.items()},
        }


@dataclass
class Aggregator:
    """Aggregation result of one run.

    Mutated only while the orchestrator runs; readers get it once all
    phases have finished.
    """
    usage_by_day: Dict[str, DayBucket] = field(default_factory=dict)
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    total_cost_all_models: float = 0.0
    all_model_slugs: Set[str] = field(default_factory=set)
    lock: Any = field(default_factory=threading.Lock, repr=False, compare=False)

    def day_bucket(self, day_key: str) -> DayBucket:
        if day_key not in self.usage_by_day:
            self.usage_by_day[day_key] = DayBucket()
        return self.usage_by_day[day_key]

    def known_days(self) -> List[str]:
        """Day keys in calendar order, without the unknown-day sentinel."""
        return sorted(day for day in self.usage_by_day if day != UNKNOWN_DAY)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "usage_by_day": {day: bucket.to_dict() for day, bucket in sorted(self.usage_by_day.items())},
            "start_date": self.start_date,
            "end_date": self.end_date,
            "total_cost_all_models": self.total_cost_all_models,
            "all_model_slugs": sorted(self.all_model_slugs),
        }


def _check_hour(hour: int) -> None:
    if not 0 <= hour < HOURS_PER_DAY:
        raise ValueError(f"hour must be between 0 and 23, got {hour}")


def update_usage(
    aggregator: Aggregator,
    registry: ModelRegistry,
    day_key: str,
    hour: int,
    model_slug: str,
    usage: Usage,
) -> float:
    """Record one usage update for a day, hour and model.

    The model's hour bucket, the model's daily totals, the day's total hour
    bucket and the day's daily totals all move by the same deltas, and each
    gains one message. Image usage is stored as its image count in the
    output token fields.

    Args:
        aggregator: Aggregator being filled
        registry: Pricing used for the cost of this update
        day_key: UTC day (YYYY-MM-DD) or the unknown-day sentinel
        hour: Hour of day (0-23)
        model_slug: Model the usage is attributed to
        usage: TextUsage or ImageUsage

    Returns:
        Cost of this update

    Raises:
        ValueError: If hour is out of range
    """
    _check_hour(hour)

    if isinstance(usage, ImageUsage):
        input_tokens, output_tokens = 0, usage.image_count
    else:
        input_tokens, output_tokens = usage.input_tokens, usage.output_tokens

    cost = registry.get_cost(model_slug, usage)

    with aggregator.lock:
        day_bucket = aggregator.day_bucket(day_key)
        model_bucket = day_bucket.model_bucket(model_slug)

        model_bucket.hours[hour].add(input_tokens, output_tokens, cost)
        model_bucket.add(input_tokens, output_tokens, cost)
        day_bucket.total.hours[hour].add(input_tokens, output_tokens, cost)
        day_bucket.total.add(input_tokens, output_tokens, cost)

    return cost


def record_conversation(aggregator: Aggregator, day_key: str, hour: int, model_slugs: Iterable[str]) -> None:
    """Count one conversation for a day and for each model it used that day.

    This is the only writer of conversation_count.
    """
    _check_hour(hour)

    with aggregator.lock:
        day_bucket = aggregator.day_bucket(day_key)
        day_bucket.total.conversation_count += 1
        day_bucket.total.hours[hour].conversation_count += 1

        for model_slug in set(model_slugs):
            model_bucket = day_bucket.model_bucket(model_slug)
            model_bucket.conversation_count += 1
            model_bucket.hours[hour].conversation_count += 1


def _same(a: float, b: float) -> bool:
    return math.isclose(a, b, rel_tol=1e-9, abs_tol=1e-9)


def _check_bucket(label: str, bucket: BucketWithHours, violations: List[str]) -> None:
    if len(bucket.hours) != HOURS_PER_DAY:
        violations.append(f"{label}: expected 24 hour buckets, found {len(bucket.hours)}")
        return
    for name in _COUNTER_FIELDS:
        summed = sum(getattr(hour, name) for hour in bucket.hours)
        if not _same(summed, getattr(bucket, name)):
            violations.append(f"{label}: hours sum {summed} != total {getattr(bucket, name)} for {name}")


def check_invariants(aggregator: Aggregator) -> List[str]:
    """Verify the structural invariants of a finished aggregator.

    Returns:
        Human-readable violations, empty if the aggregator is consistent
    """
    violations: List[str] = []

    for day_key, day_bucket in aggregator.usage_by_day.items():
        _check_bucket(f"{day_key}/total", day_bucket.total, violations)
        for model_slug, bucket in day_bucket.models.items():
            _check_bucket(f"{day_key}/{model_slug}", bucket, violations)
            if model_slug not in aggregator.all_model_slugs and bucket.message_count > 0:
                violations.append(f"{day_key}: {model_slug} has usage but is not in all_model_slugs")

        for name in ("input_tokens", "output_tokens", "cost", "message_count"):
            summed = sum(getattr(bucket, name) for bucket in day_bucket.models.values())
            if not _same(summed, getattr(day_bucket.total, name)):
                violations.append(
                    f"{day_key}: models sum {summed} != total {getattr(day_bucket.total, name)} for {name}"
                )

    expected_total = sum(
        day_bucket.total.cost for day_key, day_bucket in aggregator.usage_by_day.items() if day_key != UNKNOWN_DAY
    )
    if not _same(expected_total, aggregator.total_cost_all_models):
        violations.append(
            f"total_cost_all_models {aggregator.total_cost_all_models} != sum of day totals {expected_total}"
        )

    return violations
