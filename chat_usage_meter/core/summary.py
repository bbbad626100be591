"""
Summary statistics over a finished aggregation.

Read-only figures derived from an Aggregator for reports.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from .aggregator import HOURS_PER_DAY, Aggregator
from .pricing import get_model_category


@dataclass(frozen=True)
class ModelTotals:
    """Usage of one model across every day."""
    model: str
    category: str
    input_tokens: int
    output_tokens: int
    cost: float
    message_count: int
    conversation_count: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class UsageSummary:
    """Headline numbers of an aggregation run."""
    total_cost: float
    input_tokens: int
    output_tokens: int
    message_count: int
    conversation_count: int
    active_days: int
    top_model_by_cost: Optional[str]
    top_model_by_tokens: Optional[str]
    busiest_hour: Optional[int]
    models: List[ModelTotals]

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def summarize(aggregator: Aggregator) -> UsageSummary:
    """Compute summary statistics over the known days of an aggregator.

    Per-model totals are sorted by cost, then by tokens, most expensive first.
    The busiest hour is the hour of day with the most messages, None when
    nothing was recorded.
    """
    input_tokens = output_tokens = message_count = conversation_count = 0
    hour_messages = [0] * HOURS_PER_DAY
    per_model: Dict[str, Dict[str, float]] = {}

    for day_key in aggregator.known_days():
        day_bucket = aggregator.usage_by_day[day_key]
        total = day_bucket.total
        input_tokens += total.input_tokens
        output_tokens += total.output_tokens
        message_count += total.message_count
        conversation_count += total.conversation_count
        for hour, bucket in enumerate(total.hours):
            hour_messages[hour] += bucket.message_count

        for model, bucket in day_bucket.models.items():
            stats = per_model.setdefault(
                model,
                {"input_tokens": 0, "output_tokens": 0, "cost": 0.0, "message_count": 0, "conversation_count": 0},
            )
            for name in stats:
                stats[name] += getattr(bucket, name)

    models = [
        ModelTotals(
            model=model,
            category=get_model_category(model),
            input_tokens=int(stats["input_tokens"]),
            output_tokens=int(stats["output_tokens"]),
            cost=stats["cost"],
            message_count=int(stats["message_count"]),
            conversation_count=int(stats["conversation_count"]),
        )
        for model, stats in per_model.items()
    ]
    models.sort(key=lambda m: (-m.cost, -m.total_tokens, m.model))

    top_by_cost = models[0].model if models and models[0].cost > 0 else None
    top_by_tokens = max(models, key=lambda m: (m.total_tokens, m.model)).model if models else None
    busiest_hour = hour_messages.index(max(hour_messages)) if message_count else None

    return UsageSummary(
        total_cost=aggregator.total_cost_all_models,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        message_count=message_count,
        conversation_count=conversation_count,
        active_days=len(aggregator.known_days()),
        top_model_by_cost=top_by_cost,
        top_model_by_tokens=top_by_tokens,
        busiest_hour=busiest_hour,
        models=models,
    )


def format_compact_number(value: float) -> str:
    """Format large numbers as 1.5M / 12K, plain below one thousand."""
    if value >= 1_000_000:
        return f"{value / 1_000_000:.1f}".rstrip("0").rstrip(".") + "M"
    if value >= 1_000:
        return f"{value / 1_000:.1f}".rstrip("0").rstrip(".") + "K"
    return str(int(value)) if float(value).is_integer() else f"{value}"
