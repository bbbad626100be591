"""
Aggregation run orchestration.

Drives the pre-scan, date range detection, per-conversation processing and
final rollup for one parsed export.
"""

import asyncio
import logging
from typing import Any, List, Optional

from .aggregator import UNKNOWN_DAY, Aggregator
from .graph_walker import NODE_ORDER_MAPPING, get_day_key, process_conversation
from .pricing import ModelRegistry, scan_for_model_slugs
from .token_counter import TokenCounter

logger = logging.getLogger(__name__)


def _numeric_timestamp(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == value


def detect_date_range(aggregator: Aggregator, conversations: List[Any]) -> None:
    """Set start_date and end_date from the earliest and latest create_time."""
    day_keys = []
    for conversation in conversations:
        if not isinstance(conversation, dict) or not _numeric_timestamp(conversation.get("create_time")):
            continue
        try:
            day_keys.append(get_day_key(conversation["create_time"]))
        except ValueError as e:
            logger.warning("Could not derive date range from %s: %s", conversation.get("title"), e)

    # YYYY-MM-DD keys sort chronologically
    if day_keys:
        aggregator.start_date = min(day_keys)
        aggregator.end_date = max(day_keys)


async def process_conversations(
    data: List[Any],
    registry: Optional[ModelRegistry] = None,
    counter: Optional[TokenCounter] = None,
    node_order: str = NODE_ORDER_MAPPING,
) -> Aggregator:
    """Aggregate token usage and cost for a parsed export.

    Phases run strictly in order: pre-scan and freeze the registry, detect
    the date range, process conversations one at a time, roll up the total
    cost. The aggregator is returned only after all of them.

    Args:
        data: Parsed export, a list of conversation dicts
        registry: Pricing registry, defaults to the built-in table
        counter: Token counter; one is created and closed here if omitted
        node_order: Node iteration order passed to the graph walker

    Returns:
        The filled Aggregator

    Raises:
        ValueError: If data is not a list
    """
    if not isinstance(data, list):
        raise ValueError("Expected a list of conversation objects")

    registry = registry if registry is not None else ModelRegistry()
    owns_counter = counter is None
    counter = counter if counter is not None else TokenCounter()

    aggregator = Aggregator()

    try:
        # Phase A: every slug is priced before any usage is recorded
        scan_for_model_slugs(data, registry)
        registry.freeze()

        # Phase B
        detect_date_range(aggregator, data)

        # Phase C
        for index, conversation in enumerate(data):
            if not isinstance(conversation, dict):
                logger.warning("Skipping invalid conversation at index %d", index)
                continue
            models = await process_conversation(conversation, aggregator, registry, counter, node_order)
            aggregator.all_model_slugs |= models
    finally:
        if owns_counter:
            counter.close()

    # Phase D
    aggregator.total_cost_all_models = sum(
        day_bucket.total.cost for day_key, day_bucket in aggregator.usage_by_day.items() if day_key != UNKNOWN_DAY
    )

    logger.info(
        "Aggregation complete: %d day(s), %d model(s), total cost $%.4f",
        len(aggregator.usage_by_day),
        len(aggregator.all_model_slugs),
        aggregator.total_cost_all_models,
    )
    return aggregator


def run_usage_report(
    data: List[Any],
    registry: Optional[ModelRegistry] = None,
    counter: Optional[TokenCounter] = None,
    node_order: str = NODE_ORDER_MAPPING,
) -> Aggregator:
    """Synchronous entry point for ``process_conversations``."""
    return asyncio.run(process_conversations(data, registry=registry, counter=counter, node_order=node_order))
