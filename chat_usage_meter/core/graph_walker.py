"""
Conversation processing.

Flattens a conversation's node mapping into turn entries and replays the
rolling context to attribute token usage to each committed turn.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Set, Tuple

from .aggregator import UNKNOWN_DAY, Aggregator, record_conversation, update_usage
from .image_tokens import DEFAULT_IMAGE_HEIGHT, DEFAULT_IMAGE_WIDTH, estimate_image_tokens
from .pricing import DALLE_MODEL, IMAGE_GEN_MODEL, RESEARCH_MODEL, UNKNOWN_MODEL, ModelRegistry
from .token_counter import ImageUsage, TextUsage, TokenCounter, TokenizationError
from .tokenizer_worker import estimate_text_tokens

logger = logging.getLogger(__name__)

NODE_ORDER_MAPPING = "mapping"
NODE_ORDER_PARENT_CHAIN = "parent_chain"
NODE_ORDERS = (NODE_ORDER_MAPPING, NODE_ORDER_PARENT_CHAIN)

UNKNOWN_PART_TOKENS = 20
DALLE_AUTHOR = "dalle.text2im"
DEEP_RESEARCH_MARKER = "deepresch"

# Timestamps above this are treated as milliseconds
_MILLISECONDS_THRESHOLD = 1e11


@dataclass(frozen=True)
class FlatTurnEntry:
    """Token counts extracted from one message node."""
    role: str
    content_tokens: int = 0
    output_tokens: int = 0
    search_tokens: int = 0
    model_slug: str = UNKNOWN_MODEL
    is_reasoning_recap: bool = False
    is_final_message: bool = False


def _to_datetime(unix_time: Any) -> datetime:
    if isinstance(unix_time, bool) or not isinstance(unix_time, (int, float)):
        raise ValueError(f"Not a unix timestamp: {unix_time!r}")
    if unix_time > _MILLISECONDS_THRESHOLD:
        unix_time = unix_time // 1000
    return datetime.fromtimestamp(unix_time, tz=timezone.utc)


def get_day_key(unix_time: Any) -> str:
    """UTC YYYY-MM-DD for a unix timestamp in seconds or milliseconds.

    Raises:
        ValueError: If the value is not a usable timestamp
    """
    try:
        return _to_datetime(unix_time).strftime("%Y-%m-%d")
    except (OverflowError, OSError) as e:
        raise ValueError(f"Timestamp out of range: {unix_time!r}") from e


def get_hour_of_day(unix_time: Any) -> int:
    """UTC hour (0-23) for a unix timestamp in seconds or milliseconds."""
    try:
        return _to_datetime(unix_time).hour
    except (OverflowError, OSError) as e:
        raise ValueError(f"Timestamp out of range: {unix_time!r}") from e


def bucket_for_timestamp(unix_time: Any) -> Tuple[str, int]:
    """Day key and hour for a conversation, the unknown-day sentinel if unparsable."""
    try:
        return get_day_key(unix_time), get_hour_of_day(unix_time)
    except ValueError:
        logger.warning("Could not parse create_time %r, using %s and hour 0", unix_time, UNKNOWN_DAY)
        return UNKNOWN_DAY, 0


def iter_nodes(mapping: Dict[str, Any], node_order: str = NODE_ORDER_MAPPING) -> Iterator[Tuple[str, Dict[str, Any]]]:
    """Yield (node id, node) pairs of a mapping.

    "mapping" keeps the stored order of the mapping. "parent_chain" walks
    depth-first from the root nodes through ``children`` and then yields any
    node that was not reachable, in stored order.
    """
    if node_order not in NODE_ORDERS:
        raise ValueError(f"node_order must be one of {NODE_ORDERS}, got {node_order!r}")

    nodes = [(node_id, node) for node_id, node in mapping.items() if isinstance(node, dict)]
    if node_order == NODE_ORDER_MAPPING:
        yield from nodes
        return

    visited: Set[str] = set()
    roots = [node_id for node_id, node in nodes if node.get("parent") not in mapping]
    stack = list(reversed(roots))
    while stack:
        node_id = stack.pop()
        if node_id in visited or not isinstance(mapping.get(node_id), dict):
            continue
        visited.add(node_id)
        node = mapping[node_id]
        yield node_id, node
        children = node.get("children") or []
        stack.extend(child for child in reversed(children) if child not in visited)

    for node_id, node in nodes:
        if node_id not in visited:
            yield node_id, node


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _is_image_part(part: Dict[str, Any]) -> bool:
    return bool(part.get("asset_pointer")) or part.get("content_type") == "image_asset_pointer"


def _image_part_tokens(part: Dict[str, Any]) -> int:
    width = part.get("width")
    height = part.get("height")
    if not _is_dimension(width) or not _is_dimension(height):
        width, height = DEFAULT_IMAGE_WIDTH, DEFAULT_IMAGE_HEIGHT
    return estimate_image_tokens(width, height, "high")


def _is_dimension(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and 0 < value < float("inf")


def _count_image_parts(parts: List[Any]) -> int:
    return sum(1 for part in parts if isinstance(part, dict) and part.get("content_type") == "image_asset_pointer")


def _has_generation_marker(metadata: Dict[str, Any], parts: List[Any]) -> bool:
    if metadata.get("image_gen_async") or metadata.get("generation"):
        return True
    for part in parts:
        part_metadata = part.get("metadata") if isinstance(part, dict) else None
        if isinstance(part_metadata, dict) and (part_metadata.get("generation") or part_metadata.get("dalle")):
            return True
    return False


class ConversationProcessor:
    """Processes one conversation into aggregator updates."""

    def __init__(
        self,
        aggregator: Aggregator,
        registry: ModelRegistry,
        counter: TokenCounter,
        day_key: str,
        hour: int,
    ):
        self.aggregator = aggregator
        self.registry = registry
        self.counter = counter
        self.day_key = day_key
        self.hour = hour
        self.updated_models: Set[str] = set()

    async def count_text(self, text: Any) -> int:
        """Tokenize text, degrading to the heuristic if the worker fails.

        Non-string values found where text was expected count as 0.
        """
        if not isinstance(text, str):
            logger.warning("Ignoring non-text value of type %s", type(text).__name__)
            return 0
        try:
            return await self.counter.count_text_tokens(text)
        except TokenizationError as e:
            logger.warning("Tokenization failed, using fallback estimation: %s", e)
            return estimate_text_tokens(text)

    async def count_json(self, value: Any, label: str, node_id: str) -> int:
        try:
            serialized = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            logger.warning("Could not tokenize %s for node %s: %s", label, node_id, e)
            return 0
        return await self.count_text(serialized)

    def record(self, model_slug: str, usage) -> None:
        update_usage(self.aggregator, self.registry, self.day_key, self.hour, model_slug, usage)
        self.updated_models.add(model_slug)

    async def flatten(self, mapping: Dict[str, Any], node_order: str = NODE_ORDER_MAPPING) -> List[FlatTurnEntry]:
        """Turn every node with a message into a FlatTurnEntry.

        Image generation tool calls are recorded directly while flattening.
        """
        entries = []
        for node_id, node in iter_nodes(mapping, node_order):
            message = node.get("message")
            if not isinstance(message, dict):
                continue
            entries.append(await self.flatten_message(node_id, node, message))
        return entries

    async def flatten_message(self, node_id: str, node: Dict[str, Any], message: Dict[str, Any]) -> FlatTurnEntry:
        author = _as_dict(message.get("author"))
        role = author.get("role") or "unknown"
        author_name = author.get("name") or ""
        content = _as_dict(message.get("content"))
        metadata = _as_dict(message.get("metadata"))
        node_metadata = _as_dict(node.get("metadata"))
        content_type = content.get("content_type")
        parts = content.get("parts") if isinstance(content.get("parts"), list) else None

        content_tokens = 0
        output_tokens = 0
        search_tokens = 0
        model_slug = metadata.get("model_slug") or node_metadata.get("model_slug") or UNKNOWN_MODEL

        if role in ("user", "system"):
            if parts is not None:
                for part in parts:
                    if isinstance(part, str):
                        content_tokens += await self.count_text(part)
                    elif isinstance(part, dict):
                        if _is_image_part(part):
                            content_tokens += _image_part_tokens(part)
                        else:
                            content_tokens += UNKNOWN_PART_TOKENS
            elif content.get("text"):
                content_tokens += await self.count_text(content["text"])

            context_data = _as_dict(metadata.get("user_context_message_data"))
            if context_data.get("about_model_message"):
                content_tokens += await self.count_text(context_data["about_model_message"])

        if role == "tool":
            if metadata.get("search_result_groups"):
                search_tokens = await self.count_json(metadata["search_result_groups"], "search results", node_id)

            for part in parts or []:
                if isinstance(part, str):
                    content_tokens += await self.count_text(part)

            self.record_image_generation(author_name, metadata, parts or [])

        if role in ("assistant", "tool"):
            if content_type == "thoughts" and isinstance(content.get("thoughts"), list):
                for thought in content["thoughts"]:
                    if not isinstance(thought, dict):
                        continue
                    if thought.get("content"):
                        output_tokens += await self.count_text(thought["content"])
                    if thought.get("summary"):
                        output_tokens += await self.count_text(thought["summary"])

            if content_type == "code" and content.get("text"):
                output_tokens += await self.count_text(content["text"])

            if content_type == "execution_output" and content.get("text"):
                content_tokens += await self.count_text(content["text"])

            if content_type == "tether_quote" and content.get("text"):
                content_tokens += await self.count_text(content["text"])
            elif content_type == "tether_browsing_display" and content.get("result"):
                content_tokens += await self.count_text(content["result"])

            citations = metadata.get("citations")
            if isinstance(citations, list) and citations:
                content_tokens += await self.count_json(citations, "citations", node_id)
                if DEEP_RESEARCH_MARKER in str(metadata.get("async_task_id") or ""):
                    model_slug = RESEARCH_MODEL

            for part in parts or []:
                if isinstance(part, str):
                    output_tokens += await self.count_text(part)
                elif isinstance(part, dict):
                    if _is_image_part(part):
                        content_tokens += _image_part_tokens(part)
                    else:
                        output_tokens += UNKNOWN_PART_TOKENS

            if content.get("text"):
                output_tokens += await self.count_text(content["text"])

        is_reasoning_recap = content_type == "reasoning_recap" or metadata.get("reasoning_status") == "reasoning_ended"

        return FlatTurnEntry(
            role=role,
            content_tokens=content_tokens,
            output_tokens=output_tokens,
            search_tokens=search_tokens,
            model_slug=model_slug,
            is_reasoning_recap=is_reasoning_recap,
            is_final_message=bool(message.get("end_turn")) or message.get("channel") == "final",
        )

    def record_image_generation(self, author_name: str, metadata: Dict[str, Any], parts: List[Any]) -> None:
        """Record generated images of a tool call against an image model."""
        image_count = _count_image_parts(parts)
        if image_count == 0:
            return

        if author_name == DALLE_AUTHOR:
            self.record(DALLE_MODEL, ImageUsage(image_count=image_count))
        elif _has_generation_marker(metadata, parts):
            self.record(IMAGE_GEN_MODEL, ImageUsage(image_count=image_count))

    def accumulate(self, entries: List[FlatTurnEntry]) -> Set[str]:
        """Replay the rolling context over flattened entries.

        Context grows with every counted entry and is never reset inside a
        conversation. Assistant output joins the context once its entry has
        been handled, so later turns are charged for earlier answers. Each
        final assistant entry commits one update with the context so far and
        the output pending since the previous commit.

        Returns:
            Real model slugs seen on assistant entries
        """
        context_tokens = 0
        pending_output_tokens = 0
        models_seen: Set[str] = set()

        for entry in entries:
            if entry.is_reasoning_recap:
                continue

            context_tokens += entry.search_tokens

            if entry.role in ("user", "system", "tool"):
                context_tokens += entry.content_tokens
            elif entry.role == "assistant":
                if entry.model_slug != UNKNOWN_MODEL:
                    models_seen.add(entry.model_slug)

                context_tokens += entry.content_tokens
                pending_output_tokens += entry.output_tokens

                if entry.is_final_message:
                    self.record(
                        entry.model_slug,
                        TextUsage(input_tokens=context_tokens, output_tokens=pending_output_tokens),
                    )
                    pending_output_tokens = 0

                # An answer is context for the turns after it, not for itself
                context_tokens += entry.output_tokens

        return models_seen


async def process_conversation(
    conversation: Dict[str, Any],
    aggregator: Aggregator,
    registry: ModelRegistry,
    counter: TokenCounter,
    node_order: str = NODE_ORDER_MAPPING,
) -> Set[str]:
    """Aggregate the usage of one conversation.

    Args:
        conversation: Conversation dict from the export
        aggregator: Aggregator being filled
        registry: Frozen pricing registry
        counter: Token counter for message text
        node_order: "mapping" or "parent_chain"

    Returns:
        Model slugs used by this conversation
    """
    day_key, hour = bucket_for_timestamp(conversation.get("create_time"))
    processor = ConversationProcessor(aggregator, registry, counter, day_key, hour)

    models_used: Set[str] = set()
    mapping = conversation.get("mapping")
    if isinstance(mapping, dict):
        entries = await processor.flatten(mapping, node_order)
        models_used |= processor.accumulate(entries)
    else:
        logger.warning("Conversation skipped: no 'mapping' field found (%s)", conversation.get("title"))

    if processor.updated_models:
        record_conversation(aggregator, day_key, hour, processor.updated_models)

    return models_used | processor.updated_models
