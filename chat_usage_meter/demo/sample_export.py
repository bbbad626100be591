# chat_usage_meter/demo/sample_export.py

import json
import sys

# 2024-03-01 09:15:00 UTC and 2024-03-02 18:40:00 UTC
FIRST_DAY = 1709284500
SECOND_DAY = 1709404800


def _node(node_id, role, parts=None, parent=None, children=None, **message_fields):
    message = {
        "id": node_id,
        "author": {"role": role, "name": message_fields.pop("author_name", None)},
        "content": message_fields.pop("content", {"content_type": "text", "parts": parts or []}),
        "metadata": message_fields.pop("metadata", {}),
    }
    message.update(message_fields)
    return {"id": node_id, "message": message, "parent": parent, "children": children or []}


def build_sample_export():
    """Small export with two text conversations and one image generation."""
    chat = {
        "title": "Trip planning",
        "create_time": FIRST_DAY,
        "mapping": {
            "root": {"id": "root", "message": None, "parent": None, "children": ["u1"]},
            "u1": _node("u1", "user", ["Plan a weekend in Lisbon."], parent="root", children=["a1"]),
            "a1": _node(
                "a1", "assistant", ["Day one: Alfama and the castle. Day two: Belem."],
                parent="u1", children=["u2"], end_turn=True,
                metadata={"model_slug": "gpt-4o"},
            ),
            "u2": _node("u2", "user", ["Add a food tour."], parent="a1", children=["a2"]),
            "a2": _node(
                "a2", "assistant", ["Add Time Out Market on Saturday evening."],
                parent="u2", end_turn=True, metadata={"model_slug": "gpt-4o"},
            ),
        },
    }

    images = {
        "title": "Poster",
        "create_time": FIRST_DAY + 3600,
        "mapping": {
            "u1": _node("u1", "user", ["Draw a tram poster."], children=["t1"]),
            "t1": _node(
                "t1", "tool",
                [{"content_type": "image_asset_pointer", "asset_pointer": "file-service://poster", "width": 1024, "height": 1024}],
                parent="u1", author_name="dalle.text2im",
            ),
        },
    }

    reasoning = {
        "title": "Proof",
        "create_time": SECOND_DAY * 1000,
        "mapping": {
            "u1": _node("u1", "user", ["Prove that the square root of two is irrational."], children=["r1"]),
            "r1": _node(
                "r1", "assistant", parent="u1", children=["a1"],
                content={"content_type": "thoughts", "thoughts": [{"summary": "Contradiction", "content": "Assume p/q in lowest terms."}]},
                metadata={"model_slug": "o3", "reasoning_status": "is_reasoning"},
            ),
            "a1": _node(
                "a1", "assistant", ["Suppose it were rational; then both p and q are even."],
                parent="r1", channel="final", metadata={"model_slug": "o3"},
            ),
        },
    }

    return [chat, images, reasoning]


if __name__ == "__main__":
    target = sys.argv[1] if len(sys.argv) > 1 else "sample_conversations.json"
    with open(target, "w", encoding="utf-8") as f:
        json.dump(build_sample_export(), f, indent=2)
    print(f"Sample export written to {target}")
