"""
Core modules for Chat Usage Meter.

This package contains token counting, pricing, conversation processing and
usage aggregation.
"""

from .aggregator import Aggregator, check_invariants
from .orchestrator import process_conversations, run_usage_report
from .pricing import ModelRegistry
from .token_counter import ImageUsage, TextUsage, TokenCounter

__all__ = [
    "Aggregator",
    "ImageUsage",
    "ModelRegistry",
    "TextUsage",
    "TokenCounter",
    "check_invariants",
    "process_conversations",
    "run_usage_report",
]
