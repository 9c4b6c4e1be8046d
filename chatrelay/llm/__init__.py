"""LLM subsystem -- providers, SSE frame decoding, and delta aggregation."""

from chatrelay.llm.aggregator import DeltaAggregator, merge_fragment
from chatrelay.llm.frame_decoder import FrameDecoder, parse_payload
from chatrelay.llm.types import (
    RawFrame,
    ToolCallFragment,
    ToolCallRecord,
    Turn,
    TurnStatus,
)

__all__ = [
    "DeltaAggregator",
    "FrameDecoder",
    "RawFrame",
    "ToolCallFragment",
    "ToolCallRecord",
    "Turn",
    "TurnStatus",
    "merge_fragment",
    "parse_payload",
]
