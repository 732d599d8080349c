"""Request coalescing and keyword batching."""

from content_engine.coalescer.batcher import (
    KeywordBatcher,
    group_overlapping,
    merged_bucket,
    split_payload,
)
from content_engine.coalescer.coalescer import PendingBatch, RequestCoalescer

__all__ = [
    "KeywordBatcher",
    "PendingBatch",
    "RequestCoalescer",
    "group_overlapping",
    "merged_bucket",
    "split_payload",
]
