"""
Tiered context compaction with world book synchronization.

History is partitioned by recency into three tiers, each mirrored into a
world book entry the downstream model reads:

- Segment: the most recent N passages, verbatim
- SmallSummary: the M passages before that, summarized chunk by chunk
- LargeSummary: everything older, folded into one cumulative summary

The full text history is persisted in its own entry, which is what the
model reads in full mode and what a restarted engine reloads.

The sync controller is the only writer; it serializes operations, drives
the tier calculator and reconciles changed entries into the world book.
"""

from .config import (
    CONTENT_KEYS,
    HISTORY_KEY,
    MANAGED_KEYS,
    SMALL_SUMMARY_CHUNK_SIZE,
    TIER_KEYS,
    ContextConfig,
    ContextMode,
    EngineSettings,
)
from .controller import ContextSyncController
from .errors import (
    ConcurrencyRejected,
    ContextEngineError,
    StoreError,
    SummarizationError,
    ValidationError,
)
from .records import HistoryRecord, RecordStore, TextRecord, extract_main_text
from .state import ContextState
from .stats import ContextStatistics, compute_statistics
from .store import InMemoryWorldbook, PostgresWorldbook, Reconciler, WorldbookStore
from .summarizer import ConversationSummarizer, Summarizer
from .tiers import SequenceRange, TierCalculator, Tiers, partition

__all__ = [
    "CONTENT_KEYS",
    "HISTORY_KEY",
    "MANAGED_KEYS",
    "SMALL_SUMMARY_CHUNK_SIZE",
    "TIER_KEYS",
    "ConcurrencyRejected",
    "ContextConfig",
    "ContextEngineError",
    "ContextMode",
    "ContextState",
    "ContextStatistics",
    "ContextSyncController",
    "ConversationSummarizer",
    "EngineSettings",
    "HistoryRecord",
    "InMemoryWorldbook",
    "PostgresWorldbook",
    "Reconciler",
    "RecordStore",
    "SequenceRange",
    "StoreError",
    "SummarizationError",
    "Summarizer",
    "TextRecord",
    "TierCalculator",
    "Tiers",
    "ValidationError",
    "WorldbookStore",
    "compute_statistics",
    "extract_main_text",
    "partition",
]
