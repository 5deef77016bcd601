"""
Tier calculator: partitions history into Segment / SmallSummary / LargeSummary.

Boundaries for ``total`` records and config ``(N, M)``:

    LargeSummary  [0, total-N-M)       one cumulative summary, grows by merge
    SmallSummary  [total-N-M, total-N) one summary per aligned chunk
    Segment       [total-N, total)     verbatim records

All bounds are clamped at 0. SmallSummary chunks are aligned on absolute
sequence (chunk k = [k*C, (k+1)*C)), so a chunk's coverage only changes
when records enter or leave it. The newest chunk stays verbatim ("pending")
until it fills up; the oldest chunk is re-summarized over its remaining
records once part of it has aged into LargeSummary.

``recompute`` and ``incremental_append`` both go through ``_build``; they
differ only in where the source records come from.
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Union

from .config import (
    LARGE_SUMMARY_KEY,
    RECORD_SEPARATOR,
    SEGMENT_KEY,
    SMALL_SUMMARY_CHUNK_SIZE,
    SMALL_SUMMARY_KEY,
    TEXT_SEPARATOR,
    ContextConfig,
)
from .errors import SummarizationError
from .records import TextRecord
from .summarizer import Summarizer

logger = logging.getLogger(__name__)

RecordLookup = Union[Sequence[TextRecord], Mapping[int, TextRecord]]


@dataclass(frozen=True)
class SequenceRange:
    """Half-open range of sequence numbers."""

    start: int = 0
    end: int = 0

    def __len__(self) -> int:
        return max(0, self.end - self.start)

    def __iter__(self):
        return iter(range(self.start, self.end))

    def __contains__(self, sequence: int) -> bool:
        return self.start <= sequence < self.end

    @property
    def empty(self) -> bool:
        return self.end <= self.start

    def as_inclusive(self) -> Optional[tuple[int, int]]:
        """(first, last) for display, or None when empty."""
        if self.empty:
            return None
        return (self.start, self.end - 1)


def partition(total: int, config: ContextConfig) -> tuple[SequenceRange, SequenceRange, SequenceRange]:
    """Return (segment, small_summary, large_summary) ranges."""
    segment_start = max(0, total - config.segment_count)
    small_start = max(0, segment_start - config.small_summary_count)
    return (
        SequenceRange(segment_start, total),
        SequenceRange(small_start, segment_start),
        SequenceRange(0, small_start),
    )


@dataclass(frozen=True)
class SegmentTier:
    range: SequenceRange
    records: tuple[TextRecord, ...] = ()

    @property
    def payload(self) -> str:
        return TEXT_SEPARATOR.join(r.text for r in self.records)


@dataclass(frozen=True)
class SummaryChunk:
    """Part of one aligned chunk that lies inside SmallSummary."""

    index: int
    range: SequenceRange
    sources: tuple[TextRecord, ...]
    summary: Optional[str] = None  # None while pending

    @property
    def pending(self) -> bool:
        return self.summary is None

    def render(self) -> str:
        if self.summary is not None:
            return self.summary
        return "\n".join(r.text for r in self.sources)


@dataclass(frozen=True)
class SmallSummaryTier:
    range: SequenceRange
    chunks: tuple[SummaryChunk, ...] = ()

    @property
    def summaries(self) -> list[str]:
        return [c.render() for c in self.chunks]

    @property
    def payload(self) -> str:
        return RECORD_SEPARATOR.join(self.summaries)

    @property
    def sources(self) -> tuple[TextRecord, ...]:
        return tuple(r for c in self.chunks for r in c.sources)


@dataclass(frozen=True)
class LargeSummaryTier:
    range: SequenceRange
    summary: str = ""

    @property
    def payload(self) -> str:
        return self.summary


@dataclass(frozen=True)
class Tiers:
    """The three tiers plus the config they were computed with."""

    config: ContextConfig
    segment: SegmentTier
    small_summary: SmallSummaryTier
    large_summary: LargeSummaryTier

    @classmethod
    def empty(cls, config: ContextConfig) -> "Tiers":
        return cls(
            config=config,
            segment=SegmentTier(SequenceRange()),
            small_summary=SmallSummaryTier(SequenceRange()),
            large_summary=LargeSummaryTier(SequenceRange()),
        )

    @property
    def end(self) -> int:
        """One past the newest covered sequence."""
        return self.segment.range.end

    def ranges(self) -> tuple[SequenceRange, SequenceRange, SequenceRange]:
        return (self.large_summary.range, self.small_summary.range, self.segment.range)

    def covers(self, total: int) -> bool:
        """True if the ranges tile [0, total) in order with no gaps."""
        cursor = 0
        for r in self.ranges():
            if r.start != cursor or r.end < r.start:
                return False
            cursor = r.end
        return cursor == total

    def payloads(self) -> dict[str, str]:
        return {
            SEGMENT_KEY: self.segment.payload,
            SMALL_SUMMARY_KEY: self.small_summary.payload,
            LARGE_SUMMARY_KEY: self.large_summary.payload,
        }


class TierCalculator:
    """
    Computes tiers from records. Never mutates its inputs, so a failed
    summarizer call leaves the caller's previous tiers intact.
    """

    def __init__(self, summarizer: Summarizer, chunk_size: int = SMALL_SUMMARY_CHUNK_SIZE):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
        self.summarizer = summarizer
        self.chunk_size = chunk_size

    def recompute(
        self,
        records: Sequence[TextRecord],
        config: ContextConfig,
        previous: Optional[Tiers] = None,
    ) -> Tiers:
        """
        Full partition over the whole history.

        With ``previous`` given, chunk summaries over identical ranges are
        reused and LargeSummary is extended by merge when it still starts
        where ``previous`` did. Without it everything is summarized from
        raw text.
        """
        for index, record in enumerate(records):
            if record.sequence != index:
                raise ValueError(
                    f"Records must be contiguous from 0; found sequence "
                    f"{record.sequence} at position {index}"
                )
        return self._build(records, len(records), config, previous)

    def incremental_append(self, previous: Tiers, record: TextRecord, config: ContextConfig) -> Tiers:
        """
        Slide the tiers forward by one record.

        ``previous`` must have been computed with ``config`` and end right
        before ``record``; otherwise the caller has to recompute.
        """
        if previous.config != config:
            raise ValueError("Config changed since previous tiers; recompute instead")
        if record.sequence != previous.end:
            raise ValueError(
                f"Record {record.sequence} does not extend tiers ending at {previous.end}"
            )

        lookup: dict[int, TextRecord] = {r.sequence: r for r in previous.small_summary.sources}
        lookup.update((r.sequence, r) for r in previous.segment.records)
        lookup[record.sequence] = record
        return self._build(lookup, record.sequence + 1, config, previous)

    def resume(
        self,
        records: Sequence[TextRecord],
        config: ContextConfig,
        payloads: Mapping[str, Optional[str]],
    ) -> Tiers:
        """
        Recompute tiers for restored history, adopting persisted summaries.

        A persisted LargeSummary is taken as covering the range ``config``
        gives it. Persisted chunk summaries are adopted only when their
        count matches the chunk layout; anything not adopted is summarized
        again.
        """
        total = len(records)
        _, small_range, large_range = partition(total, config)

        large = LargeSummaryTier(SequenceRange())
        large_payload = payloads.get(LARGE_SUMMARY_KEY)
        if large_payload and not large_range.empty:
            large = LargeSummaryTier(large_range, large_payload)

        chunks = []
        spans = self._chunk_spans(small_range)
        small_payload = payloads.get(SMALL_SUMMARY_KEY)
        rendered = small_payload.split(RECORD_SEPARATOR) if small_payload else []
        if len(rendered) == len(spans):
            for (index, span, pending), text in zip(spans, rendered):
                if not pending:
                    sources = tuple(records[i] for i in span)
                    chunks.append(SummaryChunk(index=index, range=span, sources=sources, summary=text))
        elif small_payload:
            logger.info(
                "Persisted small summary has %d parts for %d chunks, resummarizing",
                len(rendered),
                len(spans),
            )

        seeded = Tiers(
            config=config,
            segment=SegmentTier(SequenceRange()),
            small_summary=SmallSummaryTier(small_range, tuple(chunks)),
            large_summary=large,
        )
        return self.recompute(records, config, previous=seeded)

    # ── shared core ──

    def _build(
        self,
        lookup: RecordLookup,
        total: int,
        config: ContextConfig,
        previous: Optional[Tiers],
    ) -> Tiers:
        segment_range, small_range, large_range = partition(total, config)

        try:
            segment = SegmentTier(segment_range, tuple(lookup[i] for i in segment_range))
            small = self._build_small(
                lookup, small_range, previous.small_summary if previous else None
            )
            large = self._build_large(
                lookup, large_range, previous.large_summary if previous else None
            )
        except (KeyError, IndexError) as e:
            raise ValueError(f"Source record missing for tier computation: {e}") from e

        logger.debug(
            "Tiers for %d records: segment=%s small=%s (%d chunks) large=%s",
            total,
            segment_range.as_inclusive(),
            small_range.as_inclusive(),
            len(small.chunks),
            large_range.as_inclusive(),
        )
        return Tiers(config=config, segment=segment, small_summary=small, large_summary=large)

    def _chunk_spans(self, small_range: SequenceRange) -> list[tuple[int, SequenceRange, bool]]:
        """(chunk index, covered span, pending) for every chunk touching the range."""
        if small_range.empty:
            return []
        size = self.chunk_size
        spans = []
        for index in range(small_range.start // size, (small_range.end - 1) // size + 1):
            chunk_end = (index + 1) * size
            span = SequenceRange(max(small_range.start, index * size), min(small_range.end, chunk_end))
            spans.append((index, span, span.end < chunk_end))
        return spans

    def _build_small(
        self,
        lookup: RecordLookup,
        small_range: SequenceRange,
        previous: Optional[SmallSummaryTier],
    ) -> SmallSummaryTier:
        reusable = {c.range: c for c in previous.chunks} if previous else {}
        chunks = []
        for index, span, pending in self._chunk_spans(small_range):
            prior = reusable.get(span)
            if prior is not None and prior.pending == pending:
                chunks.append(prior)
                continue
            sources = tuple(lookup[i] for i in span)
            summary = None if pending else self._summarize([r.text for r in sources])
            chunks.append(SummaryChunk(index=index, range=span, sources=sources, summary=summary))
        return SmallSummaryTier(small_range, tuple(chunks))

    def _build_large(
        self,
        lookup: RecordLookup,
        large_range: SequenceRange,
        previous: Optional[LargeSummaryTier],
    ) -> LargeSummaryTier:
        if large_range.empty:
            return LargeSummaryTier(large_range)

        if (
            previous is not None
            and not previous.range.empty
            and previous.range.start == large_range.start
            and previous.range.end <= large_range.end
        ):
            if previous.range.end == large_range.end:
                return previous
            entering = SequenceRange(previous.range.end, large_range.end)
            texts = [lookup[i].text for i in entering]
            logger.debug("Merging %d records into large summary", len(texts))
            return LargeSummaryTier(large_range, self._merge(previous.summary, texts))

        texts = [lookup[i].text for i in large_range]
        return LargeSummaryTier(large_range, self._summarize(texts))

    def _summarize(self, texts: list[str]) -> str:
        return self._call("summarize", self.summarizer.summarize, texts)

    def _merge(self, previous_summary: str, texts: list[str]) -> str:
        return self._call("merge", self.summarizer.merge, previous_summary, texts)

    @staticmethod
    def _call(name: str, fn, *args) -> str:
        try:
            result = fn(*args)
        except SummarizationError:
            raise
        except Exception as e:
            logger.warning("Summarizer %s failed: %s", name, e)
            raise SummarizationError(f"{name} failed: {e}", retryable=False) from e
        if not isinstance(result, str):
            raise SummarizationError(f"{name} returned {type(result).__name__}, expected str")
        return result
