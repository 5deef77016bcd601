"""
Append-only ledger of raw turns and their extracted main text.

Main-text extraction:
  - ``<gametxt>...</gametxt>`` blocks win when present (joined in order)
  - otherwise the whole content, with thinking/reasoning stripped
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence, Union

from langchain_core.messages import BaseMessage

from .config import TEXT_SEPARATOR
from .errors import ValidationError

logger = logging.getLogger(__name__)

GAMETXT_PATTERN = re.compile(r"<gametxt>([\s\S]*?)</gametxt>", re.IGNORECASE)
THINKING_PATTERN = re.compile(
    r"<(thinking|think|reasoning)>[\s\S]*?</\1>", re.IGNORECASE
)

RawTurn = Union[str, BaseMessage]


@dataclass(frozen=True)
class HistoryRecord:
    """One ingested turn."""

    sequence: int
    role: str
    raw_text: str
    created_at: datetime


@dataclass(frozen=True)
class TextRecord:
    """Extracted narrative payload of a HistoryRecord."""

    sequence: int
    text: str


@dataclass(frozen=True)
class StagedRecord:
    """A parsed turn that has not been committed to the ledger yet."""

    history: HistoryRecord
    text: TextRecord


def _content_str(content) -> str:
    """Flatten message content, dropping thinking/reasoning blocks."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                if block.get("type", "") in ("thinking", "reasoning"):
                    continue
                text = block.get("text") or ""
                if text:
                    parts.append(text)
        return "\n".join(parts)
    return str(content) if content else ""


def message_role(raw_turn: RawTurn) -> str:
    if isinstance(raw_turn, BaseMessage):
        return type(raw_turn).__name__.replace("Message", "") or raw_turn.type
    return "AI"


def raw_text_of(raw_turn: RawTurn) -> str:
    if isinstance(raw_turn, BaseMessage):
        return _content_str(raw_turn.content)
    if isinstance(raw_turn, str):
        return raw_turn
    raise ValidationError("raw_turn", raw_turn, f"Unsupported turn type: {type(raw_turn).__name__}")


def extract_main_text(raw_text: str) -> str:
    """Return the narrative text of a turn, or '' if there is none."""
    tagged = [m.strip() for m in GAMETXT_PATTERN.findall(raw_text or "")]
    tagged = [t for t in tagged if t]
    if tagged:
        return "\n\n".join(tagged)
    return THINKING_PATTERN.sub("", raw_text or "").strip()


def format_history(records: Iterable[TextRecord]) -> str:
    """Serialize the text ledger for the history entry."""
    return TEXT_SEPARATOR.join(r.text for r in records)


def parse_history(payload: Optional[str]) -> tuple[TextRecord, ...]:
    """
    Rebuild text records from a history entry.

    Passages are split on the text separator; blank parts are dropped
    and the rest are renumbered from 0.
    """
    if not payload:
        return ()
    parts = [p.strip() for p in payload.split(TEXT_SEPARATOR)]
    return tuple(
        TextRecord(sequence=i, text=text) for i, text in enumerate(p for p in parts if p)
    )


class RecordStore:
    """
    Ledger of HistoryRecord/TextRecord pairs for the current session.

    Reads return tuples, so later appends never change a snapshot a
    caller already holds.
    """

    def __init__(self):
        self._history: list[HistoryRecord] = []
        self._texts: list[TextRecord] = []

    def __len__(self) -> int:
        return len(self._texts)

    @property
    def next_sequence(self) -> int:
        return len(self._texts)

    def stage(self, raw_turn: RawTurn, role: Optional[str] = None) -> StagedRecord:
        """
        Parse a turn and assign it the next sequence without storing it.

        Raises ValidationError if the turn has no extractable main text.
        """
        raw_text = raw_text_of(raw_turn)
        text = extract_main_text(raw_text)
        if not text:
            raise ValidationError("raw_turn", raw_turn, "Turn has no extractable main text")

        sequence = self.next_sequence
        history = HistoryRecord(
            sequence=sequence,
            role=role or message_role(raw_turn),
            raw_text=raw_text,
            created_at=datetime.now(timezone.utc),
        )
        return StagedRecord(history=history, text=TextRecord(sequence=sequence, text=text))

    def commit(self, staged: StagedRecord) -> TextRecord:
        if staged.text.sequence != self.next_sequence:
            raise ValueError(
                f"Stale staged record {staged.text.sequence}, "
                f"expected sequence {self.next_sequence}"
            )
        self._history.append(staged.history)
        self._texts.append(staged.text)
        return staged.text

    def append(self, raw_turn: RawTurn, role: Optional[str] = None) -> TextRecord:
        """Extract, sequence and store a turn in one step."""
        return self.commit(self.stage(raw_turn, role))

    def restore(self, records: Sequence[TextRecord]) -> None:
        """Reload text records persisted by an earlier session."""
        if self._texts:
            raise ValueError("Cannot restore into a non-empty record store")
        for index, record in enumerate(records):
            if record.sequence != index:
                raise ValueError(f"Restored record {record.sequence} at position {index}")
        now = datetime.now(timezone.utc)
        self._history = [HistoryRecord(r.sequence, "AI", r.text, now) for r in records]
        self._texts = list(records)
        logger.info("Restored %d records from world book", len(self._texts))

    def all_text_records(self) -> tuple[TextRecord, ...]:
        return tuple(self._texts)

    def history_records(self) -> tuple[HistoryRecord, ...]:
        return tuple(self._history)

    def latest_texts(self, count: int) -> tuple[TextRecord, ...]:
        if count <= 0:
            return ()
        return tuple(self._texts[-count:])

    def clear(self):
        dropped = len(self._texts)
        self._history = []
        self._texts = []
        logger.info("Cleared record store (%d records dropped)", dropped)
