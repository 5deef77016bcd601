"""
Context compaction configuration and world book entry definitions.
"""

import os
from dataclasses import dataclass
from enum import Enum

from .errors import ValidationError


class ContextMode(str, Enum):
    """How history is presented downstream."""

    SEGMENTED = "segmented"
    FULL = "full"

    @classmethod
    def parse(cls, value) -> "ContextMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError("mode", value) from None


# Records per SmallSummary chunk (aligned on absolute sequence)
SMALL_SUMMARY_CHUNK_SIZE = 5

# Separators used when rendering tier payloads
TEXT_SEPARATOR = "\n\n---\n\n"
RECORD_SEPARATOR = "\n——————\n"


# World book keys managed by the engine
SEGMENT_KEY = "segmented_text"
SMALL_SUMMARY_KEY = "small_summary"
LARGE_SUMMARY_KEY = "large_summary"
SETTINGS_KEY = "context_settings"

# Full text ledger; read downstream only in full mode
HISTORY_KEY = "history_text"

TIER_KEYS: tuple[str, ...] = (SEGMENT_KEY, SMALL_SUMMARY_KEY, LARGE_SUMMARY_KEY)
CONTENT_KEYS: tuple[str, ...] = TIER_KEYS + (HISTORY_KEY,)
MANAGED_KEYS: tuple[str, ...] = CONTENT_KEYS + (SETTINGS_KEY,)


@dataclass(frozen=True)
class EntrySpec:
    """Placement metadata for a world book entry."""

    key: str
    depth: int
    order: int
    role: str = "system"


# Deeper (older) tiers sit further from the prompt tail
ENTRY_SPECS: dict[str, EntrySpec] = {
    SEGMENT_KEY: EntrySpec(SEGMENT_KEY, depth=2, order=100),
    SMALL_SUMMARY_KEY: EntrySpec(SMALL_SUMMARY_KEY, depth=4, order=90),
    LARGE_SUMMARY_KEY: EntrySpec(LARGE_SUMMARY_KEY, depth=6, order=80),
    HISTORY_KEY: EntrySpec(HISTORY_KEY, depth=2, order=100),
    SETTINGS_KEY: EntrySpec(SETTINGS_KEY, depth=0, order=0),
}


def _validate_count(field: str, value) -> int:
    # bool is an int subclass but never a meaningful count
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(field, value, f"{field} must be an integer, got {value!r}")
    if value < 0:
        raise ValidationError(field, value, f"{field} must be >= 0, got {value}")
    return value


@dataclass(frozen=True)
class ContextConfig:
    """Tier sizes: N verbatim records, then M records of small summaries."""

    segment_count: int = 3
    small_summary_count: int = 25

    def __post_init__(self):
        _validate_count("segment_count", self.segment_count)
        _validate_count("small_summary_count", self.small_summary_count)

    def with_segment_count(self, n) -> "ContextConfig":
        return ContextConfig(_validate_count("segment_count", n), self.small_summary_count)

    def with_small_summary_count(self, m) -> "ContextConfig":
        return ContextConfig(self.segment_count, _validate_count("small_summary_count", m))

    def to_dict(self) -> dict:
        return {
            "segment_count": self.segment_count,
            "small_summary_count": self.small_summary_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ContextConfig":
        default = cls()
        return cls(
            segment_count=data.get("segment_count", default.segment_count),
            small_summary_count=data.get("small_summary_count", default.small_summary_count),
        )


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class EngineSettings:
    """Process-level settings for building a context engine."""

    segment_count: int = 3
    small_summary_count: int = 25
    mode: ContextMode = ContextMode.SEGMENTED

    # Disabled by default so an existing world book is never overwritten
    enabled: bool = False

    # Summarizer
    summary_model: str = ""  # empty = reuse CLAUDE_MODEL
    max_summary_tokens: int = 1000

    # World book
    worldbook_name: str = "default"
    database_url: str = ""

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Load settings from environment variables."""
        return cls(
            segment_count=int(os.getenv("CONTEXT_SEGMENT_COUNT", "3")),
            small_summary_count=int(os.getenv("CONTEXT_SMALL_SUMMARY_COUNT", "25")),
            mode=ContextMode.parse(os.getenv("CONTEXT_MODE", "segmented")),
            enabled=_env_bool("CONTEXT_ENABLED", "false"),
            summary_model=os.getenv("CONTEXT_SUMMARY_MODEL", ""),
            max_summary_tokens=int(os.getenv("CONTEXT_MAX_SUMMARY_TOKENS", "1000")),
            worldbook_name=os.getenv("CONTEXT_WORLDBOOK_NAME", "default"),
            database_url=os.getenv("DATABASE_URL", ""),
        )

    @property
    def context_config(self) -> ContextConfig:
        return ContextConfig(self.segment_count, self.small_summary_count)
