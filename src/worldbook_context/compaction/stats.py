"""
Read-only statistics projection of the engine state.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Optional

from .state import ContextState
from .token_budget import estimate_tokens


@dataclass(frozen=True)
class ContextStatistics:
    record_count: int
    text_count: int
    segment_count: int
    small_summary_count: int
    large_summary_count: int
    mode: str
    enabled: bool
    last_update_time: Optional[datetime]
    estimated_tokens: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_update_time"] = (
            self.last_update_time.isoformat() if self.last_update_time else None
        )
        return data


def compute_statistics(state: ContextState) -> ContextStatistics:
    """Counts are records covered per tier, derived from one snapshot."""
    tiers = state.tiers
    return ContextStatistics(
        record_count=state.record_count,
        text_count=state.record_count,
        segment_count=len(tiers.segment.range),
        small_summary_count=len(tiers.small_summary.range),
        large_summary_count=len(tiers.large_summary.range),
        mode=state.mode.value,
        enabled=state.enabled,
        last_update_time=state.last_update_time,
        estimated_tokens={
            key: estimate_tokens(text) for key, text in state.visible_payloads().items()
        },
    )
