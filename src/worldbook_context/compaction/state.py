"""
Immutable engine state, published atomically by the controller.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

from .config import HISTORY_KEY, ContextConfig, ContextMode
from .errors import ValidationError
from .records import TextRecord, format_history
from .tiers import Tiers


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ContextState:
    """Mode, gate, config, history and tiers as one value; never mutated in place."""

    mode: ContextMode = ContextMode.SEGMENTED
    enabled: bool = False
    config: ContextConfig = field(default_factory=ContextConfig)
    tiers: Optional[Tiers] = None
    history: tuple[TextRecord, ...] = ()
    last_update_time: Optional[datetime] = None

    def __post_init__(self):
        if self.tiers is None:
            object.__setattr__(self, "tiers", Tiers.empty(self.config))

    @property
    def record_count(self) -> int:
        return len(self.history)

    def evolve(self, **changes) -> "ContextState":
        return replace(self, **changes)

    def touched(self) -> "ContextState":
        return replace(self, last_update_time=utcnow())

    def history_payload(self) -> str:
        return format_history(self.history)

    def visible_payloads(self) -> dict[str, str]:
        """Entry contents the downstream model reads in the current mode."""
        payloads = self.tiers.payloads()
        if self.mode is ContextMode.FULL:
            payloads[HISTORY_KEY] = self.history_payload()
        return payloads

    def settings_payload(self) -> str:
        """
        JSON persisted under the settings key.

        The enable gate is process state and is not persisted: a world
        book never switches its own sync back on.
        """
        return json.dumps(
            {
                "mode": self.mode.value,
                "config": self.config.to_dict(),
            },
            sort_keys=True,
            ensure_ascii=False,
        )


@dataclass(frozen=True)
class PersistedSettings:
    mode: ContextMode
    config: ContextConfig


def parse_settings(payload: Optional[str]) -> Optional[PersistedSettings]:
    """Parse a settings entry; raises ValidationError on malformed content."""
    if not payload:
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValidationError("context_settings", payload, f"Settings entry is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("context_settings", payload, "Settings entry must be a JSON object")
    config = data.get("config") or {}
    if not isinstance(config, dict):
        raise ValidationError("context_settings", payload, "Settings config must be a JSON object")
    return PersistedSettings(
        mode=ContextMode.parse(data.get("mode", ContextMode.SEGMENTED.value)),
        config=ContextConfig.from_dict(config),
    )
