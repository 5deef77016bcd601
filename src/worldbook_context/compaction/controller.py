"""
Sync controller: the single writer of the context state.

Every mutating operation runs under a FIFO guard, computes new tiers on
immutable inputs, publishes the new state, and then reconciles the world
book through the store adapter (only when enabled).

Usage:
    controller = ContextSyncController(calculator, InMemoryWorldbook())
    controller.initialize()
    controller.set_enabled(True)
    controller.append("<gametxt>The gate opened.</gametxt>")
    payloads = controller.tier_payloads()
"""

import logging
import threading
from typing import Optional

from .config import (
    CONTENT_KEYS,
    HISTORY_KEY,
    MANAGED_KEYS,
    SETTINGS_KEY,
    TIER_KEYS,
    ContextConfig,
    ContextMode,
)
from .errors import StoreError, SummarizationError, ValidationError
from .records import RawTurn, RecordStore, TextRecord, parse_history
from .state import ContextState, parse_settings
from .stats import ContextStatistics, compute_statistics
from .store import Reconciler, WorldbookStore
from .tiers import TierCalculator, Tiers

logger = logging.getLogger(__name__)


class _FifoGuard:
    """Exclusive lock that admits waiters in arrival order."""

    def __init__(self):
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._serving = 0
        self._abandoned: set[int] = set()

    def __enter__(self):
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            try:
                while ticket != self._serving:
                    self._cond.wait()
            except BaseException:
                # Interrupted waiter: its turn must not block the queue
                self._abandoned.add(ticket)
                self._skip_abandoned()
                raise
        return self

    def __exit__(self, exc_type, exc, tb):
        with self._cond:
            self._serving += 1
            self._skip_abandoned()
        return False

    def _skip_abandoned(self):
        while self._serving in self._abandoned:
            self._abandoned.discard(self._serving)
            self._serving += 1
        self._cond.notify_all()

    @property
    def busy(self) -> bool:
        with self._cond:
            return self._next_ticket != self._serving


class ContextSyncController:
    """
    Owns the ContextState and keeps the world book in sync with it.

    Local state is published as soon as tiers are computed; a StoreError
    raised afterwards means the world book lags behind (drift), which
    regenerate_segments() or refresh() repairs. last_update_time only
    moves once reconciliation succeeded or was skipped because the
    engine is disabled.
    """

    def __init__(
        self,
        calculator: TierCalculator,
        store: WorldbookStore,
        records: Optional[RecordStore] = None,
        config: Optional[ContextConfig] = None,
        mode: ContextMode = ContextMode.SEGMENTED,
        enabled: bool = False,
    ):
        self.calculator = calculator
        self.records = records if records is not None else RecordStore()
        self._reconciler = Reconciler(store)
        self._guard = _FifoGuard()
        config = config or ContextConfig()
        self._state = ContextState(
            mode=ContextMode.parse(mode),
            enabled=enabled,
            config=config,
            tiers=Tiers.empty(config),
            history=self.records.all_text_records(),
        )

    # ── read side ──

    @property
    def state(self) -> ContextState:
        return self._state

    @property
    def store(self) -> WorldbookStore:
        return self._reconciler.store

    @property
    def busy(self) -> bool:
        return self._guard.busy

    def statistics(self) -> ContextStatistics:
        return compute_statistics(self._state)

    def tier_payloads(self) -> dict[str, str]:
        """
        Rendered entry text as the downstream model should see it: the
        three tiers, plus the whole history in full mode.
        """
        return self._state.visible_payloads()

    def drifted_keys(self) -> list[str]:
        """Managed keys whose world book content differs from local state."""
        return self._reconciler.dirty_keys(self._desired(self._state))

    # ── operations ──

    def initialize(self) -> ContextState:
        """
        Load persisted settings, history and the current entry contents.

        Entries are only read, never written, so a world book that already
        carries its own content is left alone. The enable gate keeps the
        value the controller was built with.
        """
        with self._guard:
            values = self._reconciler.load(MANAGED_KEYS)
            state = self._adopt(self._state, values)
            self._state = state
            logger.info(
                "Context engine initialized (mode=%s, enabled=%s, N=%d, M=%d, records=%d)",
                state.mode.value,
                state.enabled,
                state.config.segment_count,
                state.config.small_summary_count,
                state.record_count,
            )
            return state

    def append(self, raw_turn: RawTurn, role: Optional[str] = None) -> TextRecord:
        """Ingest one turn and slide the tiers forward."""
        with self._guard:
            staged = self.records.stage(raw_turn, role)
            state = self._state
            tiers = state.tiers
            if state.mode is ContextMode.SEGMENTED:
                tiers = self._advance(state, staged.text)

            record = self.records.commit(staged)
            self._publish(state.evolve(tiers=tiers, history=self.records.all_text_records()))
            logger.debug(
                "Appended record %d (segment=%d, small=%d, large=%d)",
                record.sequence,
                len(tiers.segment.range),
                len(tiers.small_summary.range),
                len(tiers.large_summary.range),
            )
            return record

    def set_segment_count(self, n: int) -> ContextState:
        with self._guard:
            config = self._state.config.with_segment_count(n)
            return self._reconfigure(config)

    def set_small_summary_count(self, m: int) -> ContextState:
        with self._guard:
            config = self._state.config.with_small_summary_count(m)
            return self._reconfigure(config)

    def switch_mode(self, mode) -> ContextState:
        mode = ContextMode.parse(mode)
        with self._guard:
            state = self._state
            if mode is state.mode:
                return state

            if mode is ContextMode.SEGMENTED:
                tiers = self.calculator.recompute(self.records.all_text_records(), state.config)
            else:
                tiers = Tiers.empty(state.config)

            logger.info("Switching context mode %s -> %s", state.mode.value, mode.value)
            return self._publish(state.evolve(mode=mode, tiers=tiers), force=mode is ContextMode.FULL)

    def regenerate_segments(self) -> ContextState:
        """Recompute every tier from raw text and rewrite all entries."""
        with self._guard:
            state = self._state
            if state.mode is ContextMode.FULL:
                logger.debug("Full mode, nothing to regenerate")
                return state

            tiers = self.calculator.recompute(self.records.all_text_records(), state.config)
            logger.info("Regenerated tiers over %d records", len(self.records))
            return self._publish(state.evolve(tiers=tiers), force=True)

    def clear_all(self, force: bool = False) -> ContextState:
        """
        Drop all local history and tiers.

        World book tier and history entries are deleted when the engine
        is enabled or ``force`` is set; otherwise they are left untouched.
        """
        with self._guard:
            self.records.clear()
            state = self._state.evolve(tiers=Tiers.empty(self._state.config), history=())
            self._state = state

            if not (state.enabled or force):
                logger.info("Cleared local context state (world book untouched)")
                self._state = state.touched()
                return self._state

            self._reconciler.delete_all(CONTENT_KEYS)
            logger.info("Cleared local context state and world book entries (force=%s)", force)
            self._state = self._state.touched()
            return self._state

    def set_enabled(self, enabled: bool) -> ContextState:
        """
        Toggle the world book gate. No entries are written or deleted here:
        local tiers reach the world book on the next append or regenerate.
        """
        with self._guard:
            state = self._state
            if state.enabled == bool(enabled):
                return state
            self._state = state.evolve(enabled=bool(enabled))
            logger.info("Context world book sync %s", "enabled" if enabled else "disabled")
            return self._state

    def refresh(self) -> ContextState:
        """
        Re-read the world book after external changes.

        Adopts persisted mode and config (recomputing tiers if they
        changed), reloads persisted history when none is held locally,
        and records what the entries actually hold, so the next
        reconcile rewrites whatever drifted. Nothing is written.
        """
        with self._guard:
            values = self._reconciler.load(MANAGED_KEYS)
            self._state = self._adopt(self._state, values).touched()
            drifted = self.drifted_keys()
            if drifted:
                logger.info("World book differs from local state for: %s", ", ".join(drifted))
            return self._state

    # ── internals (guard must be held) ──

    def _advance(self, state: ContextState, record: TextRecord) -> Tiers:
        previous = state.tiers
        if previous.config == state.config and previous.end == record.sequence:
            return self.calculator.incremental_append(previous, record, state.config)
        logger.info(
            "Tiers out of step with history (end=%d, next=%d), recomputing",
            previous.end,
            record.sequence,
        )
        records = self.records.all_text_records() + (record,)
        return self.calculator.recompute(records, state.config)

    def _reconfigure(self, config: ContextConfig) -> ContextState:
        state = self._state
        if config == state.config:
            return state
        if state.mode is ContextMode.SEGMENTED:
            tiers = self.calculator.recompute(
                self.records.all_text_records(), config, previous=state.tiers
            )
        else:
            tiers = Tiers.empty(config)
        logger.info(
            "Context config changed: N=%d, M=%d",
            config.segment_count,
            config.small_summary_count,
        )
        return self._publish(state.evolve(config=config, tiers=tiers))

    def _adopt(self, state: ContextState, values: dict[str, Optional[str]]) -> ContextState:
        """Apply persisted settings, then restore persisted history if none is held."""
        settings = self._read_settings(values.get(SETTINGS_KEY))
        if settings is not None:
            state = self._with_settings(state, settings.mode, settings.config)

        if len(self.records):
            return state

        restored = parse_history(values.get(HISTORY_KEY))
        if not restored:
            # Tier entries without our history were not written by this engine
            self._reconciler.forget(TIER_KEYS)
            return state

        tiers = Tiers.empty(state.config)
        if state.mode is ContextMode.SEGMENTED:
            try:
                tiers = self.calculator.resume(restored, state.config, values)
            except SummarizationError as e:
                logger.warning("Could not rebuild tiers for restored history: %s", e)
        self.records.restore(restored)
        return state.evolve(tiers=tiers, history=restored)

    def _with_settings(self, state: ContextState, mode: ContextMode, config: ContextConfig) -> ContextState:
        if mode is state.mode and config == state.config:
            return state
        if mode is ContextMode.SEGMENTED:
            previous = state.tiers if state.mode is ContextMode.SEGMENTED else None
            tiers = self.calculator.recompute(self.records.all_text_records(), config, previous=previous)
        else:
            tiers = Tiers.empty(config)
        return state.evolve(mode=mode, config=config, tiers=tiers)

    @staticmethod
    def _read_settings(payload: Optional[str]):
        try:
            return parse_settings(payload)
        except ValidationError as e:
            logger.warning("Ignoring malformed context settings entry: %s", e)
            return None

    @staticmethod
    def _desired(state: ContextState) -> dict[str, str]:
        desired = state.tiers.payloads()
        desired[HISTORY_KEY] = state.history_payload()
        desired[SETTINGS_KEY] = state.settings_payload()
        return desired

    def _publish(self, state: ContextState, force: bool = False) -> ContextState:
        """Publish locally, then reconcile if enabled."""
        self._state = state
        if not state.enabled:
            self._state = state.touched()
            return self._state

        try:
            written = self._reconciler.apply(self._desired(state), force=force)
        except StoreError as e:
            logger.warning("World book reconcile incomplete: %s", e)
            raise
        if written:
            logger.debug("Reconciled world book entries: %s", ", ".join(written))
        self._state = state.touched()
        return self._state
