"""
Tests for the compaction building blocks: config, records, tiers,
summarizer, world book adapters and statistics.
"""

import json

import psycopg
import pytest
from unittest.mock import MagicMock
from langchain_core.messages import AIMessage, HumanMessage

from stubs import ConcatSummarizer, FlakyWorldbook
from worldbook_context.compaction.config import (
    HISTORY_KEY,
    LARGE_SUMMARY_KEY,
    RECORD_SEPARATOR,
    SEGMENT_KEY,
    SETTINGS_KEY,
    SMALL_SUMMARY_KEY,
    ContextConfig,
    ContextMode,
    EngineSettings,
)
from worldbook_context.compaction.errors import (
    StoreError,
    SummarizationError,
    ValidationError,
)
from worldbook_context.compaction.records import (
    RecordStore,
    TextRecord,
    extract_main_text,
    format_history,
    parse_history,
)
from worldbook_context.compaction.state import ContextState, parse_settings
from worldbook_context.compaction.stats import compute_statistics
from worldbook_context.compaction.store import InMemoryWorldbook, PostgresWorldbook, Reconciler
from worldbook_context.compaction.summarizer import ConversationSummarizer
from worldbook_context.compaction.tiers import SequenceRange, TierCalculator, Tiers, partition


def _records(count: int) -> tuple[TextRecord, ...]:
    return tuple(TextRecord(sequence=i, text=f"t{i}") for i in range(count))


# ── Config Tests ──


class TestContextConfig:
    def test_default_values(self):
        config = ContextConfig()
        assert config.segment_count == 3
        assert config.small_summary_count == 25

    def test_negative_count_rejected(self):
        with pytest.raises(ValidationError) as exc:
            ContextConfig(segment_count=-1)
        assert exc.value.field == "segment_count"

    def test_non_integer_rejected(self):
        with pytest.raises(ValidationError):
            ContextConfig().with_small_summary_count("5")
        with pytest.raises(ValidationError):
            ContextConfig().with_segment_count(True)

    def test_with_methods_return_new_config(self):
        config = ContextConfig(3, 25)
        updated = config.with_segment_count(0)
        assert updated == ContextConfig(0, 25)
        assert config.segment_count == 3

    def test_mode_parse(self):
        assert ContextMode.parse("FULL") is ContextMode.FULL
        assert ContextMode.parse(ContextMode.SEGMENTED) is ContextMode.SEGMENTED
        with pytest.raises(ValidationError):
            ContextMode.parse("partial")

    def test_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("CONTEXT_SEGMENT_COUNT", "5")
        monkeypatch.setenv("CONTEXT_SMALL_SUMMARY_COUNT", "10")
        monkeypatch.setenv("CONTEXT_MODE", "full")
        monkeypatch.setenv("CONTEXT_ENABLED", "true")
        settings = EngineSettings.from_env()
        assert settings.context_config == ContextConfig(5, 10)
        assert settings.mode is ContextMode.FULL
        assert settings.enabled is True

    def test_settings_disabled_by_default(self, monkeypatch):
        monkeypatch.delenv("CONTEXT_ENABLED", raising=False)
        assert EngineSettings.from_env().enabled is False


# ── Record Store Tests ──


class TestRecordStore:
    def test_extract_gametxt_blocks(self):
        raw = "intro <gametxt> First part. </gametxt> noise <GAMETXT>Second.</GAMETXT>"
        assert extract_main_text(raw) == "First part.\n\nSecond."

    def test_extract_strips_thinking(self):
        raw = "<thinking>plan the scene</thinking>\nThe door creaks open."
        assert extract_main_text(raw) == "The door creaks open."

    def test_append_assigns_sequences(self):
        store = RecordStore()
        first = store.append("<gametxt>one</gametxt>")
        second = store.append("two")
        assert (first.sequence, second.sequence) == (0, 1)
        assert second.text == "two"
        assert len(store) == 2

    def test_append_message_with_thinking_block(self):
        store = RecordStore()
        msg = AIMessage(content=[
            {"type": "thinking", "thinking": "Let me think..."},
            {"type": "text", "text": "The storm passes."},
        ])
        record = store.append(msg)
        assert record.text == "The storm passes."
        assert store.history_records()[0].role == "AI"

    def test_human_message_role(self):
        store = RecordStore()
        store.append(HumanMessage(content="I open the door."))
        assert store.history_records()[0].role == "Human"

    def test_empty_text_rejected(self):
        store = RecordStore()
        with pytest.raises(ValidationError):
            store.append("<thinking>only thoughts</thinking>   ")
        assert len(store) == 0

    def test_snapshot_not_affected_by_later_appends(self):
        store = RecordStore()
        store.append("a")
        snapshot = store.all_text_records()
        store.append("b")
        assert len(snapshot) == 1
        assert len(store.all_text_records()) == 2

    def test_stale_staged_record_rejected(self):
        store = RecordStore()
        staged = store.stage("a")
        store.append("b")
        with pytest.raises(ValueError):
            store.commit(staged)

    def test_latest_texts(self):
        store = RecordStore()
        for text in ("a", "b", "c"):
            store.append(text)
        assert [r.text for r in store.latest_texts(2)] == ["b", "c"]
        assert store.latest_texts(0) == ()

    def test_clear_restarts_sequence(self):
        store = RecordStore()
        store.append("a")
        store.clear()
        assert len(store) == 0
        assert store.append("b").sequence == 0

    def test_history_payload_round_trip(self):
        records = _records(3)
        payload = format_history(records)
        assert payload == "t0\n\n---\n\nt1\n\n---\n\nt2"
        assert parse_history(payload) == records
        assert parse_history(None) == ()
        assert parse_history("  \n\n---\n\n  ") == ()

    def test_restore_continues_sequence(self):
        store = RecordStore()
        store.restore(_records(3))
        assert len(store) == 3
        assert store.append("next").sequence == 3
        assert [r.raw_text for r in store.history_records()][:3] == ["t0", "t1", "t2"]

    def test_restore_requires_empty_store(self):
        store = RecordStore()
        store.append("a")
        with pytest.raises(ValueError):
            store.restore(_records(2))
        assert len(store) == 1


# ── Tier Calculator Tests ──


class TestPartition:
    @pytest.mark.parametrize(
        "total, n, m, expected",
        [
            (0, 3, 25, ((0, 0), (0, 0), (0, 0))),
            (2, 3, 25, ((0, 2), (0, 0), (0, 0))),
            (10, 3, 25, ((7, 10), (0, 7), (0, 0))),
            (30, 3, 25, ((27, 30), (2, 27), (0, 2))),
            (10, 0, 4, ((10, 10), (6, 10), (0, 6))),
            (10, 3, 0, ((7, 10), (7, 7), (0, 7))),
            (10, 0, 0, ((10, 10), (10, 10), (0, 10))),
        ],
    )
    def test_boundaries(self, total, n, m, expected):
        ranges = partition(total, ContextConfig(n, m))
        assert tuple((r.start, r.end) for r in ranges) == expected

    def test_sequence_range_helpers(self):
        r = SequenceRange(2, 5)
        assert len(r) == 3
        assert list(r) == [2, 3, 4]
        assert 4 in r and 5 not in r
        assert r.as_inclusive() == (2, 4)
        assert SequenceRange(3, 3).as_inclusive() is None


class TestTierCalculator:
    def test_thirty_record_scenario(self, summarizer):
        calc = TierCalculator(summarizer)
        tiers = calc.recompute(_records(30), ContextConfig(3, 25))

        assert [r.sequence for r in tiers.segment.records] == [27, 28, 29]
        assert tiers.small_summary.range == SequenceRange(2, 27)
        assert tiers.large_summary.range == SequenceRange(0, 2)
        assert tiers.large_summary.payload == "t0|t1"
        assert tiers.covers(30)

    def test_thirty_first_record_slides_tiers(self, summarizer):
        calc = TierCalculator(summarizer)
        config = ContextConfig(3, 25)
        tiers = calc.recompute(_records(30), config)
        tiers = calc.incremental_append(tiers, TextRecord(30, "t30"), config)

        assert tiers.segment.range == SequenceRange(28, 31)
        assert tiers.small_summary.range == SequenceRange(3, 28)
        assert tiers.large_summary.range == SequenceRange(0, 3)
        assert tiers.large_summary.payload == "t0|t1|t2"
        assert ("merge", "t0|t1", ("t2",)) in summarizer.calls

    def test_pending_chunk_not_summarized(self, summarizer):
        calc = TierCalculator(summarizer, chunk_size=5)
        tiers = calc.recompute(_records(7), ContextConfig(0, 25))

        chunks = tiers.small_summary.chunks
        assert [c.range for c in chunks] == [SequenceRange(0, 5), SequenceRange(5, 7)]
        assert not chunks[0].pending and chunks[1].pending
        assert summarizer.calls == [("summarize", ("t0", "t1", "t2", "t3", "t4"))]
        assert tiers.small_summary.summaries == ["t0|t1|t2|t3|t4", "t5\nt6"]

    def test_incremental_summarizes_only_when_chunk_fills(self, summarizer):
        calc = TierCalculator(summarizer, chunk_size=3)
        config = ContextConfig(1, 10)
        tiers = Tiers.empty(config)
        for record in _records(4):
            tiers = calc.incremental_append(tiers, record, config)
        # small covers [0, 3): chunk 0 just filled
        assert summarizer.calls == [("summarize", ("t0", "t1", "t2"))]

        tiers = calc.incremental_append(tiers, TextRecord(4, "t4"), config)
        assert len(summarizer.calls) == 1
        assert tiers.small_summary.chunks[-1].pending

    def test_incremental_converges_with_recompute(self):
        config = ContextConfig(3, 7)
        incremental = TierCalculator(ConcatSummarizer(), chunk_size=3)
        tiers = Tiers.empty(config)
        records = _records(40)
        for record in records:
            tiers = incremental.incremental_append(tiers, record, config)
            assert tiers.covers(record.sequence + 1)

        full = TierCalculator(ConcatSummarizer(), chunk_size=3).recompute(records, config)
        assert tiers == full
        assert tiers.payloads() == full.payloads()

    def test_recompute_reuses_previous(self, summarizer):
        calc = TierCalculator(summarizer, chunk_size=5)
        config = ContextConfig(3, 10)
        records = _records(20)
        tiers = calc.recompute(records, config)
        calls_before = len(summarizer.calls)

        again = calc.recompute(records, config, previous=tiers)
        assert again == tiers
        assert len(summarizer.calls) == calls_before

    def test_recompute_extends_large_by_merge(self, summarizer):
        calc = TierCalculator(summarizer)
        records = _records(12)
        tiers = calc.recompute(records, ContextConfig(2, 5))
        widened = calc.recompute(records, ContextConfig(1, 3), previous=tiers)
        assert widened.large_summary.range == SequenceRange(0, 8)
        assert ("merge", "t0|t1|t2|t3|t4", ("t5", "t6", "t7")) in summarizer.calls

    def test_no_segment_tier(self, summarizer):
        calc = TierCalculator(summarizer)
        tiers = calc.recompute(_records(10), ContextConfig(0, 4))
        assert tiers.segment.range.empty
        assert tiers.segment.payload == ""
        assert tiers.small_summary.range == SequenceRange(6, 10)
        assert tiers.covers(10)

    def test_incremental_rejects_gap(self, summarizer):
        calc = TierCalculator(summarizer)
        config = ContextConfig()
        with pytest.raises(ValueError):
            calc.incremental_append(Tiers.empty(config), TextRecord(3, "t3"), config)

    def test_incremental_rejects_config_change(self, summarizer):
        calc = TierCalculator(summarizer)
        with pytest.raises(ValueError):
            calc.incremental_append(
                Tiers.empty(ContextConfig(3, 25)), TextRecord(0, "t0"), ContextConfig(2, 25)
            )

    def test_recompute_rejects_non_contiguous_records(self, summarizer):
        calc = TierCalculator(summarizer)
        with pytest.raises(ValueError):
            calc.recompute((TextRecord(0, "a"), TextRecord(2, "b")), ContextConfig())

    def test_summarizer_failure_leaves_previous_untouched(self):
        failing = MagicMock()
        failing.summarize.side_effect = RuntimeError("model offline")
        calc = TierCalculator(failing, chunk_size=1)
        config = ContextConfig(1, 1)
        previous = calc.recompute(_records(1), config)

        with pytest.raises(SummarizationError) as exc:
            calc.incremental_append(previous, TextRecord(1, "t1"), config)
        assert exc.value.retryable is False
        assert previous.small_summary.range.empty

    def test_non_string_summary_rejected(self):
        odd = MagicMock()
        odd.summarize.return_value = None
        calc = TierCalculator(odd)
        with pytest.raises(SummarizationError):
            calc.recompute(_records(5), ContextConfig(0, 0))

    def test_resume_adopts_persisted_summaries(self, summarizer):
        config = ContextConfig(3, 25)
        records = _records(30)
        persisted = TierCalculator(ConcatSummarizer()).recompute(records, config)

        resumed = TierCalculator(summarizer).resume(records, config, persisted.payloads())
        assert resumed == persisted
        assert summarizer.calls == []

    def test_resume_keeps_persisted_summary_text(self, summarizer):
        config = ContextConfig(1, 2)
        payloads = {LARGE_SUMMARY_KEY: "the old days", SMALL_SUMMARY_KEY: f"S7{RECORD_SEPARATOR}S8"}
        tiers = TierCalculator(summarizer, chunk_size=1).resume(_records(10), config, payloads)
        assert tiers.large_summary.payload == "the old days"
        assert tiers.small_summary.summaries == ["S7", "S8"]
        assert summarizer.calls == []

    def test_resume_resummarizes_mismatched_chunks(self, summarizer):
        config = ContextConfig(0, 10)
        payloads = {SMALL_SUMMARY_KEY: "only one part"}
        tiers = TierCalculator(summarizer, chunk_size=5).resume(_records(10), config, payloads)
        assert tiers.small_summary.summaries == ["t0|t1|t2|t3|t4", "t5|t6|t7|t8|t9"]
        assert len(summarizer.calls) == 2


# ── Summarizer Tests ──


class TestSummarizer:
    def test_no_llm_fails(self):
        summarizer = ConversationSummarizer(llm=None)
        with pytest.raises(SummarizationError) as exc:
            summarizer.summarize(["hello"])
        assert exc.value.retryable is False

    def test_summarize_with_mock_llm(self):
        mock_llm = MagicMock()
        mock_llm.invoke.return_value = MagicMock(content="Summary of passages")
        summarizer = ConversationSummarizer(llm=mock_llm)
        assert summarizer.summarize(["The hero arrives.", "The gate opens."]) == "Summary of passages"
        mock_llm.invoke.assert_called_once()
        prompt = mock_llm.invoke.call_args[0][0][1].content
        assert "[1] The hero arrives." in prompt
        assert "[2] The gate opens." in prompt

    def test_timeout_is_retryable(self):
        mock_llm = MagicMock()
        mock_llm.invoke.side_effect = TimeoutError("slow")
        summarizer = ConversationSummarizer(llm=mock_llm)
        with pytest.raises(SummarizationError) as exc:
            summarizer.summarize(["x"])
        assert exc.value.retryable is True

    def test_empty_response_fails(self):
        mock_llm = MagicMock()
        mock_llm.invoke.return_value = MagicMock(content="   ")
        summarizer = ConversationSummarizer(llm=mock_llm)
        with pytest.raises(SummarizationError):
            summarizer.summarize(["x"])

    def test_merge_includes_existing_summary(self):
        mock_llm = MagicMock()
        mock_llm.invoke.return_value = MagicMock(content="Merged")
        summarizer = ConversationSummarizer(llm=mock_llm, max_summary_tokens=10000)
        assert summarizer.merge("Old context", ["New passage"]) == "Merged"
        prompt = mock_llm.invoke.call_args[0][0][1].content
        assert "Old context" in prompt
        assert "New passage" in prompt

    def test_merge_without_new_texts_returns_previous(self):
        mock_llm = MagicMock()
        summarizer = ConversationSummarizer(llm=mock_llm)
        assert summarizer.merge("Old context", []) == "Old context"
        mock_llm.invoke.assert_not_called()

    def test_merge_compresses_over_budget(self):
        mock_llm = MagicMock()
        mock_llm.invoke.side_effect = [
            MagicMock(content="a very long merged summary " * 10),
            MagicMock(content="short"),
        ]
        summarizer = ConversationSummarizer(llm=mock_llm, max_summary_tokens=5)
        assert summarizer.merge("Old", ["New"]) == "short"
        assert mock_llm.invoke.call_count == 2


# ── World Book Tests ──


class TestReconciler:
    def test_writes_only_changed_entries(self):
        store = MagicMock(wraps=InMemoryWorldbook())
        reconciler = Reconciler(store)
        reconciler.apply({SEGMENT_KEY: "a", SMALL_SUMMARY_KEY: "b"})
        assert store.write_entry.call_count == 2

        reconciler.apply({SEGMENT_KEY: "a", SMALL_SUMMARY_KEY: "c"})
        assert store.write_entry.call_count == 3
        store.write_entry.assert_called_with(SMALL_SUMMARY_KEY, "c")

    def test_unknown_entry_not_deleted(self):
        store = MagicMock(wraps=InMemoryWorldbook({LARGE_SUMMARY_KEY: "user content"}))
        reconciler = Reconciler(store)
        reconciler.apply({LARGE_SUMMARY_KEY: ""})
        store.delete_entry.assert_not_called()
        assert store.read_entry(LARGE_SUMMARY_KEY) == "user content"

    def test_known_entry_deleted_when_emptied(self):
        worldbook = InMemoryWorldbook()
        reconciler = Reconciler(worldbook)
        reconciler.apply({SEGMENT_KEY: "a"})
        reconciler.apply({SEGMENT_KEY: ""})
        assert SEGMENT_KEY not in worldbook.entries()

    def test_load_detects_drift(self):
        worldbook = InMemoryWorldbook({SEGMENT_KEY: "tampered"})
        reconciler = Reconciler(worldbook)
        reconciler.load([SEGMENT_KEY])
        assert reconciler.dirty_keys({SEGMENT_KEY: "expected"}) == [SEGMENT_KEY]
        assert reconciler.dirty_keys({SEGMENT_KEY: "tampered"}) == []

    def test_partial_failure_reports_keys(self):
        def write(key, value):
            if key == SMALL_SUMMARY_KEY:
                raise ConnectionError("down")

        store = MagicMock(wraps=InMemoryWorldbook())
        store.write_entry.side_effect = write
        reconciler = Reconciler(store)
        with pytest.raises(StoreError) as exc:
            reconciler.apply({SEGMENT_KEY: "a", SMALL_SUMMARY_KEY: "b"})
        assert exc.value.failed == {SMALL_SUMMARY_KEY}
        assert exc.value.partial == {SEGMENT_KEY}
        assert exc.value.retryable is True
        # Failed key stays dirty
        assert reconciler.dirty_keys({SEGMENT_KEY: "a", SMALL_SUMMARY_KEY: "b"}) == [SMALL_SUMMARY_KEY]

    def test_delete_all_always_issues_deletes(self):
        store = MagicMock(wraps=InMemoryWorldbook())
        reconciler = Reconciler(store)
        reconciler.delete_all([SEGMENT_KEY, LARGE_SUMMARY_KEY])
        reconciler.delete_all([SEGMENT_KEY, LARGE_SUMMARY_KEY])
        assert store.delete_entry.call_count == 4

    def test_failed_delete_stays_dirty_and_is_retried(self):
        worldbook = FlakyWorldbook(fail_keys={SEGMENT_KEY}, entries={SEGMENT_KEY: "old"})
        reconciler = Reconciler(worldbook)
        reconciler.load([SEGMENT_KEY])

        with pytest.raises(StoreError):
            reconciler.apply({SEGMENT_KEY: ""})
        assert reconciler.dirty_keys({SEGMENT_KEY: ""}) == [SEGMENT_KEY]

        worldbook.fail_keys.clear()
        assert reconciler.apply({SEGMENT_KEY: ""}) == [SEGMENT_KEY]
        assert SEGMENT_KEY not in worldbook.entries()
        assert reconciler.dirty_keys({SEGMENT_KEY: ""}) == []

    def test_combined_error_lists_keys_once(self):
        reconciler = Reconciler(FlakyWorldbook(fail_keys={SEGMENT_KEY, SMALL_SUMMARY_KEY}))
        with pytest.raises(StoreError) as exc:
            reconciler.apply({SEGMENT_KEY: "a", SMALL_SUMMARY_KEY: "b", LARGE_SUMMARY_KEY: "c"})
        message = str(exc.value)
        assert message.count("failed=") == 1
        assert f"write refused for {SEGMENT_KEY}" in message
        assert exc.value.partial == {LARGE_SUMMARY_KEY}

    def test_forgotten_entry_is_not_deleted(self):
        worldbook = InMemoryWorldbook({LARGE_SUMMARY_KEY: "lore"})
        reconciler = Reconciler(worldbook)
        reconciler.load([LARGE_SUMMARY_KEY])
        reconciler.forget([LARGE_SUMMARY_KEY])
        reconciler.apply({LARGE_SUMMARY_KEY: ""})
        assert worldbook.entries()[LARGE_SUMMARY_KEY] == "lore"


class TestPostgresWorldbook:
    def _make_conn(self):
        conn = MagicMock()
        cur = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cur
        return conn, cur

    def test_setup_creates_table(self):
        conn, cur = self._make_conn()
        PostgresWorldbook(conn)
        assert "CREATE TABLE IF NOT EXISTS worldbook_entries" in cur.execute.call_args_list[0][0][0]

    def test_read_entry_dict_row(self):
        conn, cur = self._make_conn()
        cur.fetchone.return_value = {"content": "stored"}
        worldbook = PostgresWorldbook(conn, worldbook_name="book-1")
        assert worldbook.read_entry(SEGMENT_KEY) == "stored"
        assert cur.execute.call_args[0][1] == ("book-1", SEGMENT_KEY)

    def test_read_missing_entry(self):
        conn, cur = self._make_conn()
        cur.fetchone.return_value = None
        assert PostgresWorldbook(conn).read_entry(SEGMENT_KEY) is None

    def test_write_entry_upserts_with_placement(self):
        conn, cur = self._make_conn()
        worldbook = PostgresWorldbook(conn)
        worldbook.write_entry(LARGE_SUMMARY_KEY, "summary")
        sql, params = cur.execute.call_args[0]
        assert "ON CONFLICT" in sql
        assert params == ("default", LARGE_SUMMARY_KEY, "summary", 6, 80, "system")

    def test_write_failure_raises_store_error(self):
        conn, cur = self._make_conn()
        worldbook = PostgresWorldbook(conn)
        cur.execute.side_effect = RuntimeError("connection lost")
        with pytest.raises(StoreError) as exc:
            worldbook.write_entry(SEGMENT_KEY, "x")
        assert exc.value.failed == {SEGMENT_KEY}

    def test_connection_errors_are_retryable(self):
        conn, cur = self._make_conn()
        worldbook = PostgresWorldbook(conn)
        cur.execute.side_effect = psycopg.OperationalError("server closed the connection")
        with pytest.raises(StoreError) as exc:
            worldbook.delete_entry(SEGMENT_KEY)
        assert exc.value.retryable is True
        assert exc.value.failed == {SEGMENT_KEY}


# ── State & Statistics Tests ──


class TestStatistics:
    def test_settings_round_trip(self):
        state = ContextState(mode=ContextMode.FULL, enabled=True, config=ContextConfig(2, 5))
        settings = parse_settings(state.settings_payload())
        assert settings.mode is ContextMode.FULL
        assert settings.config == ContextConfig(2, 5)
        assert "enabled" not in json.loads(state.settings_payload())

    def test_malformed_settings(self):
        assert parse_settings(None) is None
        with pytest.raises(ValidationError):
            parse_settings("{not json")
        with pytest.raises(ValidationError):
            parse_settings("[1, 2]")
        with pytest.raises(ValidationError):
            parse_settings(json.dumps({"config": {"segment_count": "3"}}))

    def test_counts_from_tiers(self, summarizer):
        config = ContextConfig(3, 25)
        tiers = TierCalculator(summarizer).recompute(_records(30), config)
        state = ContextState(config=config, tiers=tiers, history=_records(30))
        stats = compute_statistics(state)
        assert (stats.segment_count, stats.small_summary_count, stats.large_summary_count) == (3, 25, 2)
        assert stats.record_count == stats.text_count == 30
        assert stats.mode == "segmented"
        data = stats.to_dict()
        assert data["last_update_time"] is None
        assert data["estimated_tokens"][SEGMENT_KEY] > 0
        assert SETTINGS_KEY not in data["estimated_tokens"]

    def test_full_mode_exposes_history(self):
        state = ContextState(mode=ContextMode.FULL, history=_records(3))
        payloads = state.visible_payloads()
        assert payloads[HISTORY_KEY] == "t0\n\n---\n\nt1\n\n---\n\nt2"
        assert payloads[SEGMENT_KEY] == ""
        assert compute_statistics(state).estimated_tokens[HISTORY_KEY] > 0
        assert HISTORY_KEY not in ContextState(history=_records(3)).visible_payloads()
