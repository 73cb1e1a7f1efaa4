# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""Schema tests — ingestion boundary, aliases, timestamps, persistence helpers."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from insights.schemas import (
    BurnoutAssessment,
    BurnoutFactor,
    EntryAnalysis,
    Exclusion,
    JournalEntry,
    SignalState,
    StateTransition,
    atomic_write_json,
    parse_timestamp,
)


# ============================================================================
# Entry analysis — provider payload normalization
# ============================================================================

class TestEntryAnalysis:

    @pytest.mark.parametrize("raw,expected", [
        (0.7, 0.7),
        ("0.25", 0.25),
        (1.5, 1.0),
        (-0.2, 0.0),
        ("happy", None),
        (True, None),
        (float("nan"), None),
        (None, None),
    ])
    def test_mood_coercion(self, raw, expected):
        assert EntryAnalysis.model_validate({"mood_score": raw}).mood_score == expected

    def test_goal_update_without_tag_dropped(self):
        analysis = EntryAnalysis.model_validate({"goal_update": {"status": "achieved"}})
        assert analysis.goal_update is None

    def test_goal_update_kept(self):
        analysis = EntryAnalysis.model_validate({"goal_update": {"tag": "@goal:run", "status": "progress"}})
        assert analysis.goal_update.tag == "@goal:run"
        assert analysis.goal_update.status == "progress"

    def test_legacy_nested_goal_update_lifted(self):
        analysis = EntryAnalysis.model_validate({
            "extractEnhancedContext": {"goal_update": {"tag": "@goal:learn_piano", "status": "achieved"}},
        })
        assert analysis.goal_update.tag == "@goal:learn_piano"

    def test_non_dict_payload_is_empty(self):
        analysis = EntryAnalysis.model_validate("garbage")
        assert analysis.mood_score is None
        assert analysis.tags == []

    def test_tags_cleaned(self):
        analysis = EntryAnalysis.model_validate({"tags": ["@food:tea", 3, "", None]})
        assert analysis.tags == ["@food:tea"]

    def test_unknown_provider_fields_preserved(self):
        analysis = EntryAnalysis.model_validate({"mood_score": 0.5, "cbt_breakdown": {"x": 1}})
        assert analysis.model_dump()["cbt_breakdown"] == {"x": 1}


# ============================================================================
# Journal entries
# ============================================================================

class TestJournalEntry:

    def test_from_camel_case_record(self):
        entry = JournalEntry.from_record({
            "id": "e1",
            "text": "hello",
            "createdAt": "2026-03-02T10:00:00Z",
            "tags": ["@person:sam"],
            "analysis": {"mood_score": 0.6},
        })
        assert entry.created_at == "2026-03-02T10:00:00Z"
        assert entry.mood == 0.6
        assert entry.created == datetime(2026, 3, 2, 10, tzinfo=timezone.utc)

    def test_effective_date_wins(self):
        entry = JournalEntry.from_record({
            "id": "e1",
            "createdAt": "2026-03-02T10:00:00+00:00",
            "effectiveDate": "2026-02-27T21:00:00+00:00",
        })
        assert entry.when.day == 27

    def test_missing_text_and_tags_default(self):
        entry = JournalEntry.from_record({"id": "e1", "createdAt": "2026-03-02T10:00:00", "text": None, "tags": "x"})
        assert entry.text == ""
        assert entry.tags == []
        assert entry.mood is None

    def test_missing_created_at_rejected(self):
        with pytest.raises(ValidationError):
            JournalEntry.from_record({"id": "e1", "text": "no timestamp"})

    def test_to_record_uses_camel_case(self):
        entry = JournalEntry(id="e1", created_at="2026-03-02T10:00:00+00:00", analysis={"mood_score": 0.4})
        record = entry.to_record()
        assert record["createdAt"] == "2026-03-02T10:00:00+00:00"
        assert record["analysis"] == {"mood_score": 0.4, "tags": []}


# ============================================================================
# Signal states
# ============================================================================

class TestSignalState:

    def test_history_aliases(self):
        state = SignalState(
            topic="run_a_marathon",
            state_history=[StateTransition(from_state=None, to_state="proposed", at="t0")],
            created_at="t0",
            last_updated="t0",
        )
        record = state.to_record()
        assert record["type"] == "goal"
        assert record["stateHistory"][0]["from"] is None
        assert record["stateHistory"][0]["to"] == "proposed"
        assert SignalState.model_validate(record).state_history[0].to_state == "proposed"

    def test_unknown_state_rejected(self):
        with pytest.raises(ValidationError):
            SignalState(topic="x", state="forgotten", created_at="t0", last_updated="t0")

    @pytest.mark.parametrize("state,terminal", [
        ("proposed", False), ("active", False), ("paused", False),
        ("achieved", True), ("abandoned", True),
    ])
    def test_terminal_states(self, state, terminal):
        goal = SignalState(topic="x", state=state, created_at="t0", last_updated="t0")
        assert goal.is_terminal is terminal


# ============================================================================
# Exclusions & burnout
# ============================================================================

class TestExclusion:

    def test_permanent_always_active(self):
        assert Exclusion(pattern_type="x", permanent=True).is_active()

    def test_expiry(self):
        now = datetime(2026, 3, 2, tzinfo=timezone.utc)
        future = Exclusion(pattern_type="x", expires_at=(now + timedelta(days=1)).isoformat())
        past = Exclusion(pattern_type="x", expires_at=(now - timedelta(days=1)).isoformat())
        assert future.is_active(now)
        assert not past.is_active(now)

    def test_no_expiry_and_not_permanent_inactive(self):
        assert not Exclusion(pattern_type="x").is_active()

    def test_non_dict_context_defaults(self):
        assert Exclusion(pattern_type="x", context=None).context == {}


class TestBurnoutAssessment:

    def test_record_omits_unset_markers_but_keeps_null_signals(self):
        assessment = BurnoutAssessment(
            risk_score=0.2,
            factors={"moodTrajectory": BurnoutFactor(score=0.1)},
        )
        record = assessment.to_record()
        assert "recoveryDiscount" not in record
        assert "insufficientData" not in record
        assert record["factors"]["moodTrajectory"] == {"score": 0.1, "signal": None}
        assert record["riskLevel"] == "low"
        assert record["triggerShelterMode"] is False

    def test_score_bounds(self):
        with pytest.raises(ValidationError):
            BurnoutAssessment(risk_score=1.5)


# ============================================================================
# Timestamps & persistence helpers
# ============================================================================

class TestTimestamps:

    def test_zulu(self):
        assert parse_timestamp("2026-03-02T10:00:00Z").tzinfo == timezone.utc

    def test_naive_treated_as_utc(self):
        assert parse_timestamp("2026-03-02T10:00:00").tzinfo == timezone.utc

    def test_offset_wall_clock_kept(self):
        dt = parse_timestamp("2026-03-02T23:30:00-08:00")
        assert dt.hour == 23

    @pytest.mark.parametrize("value", [None, "", "not a date"])
    def test_unparseable(self, value):
        assert parse_timestamp(value) is None


class TestPersistence:

    def test_atomic_write_json(self, tmp_path):
        path = tmp_path / "sub" / "doc.json"
        atomic_write_json(path, {"a": 1})
        assert json.loads(path.read_text()) == {"a": 1}
        assert not (tmp_path / "sub" / "doc.json.tmp").exists()

