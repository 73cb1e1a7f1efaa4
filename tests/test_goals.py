# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""Goal lifecycle tests — detection, upsert, terminal states, user transitions."""

from datetime import datetime, timedelta, timezone

import pytest

from insights import goals
from insights.config import InsightsConfig
from insights.events import Events
from insights.goals import (
    append_history,
    days_since_update,
    extract_goal_topic,
    list_goal_states,
    normalize_topic_key,
    process_entry_for_goals,
    resolve_goal_action,
    transition_goal,
    upsert_goal_state,
)
from insights.schemas import InsightsNotFoundError, InsightsValidationError, StoreConflictError

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Text helpers
# ============================================================================

class TestTopicExtraction:

    def test_declaration_truncated_at_punctuation(self):
        assert extract_goal_topic("I want to run a marathon. It'll be hard") == "run a marathon"

    def test_contraction_form_uses_description(self):
        assert extract_goal_topic("I'm going to learn piano, finally") == "learn piano"

    def test_inline_tag_first(self):
        assert extract_goal_topic("trying to relax @goal:learn_spanish") == "learn spanish"

    def test_capped_at_100_chars(self):
        assert len(extract_goal_topic("My goal is to " + "x" * 300)) == 100

    def test_no_declaration(self):
        assert extract_goal_topic("Nice walk by the river") is None
        assert extract_goal_topic("") is None

    @pytest.mark.parametrize("topic,key", [
        ("Run a Marathon", "run_a_marathon"),
        ("  learn   piano! ", "learn_piano"),
        ("café time", "caf_time"),
    ])
    def test_normalize_topic_key(self, topic, key):
        assert normalize_topic_key(topic) == key


class TestHistoryCap:

    def test_keeps_first_and_newest(self):
        history = [{"n": i} for i in range(25)]
        capped = append_history(history, {"n": 25}, cap=20)
        assert len(capped) == 20
        assert capped[0] == {"n": 0}
        assert capped[-1] == {"n": 25}
        assert capped[1] == {"n": 7}

    def test_under_cap_untouched(self):
        assert append_history([{"n": 0}], {"n": 1}) == [{"n": 0}, {"n": 1}]


# ============================================================================
# Upsert
# ============================================================================

class TestUpsert:

    def test_creates_proposed_goal(self, store, emitted):
        result = upsert_goal_state(store, "u1", "Learn piano", "e1", "new",
                                   {"originalText": "I want to learn piano"}, now=NOW)
        assert result["isNew"] is True
        assert result["id"] == "goal-learn_piano"
        assert result["state"] == "proposed"
        assert result["displayName"] == "Learn piano"
        assert result["sourceEntries"] == ["e1"]
        assert result["stateHistory"] == [
            {"from": None, "to": "proposed", "at": NOW.isoformat(), "context": {"detectedFrom": "e1"}},
        ]
        assert result["metadata"]["originalText"] == "I want to learn piano"
        assert emitted.of(Events.GOAL_CREATED)[0].data["topic"] == "learn_piano"

    @pytest.mark.parametrize("update_type", ["termination", "achievement"])
    def test_refuses_to_create_from_ending(self, store, update_type):
        assert upsert_goal_state(store, "u1", "learn piano", "e1", update_type) is None
        assert list_goal_states(store, "u1") == []

    def test_progress_auto_confirms(self, store):
        upsert_goal_state(store, "u1", "learn piano", "e1", "new", now=NOW)
        result = upsert_goal_state(store, "u1", "learn piano", "e2", "progress", now=NOW)
        assert result["state"] == "active"
        assert result["previousState"] == "proposed"
        assert result["stateHistory"][-1]["context"] == {"autoConfirmed": True, "progressEntry": "e2"}

    def test_mention_only_touches(self, store):
        upsert_goal_state(store, "u1", "learn piano", "e1", "new", now=NOW)
        later = NOW + timedelta(days=3)
        result = upsert_goal_state(store, "u1", "learn piano", "e2", "mention", now=later)
        assert result["state"] == "proposed"
        assert len(result["stateHistory"]) == 1
        assert result["lastUpdated"] == later.isoformat()
        assert result["sourceEntries"] == ["e1", "e2"]

    def test_same_entry_not_duplicated(self, store):
        upsert_goal_state(store, "u1", "learn piano", "e1", "new")
        result = upsert_goal_state(store, "u1", "learn piano", "e1", "mention")
        assert result["sourceEntries"] == ["e1"]

    def test_termination_context(self, store):
        upsert_goal_state(store, "u1", "learn piano", "e1", "new")
        result = upsert_goal_state(store, "u1", "learn piano", "e2", "termination")
        assert result["state"] == "abandoned"
        assert result["stateHistory"][-1]["context"] == {"terminationEntry": "e2", "reason": "termination_language"}

    @pytest.mark.parametrize("update_type", ["new", "mention", "progress", "achievement", "termination"])
    def test_terminal_goal_never_changes(self, store, update_type):
        upsert_goal_state(store, "u1", "learn piano", "e1", "new")
        upsert_goal_state(store, "u1", "learn piano", "e2", "achievement")
        result = upsert_goal_state(store, "u1", "learn piano", "e3", update_type)
        assert result["skipped"] is True
        stored = goals.get_goal_state(store, "u1", "learn piano")
        assert stored["state"] == "achieved"
        assert "e3" not in stored["sourceEntries"]

    def test_empty_topic_ignored(self, store):
        assert upsert_goal_state(store, "u1", "!!!", "e1", "new") is None


class TestUpsertConcurrency:

    def test_retries_after_concurrent_write(self, store, monkeypatch):
        upsert_goal_state(store, "u1", "learn piano", "e1", "new")
        stale = goals.get_goal_state(store, "u1", "learn piano")
        # Another writer touches the record after we read it
        store.update("u1", "signal_states", stale["id"], {"lastUpdated": "2026-01-01T00:00:00+00:00"})

        real = goals.get_goal_state
        calls = []

        def first_read_stale(store_, user_id, topic):
            calls.append(topic)
            return stale if len(calls) == 1 else real(store_, user_id, topic)

        monkeypatch.setattr(goals, "get_goal_state", first_read_stale)
        result = upsert_goal_state(store, "u1", "learn piano", "e2", "progress")
        assert len(calls) == 2
        assert result["state"] == "active"

    def test_concurrent_create_becomes_update(self, store, monkeypatch):
        upsert_goal_state(store, "u1", "learn piano", "e1", "new")
        real = goals.get_goal_state
        calls = []

        def first_read_missing(store_, user_id, topic):
            calls.append(topic)
            return None if len(calls) == 1 else real(store_, user_id, topic)

        monkeypatch.setattr(goals, "get_goal_state", first_read_missing)
        result = upsert_goal_state(store, "u1", "learn piano", "e2", "new")
        assert "isNew" not in result
        assert result["sourceEntries"] == ["e1", "e2"]
        assert len(list_goal_states(store, "u1")) == 1

    def test_gives_up_after_bounded_retries(self, store, monkeypatch):
        upsert_goal_state(store, "u1", "learn piano", "e1", "new")
        stale = goals.get_goal_state(store, "u1", "learn piano")
        store.update("u1", "signal_states", stale["id"], {"lastUpdated": "2026-01-01T00:00:00+00:00"})
        monkeypatch.setattr(goals, "get_goal_state", lambda *a: stale)
        with pytest.raises(StoreConflictError):
            upsert_goal_state(store, "u1", "learn piano", "e2", "progress",
                              config=InsightsConfig(upsert_retries=2))


# ============================================================================
# Entry processing
# ============================================================================

class TestProcessEntry:

    def test_marathon_lifecycle(self, store, make_entry):
        first = process_entry_for_goals(store, "u1", make_entry("I want to run a marathon"))
        assert first["topic"] == "run_a_marathon"
        assert first["state"] == "proposed"

        second = process_entry_for_goals(store, "u1", make_entry("I'm giving up on the marathon"))
        assert second["state"] == "abandoned"
        assert second["previousState"] == "proposed"

        third = process_entry_for_goals(store, "u1", make_entry("I want to run a marathon"))
        assert third["skipped"] is True

        all_goals = list_goal_states(store, "u1")
        assert len(all_goals) == 1
        assert all_goals[0]["state"] == "abandoned"

    def test_structured_goal_update_first(self, store, make_entry):
        entry = make_entry("I want to bake bread", analysis={
            "goal_update": {"tag": "@goal:learn_guitar", "status": "progress"},
        })
        result = process_entry_for_goals(store, "u1", entry)
        assert result["topic"] == "learn_guitar"
        assert goals.get_goal_state(store, "u1", "bake bread") is None

    def test_structured_achievement_of_unknown_goal(self, store, make_entry):
        entry = make_entry("Done!", analysis={"goal_update": {"tag": "@goal:learn_guitar", "status": "achieved"}})
        assert process_entry_for_goals(store, "u1", entry) is None

    def test_explicit_tag_with_achievement_language(self, store, make_entry):
        process_entry_for_goals(store, "u1", make_entry("starting out", tags=["@goal:learn_guitar"]))
        result = process_entry_for_goals(store, "u1", make_entry("Finished the course!", tags=["@goal:learn_guitar"]))
        assert result["state"] == "achieved"
        assert result["stateHistory"][-1]["context"] == {"achievementEntry": "e002"}

    def test_declaration_with_progress_language(self, store, make_entry):
        process_entry_for_goals(store, "u1", make_entry("I want to learn piano"))
        result = process_entry_for_goals(
            store, "u1", make_entry("I want to learn piano. Improving every week"),
        )
        assert result["state"] == "active"

    def test_implicit_achievement(self, store, make_entry):
        process_entry_for_goals(store, "u1", make_entry("Hoping to write a novel"))
        result = process_entry_for_goals(store, "u1", make_entry("Finished the novel draft tonight"))
        assert result["topic"] == "write_a_novel"
        assert result["state"] == "achieved"

    def test_implicit_match_needs_long_token(self, store, make_entry):
        process_entry_for_goals(store, "u1", make_entry("I want to go to gym"))
        assert process_entry_for_goals(store, "u1", make_entry("giving up on the gym")) is None

    def test_implicit_match_token_length_configurable(self, store, make_entry):
        process_entry_for_goals(store, "u1", make_entry("I want to go to gym"))
        result = process_entry_for_goals(store, "u1", make_entry("giving up on the gym"),
                                         config=InsightsConfig(implicit_match_min_token=3))
        assert result["state"] == "abandoned"

    def test_plain_entry_no_goal(self, store, make_entry):
        assert process_entry_for_goals(store, "u1", make_entry("Lovely dinner with Sam")) is None

    def test_accepts_unsaved_record(self, store, make_entry):
        record = make_entry("My goal is to read 20 books", save=False)
        assert process_entry_for_goals(store, "u1", record)["topic"] == "read_20_books"


# ============================================================================
# User-driven transitions
# ============================================================================

class TestTransitions:

    def test_valid_transition(self, store):
        goal = upsert_goal_state(store, "u1", "learn piano", "e1", "new")
        result = transition_goal(store, "u1", goal["id"], "active", {"userAction": "confirm"}, now=NOW)
        assert result["state"] == "active"
        assert result["stateHistory"][-1]["from"] == "proposed"

    def test_terminal_cannot_reopen(self, store):
        goal = upsert_goal_state(store, "u1", "learn piano", "e1", "new")
        transition_goal(store, "u1", goal["id"], "abandoned")
        with pytest.raises(InsightsValidationError):
            transition_goal(store, "u1", goal["id"], "active")

    def test_proposed_cannot_pause(self, store):
        goal = upsert_goal_state(store, "u1", "learn piano", "e1", "new")
        with pytest.raises(InsightsValidationError):
            transition_goal(store, "u1", goal["id"], "paused")

    def test_missing_signal(self, store):
        with pytest.raises(InsightsNotFoundError):
            transition_goal(store, "u1", "goal-nothing", "active")

    def test_history_capped_over_many_cycles(self, store):
        goal = upsert_goal_state(store, "u1", "learn piano", "e1", "new")
        transition_goal(store, "u1", goal["id"], "active")
        for _ in range(15):
            transition_goal(store, "u1", goal["id"], "paused")
            transition_goal(store, "u1", goal["id"], "active")
        history = goals.get_goal_state(store, "u1", "learn piano")["stateHistory"]
        assert len(history) == 20
        assert history[0]["from"] is None
        assert history[-1]["to"] == "active"

    def test_reactivate_proposed(self, store):
        goal = upsert_goal_state(store, "u1", "learn piano", "e1", "new")
        assert resolve_goal_action(store, "u1", goal["id"], "reactivate")["state"] == "active"

    def test_reactivate_active_only_touches(self, store):
        goal = upsert_goal_state(store, "u1", "learn piano", "e1", "new", now=NOW - timedelta(days=40))
        transition_goal(store, "u1", goal["id"], "active", now=NOW - timedelta(days=40))
        result = resolve_goal_action(store, "u1", goal["id"], "reactivate", now=NOW)
        assert result["state"] == "active"
        assert result["lastUpdated"] == NOW.isoformat()
        assert len(result["stateHistory"]) == 2

    def test_achieve_and_abandon_actions(self, store):
        a = upsert_goal_state(store, "u1", "learn piano", "e1", "new")
        b = upsert_goal_state(store, "u1", "learn chess", "e1", "new")
        assert resolve_goal_action(store, "u1", a["id"], "achieve")["state"] == "achieved"
        assert resolve_goal_action(store, "u1", b["id"], "abandon")["state"] == "abandoned"

    def test_unknown_action(self, store):
        with pytest.raises(InsightsValidationError):
            resolve_goal_action(store, "u1", "goal-x", "snooze")


class TestDaysSinceUpdate:

    def test_whole_days(self):
        goal = {"lastUpdated": (NOW - timedelta(days=3, hours=23)).isoformat()}
        assert days_since_update(goal, NOW) == 3

    def test_naive_now_is_utc(self):
        goal = {"lastUpdated": (NOW - timedelta(days=20)).isoformat()}
        assert days_since_update(goal, NOW.replace(tzinfo=None)) == 20

    def test_naive_stored_timestamp_is_utc(self):
        goal = {"lastUpdated": "2026-02-20T12:00:00"}
        assert days_since_update(goal, NOW) == 18

    def test_never_updated(self):
        assert days_since_update({}, NOW.replace(tzinfo=None)) == 999
