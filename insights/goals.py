# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""
EchoVault Goals — goal lifecycle sourced from signal states.

Storage: users/<uid>/signal_states/goal-<topic>.json (one record per goal)

Goals move proposed -> active -> achieved | abandoned (paused on user
request). achieved and abandoned are terminal: once a goal lands there,
no later entry can revive it, even one repeating the original
declaration. The pattern engine reads goals from here only, so a goal
that scrolled out of the recent-entry window can't come back as a ghost.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

from insights import lexicon
from insights.config import InsightsConfig, load_config
from insights.events import bus, Events
from insights.schemas import (
    GOAL_STATES,
    OPEN_GOAL_STATES,
    InsightsNotFoundError,
    InsightsValidationError,
    JournalEntry,
    SignalState,
    StateTransition,
    StoreConflictError,
    isoformat,
    parse_timestamp,
)
from insights.store import REV_FIELD, ArrayUnion, DocumentStore

logger = logging.getLogger("echovault.goals")

COLLECTION = "signal_states"

# Update types
NEW = "new"
MENTION = "mention"
PROGRESS = "progress"
ACHIEVEMENT = "achievement"
TERMINATION = "termination"

STATUS_TO_UPDATE = {
    "achieved": ACHIEVEMENT,
    "abandoned": TERMINATION,
    "progress": PROGRESS,
    "struggling": PROGRESS,
}

# User-driven transitions (contradiction actions, settings screen)
VALID_TRANSITIONS = {
    "proposed": ("active", "achieved", "abandoned"),
    "active": ("achieved", "abandoned", "paused"),
    "paused": ("active", "achieved", "abandoned"),
    "achieved": (),
    "abandoned": (),
}

GOAL_ACTIONS = {
    "reactivate": "active",
    "achieve": "achieved",
    "abandon": "abandoned",
}

EntryLike = Union[JournalEntry, Dict[str, Any]]


# ============================================================================
# Text helpers
# ============================================================================

def normalize_topic_key(topic: str) -> str:
    """'Run a Marathon!' -> 'run_a_marathon'"""
    key = re.sub(r"\s+", "_", topic.strip().lower())
    return re.sub(r"[^a-z0-9_]", "", key)


def goal_doc_id(topic_key: str) -> str:
    return f"goal-{topic_key}"


def extract_goal_topic(text: str) -> Optional[str]:
    """Goal description from an inline @goal: tag or a declaration phrase."""
    if not text:
        return None
    tag_match = lexicon.GOAL_TAG_RE.search(text)
    if tag_match:
        return tag_match.group(1).replace("_", " ")

    match = lexicon.first_match(text, lexicon.GOAL_DECLARATION)
    if not match:
        return None
    # The description is always the last group
    goal_text = match.group(match.re.groups)
    topic = re.sub(r"[.!?,;:].*$", "", goal_text).strip()[:100]
    return topic or None


def classify_update_language(text: str) -> str:
    """termination > achievement > progress > mention"""
    if lexicon.matches(text, lexicon.GOAL_TERMINATION):
        return TERMINATION
    if lexicon.matches(text, lexicon.GOAL_ACHIEVEMENT):
        return ACHIEVEMENT
    if lexicon.matches(text, lexicon.GOAL_PROGRESS):
        return PROGRESS
    return MENTION


def append_history(history: Sequence[Dict], record: Dict, cap: int = 20) -> List[Dict]:
    """Append, then keep the creation record plus the newest cap-1."""
    result = list(history) + [record]
    if len(result) > cap:
        result = [result[0]] + result[-(cap - 1):]
    return result


# ============================================================================
# Reads
# ============================================================================

def get_goal_state(store: DocumentStore, user_id: str, topic: str) -> Optional[Dict]:
    key = normalize_topic_key(topic)
    found = store.query(user_id, COLLECTION, where=[("type", "==", "goal"), ("topic", "==", key)], limit=1)
    return found[0] if found else None


def list_goal_states(
    store: DocumentStore,
    user_id: str,
    states: Optional[Sequence[str]] = None,
) -> List[Dict]:
    """Goal records, most recently updated first."""
    where = [("type", "==", "goal")]
    if states:
        where.append(("state", "in", list(states)))
    return store.query(user_id, COLLECTION, where=where, order_by="lastUpdated", descending=True)


# ============================================================================
# Upsert
# ============================================================================

def _next_state(state: str, update_type: str, entry_id: str):
    if update_type == TERMINATION:
        return "abandoned", {"terminationEntry": entry_id, "reason": "termination_language"}
    if update_type == ACHIEVEMENT:
        return "achieved", {"achievementEntry": entry_id}
    if update_type == PROGRESS and state == "proposed":
        return "active", {"autoConfirmed": True, "progressEntry": entry_id}
    # mention / new / progress on an active goal: freshness only
    return state, None


def _upsert_once(
    store: DocumentStore,
    user_id: str,
    topic: str,
    key: str,
    entry_id: str,
    update_type: str,
    context: Dict[str, Any],
    stamp: str,
    config: InsightsConfig,
) -> Optional[Dict]:
    existing = get_goal_state(store, user_id, key)

    if existing is None:
        if update_type in (TERMINATION, ACHIEVEMENT):
            logger.info("Skipping goal creation for %s - %s without existing goal", key, update_type)
            return None

        original_text = context.get("originalText")
        goal = SignalState(
            topic=key,
            display_name=topic,
            state="proposed",
            state_history=[StateTransition(
                from_state=None, to_state="proposed", at=stamp,
                context={"detectedFrom": entry_id},
            )],
            source_entries=[entry_id],
            metadata={
                "detectedAt": stamp,
                "originalText": original_text[:500] if isinstance(original_text, str) else None,
            },
            created_at=stamp,
            last_updated=stamp,
        )
        stored = store.create(user_id, COLLECTION, goal_doc_id(key), goal.to_record())
        logger.info("Created new goal: %s (%s)", key, stored["id"])
        bus.emit(Events.GOAL_CREATED, {
            "user_id": user_id, "signal_id": stored["id"], "topic": key,
        }, source="goals")
        return {**stored, "isNew": True}

    current = SignalState.model_validate(existing)
    if current.is_terminal:
        logger.info("Skipping update for terminated goal: %s (%s)", key, current.state)
        bus.emit(Events.GOAL_SKIPPED, {
            "user_id": user_id, "signal_id": existing["id"], "topic": key, "state": current.state,
        }, source="goals")
        return {**existing, "skipped": True}

    new_state, transition_context = _next_state(current.state, update_type, entry_id)
    fields: Dict[str, Any] = {
        "lastUpdated": stamp,
        "sourceEntries": ArrayUnion(entry_id),
    }
    if new_state != current.state:
        record = StateTransition(
            from_state=current.state, to_state=new_state, at=stamp, context=transition_context,
        ).to_record()
        fields["state"] = new_state
        fields["stateHistory"] = append_history(
            existing.get("stateHistory") or [], record, config.max_state_history,
        )

    stored = store.update(
        user_id, COLLECTION, existing["id"], fields,
        expected_revision=existing.get(REV_FIELD),
    )
    logger.info("Updated goal %s: %s → %s", key, current.state, new_state)
    bus.emit(Events.GOAL_UPDATED, {
        "user_id": user_id, "signal_id": existing["id"], "topic": key,
        "state": new_state, "previous_state": current.state,
    }, source="goals")
    return {**stored, "previousState": current.state}


def upsert_goal_state(
    store: DocumentStore,
    user_id: str,
    topic: str,
    entry_id: str,
    update_type: str,
    context: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    config: Optional[InsightsConfig] = None,
) -> Optional[Dict]:
    """
    Create or transition the goal for a topic.

    Returns the stored record (flagged isNew / skipped / previousState),
    or None when a termination or achievement names a goal that doesn't
    exist. The write is a compare-and-swap on the record's revision and
    is retried against fresh state when a concurrent writer wins.
    """
    config = config or load_config()
    key = normalize_topic_key(topic)
    if not key:
        return None
    stamp = isoformat(now)

    for attempt in range(1, config.upsert_retries + 1):
        try:
            return _upsert_once(
                store, user_id, topic, key, entry_id, update_type,
                context or {}, stamp, config,
            )
        except StoreConflictError:
            if attempt == config.upsert_retries:
                raise
            logger.info("Concurrent write on goal %s, retrying (%d/%d)", key, attempt, config.upsert_retries)
    return None


# ============================================================================
# Entry processing
# ============================================================================

def _find_implicit_target(
    store: DocumentStore,
    user_id: str,
    text: str,
    min_token: int,
) -> Optional[str]:
    lowered = text.lower()
    for goal in list_goal_states(store, user_id, states=OPEN_GOAL_STATES):
        words = goal.get("topic", "").split("_")
        if any(len(w) >= min_token and w in lowered for w in words):
            return goal["topic"]
    return None


def process_entry_for_goals(
    store: DocumentStore,
    user_id: str,
    entry: EntryLike,
    now: Optional[datetime] = None,
    config: Optional[InsightsConfig] = None,
) -> Optional[Dict]:
    """
    Extract a goal signal from one entry and apply it.

    First match wins:
      1. classifier goal_update {tag, status}
      2. explicit @goal: tag, update type from the text
      3. a declaration in the text ("I want to ...")
      4. termination/achievement language naming an open goal
    """
    config = config or load_config()
    if not isinstance(entry, JournalEntry):
        entry = JournalEntry.from_record(entry)
    text = entry.text
    context = {"originalText": text}

    def upsert(topic: str, update_type: str) -> Optional[Dict]:
        return upsert_goal_state(store, user_id, topic, entry.id, update_type, context, now, config)

    goal_update = entry.analysis.goal_update if entry.analysis else None
    if goal_update is not None:
        topic = goal_update.tag.replace("@goal:", "").replace("_", " ")
        return upsert(topic, STATUS_TO_UPDATE.get(goal_update.status or "", MENTION))

    goal_tag = next((t for t in entry.tags if t.startswith("@goal:")), None)
    if goal_tag:
        topic = goal_tag.replace("@goal:", "").replace("_", " ")
        return upsert(topic, classify_update_language(text))

    topic = extract_goal_topic(text)
    if topic:
        update_type = classify_update_language(text)
        return upsert(topic, NEW if update_type == MENTION else update_type)

    terminates = lexicon.matches(text, lexicon.GOAL_TERMINATION)
    achieves = lexicon.matches(text, lexicon.GOAL_ACHIEVEMENT)
    if terminates or achieves:
        target = _find_implicit_target(store, user_id, text, config.implicit_match_min_token)
        if target:
            return upsert(target, ACHIEVEMENT if achieves else TERMINATION)

    return None


# ============================================================================
# User-driven transitions
# ============================================================================

def transition_goal(
    store: DocumentStore,
    user_id: str,
    signal_id: str,
    new_state: str,
    context: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    config: Optional[InsightsConfig] = None,
) -> Dict:
    """Validated state change requested by the user."""
    config = config or load_config()
    if new_state not in GOAL_STATES:
        raise InsightsValidationError(f"Unknown goal state: {new_state}")
    doc = store.get(user_id, COLLECTION, signal_id)
    if doc is None:
        raise InsightsNotFoundError(f"Signal not found: {signal_id}")
    current = SignalState.model_validate(doc)
    if new_state not in VALID_TRANSITIONS[current.state]:
        raise InsightsValidationError(f"Invalid transition from {current.state} to {new_state}")

    stamp = isoformat(now)
    record = StateTransition(
        from_state=current.state, to_state=new_state, at=stamp, context=context or {},
    ).to_record()
    stored = store.update(user_id, COLLECTION, signal_id, {
        "state": new_state,
        "stateHistory": append_history(doc.get("stateHistory") or [], record, config.max_state_history),
        "lastUpdated": stamp,
    }, expected_revision=doc.get(REV_FIELD))

    logger.info("Transitioned signal %s: %s → %s", signal_id, current.state, new_state)
    bus.emit(Events.GOAL_UPDATED, {
        "user_id": user_id, "signal_id": signal_id, "topic": current.topic,
        "state": new_state, "previous_state": current.state,
    }, source="goals")
    return stored


def resolve_goal_action(
    store: DocumentStore,
    user_id: str,
    signal_id: str,
    action: str,
    now: Optional[datetime] = None,
) -> Dict:
    """Apply a goal-abandonment contradiction action: reactivate, achieve or abandon."""
    if action not in GOAL_ACTIONS:
        raise InsightsValidationError(f"Unknown goal action: {action}")
    target = GOAL_ACTIONS[action]

    doc = store.get(user_id, COLLECTION, signal_id)
    if doc is None:
        raise InsightsNotFoundError(f"Signal not found: {signal_id}")
    if doc.get("state") == target == "active":
        # Still working on it: just reset the staleness clock
        return store.update(user_id, COLLECTION, signal_id, {"lastUpdated": isoformat(now)})
    return transition_goal(store, user_id, signal_id, target, {"userAction": action}, now=now)


def days_since_update(goal: Dict, now: datetime) -> int:
    """Whole days since lastUpdated; 999 when it was never recorded. Naive times are UTC."""
    last = parse_timestamp(goal.get("lastUpdated"))
    if last is None:
        return 999
    return int((parse_timestamp(now) - last).total_seconds() // 86400)
