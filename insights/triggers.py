# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""
EchoVault Triggers — wires entry events to the engine.

    entry_created  (priority 10)  goals, then patterns
    entry_created  (priority 0)   burnout check
    entry_updated                 whatever the new analysis unlocked

Goals always run before patterns so the pattern engine sees the freshest
signal states. A failing step is logged and the next one still runs;
passive recomputes never raise to the emitter. On-demand refreshes do.
"""

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from insights.burnout import assess_burnout_for_user
from insights.config import InsightsConfig
from insights.events import Event, EventBus, Events, bus as default_bus
from insights.goals import process_entry_for_goals
from insights.patterns import ENTRIES, compute_all_patterns
from insights.schemas import (
    EntryAnalysis,
    InsightsError,
    InsightsNotFoundError,
    JournalEntry,
    isoformat,
)
from insights.store import ArrayUnion, DocumentStore

logger = logging.getLogger("echovault.triggers")


class EntryClassifier(Protocol):
    """External NL classifier. Returns the provider analysis shape."""

    def classify(self, text: str) -> Mapping[str, Any]:
        ...


# ============================================================================
# Steps
# ============================================================================

def _run_goals(store: DocumentStore, user_id: str, entry: Dict[str, Any], config) -> Optional[Dict]:
    try:
        result = process_entry_for_goals(store, user_id, entry, config=config)
    except Exception as e:
        logger.error("Goal processing failed for user %s entry %s: %s", user_id, entry.get("id"), e)
        return None
    if result:
        outcome = "created new goal" if result.get("isNew") else (
            "skipped (terminated)" if result.get("skipped") else "updated existing goal"
        )
        logger.info("Goal processing result: %s", outcome)
    return result


def _run_patterns(store: DocumentStore, user_id: str, config) -> Optional[Dict]:
    try:
        return compute_all_patterns(store, user_id, config=config)
    except Exception as e:
        logger.error("Error computing patterns for user %s: %s", user_id, e)
        return None


def _run_burnout(store: DocumentStore, user_id: str, entry_id: Optional[str], config):
    try:
        return assess_burnout_for_user(store, user_id, triggering_entry_id=entry_id, config=config)
    except Exception as e:
        logger.error("Error checking burnout for user %s: %s", user_id, e)
        return None


def _load_entry(store: DocumentStore, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    entry = data.get("entry")
    if entry is None:
        entry = store.get(data["user_id"], ENTRIES, data["entry_id"])
    if entry is None:
        logger.warning("Entry %s vanished before processing", data.get("entry_id"))
    return entry


# ============================================================================
# Handlers
# ============================================================================

def handle_entry_created(
    store: DocumentStore,
    user_id: str,
    entry: Dict[str, Any],
    config: Optional[InsightsConfig] = None,
) -> Dict[str, Any]:
    """Goals to completion, then patterns on whatever state goals left behind."""
    goal_result = _run_goals(store, user_id, entry, config)
    bundle = _run_patterns(store, user_id, config)
    return {"goal": goal_result, "patterns": bundle}


def handle_entry_updated(
    store: DocumentStore,
    user_id: str,
    before: Optional[Dict[str, Any]],
    after: Dict[str, Any],
    config: Optional[InsightsConfig] = None,
) -> Dict[str, bool]:
    """
    Recompute only what the update newly made possible.

    goal_update appearing runs the goal processor; mood_score appearing
    runs patterns and burnout. Fields that merely changed are ignored.
    """
    old = EntryAnalysis.model_validate((before or {}).get("analysis") or {})
    new = EntryAnalysis.model_validate(after.get("analysis") or {})
    goal_appeared = old.goal_update is None and new.goal_update is not None
    mood_appeared = old.mood_score is None and new.mood_score is not None

    ran = {"goals": False, "patterns": False, "burnout": False}
    if goal_appeared:
        logger.info("Goal update detected for user %s, processing goals...", user_id)
        _run_goals(store, user_id, after, config)
        ran["goals"] = True
    if mood_appeared:
        logger.info("Mood score added for user %s, recomputing patterns...", user_id)
        _run_patterns(store, user_id, config)
        _run_burnout(store, user_id, after.get("id"), config)
        ran["patterns"] = ran["burnout"] = True
    return ran


def register_triggers(
    store: DocumentStore,
    event_bus: Optional[EventBus] = None,
    config: Optional[InsightsConfig] = None,
) -> List[Tuple[str, Callable[[Event], None]]]:
    """Subscribe the engine to entry events. Returns (event, handler) pairs for off()."""
    event_bus = event_bus or default_bus

    def on_created(event: Event) -> None:
        entry = _load_entry(store, event.data)
        if entry is not None:
            handle_entry_created(store, event.data["user_id"], entry, config)

    def on_created_burnout(event: Event) -> None:
        _run_burnout(store, event.data["user_id"], event.data.get("entry_id"), config)

    def on_updated(event: Event) -> None:
        after = _load_entry(store, {**event.data, "entry": event.data.get("after")})
        if after is not None:
            handle_entry_updated(store, event.data["user_id"], event.data.get("before"), after, config)

    handlers = [
        (Events.ENTRY_CREATED, on_created, 10, "triggers.goals_patterns"),
        (Events.ENTRY_CREATED, on_created_burnout, 0, "triggers.burnout"),
        (Events.ENTRY_UPDATED, on_updated, 0, "triggers.entry_updated"),
    ]
    for event_type, handler, priority, source in handlers:
        event_bus.on(event_type, handler, priority=priority, source=source)
    logger.debug("Registered %d entry triggers", len(handlers))
    return [(event_type, handler) for event_type, handler, _, _ in handlers]


# ============================================================================
# Entry capture
# ============================================================================

def capture_entry(
    store: DocumentStore,
    user_id: str,
    text: str,
    created_at: Optional[str] = None,
    effective_date: Optional[str] = None,
    category: Optional[str] = None,
    tags: Optional[List[str]] = None,
    analysis: Optional[Mapping[str, Any]] = None,
    entry_id: Optional[str] = None,
    event_bus: Optional[EventBus] = None,
) -> Dict[str, Any]:
    """Persist a new entry and announce it."""
    event_bus = event_bus or default_bus
    entry = JournalEntry(
        id=entry_id or "pending",
        text=text,
        created_at=created_at or isoformat(),
        effective_date=effective_date,
        category=category,
        tags=tags or [],
        analysis=analysis,
    )
    record = entry.to_record()
    record.pop("id", None)
    if entry_id:
        stored = store.create(user_id, ENTRIES, entry_id, record)
    else:
        stored = store.get(user_id, ENTRIES, store.add(user_id, ENTRIES, record))

    event_bus.emit(Events.ENTRY_CREATED, {
        "user_id": user_id, "entry_id": stored["id"], "entry": stored,
    }, source="capture")
    return stored


def attach_analysis(
    store: DocumentStore,
    user_id: str,
    entry_id: str,
    classifier: EntryClassifier,
    event_bus: Optional[EventBus] = None,
) -> Optional[Dict[str, Any]]:
    """
    Classify an entry and store the normalized analysis.

    Classifier failures are logged and the entry is left as it was
    (returns None); the next event gives it another chance.
    """
    event_bus = event_bus or default_bus
    before = store.get(user_id, ENTRIES, entry_id)
    if before is None:
        raise InsightsNotFoundError(f"Entry not found: {entry_id}")

    try:
        raw = classifier.classify(before.get("text") or "")
        analysis = EntryAnalysis.model_validate(raw)
    except Exception as e:
        logger.error("Analysis failed for entry %s: %s", entry_id, e)
        event_bus.emit(Events.ANALYSIS_FAILED, {
            "user_id": user_id, "entry_id": entry_id, "error": str(e),
        }, source="capture")
        return None

    after = store.update(user_id, ENTRIES, entry_id, {
        "analysis": analysis.model_dump(mode="json", exclude_none=True),
        "tags": ArrayUnion(*analysis.tags),
    })
    event_bus.emit(Events.ENTRY_UPDATED, {
        "user_id": user_id, "entry_id": entry_id, "before": before, "after": after,
    }, source="capture")
    return after


# ============================================================================
# On-demand
# ============================================================================

def refresh_patterns(
    store: DocumentStore,
    user_id: str,
    category: Optional[str] = None,
    config: Optional[InsightsConfig] = None,
) -> int:
    """User-requested recompute. Returns the number of summary insights."""
    logger.info("Manual pattern refresh requested for user %s", user_id)
    try:
        bundle = compute_all_patterns(store, user_id, category, config=config)
    except Exception as e:
        logger.error("Error refreshing patterns for user %s: %s", user_id, e)
        raise InsightsError("Failed to refresh patterns") from e
    return len(bundle["summary"]) if bundle else 0
