# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""
EchoVault Patterns — statistical pattern families over recent entries.

Four documents per run, written in one batch:
  - activity_sentiment: which tagged entities move mood, relative to baseline
  - temporal:           mood by day of week and time of day
  - contradictions:     stated intent vs observed behavior
  - summary:            up to five headline insights

Goals come from the signal-state store only. Activity patterns and
contradictions pass through the user's exclusions before the summary is
built, so a dismissed insight never resurfaces as a headline.

Each run stamps a revision when it starts. The batch only lands if the
stored summary isn't newer, so a slow run can't overwrite a fresher one.
"""

import logging
import math
import time
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from insights import lexicon
from insights.config import InsightsConfig, load_config
from insights.events import bus, Events
from insights.exclusions import fetch_active_exclusions, filter_excluded_patterns
from insights.goals import days_since_update, list_goal_states
from insights.schemas import (
    OPEN_GOAL_STATES,
    InsightsError,
    JournalEntry,
    PatternDocument,
    StoreConflictError,
    isoformat,
    utcnow,
)
from insights.store import DocumentStore

logger = logging.getLogger("echovault.patterns")

COLLECTION = "patterns"
ENTRIES = "entries"

ACTIVITY = "activity_sentiment"
TEMPORAL = "temporal"
CONTRADICTIONS = "contradictions"
SUMMARY = "summary"
PATTERN_NAMES = (ACTIVITY, TEMPORAL, CONTRADICTIONS, SUMMARY)

ENTITY_NAMESPACES = ("@activity:", "@place:", "@person:", "@event:", "@media:", "@food:")
AVOIDABLE_NAMESPACES = ("@food:", "@activity:", "@media:")

SENTIMENT_THRESHOLD = 0.1
INSIGHT_MIN_PERCENT = 10
DEFAULT_BASELINE = 0.5

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
TIME_BLOCKS = ("morning", "afternoon", "evening", "night")
WORST_DAY_BELOW = 0.45
BEST_DAY_ABOVE = 0.6

SENTIMENT_MIN_MENTIONS = 3
AVOIDANCE_POSITIVE_MOOD = 0.6
AVOIDANCE_MIN_MENTIONS = 2

GOAL_ACTIONS = [
    {"label": "Still working on it", "action": "reactivate"},
    {"label": "Completed!", "action": "achieve"},
    {"label": "No longer a priority", "action": "abandon"},
]


# ============================================================================
# Helpers
# ============================================================================

def _round2(value: float) -> float:
    return float(f"{value:.2f}")


def _percent(value: float) -> int:
    """Whole percent; halves round up."""
    return int(math.floor(value * 100 + 0.5))


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def entity_name(tag: str) -> str:
    """'@activity:rock_climbing' -> 'rock climbing'"""
    parts = tag.split(":", 1)
    if len(parts) < 2 or not parts[1]:
        return tag
    return parts[1].replace("_", " ")


def entity_type(tag: str) -> str:
    return tag.split(":", 1)[0].replace("@", "")


def doc_id(name: str, category: Optional[str] = None) -> str:
    """Category-scoped runs get their own documents."""
    return f"{name}__{category}" if category else name


# ============================================================================
# Activity sentiment
# ============================================================================

def compute_activity_sentiment(entries: Sequence[JournalEntry]) -> List[Dict[str, Any]]:
    """Per-entity mood delta against the corpus baseline, strongest first."""
    entity_moods: Dict[str, List[float]] = OrderedDict()
    last_seen: Dict[str, JournalEntry] = {}

    for entry in entries:
        mood = entry.mood
        if mood is None:
            continue
        for tag in entry.tags:
            if not tag.startswith(ENTITY_NAMESPACES):
                continue
            entity_moods.setdefault(tag, []).append(mood)
            if tag not in last_seen or entry.when > last_seen[tag].when:
                last_seen[tag] = entry

    moods = [e.mood for e in entries if e.mood is not None]
    baseline = _mean(moods) if moods else DEFAULT_BASELINE

    patterns = []
    for tag, tag_moods in entity_moods.items():
        if len(tag_moods) < 2:
            continue
        avg = _mean(tag_moods)
        delta = avg - baseline
        pct = _percent(delta)

        sentiment = "neutral"
        if delta > SENTIMENT_THRESHOLD:
            sentiment = "positive"
        elif delta < -SENTIMENT_THRESHOLD:
            sentiment = "negative"

        name = entity_name(tag)
        insight = None
        if sentiment == "positive" and pct > INSIGHT_MIN_PERCENT:
            insight = f"{name} boosts your mood by {pct}%"
        elif sentiment == "negative" and pct < -INSIGHT_MIN_PERCENT:
            insight = f"Your mood dips {abs(pct)}% around {name}"

        latest = last_seen[tag]
        patterns.append({
            "entity": tag,
            "entityName": name,
            "entityType": entity_type(tag),
            "avgMood": _round2(avg),
            "baselineMood": _round2(baseline),
            "moodDelta": _round2(delta),
            "moodDeltaPercent": pct,
            "entryCount": len(tag_moods),
            "sentiment": sentiment,
            "insight": insight,
            "lastMentioned": latest.effective_date or latest.created_at,
        })

    patterns.sort(key=lambda p: abs(p["moodDelta"]), reverse=True)
    return patterns


# ============================================================================
# Temporal
# ============================================================================

def time_block(hour: int) -> str:
    if hour < 6:
        return "night"
    if hour < 12:
        return "morning"
    if hour < 17:
        return "afternoon"
    return "evening"


def compute_temporal_patterns(entries: Sequence[JournalEntry]) -> Dict[str, Any]:
    """
    Mood by weekday (Sunday = 0) and time block.

    Uses the wall clock of the entry's own timestamp, so an entry written
    at 23:00 local time counts as evening wherever the engine runs.
    """
    by_day: Dict[int, List[float]] = {d: [] for d in range(7)}
    by_block: Dict[str, List[float]] = {b: [] for b in TIME_BLOCKS}

    for entry in entries:
        mood = entry.mood
        if mood is None:
            continue
        when = entry.when
        by_day[when.isoweekday() % 7].append(mood)
        by_block[time_block(when.hour)].append(mood)

    day_patterns = [
        {
            "day": day,
            "dayName": DAY_NAMES[day],
            "avgMood": _round2(_mean(moods)),
            "entryCount": len(moods),
        }
        for day, moods in by_day.items() if len(moods) >= 2
    ]
    time_patterns = [
        {"time": block, "avgMood": _round2(_mean(moods)), "entryCount": len(moods)}
        for block, moods in by_block.items() if len(moods) >= 2
    ]

    ranked = sorted(day_patterns, key=lambda d: d["avgMood"])
    worst = ranked[0] if ranked else None
    best = ranked[-1] if ranked else None

    worst_insight = None
    if worst and worst["avgMood"] < WORST_DAY_BELOW:
        worst_insight = {
            "day": worst["dayName"],
            "mood": worst["avgMood"],
            "insight": f"{worst['dayName']}s tend to be tougher ({_percent(worst['avgMood'])}% avg mood)",
        }
    best_insight = None
    if best and best["avgMood"] > BEST_DAY_ABOVE:
        best_insight = {
            "day": best["dayName"],
            "mood": best["avgMood"],
            "insight": f"{best['dayName']}s are your best days ({_percent(best['avgMood'])}% avg mood)",
        }

    return {
        "dayOfWeek": day_patterns,
        "timeOfDay": time_patterns,
        "insights": {"worstDay": worst_insight, "bestDay": best_insight},
    }


# ============================================================================
# Contradictions
# ============================================================================

def goal_abandonment_contradictions(
    goals: Sequence[Dict[str, Any]],
    now: datetime,
    stale_days: int = 14,
    high_days: int = 30,
) -> List[Dict[str, Any]]:
    """Open goals nobody has touched in a while, stalest first."""
    ranked = []
    for goal in goals:
        if goal.get("state") not in OPEN_GOAL_STATES:
            continue
        days = days_since_update(goal, now)
        if days <= stale_days:
            continue
        topic = goal.get("topic", "")
        name = topic.replace("_", " ")
        ranked.append((days, {
            "type": "goal_abandonment",
            "goalTag": f"@goal:{topic}",
            "goalName": name,
            "signalId": goal.get("id"),
            "message": f'You set "{name}" as a goal {days} days ago but haven\'t made progress since',
            "severity": "high" if days > high_days else "medium",
            "requiresUserInput": True,
            "suggestion": "Is this still a goal you're working toward?",
            "actions": [dict(a) for a in GOAL_ACTIONS],
            "originalEntry": {"date": goal.get("lastUpdated"), "snippet": None},
        }))
    ranked.sort(key=lambda pair: pair[0], reverse=True)
    return [c for _, c in ranked]


def sentiment_contradictions(
    entries: Sequence[JournalEntry],
    activity: Sequence[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Negative talk about something that reliably lifts mood."""
    by_entity = {p["entity"]: p for p in activity}
    found = []
    seen = set()
    for entry in entries:
        if not lexicon.has_word(entry.text, lexicon.NEGATIVE_SENTIMENT):
            continue
        for tag in entry.tags:
            if not tag.startswith("@") or tag in seen:
                continue
            pattern = by_entity.get(tag)
            if not pattern or pattern["sentiment"] != "positive" or pattern["entryCount"] < SENTIMENT_MIN_MENTIONS:
                continue
            seen.add(tag)
            found.append({
                "type": "sentiment_contradiction",
                "entity": tag,
                "entityName": pattern["entityName"],
                "message": (
                    f"You've said negative things about {pattern['entityName']}, "
                    f"but your mood is actually {pattern['moodDeltaPercent']}% higher when you mention it"
                ),
                "severity": "low",
                "pattern": {
                    "avgMood": pattern["avgMood"],
                    "moodDeltaPercent": pattern["moodDeltaPercent"],
                    "entryCount": pattern["entryCount"],
                },
            })
    return found


def avoidance_contradictions(entries: Sequence[JournalEntry]) -> List[Dict[str, Any]]:
    """Said they'd cut back, then kept mentioning it happily."""
    found = []
    seen = set()
    for entry in entries:
        if not lexicon.has_word(entry.text, lexicon.AVOIDANCE):
            continue
        said_at = entry.when
        for tag in entry.tags:
            if not tag.startswith(AVOIDABLE_NAMESPACES) or tag in seen:
                continue
            later = [
                e for e in entries
                if e.when > said_at and tag in e.tags
                and e.mood is not None and e.mood > AVOIDANCE_POSITIVE_MOOD
            ]
            if len(later) < AVOIDANCE_MIN_MENTIONS:
                continue
            seen.add(tag)
            name = entity_name(tag)
            found.append({
                "type": "avoidance_contradiction",
                "entity": tag,
                "entityName": name,
                "message": f"You said you'd cut back on {name}, but you've mentioned it positively {len(later)} times since",
                "severity": "medium",
                "mentionCount": len(later),
            })
    return found


def detect_contradictions(
    entries: Sequence[JournalEntry],
    activity: Sequence[Dict[str, Any]],
    goals: Sequence[Dict[str, Any]],
    now: Optional[datetime] = None,
    config: Optional[InsightsConfig] = None,
) -> List[Dict[str, Any]]:
    """Goal abandonment, then sentiment, then avoidance contradictions."""
    config = config or InsightsConfig()
    now = now or utcnow()
    return (
        goal_abandonment_contradictions(goals, now, config.goal_stale_days, config.goal_stale_high_days)
        + sentiment_contradictions(entries, activity)
        + avoidance_contradictions(entries)
    )


# ============================================================================
# Summary
# ============================================================================

def generate_insights_summary(
    activity: Sequence[Dict[str, Any]],
    temporal: Dict[str, Any],
    contradictions: Sequence[Dict[str, Any]],
    limit: int = 5,
) -> List[Dict[str, Any]]:
    insights = []

    top_positive = next((p for p in activity if p["sentiment"] == "positive" and p["insight"]), None)
    if top_positive:
        insights.append({
            "type": "positive_activity", "icon": "trending-up",
            "message": top_positive["insight"], "entity": top_positive["entity"],
        })

    top_negative = next((p for p in activity if p["sentiment"] == "negative" and p["insight"]), None)
    if top_negative:
        insights.append({
            "type": "negative_activity", "icon": "trending-down",
            "message": top_negative["insight"], "entity": top_negative["entity"],
        })

    day_insights = temporal.get("insights") or {}
    if day_insights.get("bestDay"):
        insights.append({"type": "best_day", "icon": "sun", "message": day_insights["bestDay"]["insight"]})
    if day_insights.get("worstDay"):
        insights.append({"type": "worst_day", "icon": "cloud", "message": day_insights["worstDay"]["insight"]})

    if contradictions:
        top = contradictions[0]
        insights.append({
            "type": "contradiction", "icon": "alert-circle",
            "message": top["message"], "contradictionType": top["type"],
        })

    return insights[:limit]


# ============================================================================
# Orchestration
# ============================================================================

def load_entries(records: Sequence[Dict[str, Any]]) -> List[JournalEntry]:
    """Validate stored entry records, skipping ones that can't be parsed."""
    entries = []
    for record in records:
        try:
            entries.append(JournalEntry.from_record(record))
        except ValidationError as e:
            logger.warning("Skipping malformed entry %s: %s", record.get("id"), e.error_count())
    return entries


def fetch_recent_entries(
    store: DocumentStore,
    user_id: str,
    limit: int,
    category: Optional[str] = None,
) -> List[JournalEntry]:
    where = [("category", "==", category)] if category else []
    records = store.query(user_id, ENTRIES, where=where, order_by="createdAt", descending=True, limit=limit)
    return load_entries(records)


def compute_all_patterns(
    store: DocumentStore,
    user_id: str,
    category: Optional[str] = None,
    now: Optional[datetime] = None,
    config: Optional[InsightsConfig] = None,
) -> Optional[Dict[str, Any]]:
    """
    Recompute and persist every pattern family for one user.

    Returns the bundle {activity_sentiment, temporal, contradictions,
    summary}, or None when there are too few entries to say anything.
    A run that loses to a newer one still returns its bundle but
    leaves the stored documents alone.
    """
    config = config or load_config()
    now = now or utcnow()
    revision = time.time_ns()

    entries = fetch_recent_entries(store, user_id, config.pattern_window, category)
    if len(entries) < config.min_pattern_entries:
        logger.info("Not enough entries for user %s (%d)", user_id, len(entries))
        return None

    goals = list_goal_states(store, user_id, states=OPEN_GOAL_STATES)
    logger.debug("Fetched %d open goals for user %s", len(goals), user_id)

    try:
        exclusions = fetch_active_exclusions(store, user_id, now)
    except (InsightsError, ValidationError, OSError) as e:
        logger.warning("Could not fetch exclusions for user %s: %s", user_id, e)
        exclusions = []

    activity = compute_activity_sentiment(entries)
    temporal = compute_temporal_patterns(entries)
    contradictions = detect_contradictions(entries, activity, goals, now, config)

    before = (len(activity), len(contradictions))
    activity = filter_excluded_patterns(activity, exclusions, now)
    contradictions = filter_excluded_patterns(contradictions, exclusions, now)
    if exclusions:
        logger.info(
            "Filtered patterns: activities %d -> %d, contradictions %d -> %d",
            before[0], len(activity), before[1], len(contradictions),
        )

    summary = generate_insights_summary(activity, temporal, contradictions, config.summary_max)

    def document(data: Any) -> Dict[str, Any]:
        return PatternDocument(
            updated_at=isoformat(now),
            entry_count=len(entries),
            revision=revision,
            category=category,
            data=data,
        ).to_record()

    summary_doc = document(summary)
    summary_doc.update({
        "topPositive": next((p["insight"] for p in activity if p["sentiment"] == "positive"), None),
        "topNegative": next((p["insight"] for p in activity if p["sentiment"] == "negative"), None),
        "bestDay": (temporal["insights"]["bestDay"] or {}).get("insight"),
        "worstDay": (temporal["insights"]["worstDay"] or {}).get("insight"),
        "hasContradictions": bool(contradictions),
    })

    summary_id = doc_id(SUMMARY, category)
    batch = store.batch()
    batch.precondition(
        user_id, COLLECTION, summary_id,
        lambda current: current is None or current.get("revision", 0) <= revision,
    )
    batch.set(user_id, COLLECTION, doc_id(ACTIVITY, category), document(activity[:config.activity_top_n]))
    batch.set(user_id, COLLECTION, doc_id(TEMPORAL, category), document(temporal))
    batch.set(user_id, COLLECTION, doc_id(CONTRADICTIONS, category), document(contradictions))
    batch.set(user_id, COLLECTION, summary_id, summary_doc)

    bundle = {
        ACTIVITY: activity,
        TEMPORAL: temporal,
        CONTRADICTIONS: contradictions,
        SUMMARY: summary,
    }

    try:
        batch.commit()
    except StoreConflictError:
        logger.warning("Discarding stale pattern run for user %s (revision %d)", user_id, revision)
        bus.emit(Events.PATTERNS_STALE, {
            "user_id": user_id, "category": category, "revision": revision,
        }, source="patterns")
        return bundle

    logger.info(
        "Computed patterns for user %s: %d activities, %d contradictions",
        user_id, len(activity), len(contradictions),
    )
    bus.emit(Events.PATTERNS_COMPUTED, {
        "user_id": user_id, "category": category, "entry_count": len(entries),
        "insight_count": len(summary), "revision": revision,
    }, source="patterns")
    return bundle


def get_patterns(
    store: DocumentStore,
    user_id: str,
    category: Optional[str] = None,
) -> Dict[str, Optional[Dict[str, Any]]]:
    """The four stored pattern documents (None where not computed yet)."""
    return {name: store.get(user_id, COLLECTION, doc_id(name, category)) for name in PATTERN_NAMES}
