# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""
EchoVault Burnout — composite risk score over the newest entries.

Six weighted factors, each in [0, 1]:

    moodTrajectory      .25   falling or persistently low mood
    fatigueKeywords     .20   fatigue / emotional-exhaustion language
    overworkIndicators  .20   late-night + weekend entries, overwork language
    physicalSymptoms    .15   headaches, insomnia, tension ...
    workTagDensity      .10   share of work-namespace tags
    lowMoodStreak       .10   consecutive newest entries below .4

Recent recovery language (breaks, days off) discounts the total by up to
.15. Critical risk always triggers shelter mode; high risk does when at
least two factors are severe.

compute_burnout_risk_from_entries() is pure. The store-facing functions
below it handle the trigger path, on-demand checks and intervention
analytics.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

from insights import lexicon
from insights.config import InsightsConfig, load_config
from insights.events import bus, Events
from insights.patterns import fetch_recent_entries
from insights.schemas import (
    BurnoutAssessment,
    BurnoutEvent,
    BurnoutFactor,
    InsightsValidationError,
    JournalEntry,
    isoformat,
    utcnow,
)
from insights.store import DocumentStore

logger = logging.getLogger("echovault.burnout")

ASSESSMENTS = "burnout_assessments"
EVENTS = "burnout_events"

FACTOR_WEIGHTS = {
    "moodTrajectory": 0.25,
    "fatigueKeywords": 0.20,
    "overworkIndicators": 0.20,
    "physicalSymptoms": 0.15,
    "workTagDensity": 0.10,
    "lowMoodStreak": 0.10,
}

# (level, lower bound), checked highest first
RISK_LEVELS = (
    ("critical", 0.7),
    ("high", 0.5),
    ("moderate", 0.3),
    ("low", 0.0),
)

WORK_NAMESPACES = {"project", "deadline", "meeting", "work", "client", "boss"}
LOW_MOOD = 0.4
SEVERE_FACTOR = 0.6
RECOVERY_LOOKBACK = 5
RECOVERY_STEP = 0.05
RECOVERY_CAP = 0.15

VALID_EVENT_TYPES = (
    "nudge_shown",
    "nudge_dismissed",
    "nudge_acknowledged",
    "shelter_entered",
    "shelter_exited",
    "activity_completed",
    "breathing_completed",
    "grounding_completed",
    "timer_completed",
)

EntryLike = Union[JournalEntry, Dict[str, Any]]


# ============================================================================
# Factors
# ============================================================================

def _ratio(count: int, total: int) -> float:
    return count / total if total else 0.0


def _mood_trajectory(entries: Sequence[JournalEntry]) -> BurnoutFactor:
    moods = [e.mood for e in entries if e.mood is not None]
    if len(moods) < 2:
        return BurnoutFactor()
    window = min(3, len(moods))
    latest = sum(moods[:3]) / window
    oldest = sum(moods[-3:]) / window
    trend = latest - oldest
    avg = sum(moods) / len(moods)

    score = 0.0
    if trend < -0.2:
        score += 0.5
    elif trend < -0.1:
        score += 0.3
    elif trend < 0:
        score += 0.1

    if avg < 0.3:
        score += 0.5
    elif avg < 0.4:
        score += 0.3
    elif avg < 0.5:
        score += 0.1

    score = min(1.0, score)
    return BurnoutFactor(score=score, signal="declining_mood" if score > 0.3 else None)


def _keyword_factor(entries: Sequence[JournalEntry], signal: str, *categories: str) -> BurnoutFactor:
    hits = sum(1 for e in entries if lexicon.has_phrase(e.text, *categories))
    score = min(1.0, _ratio(hits, len(entries)) * 1.5)
    return BurnoutFactor(score=score, signal=signal if score > 0.3 else None)


def is_late_night(dt: datetime) -> bool:
    return dt.hour >= 22 or dt.hour < 5


def is_weekend(dt: datetime) -> bool:
    return dt.weekday() >= 5


def _overwork(entries: Sequence[JournalEntry]) -> BurnoutFactor:
    total = len(entries)
    late = sum(1 for e in entries if is_late_night(e.created))
    weekend = sum(1 for e in entries if is_weekend(e.created))
    keyword = sum(1 for e in entries if lexicon.has_phrase(e.text, lexicon.OVERWORK))
    score = min(1.0, 0.4 * _ratio(late, total) + 0.3 * _ratio(weekend, total) + 0.3 * _ratio(keyword, total))
    return BurnoutFactor(score=score, signal="overwork_pattern" if score > 0.3 else None)


def _work_tag_density(entries: Sequence[JournalEntry]) -> BurnoutFactor:
    tags = [t for e in entries for t in e.tags]
    work = sum(1 for t in tags if t.split(":", 1)[0].lstrip("@") in WORK_NAMESPACES)
    score = min(1.0, _ratio(work, len(tags)) * 1.5)
    return BurnoutFactor(score=score, signal="work_dominated_entries" if score > 0.4 else None)


def _low_mood_streak(entries: Sequence[JournalEntry]) -> BurnoutFactor:
    streak = 0
    for entry in entries:
        if entry.mood is None or entry.mood >= LOW_MOOD:
            break
        streak += 1

    if streak >= 5:
        score = 1.0
    elif streak >= 4:
        score = 0.8
    elif streak >= 3:
        score = 0.5
    elif streak >= 2:
        score = 0.2
    else:
        score = 0.0
    return BurnoutFactor(score=score, signal=f"{streak}_day_low_streak" if streak >= 3 else None)


def risk_level_for(score: float) -> str:
    for level, floor in RISK_LEVELS:
        if score >= floor:
            return level
    return "low"


# ============================================================================
# Scoring (pure)
# ============================================================================

def compute_burnout_risk_from_entries(
    entries: Sequence[EntryLike],
    window: int = 14,
    min_entries: int = 3,
    now: Optional[datetime] = None,
) -> BurnoutAssessment:
    """Score the newest `window` entries. Order of the input doesn't matter."""
    parsed = [e if isinstance(e, JournalEntry) else JournalEntry.from_record(e) for e in entries]
    if len(parsed) < min_entries:
        return BurnoutAssessment(insufficient_data=True)

    recent = sorted(parsed, key=lambda e: e.created, reverse=True)[:window]

    factors = {
        "moodTrajectory": _mood_trajectory(recent),
        "fatigueKeywords": _keyword_factor(
            recent, "fatigue", lexicon.FATIGUE, lexicon.EMOTIONAL_EXHAUSTION,
        ),
        "overworkIndicators": _overwork(recent),
        "physicalSymptoms": _keyword_factor(recent, "physical_symptoms", lexicon.PHYSICAL_SYMPTOMS),
        "workTagDensity": _work_tag_density(recent),
        "lowMoodStreak": _low_mood_streak(recent),
    }
    signals = [f.signal for f in factors.values() if f.signal]

    raw = sum(factors[name].score * weight for name, weight in FACTOR_WEIGHTS.items())
    recovering = sum(
        1 for e in recent[:RECOVERY_LOOKBACK] if lexicon.has_phrase(e.text, lexicon.RECOVERY)
    )
    discount = min(RECOVERY_CAP, recovering * RECOVERY_STEP)
    score = min(1.0, max(0.0, raw - discount))

    level = risk_level_for(score)
    if level == "critical":
        shelter = True
    elif level == "high":
        shelter = sum(1 for f in factors.values() if f.score > SEVERE_FACTOR) >= 2
    else:
        shelter = False

    return BurnoutAssessment(
        risk_score=round(score, 3),
        risk_level=level,
        signals=signals,
        factors=factors,
        trigger_shelter_mode=shelter,
        entry_count=len(recent),
        recovery_discount=discount if discount > 0 else None,
        assessed_at=isoformat(now),
    )


# ============================================================================
# Store-facing
# ============================================================================

def _record_history(
    store: DocumentStore,
    user_id: str,
    assessment: BurnoutAssessment,
    source: str,
    now: datetime,
    **extra: Any,
) -> str:
    row = assessment.to_record()
    row.update({"createdAt": isoformat(now), "source": source})
    row.update(extra)
    return store.add(user_id, ASSESSMENTS, row)


def _announce(user_id: str, assessment: BurnoutAssessment, source: str) -> None:
    payload = {
        "user_id": user_id,
        "risk_level": assessment.risk_level,
        "risk_score": assessment.risk_score,
        "source": source,
    }
    bus.emit(Events.BURNOUT_ASSESSED, payload, source="burnout")
    if assessment.trigger_shelter_mode:
        bus.emit(Events.SHELTER_MODE_TRIGGERED, payload, source="burnout")


def assess_burnout_for_user(
    store: DocumentStore,
    user_id: str,
    triggering_entry_id: Optional[str] = None,
    now: Optional[datetime] = None,
    config: Optional[InsightsConfig] = None,
) -> Optional[BurnoutAssessment]:
    """
    Trigger path: refresh latestBurnoutAssessment on the profile.

    High and critical results are also kept in burnout_assessments.
    Returns None when there aren't enough entries to bother.
    """
    config = config or load_config()
    now = now or utcnow()
    entries = fetch_recent_entries(store, user_id, config.burnout_window)
    if len(entries) < config.min_burnout_entries:
        logger.info("Not enough entries for burnout check (%d)", len(entries))
        return None

    assessment = compute_burnout_risk_from_entries(
        entries, config.burnout_window, config.min_burnout_entries, now=now,
    )
    latest = assessment.to_record()
    latest["updatedAt"] = isoformat(now)
    store.merge_user(user_id, {"latestBurnoutAssessment": latest})

    if assessment.risk_level in ("high", "critical"):
        _record_history(
            store, user_id, assessment, "entry_trigger", now,
            triggeringEntryId=triggering_entry_id,
        )
        logger.warning(
            "High burnout risk detected for user %s: %s (%.3f)",
            user_id, assessment.risk_level, assessment.risk_score,
        )

    _announce(user_id, assessment, "entry_trigger")
    return assessment


def compute_burnout_risk_on_demand(
    store: DocumentStore,
    user_id: str,
    now: Optional[datetime] = None,
    config: Optional[InsightsConfig] = None,
) -> BurnoutAssessment:
    """User-requested check. Always leaves a history row."""
    config = config or load_config()
    now = now or utcnow()
    entries = fetch_recent_entries(store, user_id, config.burnout_window)
    assessment = compute_burnout_risk_from_entries(
        entries, config.burnout_window, config.min_burnout_entries, now=now,
    )
    _record_history(store, user_id, assessment, "on_demand", now)
    _announce(user_id, assessment, "on_demand")
    return assessment


def log_burnout_event(
    store: DocumentStore,
    user_id: str,
    event_type: str,
    now: Optional[datetime] = None,
    **fields: Any,
) -> str:
    """
    Record an intervention event (nudge shown, shelter entered, ...).

    Accepted fields: risk_level, risk_score, dismiss_count, activity_type,
    duration, metadata. Returns the event id.
    """
    if not event_type:
        raise InsightsValidationError("eventType is required")
    if event_type not in VALID_EVENT_TYPES:
        raise InsightsValidationError(f"Invalid eventType: {event_type}")

    unknown = set(fields) - {"risk_level", "risk_score", "dismiss_count", "activity_type", "duration", "metadata"}
    if unknown:
        raise InsightsValidationError(f"Unknown burnout event fields: {sorted(unknown)}")

    event = BurnoutEvent(event_type=event_type, created_at=isoformat(now), **fields)
    event_id = store.add(user_id, EVENTS, event.to_record())
    logger.info("Logged burnout event for user %s: %s", user_id, event_type)
    return event_id


def burnout_history(store: DocumentStore, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    """Stored assessments, newest first."""
    return store.query(user_id, ASSESSMENTS, order_by="createdAt", descending=True, limit=limit)
