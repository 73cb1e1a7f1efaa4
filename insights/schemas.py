# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""
EchoVault Schema Registry — Pydantic models for every persisted document.

Single source of truth for the shapes the insight engine reads and writes.
Persisted documents use camelCase keys (the contract the presentation layer
consumes); Python code works with snake_case attributes via aliases.

Usage:
    from insights.schemas import JournalEntry, SignalState

    entry = JournalEntry.from_record(doc)          # validate on read
    store.set(uid, "signal_states", gid, state.to_record())  # dump on write

The classifier's analysis payload is the one exception: it keeps the
provider's snake_case keys (mood_score, goal_update, ...) and is normalized
once at the ingestion boundary by EntryAnalysis.

All models use extra="allow" so existing data with unknown fields
won't break — we just won't validate those extra fields.
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


# ============================================================================
# Base config — all models inherit one of these
# ============================================================================

class InsightModel(BaseModel):
    """Base for persisted documents. camelCase on disk, snake_case in code."""
    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class ProviderModel(BaseModel):
    """Base for payloads produced by the external classifier."""
    model_config = ConfigDict(extra="allow")


# ============================================================================
# Custom exceptions — standardized error handling across the engine
# ============================================================================

class InsightsError(Exception):
    """Base for all engine errors."""

class InsightsNotFoundError(InsightsError):
    """Raised when a requested document (entry, goal, exclusion) doesn't exist."""

class InsightsValidationError(InsightsError):
    """Raised when input fails validation (bad state transition, unknown event type, etc.)."""

class StoreConflictError(InsightsError):
    """Raised when a conditional write loses against a concurrent writer."""


# ============================================================================
# TIME
# ============================================================================

Timestamp = Union[str, datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[Timestamp]) -> Optional[datetime]:
    """
    Parse an ISO timestamp (or pass a datetime through).

    The wall clock of the original offset is preserved, so .hour and
    .weekday() reflect the time the user wrote the entry. Naive values
    are treated as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def isoformat(dt: Optional[datetime] = None) -> str:
    return (dt or utcnow()).isoformat()


# ============================================================================
# ENTRIES & ANALYSIS (ingestion boundary)
# ============================================================================

def _clean_tags(v: Any) -> List[str]:
    if not isinstance(v, (list, tuple, set)):
        return []
    return [t for t in v if isinstance(t, str) and t]


class GoalUpdate(ProviderModel):
    """Structured goal signal extracted by the classifier."""
    tag: str
    status: Optional[str] = None

    @field_validator("tag")
    @classmethod
    def _tag_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("goal_update.tag is empty")
        return v


class EntryAnalysis(ProviderModel):
    """
    Classifier output attached to an entry.

    Every field is optional with an explicit default. Anything the provider
    sends that can't be trusted is normalized here so downstream code never
    touches an unvalidated shape.
    """
    mood_score: Optional[float] = None
    entry_type: Optional[str] = None
    framework: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    goal_update: Optional[GoalUpdate] = None

    @model_validator(mode="before")
    @classmethod
    def _lift_legacy_goal_update(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return {}
        data = dict(data)
        if not data.get("goal_update"):
            nested = data.get("extractEnhancedContext")
            if isinstance(nested, dict) and nested.get("goal_update"):
                data["goal_update"] = nested["goal_update"]
        return data

    @field_validator("mood_score", mode="before")
    @classmethod
    def _coerce_mood(cls, v: Any) -> Optional[float]:
        if v is None or isinstance(v, bool):
            return None
        try:
            mood = float(v)
        except (TypeError, ValueError):
            return None
        if mood != mood:  # NaN
            return None
        return max(0.0, min(1.0, mood))

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, v: Any) -> List[str]:
        return _clean_tags(v)

    @field_validator("goal_update", mode="before")
    @classmethod
    def _coerce_goal_update(cls, v: Any) -> Any:
        if not isinstance(v, dict) or not str(v.get("tag") or "").strip():
            return None
        return v


class JournalEntry(InsightModel):
    """Journal entry: users/<uid>/entries/<entry_id>.json"""
    id: str
    text: str = ""
    created_at: str
    effective_date: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    analysis: Optional[EntryAnalysis] = None

    @field_validator("text", mode="before")
    @classmethod
    def _text_default(cls, v: Any) -> str:
        return v if isinstance(v, str) else ""

    @field_validator("tags", mode="before")
    @classmethod
    def _tags_default(cls, v: Any) -> List[str]:
        return _clean_tags(v)

    @field_validator("analysis", mode="before")
    @classmethod
    def _analysis_default(cls, v: Any) -> Any:
        if v is None or isinstance(v, EntryAnalysis):
            return v
        return EntryAnalysis.model_validate(v if isinstance(v, dict) else {})

    @field_validator("created_at", "effective_date", mode="before")
    @classmethod
    def _timestamps_to_str(cls, v: Any) -> Any:
        if isinstance(v, datetime):
            return v.isoformat()
        return v

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "JournalEntry":
        return cls.model_validate(record)

    @property
    def mood(self) -> Optional[float]:
        return self.analysis.mood_score if self.analysis else None

    @property
    def created(self) -> datetime:
        return parse_timestamp(self.created_at) or utcnow()

    @property
    def when(self) -> datetime:
        """Effective date if set, otherwise creation time."""
        return parse_timestamp(self.effective_date) or self.created

    def to_record(self) -> Dict[str, Any]:
        record = super().to_record()
        if self.analysis is not None:
            record["analysis"] = self.analysis.model_dump(mode="json", exclude_none=True)
        return record


# ============================================================================
# SIGNAL STATES (goals)
# ============================================================================

GOAL_STATES = ("proposed", "active", "paused", "achieved", "abandoned")
TERMINAL_GOAL_STATES = ("achieved", "abandoned")
OPEN_GOAL_STATES = ("active", "proposed")


class StateTransition(InsightModel):
    """One record in a signal's append-only state history."""
    from_state: Optional[str] = Field(None, alias="from")
    to_state: str = Field(alias="to")
    at: str
    context: Dict[str, Any] = Field(default_factory=dict)


class SignalState(InsightModel):
    """Goal lifecycle record: users/<uid>/signal_states/goal-<topic>.json"""
    id: Optional[str] = None
    signal_type: str = Field("goal", alias="type")
    topic: str
    display_name: str = ""
    state: str = "proposed"
    state_history: List[StateTransition] = Field(default_factory=list)
    source_entries: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: str
    last_updated: str

    @field_validator("state")
    @classmethod
    def _known_state(cls, v: str) -> str:
        if v not in GOAL_STATES:
            raise ValueError(f"unknown goal state: {v}")
        return v

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_GOAL_STATES


# ============================================================================
# PATTERNS & EXCLUSIONS
# ============================================================================

class PatternDocument(InsightModel):
    """Full-replace snapshot: users/<uid>/patterns/<name>.json"""
    updated_at: str
    entry_count: int
    version: int = 1
    revision: int = 0
    category: Optional[str] = None
    data: Any = None


class Exclusion(InsightModel):
    """User dismissal rule: users/<uid>/insight_exclusions/<id>.json"""
    id: Optional[str] = None
    pattern_type: str
    context: Dict[str, Any] = Field(default_factory=dict)
    permanent: bool = False
    expires_at: Optional[str] = None
    reason: str = "user_dismissed"
    excluded_at: Optional[str] = None

    @field_validator("context", mode="before")
    @classmethod
    def _context_default(cls, v: Any) -> Dict[str, Any]:
        return v if isinstance(v, dict) else {}

    def is_active(self, now: Optional[datetime] = None) -> bool:
        """Permanent, or not yet expired."""
        if self.permanent:
            return True
        expires = parse_timestamp(self.expires_at)
        if expires is None:
            return False
        return expires > (now or utcnow())


# ============================================================================
# BURNOUT
# ============================================================================

class BurnoutFactor(InsightModel):
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    signal: Optional[str] = None


class BurnoutAssessment(InsightModel):
    """Burnout risk: latestBurnoutAssessment on the profile, history rows in burnout_assessments."""
    risk_score: float = Field(default=0.0, ge=0.0, le=1.0)
    risk_level: str = "low"
    signals: List[str] = Field(default_factory=list)
    factors: Dict[str, BurnoutFactor] = Field(default_factory=dict)
    trigger_shelter_mode: bool = False
    entry_count: int = 0
    recovery_discount: Optional[float] = None
    insufficient_data: Optional[bool] = None
    assessed_at: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        record = super().to_record()
        # Optional markers are omitted rather than stored as null
        for key in ("recoveryDiscount", "insufficientData", "assessedAt"):
            if record.get(key) is None:
                record.pop(key, None)
        return record


class BurnoutEvent(InsightModel):
    """Intervention analytics: users/<uid>/burnout_events/<id>.json"""
    event_type: str
    risk_level: Optional[str] = None
    risk_score: Optional[float] = None
    dismiss_count: Optional[int] = None
    activity_type: Optional[str] = None
    duration: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: str


# ============================================================================
# UTILITY — atomic JSON writes
# ============================================================================

def _atomic_rename(tmp: Path, dest: Path):
    """Flush, fsync, then rename — crash-safe atomic write."""
    fd = os.open(str(tmp), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
    os.replace(str(tmp), str(dest))


def write_json_tmp(path: Path, data: Any, indent: int = 2) -> Path:
    """Write data to <path>.tmp and return the temp path (first half of an atomic write)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=indent, default=str))
    return tmp


def atomic_write_json(path: Path, data: Any, indent: int = 2):
    """Atomically write a dict/list as JSON (write .tmp, then rename)."""
    tmp = write_json_tmp(path, data, indent=indent)
    _atomic_rename(tmp, path)
