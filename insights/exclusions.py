# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""
Exclusion filter — the user's dismissal layer over computed patterns.

An exclusion targets a pattern type (positive_activity, goal_abandonment, ...)
and optionally narrows it with context keys that must all equal the
pattern's fields. No context means every pattern of that type is hidden.

The engine only reads exclusions; add/remove exist for the presentation
layer and the CLI.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from insights.config import load_config
from insights.events import bus, Events
from insights.schemas import Exclusion, InsightsNotFoundError, isoformat, utcnow
from insights.store import DocumentStore

logger = logging.getLogger("echovault.exclusions")

COLLECTION = "insight_exclusions"

MESSAGE_MATCH_LEN = 100


def pattern_type_of(pattern: Dict[str, Any]) -> Optional[str]:
    """Explicit type, else derived from activity sentiment."""
    if pattern.get("type"):
        return pattern["type"]
    sentiment = pattern.get("sentiment")
    if sentiment == "positive":
        return "positive_activity"
    if sentiment == "negative":
        return "negative_activity"
    return None


def _pattern_value(pattern: Dict[str, Any], key: str) -> Any:
    if key == "message":
        return (pattern.get("message") or pattern.get("insight") or "")[:MESSAGE_MATCH_LEN]
    return pattern.get(key)


def is_pattern_excluded(pattern: Dict[str, Any], exclusions: Iterable[Exclusion]) -> bool:
    ptype = pattern_type_of(pattern)
    for exclusion in exclusions:
        if exclusion.pattern_type != ptype:
            continue
        if not exclusion.context:
            return True
        if all(_pattern_value(pattern, k) == v for k, v in exclusion.context.items()):
            return True
    return False


def _active_exclusions(records: Iterable[Any], now: datetime) -> List[Exclusion]:
    active = []
    for raw in records:
        if isinstance(raw, Exclusion):
            exclusion = raw
        else:
            try:
                exclusion = Exclusion.model_validate(raw)
            except ValidationError as e:
                logger.warning(
                    "Skipping malformed exclusion %s: %s",
                    raw.get("id") if isinstance(raw, dict) else None, e.error_count(),
                )
                continue
        if exclusion.is_active(now):
            active.append(exclusion)
    return active


def filter_excluded_patterns(
    patterns: List[Dict[str, Any]],
    exclusions: Iterable[Any],
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Drop patterns matched by an active exclusion.

    Exclusions may be Exclusion models or raw records; expired and
    malformed ones are ignored here too, so callers can pass an
    unfiltered list.
    """
    active = _active_exclusions(exclusions, now or utcnow())
    if not active:
        return list(patterns)
    return [p for p in patterns if not is_pattern_excluded(p, active)]


def fetch_active_exclusions(
    store: DocumentStore,
    user_id: str,
    now: Optional[datetime] = None,
) -> List[Exclusion]:
    """Unexpired exclusions; a record that fails validation is skipped, not fatal."""
    return _active_exclusions(store.query(user_id, COLLECTION), now or utcnow())


def add_exclusion(
    store: DocumentStore,
    user_id: str,
    pattern_type: str,
    context: Optional[Dict[str, Any]] = None,
    reason: Optional[str] = None,
    permanent: bool = False,
    expires_in_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Dismiss a pattern. Temporary exclusions expire after expires_in_days,
    or the configured exclusion_default_days when not given.
    """
    now = now or utcnow()
    if expires_in_days is None and not permanent:
        expires_in_days = load_config().exclusion_default_days
    exclusion = Exclusion(
        pattern_type=pattern_type,
        context=context or {},
        reason=reason or "user_dismissed",
        permanent=permanent,
        excluded_at=isoformat(now),
        expires_at=None if permanent else isoformat(now + timedelta(days=expires_in_days)),
    )
    record = exclusion.to_record()
    record.pop("id", None)
    exclusion_id = store.add(user_id, COLLECTION, record)
    logger.info("Added exclusion for pattern: %s (%s)", pattern_type, exclusion_id)
    bus.emit(Events.EXCLUSION_ADDED, {
        "user_id": user_id, "exclusion_id": exclusion_id, "pattern_type": pattern_type,
    }, source="exclusions")
    return {**record, "id": exclusion_id}


def remove_exclusion(store: DocumentStore, user_id: str, exclusion_id: str) -> None:
    if not store.delete(user_id, COLLECTION, exclusion_id):
        raise InsightsNotFoundError(f"Exclusion not found: {exclusion_id}")
    logger.info("Removed exclusion %s", exclusion_id)
    bus.emit(Events.EXCLUSION_REMOVED, {
        "user_id": user_id, "exclusion_id": exclusion_id,
    }, source="exclusions")
