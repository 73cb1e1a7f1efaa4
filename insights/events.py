# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""
EchoVault Event Bus — pub/sub between capture, goals, patterns and burnout.

Capture code doesn't call the engine directly:
    bus.emit(Events.ENTRY_CREATED, {"user_id": uid, "entry_id": eid})

The triggers module subscribes the engine handlers:
    register_triggers(store, bus)

Core design:
- Subscriber priority ordering (higher runs first)
- Handler exceptions are logged and never reach the emitter
- Thread-safe; recursion depth limit (max 3) as safety valve
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("echovault.events")

_MAX_EMIT_DEPTH = 3


# ============================================================================
# EVENT TYPES
# ============================================================================

class Events:
    """Registry of all event types. Use these constants, not raw strings."""

    # --- Entries ---
    ENTRY_CREATED = "entry_created"
    ENTRY_UPDATED = "entry_updated"
    ANALYSIS_FAILED = "analysis_failed"

    # --- Goals ---
    GOAL_CREATED = "goal_created"
    GOAL_UPDATED = "goal_updated"
    GOAL_SKIPPED = "goal_skipped"

    # --- Patterns ---
    PATTERNS_COMPUTED = "patterns_computed"
    PATTERNS_STALE = "patterns_stale"
    EXCLUSION_ADDED = "exclusion_added"
    EXCLUSION_REMOVED = "exclusion_removed"

    # --- Burnout ---
    BURNOUT_ASSESSED = "burnout_assessed"
    SHELTER_MODE_TRIGGERED = "shelter_mode_triggered"

    # --- Scheduler ---
    SWEEP_COMPLETED = "sweep_completed"


@dataclass
class Event:
    """A single emitted event."""
    type: str
    data: Dict[str, Any]
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    source: Optional[str] = None


@dataclass
class Subscriber:
    """A registered event handler."""
    callback: Callable[[Event], None]
    priority: int = 0
    source: Optional[str] = None


class EventBus:
    """Priority-ordered synchronous dispatch. Thread-safe via lock."""

    def __init__(self):
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._lock = threading.Lock()
        self._local = threading.local()

    def on(
        self,
        event_type: str,
        callback: Callable[[Event], None],
        priority: int = 0,
        source: Optional[str] = None,
    ) -> None:
        """Subscribe to an event type. Higher priority is called first."""
        with self._lock:
            subs = self._subscribers.setdefault(event_type, [])
            subs.append(Subscriber(callback=callback, priority=priority, source=source))
            subs.sort(key=lambda s: -s.priority)

    def off(self, event_type: str, callback: Callable) -> bool:
        """Unsubscribe a callback. Returns True if found and removed."""
        with self._lock:
            subs = self._subscribers.get(event_type)
            if not subs:
                return False
            kept = [s for s in subs if s.callback is not callback]
            self._subscribers[event_type] = kept
            return len(kept) < len(subs)

    def emit(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
    ) -> Event:
        """
        Dispatch to every subscriber in priority order.

        Returns the Event object that was dispatched.
        """
        event = Event(type=event_type, data=data or {}, source=source)

        depth = getattr(self._local, "depth", 0)
        if depth >= _MAX_EMIT_DEPTH:
            logger.warning("Event recursion depth %d exceeded for %s — skipping", depth + 1, event_type)
            return event

        with self._lock:
            subs = list(self._subscribers.get(event_type, []))

        self._local.depth = depth + 1
        try:
            for sub in subs:
                try:
                    sub.callback(event)
                except Exception as e:
                    logger.error(
                        "Event handler error: %s -> %s: %s",
                        event_type,
                        sub.source or getattr(sub.callback, "__name__", "handler"),
                        e,
                    )
        finally:
            self._local.depth = depth

        return event

    def reset(self) -> None:
        """Drop every subscriber. For testing."""
        with self._lock:
            self._subscribers.clear()


# ============================================================================
# SINGLETON — the process-wide bus
# ============================================================================

bus = EventBus()
