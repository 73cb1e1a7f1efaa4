# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""
EchoVault Sweep Scheduler — daily full recompute for every user.

Event triggers keep patterns fresh while users are writing, but goal
staleness only grows with time. Once a day (default 03:00 local) the
sweep recomputes patterns for every known user, one at a time, with a
short pause between users. A failing user is logged and counted; the
sweep carries on.

Lifecycle:
  - `echovault-insights sweep --loop` runs InsightsScheduler in the foreground
  - the last completed sweep is recorded in scheduler-state.json so a
    restart after 03:00 doesn't sweep twice
"""

import json
import logging
import signal
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from core.paths import get_paths
from insights.config import InsightsConfig, load_config
from insights.events import bus, Events
from insights.patterns import compute_all_patterns
from insights.schemas import atomic_write_json
from insights.store import DocumentStore

logger = logging.getLogger("echovault.scheduler")


def daily_pattern_refresh(
    store: DocumentStore,
    config: Optional[InsightsConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
    stop_event: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """Recompute patterns for every user. Returns success/error counts."""
    config = config or load_config()
    logger.info("Starting daily pattern refresh...")

    success_count = 0
    error_count = 0
    for user_id in store.list_users():
        if stop_event is not None and stop_event.is_set():
            logger.info("Sweep interrupted after %d users", success_count + error_count)
            break
        try:
            compute_all_patterns(store, user_id, config=config)
            success_count += 1
        except Exception as e:
            logger.error("Error refreshing patterns for user %s: %s", user_id, e)
            error_count += 1
        sleep(config.sweep_delay_seconds)

    logger.info("Daily refresh complete: %d success, %d errors", success_count, error_count)
    result = {"success": True, "successCount": success_count, "errorCount": error_count}
    bus.emit(Events.SWEEP_COMPLETED, dict(result), source="scheduler")
    return result


# ============================================================================
# Scheduling decisions
# ============================================================================

def _parse_hour(value: str) -> Tuple[int, int]:
    """'03:00' -> (3, 0). Bad values fall back to 03:00."""
    try:
        hour, minute = (int(part) for part in value.split(":", 1))
    except (ValueError, AttributeError):
        logger.warning("Invalid sweep_hour %r, using 03:00", value)
        return 3, 0
    if not (0 <= hour < 24 and 0 <= minute < 60):
        logger.warning("Invalid sweep_hour %r, using 03:00", value)
        return 3, 0
    return hour, minute


def _last_sweep() -> Optional[datetime]:
    state_file = get_paths().scheduler_state
    if not state_file.exists():
        return None
    try:
        data = json.loads(state_file.read_text())
        return datetime.fromisoformat(data.get("lastSweep", ""))
    except (json.JSONDecodeError, ValueError, OSError, AttributeError):
        return None


def _record_sweep(when: datetime, result: Dict[str, Any]) -> None:
    atomic_write_json(get_paths().scheduler_state, {"lastSweep": when.isoformat(), "result": result})


def should_sweep(now: datetime, sweep_hour: str, last_run: Optional[datetime]) -> Tuple[bool, str]:
    """
    Decide whether today's sweep is due.
    Returns (should_run, reason).
    """
    hour, minute = _parse_hour(sweep_hour)
    due = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if last_run is not None and last_run.date() == now.date() and last_run >= due:
        return False, "already swept today"
    if now < due:
        return False, f"waiting until {hour:02d}:{minute:02d}"
    return True, f"due since {hour:02d}:{minute:02d}"


class InsightsScheduler:
    """Foreground loop that runs the daily sweep when it's due."""

    def __init__(self, store: DocumentStore, stop_event: Optional[threading.Event] = None):
        self.store = store
        self.stop_event = stop_event or threading.Event()
        self.running = False

    def _handle_signal(self, signum, frame):
        logger.info("Signal %d received, shutting down", signum)
        self.stop_event.set()

    def run(self) -> None:
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, self._handle_signal)
            signal.signal(signal.SIGINT, self._handle_signal)

        config = load_config()
        logger.info("Sweep scheduler started | sweep at %s | poll %ds",
                    config.sweep_hour, config.poll_interval_seconds)
        try:
            self._loop()
        finally:
            logger.info("Sweep scheduler stopped")

    def _loop(self) -> None:
        while not self.stop_event.is_set():
            # Reload config each cycle to pick up changes
            config = load_config()
            now = datetime.now()
            should, reason = should_sweep(now, config.sweep_hour, _last_sweep())
            if should:
                logger.info("Triggering sweep (%s)", reason)
                self._run_sweep(config, now)
            else:
                logger.debug("Not sweeping (%s)", reason)
            self.stop_event.wait(config.poll_interval_seconds)

    def _run_sweep(self, config: InsightsConfig, started: datetime) -> None:
        self.running = True
        try:
            result = daily_pattern_refresh(self.store, config, stop_event=self.stop_event)
            _record_sweep(started, result)
        except Exception as e:
            logger.error("Daily pattern refresh failed: %s", e)
            _record_sweep(started, {"success": False, "error": str(e)})
        finally:
            self.running = False


def run_scheduler(store: DocumentStore, stop_event: Optional[threading.Event] = None) -> None:
    """Block until stop_event is set (or SIGINT/SIGTERM in the main thread)."""
    InsightsScheduler(store, stop_event).run()
