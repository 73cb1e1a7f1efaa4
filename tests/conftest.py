# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""Test configuration — paths isolation, a fresh store and entry factories."""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from core.paths import configure, reset
from insights.events import Events, bus
from insights.store import DocumentStore

# Monday 2026-03-02, 09:00 UTC
BASE = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def isolated_paths(tmp_path):
    """Route all EchoVault data to a temp directory for test isolation."""
    paths = configure(tmp_path)
    paths.ensure_dirs()
    yield paths
    reset()


@pytest.fixture(autouse=True)
def clean_bus():
    """The process-wide bus starts every test with no subscribers."""
    bus.reset()
    yield bus
    bus.reset()


class EventRecorder:
    """Listens to every event type ahead of other subscribers and keeps what it saw."""

    def __init__(self, event_bus):
        self.events = []
        for name, event_type in vars(Events).items():
            if name.isupper():
                event_bus.on(event_type, self.events.append, priority=100, source="tests.recorder")

    def types(self):
        return [e.type for e in self.events]

    def of(self, event_type):
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def emitted(clean_bus):
    """Every event emitted during the test, in dispatch order."""
    return EventRecorder(clean_bus)


@pytest.fixture
def store(isolated_paths):
    return DocumentStore(isolated_paths.store_dir)


@pytest.fixture
def make_entry(store):
    """
    Entry factory. Each call gets the next id (e001, e002, ...) and, unless
    `created` is given, a createdAt one hour after the previous entry.
    """
    counter = itertools.count(1)

    def _make(text="", mood=None, tags=None, created=None, effective=None,
              analysis=None, category=None, user_id="u1", save=True):
        n = next(counter)
        created = created or BASE + timedelta(hours=n)
        record = {
            "text": text,
            "createdAt": created.isoformat(),
            "tags": list(tags or []),
            "category": category,
        }
        if effective is not None:
            record["effectiveDate"] = effective.isoformat()
        if analysis is None and mood is not None:
            analysis = {"mood_score": mood}
        if analysis is not None:
            record["analysis"] = analysis
        entry_id = f"e{n:03d}"
        if save:
            return store.create(user_id, "entries", entry_id, record)
        return {**record, "id": entry_id}

    return _make
