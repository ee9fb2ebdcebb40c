"""Shared fixtures for the audit trail tests."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from audittrail.core import AuditTrail, ChainSequencer
from audittrail.db.store import InMemoryAuditStore


class StepClock:
    """Deterministic clock: each call is one second after the previous."""

    def __init__(self, start=None, step=timedelta(seconds=1)):
        self.now = start or datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
        self.step = step
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            current = self.now
            self.now = self.now + self.step
            return current


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def store():
    return InMemoryAuditStore()


@pytest.fixture
def sequencer(store, clock):
    return ChainSequencer.recover(store, clock=clock)


@pytest.fixture
def trail(store, clock):
    return AuditTrail(store, clock=clock)


def _record_many(trail, count, start=0):
    return [
        trail.record_event(f"u{i}", "complaint.submit", "complaint", f"c-{i}")
        for i in range(start, start + count)
    ]


@pytest.fixture
def record_many():
    """record_many(trail, count) records `count` complaint submissions."""
    return _record_many
