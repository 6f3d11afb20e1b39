"""
Event emission and event store tests.

Every event is one JSON envelope per line on stdout and is also kept in
the in-memory store that backs GET /events.
"""
import json
from datetime import datetime, timedelta, timezone

import pytest

from observability.event_store import EventStore, event_store
from observability.events import Component, EventEmitter, Severity


@pytest.fixture(autouse=True)
def clear_store():
    event_store.clear()
    yield
    event_store.clear()


class TestEventFormat:
    def test_required_fields(self, capsys):
        EventEmitter(Component.SESSION).emit(
            "session.state_changed",
            session_id="sess-123",
            from_state="idle",
            to_state="connecting",
        )

        event = json.loads(capsys.readouterr().out.strip())

        for key in ("ts", "session_id", "component", "event_type", "severity", "correlation_id", "pii"):
            assert key in event
        assert event["component"] == "session"
        assert event["severity"] == "info"
        assert event["correlation_id"] == "sess-123"
        assert event["from_state"] == "idle"
        assert event["to_state"] == "connecting"
        datetime.fromisoformat(event["ts"].replace("Z", "+00:00"))

    def test_pii_and_correlation(self, capsys):
        EventEmitter(Component.TOOLS).emit(
            "tool.dispatched",
            session_id="sess-1",
            severity=Severity.WARN,
            correlation_id="call-7",
            pii={"contains_pii": True, "fields": ["driver_name"], "handling": "restricted"},
        )

        event = json.loads(capsys.readouterr().out.strip())
        assert event["severity"] == "warn"
        assert event["correlation_id"] == "call-7"
        assert event["pii"]["fields"] == ["driver_name"]

    def test_one_line_per_event(self, capsys):
        emitter = EventEmitter(Component.HEALTH)
        emitter.emit("health.heal_attempted", session_id="system", module="network")
        emitter.emit("health.heal_attempted", session_id="system", module="audio_subsystem")

        lines = capsys.readouterr().out.strip().split("\n")
        assert [json.loads(l)["module"] for l in lines] == ["network", "audio_subsystem"]


class TestEventStore:
    def test_emitted_events_are_stored(self, capsys):
        EventEmitter(Component.CONTROL_PLANE).emit(
            "control.command_received", session_id="system", command="session.connect"
        )

        events = event_store.query(event_type="control.command_received")
        assert len(events) == 1
        assert events[0]["command"] == "session.connect"
        assert events[0]["component"] == "control_plane"

    def test_query_filters(self):
        store = EventStore()
        store.store({"session_id": "a", "component": "session", "event_type": "session.failed"})
        store.store({"session_id": "b", "component": "tools", "event_type": "tool.dispatched"})
        store.store({"session_id": "a", "component": "tools", "event_type": "tool.dispatched"})

        assert len(store.query(session_id="a")) == 2
        assert len(store.query(component="tools")) == 2
        assert len(store.query(session_id="a", event_type="tool.dispatched")) == 1

    def test_limit_returns_newest(self):
        store = EventStore()
        for i in range(5):
            store.store({"session_id": "s", "event_type": "e", "seq": i})

        assert [e["seq"] for e in store.query(limit=2)] == [3, 4]

    def test_since_filter(self):
        store = EventStore()
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        store.store({"session_id": "s", "event_type": "old", "ts": old.isoformat()})
        store.store({"session_id": "s", "event_type": "new"})

        recent = store.query(since=datetime.now(timezone.utc) - timedelta(minutes=1))
        assert [e["event_type"] for e in recent] == ["new"]

    def test_bounded(self):
        store = EventStore(max_events=3)
        for i in range(5):
            store.store({"session_id": "s", "event_type": "e", "seq": i})

        stats = store.get_stats()
        assert stats["total_events"] == 3
        assert stats["max_events"] == 3
        assert [e["seq"] for e in store.query()] == [2, 3, 4]
