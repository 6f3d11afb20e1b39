"""
Event store for querying orchestrator events.

Bounded in-memory implementation; the control plane reads from it.
Events also go to stdout, so a log aggregator can keep the full history.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

_ENVELOPE_KEYS = ("ts", "session_id", "component", "event_type", "severity", "correlation_id", "pii")


@dataclass
class StoredEvent:
    """An emitted event kept in memory."""

    ts: datetime
    session_id: str
    component: str
    event_type: str
    severity: str
    correlation_id: str
    pii: Dict[str, Any]
    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "ts": self.ts.isoformat(),
            "session_id": self.session_id,
            "component": self.component,
            "event_type": self.event_type,
            "severity": self.severity,
            "correlation_id": self.correlation_id,
            "pii": self.pii,
        }
        result.update(self.payload)
        return result


class EventStore:
    """
    In-memory event store.

    Keeps the newest `max_events` events in a deque; older ones fall off.
    """

    def __init__(self, max_events: int = 5000):
        self._events: deque[StoredEvent] = deque(maxlen=max_events)
        self._max_events = max_events
        self._lock = threading.Lock()

    def store(self, event: Dict[str, Any]) -> None:
        ts_raw = event.get("ts")
        if isinstance(ts_raw, str):
            ts = datetime.fromisoformat(ts_raw.replace("Z", "+00:00"))
        else:
            ts = datetime.now(timezone.utc)

        session_id = event.get("session_id", "")
        stored = StoredEvent(
            ts=ts,
            session_id=session_id,
            component=event.get("component", "unknown"),
            event_type=event.get("event_type", "unknown"),
            severity=event.get("severity", "info"),
            correlation_id=event.get("correlation_id", session_id),
            pii=event.get("pii", {"contains_pii": False, "fields": [], "handling": "none"}),
            payload={k: v for k, v in event.items() if k not in _ENVELOPE_KEYS},
        )
        with self._lock:
            self._events.append(stored)

    def query(
        self,
        session_id: Optional[str] = None,
        event_type: Optional[str] = None,
        component: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Query events, oldest first.

        With `limit`, the newest `limit` matching events are returned.
        """
        with self._lock:
            snapshot = list(self._events)

        results = [
            e for e in snapshot
            if (not session_id or e.session_id == session_id)
            and (not event_type or e.event_type == event_type)
            and (not component or e.component == component)
            and (not since or e.ts >= since)
        ]
        if limit:
            results = results[-limit:]
        return [e.to_dict() for e in results]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_events": len(self._events),
                "max_events": self._max_events,
                "oldest_event_ts": self._events[0].ts.isoformat() if self._events else None,
                "newest_event_ts": self._events[-1].ts.isoformat() if self._events else None,
            }


event_store = EventStore()
