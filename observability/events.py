"""
Structured JSON event emission (shared).

Every orchestrator milestone (state changes, tool dispatches, heals,
transport failures) is published as one JSON envelope per line on stdout
and kept in the in-memory event store for the control plane read API.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .event_store import event_store


class Component(str, Enum):
    """Event-producing components."""

    SESSION = "session"
    TOOLS = "tools"
    HEALTH = "health"
    CONTROL_PLANE = "control_plane"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


DEFAULT_PII = {"contains_pii": False, "fields": [], "handling": "none"}


class EventEmitter:
    """Emits structured JSON events."""

    def __init__(self, component: Component):
        self.component = component

    def emit(
        self,
        event_type: str,
        session_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        """
        Emit one event.

        Args:
            event_type: Stable event type string (e.g. "session.state_changed")
            session_id: Opaque session identifier ("system" for process-wide events)
            severity: Event severity level
            correlation_id: Optional id tying the event to a turn or command
            pii: PII metadata dict with contains_pii, fields, handling
            **kwargs: Event-specific fields
        """
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or session_id,
            "pii": pii or DEFAULT_PII,
        }
        event.update(kwargs)

        sys.stdout.write(json.dumps(event, ensure_ascii=False, default=str))
        sys.stdout.write("\n")
        sys.stdout.flush()

        event_store.store(event)
