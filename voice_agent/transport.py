"""
Streaming transport contract.

A transport owns one bidirectional connection to the conversational
backend. It reports lifecycle and inbound traffic through an event sink;
the session controller turns those into queue items tagged with the
transport generation that produced them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .audio_codec import AudioPayload
from .tools import ToolCall, ToolResponse


class TransportEventKind(str, Enum):
    OPEN = "open"
    MESSAGE = "message"
    ERROR = "error"
    CLOSE = "close"


@dataclass(frozen=True)
class InboundMessage:
    """One server message: model audio and/or a tool-call batch."""

    audio: Optional[bytes] = None
    tool_calls: Tuple[ToolCall, ...] = ()


@dataclass(frozen=True)
class TransportEvent:
    kind: TransportEventKind
    generation: int
    message: Optional[InboundMessage] = None
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class TransportConfig:
    model: str
    voice: str
    system_instruction: str
    tools: List[Dict[str, Any]] = field(default_factory=list)
    enable_search: bool = True


class EventSink(Protocol):
    def __call__(
        self,
        kind: TransportEventKind,
        message: Optional[InboundMessage] = None,
        error: Optional[BaseException] = None,
    ) -> None: ...


class Transport(Protocol):
    async def open(self, config: TransportConfig, emit: EventSink) -> None:
        """Start connecting; OPEN (or ERROR) is reported through `emit`."""

    async def send_audio(self, payload: AudioPayload) -> None: ...

    async def send_tool_response(self, responses: List[ToolResponse]) -> None: ...

    async def close(self) -> None:
        """Close the connection. Idempotent; emits nothing afterwards."""
