"""
Error taxonomy for the voice session orchestrator.

Only transport-level failures are candidates for retry; everything on the
tool-call path is absorbed into tool responses and never ends a session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Tuple


class VoiceAgentError(Exception):
    """Base class for orchestrator errors."""


class TransientNetworkError(VoiceAgentError, ConnectionError):
    """Connectivity failure that may succeed on a later attempt."""


class CapturePermissionError(VoiceAgentError, PermissionError):
    """The capture device was denied. Fatal, never retried."""


class ProtocolError(VoiceAgentError):
    """Malformed or unrecognized tool call from the backend."""


class ToolExecutionError(VoiceAgentError):
    """A tool handler failed while executing a well-formed call."""


class FatalAudioError(VoiceAgentError):
    """Audio device or codec failure. Tears the session down."""


class AudioCodecError(FatalAudioError):
    """PCM payload that cannot be decoded."""


class NoticeAction:
    """Actions a UI can offer next to an error notice."""

    RETRY = "retry"
    DISMISS = "dismiss"
    CONTACT_SUPPORT = "contact_support"


# User-facing messages (PT-PT, same language as the voice agent)
MESSAGES = {
    "connection_lost": "Ligação perdida.",
    "server_error": "Erro no servidor.",
    "audio_error": "Erro de áudio.",
    "microphone_denied": "Acesso ao microfone negado.",
    "reconnecting": "A religar ({attempt})...",
}


@dataclass(frozen=True)
class ErrorNotice:
    """What the UI shows when the session hits a problem."""

    message: str
    fatal: bool
    actions: Tuple[str, ...] = field(default=())

    @classmethod
    def build(cls, message: str, *, fatal: bool) -> "ErrorNotice":
        """Fatal notices offer retry and support only; others can be dismissed."""
        if fatal:
            actions = (NoticeAction.RETRY, NoticeAction.CONTACT_SUPPORT)
        else:
            actions = (NoticeAction.RETRY, NoticeAction.DISMISS, NoticeAction.CONTACT_SUPPORT)
        return cls(message=message, fatal=fatal, actions=actions)

    @property
    def dismissible(self) -> bool:
        return NoticeAction.DISMISS in self.actions

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "fatal": self.fatal, "actions": list(self.actions)}


def get_user_message(key: str, **params: Any) -> str:
    """Resolve a user-facing message, falling back to the generic connection text."""
    template = MESSAGES.get(key, MESSAGES["connection_lost"])
    return template.format(**params)
