"""
Gemini Live transport over google-genai.

The SDK session is driven from one background task: it connects, reports
OPEN, and then keeps calling `session.receive()` (which ends after every
model turn) until the socket goes away or the transport is closed.
"""

from __future__ import annotations

import asyncio
import base64
from contextlib import suppress
from typing import Any, List, Optional

from google import genai
from google.genai import types

from logging_setup import Component, get_logger

from .audio_codec import AudioPayload
from .errors import TransientNetworkError
from .tools import ToolCall, ToolResponse
from .transport import EventSink, InboundMessage, TransportConfig, TransportEventKind

logger = get_logger(Component.TRANSPORT)


def build_live_config(config: TransportConfig) -> types.LiveConnectConfig:
    tools = [
        types.Tool(
            function_declarations=[types.FunctionDeclaration(**decl) for decl in config.tools]
        )
    ]
    if config.enable_search:
        tools.append(types.Tool(google_search=types.GoogleSearch()))

    return types.LiveConnectConfig(
        response_modalities=[types.Modality.AUDIO],
        speech_config=types.SpeechConfig(
            voice_config=types.VoiceConfig(
                prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=config.voice)
            )
        ),
        system_instruction=types.Content(parts=[types.Part(text=config.system_instruction)]),
        tools=tools,
    )


def to_inbound(response: Any) -> Optional[InboundMessage]:
    """Extract model audio and tool calls from a server message."""
    audio = bytearray()
    server_content = getattr(response, "server_content", None)
    model_turn = getattr(server_content, "model_turn", None) if server_content else None
    for part in getattr(model_turn, "parts", None) or []:
        inline_data = getattr(part, "inline_data", None)
        data = getattr(inline_data, "data", None) if inline_data else None
        if data:
            audio.extend(data)

    calls = []
    tool_call = getattr(response, "tool_call", None)
    for fc in getattr(tool_call, "function_calls", None) or []:
        calls.append(ToolCall(
            id=getattr(fc, "id", None) or "",
            name=getattr(fc, "name", None) or "",
            args=dict(getattr(fc, "args", None) or {}),
        ))

    if not audio and not calls:
        return None
    return InboundMessage(audio=bytes(audio) if audio else None, tool_calls=tuple(calls))


class GeminiLiveTransport:
    """One Gemini Live connection. Create a new instance per connection."""

    def __init__(self, client: genai.Client):
        self._client = client
        self._session: Any = None
        self._task: Optional[asyncio.Task] = None
        self._emit: Optional[EventSink] = None
        self._closing = False

    async def open(self, config: TransportConfig, emit: EventSink) -> None:
        self._emit = emit
        self._task = asyncio.create_task(self._run(config), name="gemini-live")

    async def _run(self, config: TransportConfig) -> None:
        try:
            async with self._client.aio.live.connect(
                model=config.model, config=build_live_config(config)
            ) as session:
                self._session = session
                logger.info("Gemini Live session open", model=config.model, voice=config.voice)
                self._emit(TransportEventKind.OPEN)

                while not self._closing:
                    received = 0
                    async for response in session.receive():
                        received += 1
                        inbound = to_inbound(response)
                        if inbound is not None:
                            self._emit(TransportEventKind.MESSAGE, message=inbound)
                    if not received:
                        break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._closing:
                logger.warning("Gemini Live session failed", error=str(e), error_type=type(e).__name__)
                self._emit(TransportEventKind.ERROR, error=e)
            return
        finally:
            self._session = None

        if not self._closing:
            self._emit(TransportEventKind.CLOSE)

    async def send_audio(self, payload: AudioPayload) -> None:
        session = self._require_session()
        await session.send_realtime_input(
            audio=types.Blob(data=base64.b64decode(payload.data), mime_type=payload.mime_type)
        )

    async def send_tool_response(self, responses: List[ToolResponse]) -> None:
        session = self._require_session()
        await session.send_tool_response(
            function_responses=[
                types.FunctionResponse(id=r.id, name=r.name, response=r.to_wire()["response"])
                for r in responses
            ]
        )

    def _require_session(self) -> Any:
        if self._session is None:
            raise TransientNetworkError("Connection closed: live session not open")
        return self._session

    async def close(self) -> None:
        self._closing = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._session = None


async def ping_model(client: genai.Client, model: str) -> bool:
    """Minimal round trip to the text model; used as the AI and network health check."""
    response = await client.aio.models.generate_content(model=model, contents="ping")
    return response is not None
