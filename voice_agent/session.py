"""
Session controller for the realtime voice session.

Owns one streaming session at a time:

- acquires output and capture devices (ExitStack, released on every exit path)
- opens a transport per connection attempt, tagged with a generation number
- pumps capture frames to the transport through an ordered outbound buffer
- schedules model audio for gapless playback
- runs tool-call batches and answers them on the transport that asked
- reconnects with backoff on transient transport errors, fails otherwise

Transport events are handled by a single consumer task in delivery order;
events from a retired generation are dropped.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

import numpy as np

from logging_setup import Component as LogComponent, get_logger
from observability.events import Component as ObsComponent, EventEmitter, Severity

from .audio_codec import AudioPayload, decode_pcm, encode_pcm, rms_level
from .devices import classify_device_error
from .errors import (
    AudioCodecError,
    CapturePermissionError,
    ErrorNotice,
    TransientNetworkError,
    VoiceAgentError,
    get_user_message,
)
from .health import HealthMonitor, LogLevel, ModuleName
from .playback import OutputDevice, PlaybackScheduler
from .state import AppPhase, AppState
from .tools import ERROR_PROTOCOL, TOOL_DECLARATIONS, ToolCall, ToolDispatcher
from .transport import (
    InboundMessage,
    Transport,
    TransportConfig,
    TransportEvent,
    TransportEventKind,
)

logger = get_logger(LogComponent.SESSION_CONTROLLER)

TransportFactory = Callable[[], Transport]
Sleep = Callable[[float], Awaitable[Any]]


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


LIVE_STATES = (SessionState.CONNECTING, SessionState.OPEN, SessionState.RECONNECTING)


@dataclass
class Session:
    """One logical voice session, spanning any reconnects."""

    session_id: str
    state: SessionState
    created_at: datetime
    retry_count: int = 0
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None

    def transition_to(self, new_state: SessionState) -> SessionState:
        """Move to `new_state`; returns the previous state."""
        old_state = self.state
        self.state = new_state
        return old_state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "end_reason": self.end_reason,
        }


class CaptureDevice:
    """Capture adapter contract (see devices.SoundDeviceCapture)."""

    def start(self, on_frame: Callable[[np.ndarray], None]) -> None: ...

    def stop(self) -> None: ...


class SessionController:
    """Top-level state machine for the voice session."""

    def __init__(
        self,
        *,
        transport_factory: TransportFactory,
        capture: CaptureDevice,
        output: OutputDevice,
        dispatcher: ToolDispatcher,
        health: HealthMonitor,
        app_state: AppState,
        base_instruction: str,
        model: str,
        voice: str,
        tools: Optional[List[Dict[str, Any]]] = None,
        input_sample_rate: int = 16000,
        output_sample_rate: int = 24000,
        output_channels: int = 1,
        max_attempts: int = 3,
        sleep: Sleep = asyncio.sleep,
    ):
        self._transport_factory = transport_factory
        self._capture = capture
        self._output = output
        self._dispatcher = dispatcher
        self.health = health
        self.app_state = app_state
        self._base_instruction = base_instruction
        self._model = model
        self._voice = voice
        self._tools = tools if tools is not None else TOOL_DECLARATIONS
        self._input_rate = input_sample_rate
        self._output_rate = output_sample_rate
        self._output_channels = output_channels
        self._max_attempts = max_attempts
        self._sleep = sleep

        self.scheduler = PlaybackScheduler(output)
        self.session: Optional[Session] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._generation = 0
        self._live_generation: Optional[int] = None
        self._transport: Optional[Transport] = None
        self._devices: Optional[ExitStack] = None

        self._events: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._sender: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._tool_tasks: Set[asyncio.Task] = set()

        self._outbound: Deque[np.ndarray] = deque()
        self._frames_waiting = asyncio.Event()
        self._transport_ready = asyncio.Event()
        self._closed = asyncio.Event()

        self.emitter = EventEmitter(ObsComponent.SESSION)
        self.logger = logger

    # --- Read side ---

    @property
    def state(self) -> SessionState:
        return self.session.state if self.session else SessionState.IDLE

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def outbound_backlog(self) -> int:
        return len(self._outbound)

    def snapshot(self) -> Dict[str, Any]:
        return self.session.to_dict() if self.session else {"state": SessionState.IDLE.value}

    # --- Commands ---

    async def connect(self, *, from_reconnect: bool = False) -> None:
        """
        Start (or resume, when called by the reconnect timer) a session.

        A no-op while a session is already live.
        """
        if self.state in LIVE_STATES and not from_reconnect:
            return
        if from_reconnect and self.state != SessionState.RECONNECTING:
            return

        self._loop = asyncio.get_running_loop()
        if not from_reconnect:
            self._start_session()

        self._transition(SessionState.CONNECTING)

        if self._devices is None:
            try:
                self._acquire_devices()
            except VoiceAgentError as e:
                await self._fail_audio(e)
                return

        self._generation += 1
        generation = self._generation
        self._live_generation = generation
        transport = self._transport_factory()
        self._transport = transport
        config = TransportConfig(
            model=self._model,
            voice=self._voice,
            system_instruction=self.health.adaptive_instruction(self._base_instruction),
            tools=list(self._tools),
        )

        self.logger.info("Opening transport", generation=generation, model=self._model)
        try:
            await transport.open(config, self._sink(generation))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._on_transport_error(e)

    async def retry(self) -> None:
        """User-initiated retry: reconnect now instead of waiting."""
        if self.state == SessionState.RECONNECTING:
            self._cancel_reconnect()
            await self.connect(from_reconnect=True)
        elif self.state in (SessionState.IDLE, SessionState.CLOSED):
            await self.connect()

    async def disconnect(self) -> None:
        """Stop everything and clear the error notice. Safe in any state."""
        if self.session is not None and self.state != SessionState.CLOSED:
            await self._shutdown("user_disconnect")
        self.app_state.set_error(None)

    def dismiss_error(self) -> bool:
        """Clear a non-fatal notice; fatal notices stay until retry/disconnect."""
        notice = self.app_state.error
        if notice is None:
            return True
        if notice.fatal:
            return False
        self.app_state.set_error(None)
        return True

    async def wait_closed(self) -> None:
        await self._closed.wait()

    # --- Session lifecycle ---

    def _start_session(self) -> None:
        self.session = Session(
            session_id=str(uuid.uuid4()),
            state=SessionState.IDLE,
            created_at=datetime.now(timezone.utc),
        )
        self.logger = logger.with_session(self.session.session_id)
        self.scheduler.reset()
        self._outbound.clear()
        self._frames_waiting.clear()
        self._transport_ready.clear()
        self._closed.clear()
        self.app_state.set_error(None)

        self._events = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume(), name="session-consumer")
        self._sender = asyncio.create_task(self._send_loop(), name="session-sender")

    def _transition(self, new_state: SessionState, reason: Optional[str] = None) -> None:
        session = self.session
        old_state = session.transition_to(new_state)
        if old_state == new_state:
            return
        if new_state == SessionState.CLOSED:
            session.ended_at = datetime.now(timezone.utc)
            session.end_reason = reason
        self.logger.info(
            "Session state changed",
            from_state=old_state.value,
            to_state=new_state.value,
            retry_count=session.retry_count,
        )
        self.emitter.emit(
            "session.state_changed",
            session_id=session.session_id,
            from_state=old_state.value,
            to_state=new_state.value,
            retry_count=session.retry_count,
            reason=reason,
        )

    def _acquire_devices(self) -> None:
        stack = ExitStack()
        try:
            self._output.start()
            stack.callback(self._output.stop)
            self._capture.start(self._on_capture_frame)
            stack.callback(self._capture.stop)
        except Exception as e:
            stack.close()
            raise classify_device_error(e) from e
        self._devices = stack

    def _release_devices(self) -> None:
        stack, self._devices = self._devices, None
        if stack is None:
            return
        try:
            stack.close()
        except Exception as e:
            self.logger.warning("Device release failed", error=str(e))

    async def _teardown_transport(self) -> None:
        self._transport_ready.clear()
        self._live_generation = None
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception as e:
            self.logger.warning("Transport close failed", error=str(e))

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _shutdown(self, reason: str) -> None:
        self._cancel_reconnect()
        await self._teardown_transport()
        self._release_devices()
        self._outbound.clear()
        self._transition(SessionState.CLOSED, reason=reason)
        self.app_state.set_connected(False)

        current = asyncio.current_task()
        workers = [t for t in (self._consumer, self._sender, *self._tool_tasks) if t is not None]
        pending = [t for t in workers if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._consumer = self._sender = None
        self._tool_tasks.clear()
        self._closed.set()

    async def _fail(self, notice: ErrorNotice, reason: str) -> None:
        await self._shutdown(reason)
        self.app_state.set_error(notice)
        self.logger.error("Session failed", reason=reason, notice=notice.message)
        self.emitter.emit(
            "session.failed",
            session_id=self.session.session_id,
            severity=Severity.ERROR,
            reason=reason,
            message=notice.message,
        )

    async def _fail_audio(self, error: VoiceAgentError) -> None:
        self.health.log_event(LogLevel.FATAL, ModuleName.AUDIO_SUBSYSTEM, str(error))
        key = "microphone_denied" if isinstance(error, CapturePermissionError) else "audio_error"
        await self._fail(ErrorNotice.build(get_user_message(key), fatal=True), reason=type(error).__name__)

    # --- Transport events ---

    def _sink(self, generation: int):
        loop = self._loop
        queue = self._events

        def emit(
            kind: TransportEventKind,
            message: Optional[InboundMessage] = None,
            error: Optional[BaseException] = None,
        ) -> None:
            event = TransportEvent(kind=kind, generation=generation, message=message, error=error)
            loop.call_soon_threadsafe(queue.put_nowait, event)

        return emit

    async def _consume(self) -> None:
        while True:
            event = await self._events.get()
            if event.generation != self._live_generation:
                self.logger.debug("Dropping stale transport event", kind=event.kind.value, generation=event.generation)
                continue
            try:
                await self._handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.exception("Transport event handling failed", kind=event.kind.value)
                await self._fail(
                    ErrorNotice.build(get_user_message("server_error"), fatal=True),
                    reason=type(e).__name__,
                )
            if self.state == SessionState.CLOSED:
                return

    async def _handle_event(self, event: TransportEvent) -> None:
        if event.kind == TransportEventKind.OPEN:
            self._on_open()
        elif event.kind == TransportEventKind.MESSAGE:
            await self._on_message(event)
        elif event.kind == TransportEventKind.ERROR:
            await self._on_transport_error(event.error)
        elif event.kind == TransportEventKind.CLOSE:
            if self.state in (SessionState.OPEN, SessionState.CONNECTING):
                await self._on_transport_error(TransientNetworkError("connection closed"))

    def _on_open(self) -> None:
        if self.state != SessionState.CONNECTING:
            return
        self.session.retry_count = 0
        self._transition(SessionState.OPEN)
        self._transport_ready.set()
        self.app_state.set_error(None)
        self.app_state.set_connected(True)
        if self.app_state.phase == AppPhase.WELCOME:
            self.app_state.set_phase(AppPhase.DETAILS)

    async def _on_message(self, event: TransportEvent) -> None:
        message = event.message
        if message is None:
            return
        if message.audio:
            try:
                decoded = decode_pcm(message.audio, self._output_rate, self._output_channels)
            except AudioCodecError as e:
                await self._fail_audio(e)
                return
            self.scheduler.schedule(decoded.samples, decoded.duration)
        if message.tool_calls:
            task = asyncio.create_task(self._run_tools(event.generation, list(message.tool_calls)))
            self._tool_tasks.add(task)
            task.add_done_callback(self._tool_tasks.discard)

    async def _run_tools(self, generation: int, calls: List[ToolCall]) -> None:
        session_id = self.session.session_id
        responses = await self._dispatcher.dispatch(calls, session_id=session_id)

        for response in responses:
            if response.error_kind == ERROR_PROTOCOL:
                self.health.log_event(LogLevel.ERROR, ModuleName.AI_CORE, response.error)

        transport = self._transport
        if generation != self._live_generation or self.state != SessionState.OPEN or transport is None:
            self.logger.info("Dropping tool responses for retired transport", generation=generation, count=len(responses))
            return
        try:
            await transport.send_tool_response(responses)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._events.put_nowait(
                TransportEvent(kind=TransportEventKind.ERROR, generation=generation, error=e)
            )

    async def _on_transport_error(self, error: Optional[BaseException]) -> None:
        session = self.session
        message = (str(error) if error else "") or type(error).__name__
        self.health.log_event(LogLevel.ERROR, ModuleName.NETWORK, message)
        self.emitter.emit(
            "transport.error",
            session_id=session.session_id,
            severity=Severity.WARN,
            error=message,
            retry_count=session.retry_count,
        )

        decision = self.health.should_retry(error, session.retry_count)
        await self._teardown_transport()

        if decision.retry and session.retry_count < self._max_attempts:
            session.retry_count += 1
            self._transition(SessionState.RECONNECTING, reason=message)
            self.app_state.set_connected(False)
            self.app_state.set_error(ErrorNotice.build(
                get_user_message("reconnecting", attempt=session.retry_count), fatal=False
            ))
            self.emitter.emit(
                "transport.reconnect_scheduled",
                session_id=session.session_id,
                attempt=session.retry_count,
                delay_ms=decision.delay_ms,
            )
            self._reconnect_task = asyncio.create_task(
                self._reconnect_after(decision.delay_ms), name="session-reconnect"
            )
            return

        await self._fail(
            ErrorNotice.build(get_user_message("connection_lost"), fatal=True), reason=message
        )

    async def _reconnect_after(self, delay_ms: int) -> None:
        await self._sleep(delay_ms / 1000.0)
        self._reconnect_task = None
        await self.connect(from_reconnect=True)

    # --- Outbound audio ---

    def _on_capture_frame(self, samples: np.ndarray) -> None:
        """PortAudio thread: hand the block to the event loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._enqueue_frame, samples)

    def _enqueue_frame(self, samples: np.ndarray) -> None:
        if self.session is None or self.state == SessionState.CLOSED:
            return
        self.app_state.set_audio_volume(rms_level(samples) * 100.0)
        self._outbound.append(samples)
        self._frames_waiting.set()

    async def _send_loop(self) -> None:
        while True:
            await self._frames_waiting.wait()
            await self._transport_ready.wait()
            if not self._outbound:
                self._frames_waiting.clear()
                continue

            transport, generation = self._transport, self._live_generation
            if transport is None:
                self._transport_ready.clear()
                continue

            head = self._outbound[0]
            payload: AudioPayload = encode_pcm(head, self._input_rate)
            try:
                await transport.send_audio(payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Frame stays at the head until a live transport accepts it.
                self._transport_ready.clear()
                self._events.put_nowait(
                    TransportEvent(kind=TransportEventKind.ERROR, generation=generation, error=e)
                )
                continue

            if self._outbound and self._outbound[0] is head:
                self._outbound.popleft()
