"""
Tests for the Gemini Live transport: config building, server message
parsing and the receive loop against a fake SDK session.
"""
import asyncio
import base64
from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest
from google.genai import types

from voice_agent.audio_codec import AudioPayload
from voice_agent.errors import TransientNetworkError
from voice_agent.gemini import GeminiLiveTransport, build_live_config, to_inbound
from voice_agent.tools import TOOL_DECLARATIONS, ToolResponse
from voice_agent.transport import TransportConfig, TransportEventKind


def audio_part(data):
    return SimpleNamespace(inline_data=SimpleNamespace(data=data), text=None)


def server_message(parts=(), calls=()):
    return SimpleNamespace(
        server_content=SimpleNamespace(model_turn=SimpleNamespace(parts=list(parts))) if parts else None,
        tool_call=SimpleNamespace(function_calls=list(calls)) if calls else None,
    )


class FakeLiveSession:
    def __init__(self, turns, block_at_end=False):
        self.turns = list(turns)
        self.block_at_end = block_at_end
        self.realtime_inputs = []
        self.tool_responses = []

    async def receive(self):
        if not self.turns:
            if self.block_at_end:
                await asyncio.Event().wait()
            return
        for response in self.turns.pop(0):
            yield response

    async def send_realtime_input(self, **kwargs):
        self.realtime_inputs.append(kwargs)

    async def send_tool_response(self, **kwargs):
        self.tool_responses.append(kwargs)


def fake_client(session=None, connect_error=None):
    @asynccontextmanager
    async def connect(model, config):
        if connect_error is not None:
            raise connect_error
        yield session

    return SimpleNamespace(aio=SimpleNamespace(live=SimpleNamespace(connect=connect)))


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, kind, message=None, error=None):
        self.events.append((kind, message, error))

    @property
    def kinds(self):
        return [kind for kind, _, _ in self.events]


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


CONFIG = TransportConfig(model="live-model", voice="Kore", system_instruction="Be brief.", tools=TOOL_DECLARATIONS)


class TestBuildLiveConfig:
    def test_audio_voice_and_instruction(self):
        config = build_live_config(CONFIG)

        assert config.response_modalities == [types.Modality.AUDIO]
        assert config.speech_config.voice_config.prebuilt_voice_config.voice_name == "Kore"
        assert config.system_instruction.parts[0].text == "Be brief."

    def test_function_declarations_and_search(self):
        config = build_live_config(CONFIG)

        names = [fd.name for fd in config.tools[0].function_declarations]
        assert sorted(names) == sorted(d["name"] for d in TOOL_DECLARATIONS)
        assert config.tools[1].google_search is not None

    def test_search_can_be_disabled(self):
        config = build_live_config(TransportConfig(
            model="m", voice="Puck", system_instruction="x", tools=[], enable_search=False
        ))

        assert len(config.tools) == 1


class TestToInbound:
    def test_concatenates_audio_parts(self):
        message = to_inbound(server_message(parts=[audio_part(b"\x01\x00"), audio_part(b"\x02\x00")]))

        assert message.audio == b"\x01\x00\x02\x00"
        assert message.tool_calls == ()

    def test_extracts_tool_calls(self):
        call = SimpleNamespace(id="fc-1", name="navigateApp", args={"screen": "DETAILS"})

        message = to_inbound(server_message(calls=[call]))

        assert message.audio is None
        assert [(c.id, c.name, c.args) for c in message.tool_calls] == [
            ("fc-1", "navigateApp", {"screen": "DETAILS"})
        ]

    def test_missing_args_become_empty(self):
        call = SimpleNamespace(id="fc-2", name="logDamage", args=None)

        assert to_inbound(server_message(calls=[call])).tool_calls[0].args == {}

    def test_nothing_useful_returns_none(self):
        assert to_inbound(server_message()) is None
        assert to_inbound(server_message(parts=[SimpleNamespace(inline_data=None, text="hi")])) is None


class TestGeminiLiveTransport:
    @pytest.mark.asyncio
    async def test_open_messages_then_close(self):
        call = SimpleNamespace(id="fc-1", name="navigateApp", args={"screen": "DETAILS"})
        session = FakeLiveSession([
            [server_message(parts=[audio_part(b"\x00\x00")])],
            [server_message(calls=[call])],
        ])
        recorder = Recorder()
        transport = GeminiLiveTransport(fake_client(session))

        await transport.open(CONFIG, recorder)
        await wait_until(lambda: TransportEventKind.CLOSE in recorder.kinds)

        assert recorder.kinds == [
            TransportEventKind.OPEN,
            TransportEventKind.MESSAGE,
            TransportEventKind.MESSAGE,
            TransportEventKind.CLOSE,
        ]

    @pytest.mark.asyncio
    async def test_connect_failure_reports_error(self):
        recorder = Recorder()
        transport = GeminiLiveTransport(fake_client(connect_error=ConnectionRefusedError("connection refused")))

        await transport.open(CONFIG, recorder)
        await wait_until(lambda: recorder.events)

        [(kind, _, error)] = recorder.events
        assert kind == TransportEventKind.ERROR
        assert isinstance(error, ConnectionRefusedError)

    @pytest.mark.asyncio
    async def test_sends_audio_and_tool_responses(self):
        session = FakeLiveSession([], block_at_end=True)
        recorder = Recorder()
        transport = GeminiLiveTransport(fake_client(session))
        await transport.open(CONFIG, recorder)
        await wait_until(lambda: recorder.kinds == [TransportEventKind.OPEN])

        await transport.send_audio(AudioPayload(
            data=base64.b64encode(b"\x01\x02").decode("ascii"), mime_type="audio/pcm;rate=16000"
        ))
        await transport.send_tool_response([
            ToolResponse(id="fc-1", name="navigateApp", result="Navigated to DETAILS"),
            ToolResponse(id="fc-2", name="teleport", error="Unknown tool: teleport", error_kind="protocol"),
        ])

        blob = session.realtime_inputs[0]["audio"]
        assert blob.data == b"\x01\x02"
        assert blob.mime_type == "audio/pcm;rate=16000"
        responses = session.tool_responses[0]["function_responses"]
        assert [(r.id, r.response) for r in responses] == [
            ("fc-1", {"result": "Navigated to DETAILS"}),
            ("fc-2", {"error": "Unknown tool: teleport"}),
        ]

        await transport.close()

    @pytest.mark.asyncio
    async def test_close_is_silent_and_idempotent(self):
        session = FakeLiveSession([], block_at_end=True)
        recorder = Recorder()
        transport = GeminiLiveTransport(fake_client(session))
        await transport.open(CONFIG, recorder)
        await wait_until(lambda: recorder.events)

        await transport.close()
        await transport.close()

        assert recorder.kinds == [TransportEventKind.OPEN]

    @pytest.mark.asyncio
    async def test_send_without_session_is_transient(self):
        transport = GeminiLiveTransport(fake_client())

        with pytest.raises(TransientNetworkError):
            await transport.send_audio(AudioPayload(data="", mime_type="audio/pcm;rate=16000"))
