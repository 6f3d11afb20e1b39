"""
Composition root.

`build_services` wires the process-wide objects once: wizard state, store,
health monitor, tool dispatcher and session controller.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

from logging_setup import Component, get_logger
from voice_agent.calendar import GoogleCalendarAvailability
from voice_agent.config import VoiceConfig
from voice_agent.devices import SoundDeviceCapture, SoundDeviceOutput, check_audio_devices
from voice_agent.documents import GeminiDocumentAnalyzer
from voice_agent.errors import ErrorNotice
from voice_agent.health import HealthCheck, HealthMonitor, ModuleName
from voice_agent.instructions import get_instructions
from voice_agent.session import CaptureDevice, SessionController, TransportFactory
from voice_agent.state import AppState
from voice_agent.store import ReservationStore
from voice_agent.tools import AvailabilityService, ToolDispatcher, build_capabilities

logger = get_logger(Component.CONTROL_PLANE)


@dataclass
class Services:
    config: VoiceConfig
    app_state: AppState
    store: ReservationStore
    health: HealthMonitor
    dispatcher: ToolDispatcher
    controller: SessionController
    analyzer: Any
    ai_check: Optional[HealthCheck] = None
    startup_check: bool = True


def build_services(
    config: VoiceConfig,
    *,
    client: Any = None,
    transport_factory: Optional[TransportFactory] = None,
    capture: Optional[CaptureDevice] = None,
    output: Any = None,
    availability: Optional[AvailabilityService] = None,
    analyzer: Any = None,
    ai_check: Optional[HealthCheck] = None,
    sleep: Any = asyncio.sleep,
    startup_check: bool = True,
) -> Services:
    """
    Build the object graph.

    Anything not injected is created from `config`; the Gemini client is
    only constructed when something still needs it.
    """
    needs_client = transport_factory is None or analyzer is None or ai_check is None
    if client is None and needs_client:
        from google import genai

        client = genai.Client(api_key=config.gemini_api_key)

    if transport_factory is None:
        from voice_agent.gemini import GeminiLiveTransport

        def transport_factory():
            return GeminiLiveTransport(client)

    if ai_check is None:
        from voice_agent.gemini import ping_model

        async def ai_check() -> bool:
            return await ping_model(client, config.analysis_model)

    store = ReservationStore()

    async def audio_check() -> bool:
        return await asyncio.to_thread(check_audio_devices)

    health = HealthMonitor(
        checks={
            ModuleName.AI_CORE: ai_check,
            ModuleName.NETWORK: ai_check,
            ModuleName.PERSISTENCE: store.ping,
            ModuleName.AUDIO_SUBSYSTEM: audio_check,
        },
        heal_timeout_s=config.heal_timeout_seconds,
        max_attempts=config.max_reconnect_attempts,
    )

    app_state = AppState()
    capabilities = build_capabilities(
        app_state,
        store,
        availability or GoogleCalendarAvailability(config.google_calendar_token),
        on_date_correction=lambda field: health.record_learning(
            "user_date_corrections", 1, "Ask for the year and verify dates twice"
        ),
    )
    dispatcher = ToolDispatcher(capabilities)

    controller = SessionController(
        transport_factory=transport_factory,
        capture=capture or SoundDeviceCapture(config.input_sample_rate, config.capture_block_size),
        output=output or SoundDeviceOutput(config.output_sample_rate),
        dispatcher=dispatcher,
        health=health,
        app_state=app_state,
        base_instruction=get_instructions(config.scenario),
        model=config.live_model,
        voice=config.voice,
        input_sample_rate=config.input_sample_rate,
        output_sample_rate=config.output_sample_rate,
        max_attempts=config.max_reconnect_attempts,
        sleep=sleep,
    )

    return Services(
        config=config,
        app_state=app_state,
        store=store,
        health=health,
        dispatcher=dispatcher,
        controller=controller,
        analyzer=analyzer or GeminiDocumentAnalyzer(client, config.analysis_model),
        ai_check=ai_check,
        startup_check=startup_check,
    )


async def run_startup_check(services: Services) -> None:
    """Initial health check; a critical report is surfaced as a fatal notice."""
    report = await services.health.run_health_check(
        ai_check=services.ai_check, persistence_check=services.store.ping
    )
    logger.info("Startup health check", status=report.status, stability_score=report.stability_score)
    if report.status == "critical":
        services.app_state.set_error(ErrorNotice.build(
            "Erro crítico de sistema: " + ", ".join(report.issues), fatal=True
        ))
