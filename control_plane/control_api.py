"""
Control API.

Exposes:
- Read API: UI status, health report, events, saved reservations
- Write API: session commands (connect, retry, disconnect, dismiss),
  health check, document captures, reservation save

Every write command emits a control.command_received event.
"""

from __future__ import annotations

import base64
import binascii
import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from logging_setup import Component as LogComponent, get_logger
from observability.event_store import event_store
from observability.events import Component as ObsComponent, EventEmitter, Severity
from voice_agent.documents import apply_document_fields

from .services import Services


router = APIRouter(tags=["control"])
logger = get_logger(LogComponent.CONTROL_PLANE)
emitter = EventEmitter(ObsComponent.CONTROL_PLANE)


def get_services(request: Request) -> Services:
    return request.app.state.services


def _new_correlation_id() -> str:
    return f"cmd_{int(time.time() * 1000)}"


def _command_received(services: Services, command: str) -> str:
    correlation_id = _new_correlation_id()
    session = services.controller.session
    emitter.emit(
        "control.command_received",
        session_id=session.session_id if session else "system",
        severity=Severity.INFO,
        correlation_id=correlation_id,
        command=command,
    )
    return correlation_id


# --- Models ---


class StatusResponse(BaseModel):
    phase: str
    connected: bool
    audio_volume: float
    error: Optional[Dict[str, Any]] = None
    active_capture: Optional[str] = None
    session: Dict[str, Any]
    reservation: Dict[str, Any]


class CommandResponse(BaseModel):
    status: str
    session_state: str


class CaptureRequest(BaseModel):
    image_base64: str = Field(..., min_length=1)
    mime_type: str = "image/jpeg"


class CaptureResponse(BaseModel):
    doc_id: str
    fields: Dict[str, Any]
    reservation: Dict[str, Any]


def _status(services: Services) -> StatusResponse:
    snapshot = services.app_state.snapshot()
    return StatusResponse(session=services.controller.snapshot(), **snapshot)


def _command_result(services: Services) -> CommandResponse:
    return CommandResponse(status="ok", session_state=services.controller.state.value)


# --- Read API ---


@router.get("/status", response_model=StatusResponse)
async def get_status(services: Services = Depends(get_services)) -> StatusResponse:
    """Everything the UI renders: phase, connection, notice, session, reservation."""
    return _status(services)


@router.get("/health")
async def get_health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return services.health.report().to_dict()


@router.get("/events")
async def query_events(
    event_type: Optional[str] = Query(None, description="Filter by event type (e.g. session.state_changed)"),
    component: Optional[str] = Query(None, description="Filter by component (session, tools, health, control_plane)"),
    session_id: Optional[str] = Query(None, description="Filter by session id"),
    limit: Optional[int] = Query(100, ge=1, le=1000, description="Max events to return"),
) -> Dict[str, Any]:
    events = event_store.query(
        session_id=session_id, event_type=event_type, component=component, limit=limit
    )
    return {"events": events, "count": len(events)}


@router.get("/reservations/{reservation_id}")
async def get_reservation(
    reservation_id: str, services: Services = Depends(get_services)
) -> Dict[str, Any]:
    reservation = services.store.get_reservation(reservation_id)
    if reservation is None:
        raise HTTPException(status_code=404, detail="reservation_not_found")
    return reservation.model_dump()


# --- Session commands ---


@router.post("/session/connect", response_model=CommandResponse)
async def connect_session(services: Services = Depends(get_services)) -> CommandResponse:
    _command_received(services, "session.connect")
    await services.controller.connect()
    return _command_result(services)


@router.post("/session/retry", response_model=CommandResponse)
async def retry_session(services: Services = Depends(get_services)) -> CommandResponse:
    _command_received(services, "session.retry")
    await services.controller.retry()
    return _command_result(services)


@router.post("/session/disconnect", response_model=CommandResponse)
async def disconnect_session(services: Services = Depends(get_services)) -> CommandResponse:
    _command_received(services, "session.disconnect")
    await services.controller.disconnect()
    return _command_result(services)


@router.post("/session/dismiss", response_model=CommandResponse)
async def dismiss_notice(services: Services = Depends(get_services)) -> CommandResponse:
    _command_received(services, "session.dismiss")
    if not services.controller.dismiss_error():
        raise HTTPException(status_code=409, detail="notice_not_dismissible")
    return _command_result(services)


# --- Health ---


@router.post("/health/check")
async def run_health_check(services: Services = Depends(get_services)) -> Dict[str, Any]:
    _command_received(services, "health.check")
    report = await services.health.run_health_check(
        ai_check=services.ai_check, persistence_check=services.store.ping
    )
    return report.to_dict()


# --- Captures and reservations ---


@router.post("/captures/{doc_id}", response_model=CaptureResponse)
async def submit_capture(
    doc_id: str, req: CaptureRequest, services: Services = Depends(get_services)
) -> CaptureResponse:
    """Analyze a captured document image and merge the fields into the reservation."""
    _command_received(services, "capture.submit")
    try:
        image = base64.b64decode(req.image_base64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="invalid_image_base64")

    app_state = services.app_state
    fields = await services.analyzer.analyze(image, doc_id, req.mime_type)
    app_state.reservation = apply_document_fields(app_state.reservation, doc_id, fields)
    if app_state.active_capture == doc_id:
        app_state.active_capture = None
    app_state.notify()
    if fields:
        logger.info_pii("Document fields merged", doc_id=doc_id, **fields)

    return CaptureResponse(doc_id=doc_id, fields=fields, reservation=app_state.reservation.model_dump())


@router.post("/reservations")
async def save_reservation(services: Services = Depends(get_services)) -> Dict[str, Any]:
    _command_received(services, "reservation.save")
    saved = services.store.save_reservation(services.app_state.reservation)
    services.app_state.reservation = services.app_state.reservation.model_copy(update={"id": saved.id})
    services.app_state.notify()
    return saved.model_dump()


@router.get("/reservations")
async def list_reservations(services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
    return [r.model_dump() for r in services.store.list_reservations()]
