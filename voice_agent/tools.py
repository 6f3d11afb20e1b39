"""
Tool-call bridge between the voice backend and the wizard state.

Each tool has a pydantic argument model and an async handler. The
dispatcher validates, runs a whole batch concurrently and always returns
exactly one response per call, errors included.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Literal, Mapping, Optional, Protocol, Tuple, Type

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from logging_setup import Component as LogComponent, get_logger
from observability.events import Component as ObsComponent, EventEmitter, Severity

from .errors import ProtocolError, ToolExecutionError
from .state import AppPhase, AppState, DamageEntry, SecondaryDriver, WIZARD_PHASES, whole_years_between

logger = get_logger(LogComponent.TOOLS)

ERROR_PROTOCOL = "protocol"
ERROR_EXECUTION = "execution"


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    args: Dict[str, Any]


@dataclass(frozen=True)
class ToolResponse:
    id: str
    name: str
    result: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_wire(self) -> Dict[str, Any]:
        """Function-response payload as the backend expects it."""
        payload = {"result": self.result} if self.ok else {"error": self.error}
        return {"id": self.id, "name": self.name, "response": payload}


Handler = Callable[[BaseModel], Awaitable[str]]


@dataclass(frozen=True)
class Capability:
    args_model: Type[BaseModel]
    handler: Handler


# --- Argument models ---


class _ToolArgs(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class NavigateArgs(_ToolArgs):
    screen: AppPhase

    @field_validator("screen")
    @classmethod
    def _navigable(cls, value: AppPhase) -> AppPhase:
        if value not in WIZARD_PHASES:
            raise ValueError(f"screen not navigable: {value.value}")
        return value


class UpdateReservationArgs(_ToolArgs):
    start_date: Optional[str] = None
    start_time: Optional[str] = None
    end_date: Optional[str] = None
    end_time: Optional[str] = None
    driver_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    birth_date: Optional[date] = None
    driving_license_issue_date: Optional[date] = None
    nif: Optional[str] = None
    fuel_level: Optional[str] = None
    odometer: Optional[float] = None
    selected_insurance: Optional[str] = None
    baby_seat: Optional[bool] = None
    add_secondary_driver_name: Optional[str] = None


class OpenCameraArgs(_ToolArgs):
    driver_type: Literal["main", "secondary"]
    secondary_driver_index: Optional[int] = None
    doc_type: Literal["cc", "dl"]
    side: Literal["front", "back"]


class LogDamageArgs(_ToolArgs):
    part: str
    description: str
    severity: Literal["low", "medium", "high"] = "medium"


class CheckAvailabilityArgs(_ToolArgs):
    start_date: str
    end_date: str
    category: Optional[str] = None


# --- Manifest ---

TOOL_DECLARATIONS: List[Dict[str, Any]] = [
    {
        "name": "checkAvailability",
        "description": "Checks vehicle availability for specific dates.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "startDate": {"type": "STRING", "description": "YYYY-MM-DD"},
                "endDate": {"type": "STRING", "description": "YYYY-MM-DD"},
                "category": {"type": "STRING", "description": "Economy, Compact, SUV, etc."},
            },
            "required": ["startDate", "endDate"],
        },
    },
    {
        "name": "logDamage",
        "description": "Logs a new damage found on the vehicle during inspection.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "part": {"type": "STRING"},
                "description": {"type": "STRING"},
                "severity": {"type": "STRING", "enum": ["low", "medium", "high"]},
            },
            "required": ["part", "description"],
        },
    },
    {
        "name": "navigateApp",
        "description": "Navigates the user to a specific screen/phase.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "screen": {"type": "STRING", "enum": [p.value for p in WIZARD_PHASES]},
            },
            "required": ["screen"],
        },
    },
    {
        "name": "updateReservationDetails",
        "description": "Updates ANY field in the reservation form based on user voice input.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "startDate": {"type": "STRING"},
                "startTime": {"type": "STRING", "description": "HH:mm (24h format)"},
                "endDate": {"type": "STRING"},
                "endTime": {"type": "STRING", "description": "HH:mm (24h format)"},
                "driverName": {"type": "STRING"},
                "email": {"type": "STRING"},
                "phone": {"type": "STRING"},
                "birthDate": {"type": "STRING"},
                "drivingLicenseIssueDate": {"type": "STRING"},
                "nif": {"type": "STRING"},
                "fuelLevel": {"type": "STRING"},
                "odometer": {"type": "NUMBER"},
                "selectedInsurance": {"type": "STRING"},
                "babySeat": {"type": "BOOLEAN"},
                "addSecondaryDriverName": {
                    "type": "STRING",
                    "description": "Name of a new secondary driver to add",
                },
            },
        },
    },
    {
        "name": "openDocumentCamera",
        "description": (
            "Opens the camera UI for a specific document type. "
            "Use this when asking the user to show a document."
        ),
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "driverType": {
                    "type": "STRING",
                    "enum": ["main", "secondary"],
                    "description": "Who does this document belong to?",
                },
                "secondaryDriverIndex": {
                    "type": "NUMBER",
                    "description": "0 for the first secondary driver, 1 for the second, etc.",
                },
                "docType": {
                    "type": "STRING",
                    "enum": ["cc", "dl"],
                    "description": "cc = Citizen Card/ID, dl = Driving License",
                },
                "side": {"type": "STRING", "enum": ["front", "back"]},
            },
            "required": ["driverType", "docType", "side"],
        },
    },
]


# --- Collaborator contracts used by the handlers ---


class FleetStore(Protocol):
    def list_fleet(self) -> List[Any]: ...


class AvailabilityService(Protocol):
    async def is_available(self, unit_id: str, start_iso: str, end_iso: str) -> bool: ...


def document_id(args: OpenCameraArgs) -> str:
    """Capture slot id: `cc_front`, `dl_back`, ... or `sec_<idx>_<doc>_<side>`."""
    if args.driver_type == "main":
        return f"{args.doc_type}_{args.side}"
    return f"sec_{args.secondary_driver_index or 0}_{args.doc_type}_{args.side}"


def build_capabilities(
    app_state: AppState,
    store: FleetStore,
    availability: AvailabilityService,
    *,
    today: Callable[[], date] = date.today,
    on_date_correction: Optional[Callable[[str], None]] = None,
) -> Dict[str, Capability]:
    """Wire the tool handlers to the wizard state and collaborators."""

    async def navigate(args: NavigateArgs) -> str:
        app_state.set_phase(args.screen)
        return f"Navigated to {args.screen.value}"

    async def update_reservation(args: UpdateReservationArgs) -> str:
        reservation = app_state.reservation
        fields = args.model_dump(exclude_none=True, exclude={"add_secondary_driver_name"})
        updates: Dict[str, Any] = {}

        for key in ("start_date", "end_date"):
            if key in fields and getattr(reservation, key) and getattr(reservation, key) != fields[key]:
                if on_date_correction is not None:
                    on_date_correction(key)

        for key, value in fields.items():
            if isinstance(value, date):
                value = value.isoformat()
            updates[key] = value

        current = today()
        if args.birth_date is not None:
            updates["driver_age"] = max(0, whole_years_between(args.birth_date, current))
        if args.driving_license_issue_date is not None:
            updates["driving_license_years"] = max(
                0, whole_years_between(args.driving_license_issue_date, current)
            )

        name = (args.add_secondary_driver_name or "").strip()
        if name:
            drivers = list(reservation.secondary_drivers)
            if not any(d.name.lower() == name.lower() for d in drivers):
                drivers.append(SecondaryDriver(name=name))
                updates["secondary_drivers"] = drivers

        app_state.reservation = reservation.model_copy(update=updates)
        app_state.notify()

        personal = {k: updates[k] for k in ("driver_name", "email", "phone", "nif") if k in updates}
        if personal:
            logger.debug_pii("Reservation contact details updated", **personal)
        return "Updated"

    async def open_camera(args: OpenCameraArgs) -> str:
        doc_id = document_id(args)
        app_state.set_active_capture(doc_id)
        return f"Camera opened for {doc_id}"

    async def log_damage(args: LogDamageArgs) -> str:
        entry = DamageEntry(part=args.part, description=args.description, severity=args.severity)
        reservation = app_state.reservation
        app_state.reservation = reservation.model_copy(
            update={"damage_report": [*reservation.damage_report, entry]}
        )
        app_state.notify()
        return f"Damage logged: {args.part}"

    async def check_availability(args: CheckAvailabilityArgs) -> str:
        wanted = (args.category or "").lower()
        available = []
        for unit in store.list_fleet():
            if wanted and wanted not in unit.category.lower():
                continue
            if unit.calendar_id and not await availability.is_available(
                unit.calendar_id, args.start_date, args.end_date
            ):
                continue
            available.append(unit.model)
        if available:
            return "Disponíveis: " + ", ".join(available)
        return "Nenhuma viatura disponível."

    return {
        "navigateApp": Capability(NavigateArgs, navigate),
        "updateReservationDetails": Capability(UpdateReservationArgs, update_reservation),
        "openDocumentCamera": Capability(OpenCameraArgs, open_camera),
        "logDamage": Capability(LogDamageArgs, log_damage),
        "checkAvailability": Capability(CheckAvailabilityArgs, check_availability),
    }


class ToolDispatcher:
    """Executes tool-call batches against a capability table."""

    def __init__(self, capabilities: Mapping[str, Capability]):
        self._capabilities = dict(capabilities)
        self.emitter = EventEmitter(ObsComponent.TOOLS)

    @property
    def names(self) -> List[str]:
        return list(self._capabilities)

    async def dispatch(self, calls: List[ToolCall], session_id: str = "system") -> List[ToolResponse]:
        """Run every call concurrently; one response per call, in call order."""
        return list(await asyncio.gather(*(self._run(call, session_id) for call in calls)))

    async def _run(self, call: ToolCall, session_id: str) -> ToolResponse:
        try:
            capability, args = self._resolve(call)
            result = await self._execute(call, capability, args)
        except ProtocolError as e:
            logger.warning("Rejected tool call", tool=call.name, call_id=call.id, error=str(e))
            return self._failed(call, session_id, str(e), ERROR_PROTOCOL)
        except ToolExecutionError as e:
            logger.warning("Tool handler failed", tool=call.name, call_id=call.id, error=str(e))
            return self._failed(call, session_id, str(e), ERROR_EXECUTION)

        self._emit(call, session_id, ok=True)
        return ToolResponse(id=call.id, name=call.name, result=result)

    def _resolve(self, call: ToolCall) -> Tuple[Capability, BaseModel]:
        """Look up the capability and validate the arguments; ProtocolError otherwise."""
        capability = self._capabilities.get(call.name)
        if capability is None:
            raise ProtocolError(f"Unknown tool: {call.name}")
        try:
            return capability, capability.args_model.model_validate(call.args or {})
        except ValidationError as e:
            detail = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'args'}: {err['msg']}"
                for err in e.errors()
            )
            raise ProtocolError(f"Invalid arguments: {detail}") from e

    async def _execute(self, call: ToolCall, capability: Capability, args: BaseModel) -> Any:
        try:
            return await capability.handler(args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ToolExecutionError(str(e) or type(e).__name__) from e

    def _failed(self, call: ToolCall, session_id: str, message: str, error_kind: str) -> ToolResponse:
        self._emit(call, session_id, ok=False, error_kind=error_kind)
        return ToolResponse(id=call.id, name=call.name, error=message, error_kind=error_kind)

    def _emit(self, call: ToolCall, session_id: str, *, ok: bool, error_kind: Optional[str] = None) -> None:
        self.emitter.emit(
            "tool.dispatched",
            session_id=session_id,
            severity=Severity.INFO if ok else Severity.WARN,
            correlation_id=call.id,
            tool=call.name,
            ok=ok,
            error_kind=error_kind,
        )
