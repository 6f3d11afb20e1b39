"""
Wizard state shared between the tool handlers and the UI.

The reservation record is a pydantic model; tool handlers merge partial
updates into it. `AppState` holds the fields the UI renders and notifies
listeners after every change.
"""

from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import ErrorNotice


class AppPhase(str, Enum):
    """Wizard screens, in flow order."""

    WELCOME = "WELCOME"
    DETAILS = "DETAILS"
    DOCUMENTS = "DOCUMENTS"
    VEHICLE_SELECTION = "VEHICLE_SELECTION"
    PICKUP_INSPECTION = "PICKUP_INSPECTION"
    CONTRACT_SIGNATURE = "CONTRACT_SIGNATURE"
    CONTRACT_PREVIEW = "CONTRACT_PREVIEW"
    COMPLETED = "COMPLETED"


# Screens the agent may navigate to
WIZARD_PHASES = (
    AppPhase.DETAILS,
    AppPhase.DOCUMENTS,
    AppPhase.VEHICLE_SELECTION,
    AppPhase.PICKUP_INSPECTION,
    AppPhase.CONTRACT_SIGNATURE,
    AppPhase.CONTRACT_PREVIEW,
)

Severity = Literal["low", "medium", "high"]


class SecondaryDriver(BaseModel):
    name: str
    document_number: Optional[str] = None
    document_expiry: Optional[str] = None
    license_number: Optional[str] = None
    license_expiry: Optional[str] = None


class DamageEntry(BaseModel):
    part: str
    description: str
    severity: Severity = "medium"


class Reservation(BaseModel):
    """Rental intake record built up during the conversation."""

    model_config = ConfigDict(validate_assignment=True)

    id: Optional[str] = None
    start_date: str = ""
    start_time: str = "10:00"
    end_date: str = ""
    end_time: str = "10:00"
    vehicle_id: Optional[str] = None

    driver_name: str = ""
    email: str = ""
    phone: str = ""
    birth_date: Optional[str] = None
    driver_age: Optional[int] = None
    driving_license_issue_date: Optional[str] = None
    driving_license_years: Optional[int] = None
    nif: Optional[str] = None

    document_number: Optional[str] = None
    document_expiry: Optional[str] = None
    license_number: Optional[str] = None
    license_expiry: Optional[str] = None

    fuel_level: Optional[str] = None
    odometer: Optional[float] = None
    selected_insurance: Optional[str] = None
    baby_seat: bool = False

    secondary_drivers: List[SecondaryDriver] = Field(default_factory=list)
    damage_report: List[DamageEntry] = Field(default_factory=list)
    uploaded_docs: List[str] = Field(default_factory=list)


def whole_years_between(earlier: date, today: date) -> int:
    """Completed years from `earlier` to `today` (a Feb 29 date counts on Mar 1)."""
    return today.year - earlier.year - ((today.month, today.day) < (earlier.month, earlier.day))


StateListener = Callable[["AppState"], None]


class AppState:
    """
    UI-facing state of the intake wizard.

    Mutated on the event loop only, by tool handlers and the session
    controller. Listeners run synchronously after each change.
    """

    def __init__(self, reservation: Optional[Reservation] = None):
        self.phase: AppPhase = AppPhase.WELCOME
        self.reservation: Reservation = reservation or Reservation()
        self.active_capture: Optional[str] = None
        self.connected: bool = False
        self.audio_volume: float = 0.0
        self.error: Optional[ErrorNotice] = None
        self._listeners: List[StateListener] = []

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def set_phase(self, phase: AppPhase) -> None:
        if self.phase != phase:
            self.phase = phase
            self.notify()

    def set_connected(self, connected: bool) -> None:
        self.connected = connected
        if not connected:
            self.audio_volume = 0.0
        self.notify()

    def set_error(self, notice: Optional[ErrorNotice]) -> None:
        self.error = notice
        self.notify()

    def set_active_capture(self, doc_id: Optional[str]) -> None:
        self.active_capture = doc_id
        self.notify()

    def set_audio_volume(self, level: float) -> None:
        # No notify; volume updates arrive at capture rate.
        self.audio_volume = level

    def snapshot(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "connected": self.connected,
            "audio_volume": self.audio_volume,
            "error": self.error.to_dict() if self.error else None,
            "active_capture": self.active_capture,
            "reservation": self.reservation.model_dump(),
        }
