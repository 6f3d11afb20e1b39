"""
In-memory reservation and fleet store.

Stands in for the business database; the storage format is not part of the
orchestrator's contract, only this interface is.
"""

from __future__ import annotations

import threading
import uuid
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from logging_setup import Component, get_logger

from .state import Reservation

logger = get_logger(Component.COLLABORATORS)


class CarDetails(BaseModel):
    id: str
    model: str
    license_plate: str
    category: str
    price: str
    specs: str = ""
    calendar_id: Optional[str] = None
    status: str = "available"


FLEET_DATA = [
    CarDetails(
        id="1",
        model="Mitsubishi Space Star",
        license_plate="AQ-26-CG",
        category="Económico",
        price="39€/dia",
        specs="Gasolina. 5 Portas.",
    ),
    CarDetails(
        id="6",
        model="Toyota Yaris (Manual)",
        license_plate="AS-16-BI",
        category="Compacto",
        price="49€/dia",
        specs="Híbrido. GPS Incluído.",
    ),
]


class ReservationStore:
    """Thread-safe in-memory store for the fleet and saved reservations."""

    def __init__(self, fleet: Optional[Iterable[CarDetails]] = None):
        self._lock = threading.Lock()
        self._fleet: List[CarDetails] = [
            car.model_copy() for car in (FLEET_DATA if fleet is None else fleet)
        ]
        self._reservations: Dict[str, Reservation] = {}
        self._scratch: Dict[str, str] = {}

    def list_fleet(self) -> List[CarDetails]:
        with self._lock:
            return [car.model_copy() for car in self._fleet]

    def save_reservation(self, reservation: Reservation) -> Reservation:
        """Store a copy; assigns an id on first save."""
        saved = reservation.model_copy(deep=True)
        if not saved.id:
            saved.id = f"res_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._reservations[saved.id] = saved
        logger.info("Reservation saved", reservation_id=saved.id)
        return saved.model_copy(deep=True)

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        with self._lock:
            found = self._reservations.get(reservation_id)
        return found.model_copy(deep=True) if found else None

    def list_reservations(self) -> List[Reservation]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._reservations.values()]

    async def ping(self) -> bool:
        """Write, read back and delete a scratch key."""
        with self._lock:
            self._scratch["db_test"] = "ok"
            ok = self._scratch.get("db_test") == "ok"
            self._scratch.pop("db_test", None)
        return ok
