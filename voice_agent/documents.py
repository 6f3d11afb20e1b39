"""
Document capture analysis.

The analyzer asks a Gemini text+vision model for the identity fields on a
captured document; `apply_document_fields` merges them into the
reservation for the capture slot that produced the image.
"""

from __future__ import annotations

import json
from datetime import date
from typing import Any, Dict, Optional

from google import genai
from google.genai import types

from logging_setup import Component, get_logger

from .state import Reservation, whole_years_between

logger = get_logger(Component.COLLABORATORS)

DOCUMENT_FIELDS = ("fullName", "birthDate", "issueDate", "expiryDate", "docNumber", "nif")


class GeminiDocumentAnalyzer:
    """Extracts identity fields from an ID card or driving license image."""

    def __init__(self, client: genai.Client, model: str):
        self._client = client
        self._model = model

    async def analyze(self, image_bytes: bytes, context: str, mime_type: str = "image/jpeg") -> Dict[str, Any]:
        """Never raises; an empty dict means nothing could be read."""
        prompt = (
            f"Extract from this {context}: fullName, birthDate (YYYY-MM-DD), "
            "expiryDate (YYYY-MM-DD), docNumber, nif, issueDate (YYYY-MM-DD)."
        )
        try:
            response = await self._client.aio.models.generate_content(
                model=self._model,
                contents=[types.Part.from_bytes(data=image_bytes, mime_type=mime_type), prompt],
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    response_schema={
                        "type": "OBJECT",
                        "properties": {name: {"type": "STRING"} for name in DOCUMENT_FIELDS},
                    },
                ),
            )
            data = json.loads(response.text or "{}")
        except Exception as e:
            logger.warning("Document analysis failed", context=context, error=str(e))
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if k in DOCUMENT_FIELDS and v}


def _parse_date(value: Any) -> Optional[date]:
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def apply_document_fields(
    reservation: Reservation,
    doc_id: str,
    analysis: Dict[str, Any],
    today: Optional[date] = None,
) -> Reservation:
    """
    Merge analysis results for capture slot `doc_id` into a reservation copy.

    Main-driver slots are `cc_front`, `dl_back`, ...; secondary-driver slots
    are `sec_<idx>_<doc>_<side>`. The slot is always recorded as uploaded.
    """
    today = today or date.today()
    updated = reservation.model_copy(deep=True)
    if doc_id not in updated.uploaded_docs:
        updated.uploaded_docs = [*updated.uploaded_docs, doc_id]

    if doc_id.startswith("sec_"):
        parts = doc_id.split("_")
        try:
            idx, doc_type = int(parts[1]), parts[2]
        except (IndexError, ValueError):
            return updated
        if idx >= len(updated.secondary_drivers):
            return updated
        drivers = list(updated.secondary_drivers)
        driver = drivers[idx].model_copy()
        if analysis.get("fullName"):
            driver.name = analysis["fullName"]
        if analysis.get("docNumber"):
            if doc_type == "cc":
                driver.document_number = analysis["docNumber"]
            else:
                driver.license_number = analysis["docNumber"]
        if analysis.get("expiryDate"):
            if doc_type == "cc":
                driver.document_expiry = analysis["expiryDate"]
            else:
                driver.license_expiry = analysis["expiryDate"]
        drivers[idx] = driver
        updated.secondary_drivers = drivers
        return updated

    is_license = doc_id.startswith("dl")
    if analysis.get("fullName"):
        updated.driver_name = analysis["fullName"]
    if analysis.get("nif"):
        updated.nif = analysis["nif"]
    if analysis.get("docNumber"):
        if is_license:
            updated.license_number = analysis["docNumber"]
        else:
            updated.document_number = analysis["docNumber"]
    if analysis.get("expiryDate"):
        if is_license:
            updated.license_expiry = analysis["expiryDate"]
        else:
            updated.document_expiry = analysis["expiryDate"]

    birth = _parse_date(analysis.get("birthDate"))
    if birth:
        updated.birth_date = birth.isoformat()
        updated.driver_age = max(0, whole_years_between(birth, today))

    issued = _parse_date(analysis.get("issueDate")) if is_license else None
    if issued:
        updated.driving_license_issue_date = issued.isoformat()
        updated.driving_license_years = max(0, whole_years_between(issued, today))

    return updated
