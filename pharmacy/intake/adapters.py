"""
Concrete adapters.

New request source: add a class here, then register it in factory.py.

Registered sources:
  agent   : AgentAdapter   (JSON, camelCase entities from the conversational agent)
  direct  : DirectAdapter  (JSON, flat snake_case from internal tools and tests)
"""

from typing import Any

from .base import BaseIntakeAdapter, coerce_qty
from .types import FulfillmentRequest


# ── AgentAdapter ───────────────────────────────────────────────────────────
#
# Upstream format (JSON), as produced by the conversational front end:
# {
#   "patient_id": "patient123",
#   "trace_id": "tr-5f0c...",
#   "preferred_language": "en",
#   "detected_entities": {
#     "medicineName": "Ibuprofen",
#     "medicineId":   "MED002",          ← optional, wins over the name
#     "dosage":       "200mg",
#     "qty":          "30"               ← often a string
#   },
#   "prescription": { "reference": "RX-2024-118" }
# }

class AgentAdapter(BaseIntakeAdapter):
    source = "agent"

    def parse(self) -> Any:
        self._parsed = self._load_json()
        return self._parsed

    def transform(self) -> FulfillmentRequest:
        raw = self._parsed
        entities = raw.get("detected_entities") or {}
        prescription = raw.get("prescription") or {}
        if isinstance(prescription, str):
            prescription = {"reference": prescription}

        return FulfillmentRequest(
            source=self.source,
            raw_payload=raw,
            patient_id=self._text(raw.get("patient_id") or raw.get("patientId")),
            medicine_id=self._text(entities.get("medicineId")),
            medicine_name=self._text(entities.get("medicineName")),
            qty=coerce_qty(entities.get("qty")),
            prescription_ref=self._text(prescription.get("reference")),
            trace_id=self._text(raw.get("trace_id") or raw.get("traceId")),
            locale=self._text(raw.get("preferred_language")),
        )


# ── DirectAdapter ──────────────────────────────────────────────────────────
#
# {
#   "patient_id":       "patient456",
#   "medicine_id":      "MED003",
#   "medicine_name":    "",
#   "qty":              10,
#   "prescription_ref": "RX-77",
#   "trace_id":         "",               ← minted by the orchestrator when blank
#   "locale":           "en-GB"
# }

class DirectAdapter(BaseIntakeAdapter):
    source = "direct"

    def parse(self) -> Any:
        self._parsed = self._load_json()
        return self._parsed

    def transform(self) -> FulfillmentRequest:
        raw = self._parsed
        return FulfillmentRequest(
            source=self.source,
            raw_payload=raw,
            patient_id=self._text(raw.get("patient_id")),
            medicine_id=self._text(raw.get("medicine_id")),
            medicine_name=self._text(raw.get("medicine_name")),
            qty=coerce_qty(raw.get("qty")),
            prescription_ref=self._text(raw.get("prescription_ref")),
            trace_id=self._text(raw.get("trace_id")),
            locale=self._text(raw.get("locale")),
        )
