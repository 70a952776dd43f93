"""
BaseIntakeAdapter: abstract base of every request-source adapter.

A new source only needs to:
1. subclass BaseIntakeAdapter
2. implement parse() and transform()
3. register one line in factory.py's registry

The orchestrator does not change.
"""

import json
import re
from abc import ABC, abstractmethod
from typing import Any

from ..exceptions import ValidationError
from .types import FulfillmentRequest

# ── shared validation patterns ─────────────────────────────────────────────
TRACE_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")
LOCALE_RE = re.compile(r"^[A-Za-z]{2,3}([-_][A-Za-z0-9]{2,8})*$")
QTY_RE = re.compile(r"^-?\d+$")
# upper bound of the integer qty columns
MAX_QTY = 2**31 - 1


def coerce_qty(value: Any) -> Any:
    """
    Integers and digit strings ("30", "-2") become int; absent stays None.
    Anything else is returned as-is so validate() can report it.
    Range checks (qty > 0) belong to the orchestrator.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and QTY_RE.match(value.strip()):
        return int(value.strip())
    return value


def qty_error(qty: Any) -> str | None:
    """Why qty cannot be stored, or None. Zero and negatives pass; the orchestrator rejects those."""
    if qty is None:
        return None
    if isinstance(qty, bool) or not isinstance(qty, int):
        return f"qty must be a whole number, got {qty!r}."
    if abs(qty) > MAX_QTY:
        return f"qty must not exceed {MAX_QTY}."
    return None


def parse_qty(value: Any) -> int | None:
    """coerce_qty() for a single field; raises ValidationError on non-numbers and out-of-range values."""
    qty = coerce_qty(value)
    error = qty_error(qty)
    if error:
        raise ValidationError(
            message=error,
            code="VALIDATION_ERROR",
            detail={"errors": [{"field": "qty", "message": error}]},
        )
    return qty


class BaseIntakeAdapter(ABC):
    """
    Three-step pipeline: parse → transform → validate

    Subclasses implement parse() and transform(); validate() covers the
    common identifier and quantity checks and may be extended via super().
    """

    # registry key in factory.py
    source: str = ""

    def __init__(self, raw_body: bytes | str | dict, content_type: str = ""):
        self._raw_body = raw_body
        self._content_type = content_type

    # ── required ───────────────────────────────────────────────────────────

    @abstractmethod
    def parse(self) -> Any:
        """
        Raw body (bytes / str) → intermediate structure, stored on self._parsed.
        """

    @abstractmethod
    def transform(self) -> FulfillmentRequest:
        """
        self._parsed → FulfillmentRequest, keeping the parsed body in raw_payload.
        """

    # ── shared helpers ─────────────────────────────────────────────────────

    def _load_json(self) -> dict:
        if isinstance(self._raw_body, dict):
            return self._raw_body
        try:
            raw = json.loads(self._raw_body or "{}")
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                message="Request body is not valid JSON.",
                code="INVALID_JSON",
                detail={"error": str(exc)},
            )
        if not isinstance(raw, dict):
            raise ValidationError(
                message="Request body must be a JSON object.",
                code="INVALID_JSON",
            )
        return raw

    @staticmethod
    def _text(value: Any) -> str:
        return str(value).strip() if value is not None else ""

    # ── default implementation, may be overridden ──────────────────────────

    def validate(self, request: FulfillmentRequest) -> None:
        """
        Validate the common fields of a FulfillmentRequest.
        Raises ValidationError.
        """
        errors = []

        if not request.patient_id:
            errors.append({"field": "patient_id", "message": "patient_id is required."})

        qty_problem = qty_error(request.qty)
        if qty_problem:
            errors.append({"field": "qty", "message": qty_problem})

        if request.trace_id and not TRACE_ID_RE.match(request.trace_id):
            errors.append({
                "field": "trace_id",
                "message": "trace_id must be 1-64 characters of letters, digits, '.', '_', ':' or '-'.",
            })

        if request.locale and not LOCALE_RE.match(request.locale):
            errors.append({"field": "locale", "message": f"Invalid locale tag: {request.locale!r}."})

        if errors:
            raise ValidationError(
                message="Request validation failed.",
                code="VALIDATION_ERROR",
                detail={"errors": errors},
            )

    # ── public entry point ─────────────────────────────────────────────────

    def process(self) -> FulfillmentRequest:
        """parse → transform → validate; returns a validated FulfillmentRequest."""
        self.parse()
        request = self.transform()
        self.validate(request)
        return request
