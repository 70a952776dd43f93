"""
FulfillmentRequest dataclass: the only request shape the orchestrator knows.

Every adapter's transform() returns one of these. The orchestrator consumes
this structure only and never touches the raw upstream payload.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class FulfillmentRequest:
    """
    Normalized intake request.

    qty          extracted quantity; None when the upstream has not supplied it
                 yet. Range checks happen in the orchestrator, not here.
    raw_payload  the original parsed body, kept for troubleshooting only.
    source       which adapter produced it ("agent" / "direct").
    """

    patient_id: str
    medicine_id: str = ""
    medicine_name: str = ""
    qty: int | None = None
    prescription_ref: str = ""
    trace_id: str = ""
    locale: str = ""
    source: str = ""
    raw_payload: Any = field(default=None, repr=False)

    @property
    def missing_fields(self) -> list[str]:
        missing = []
        if not (self.medicine_id or self.medicine_name):
            missing.append("medicine")
        if self.qty is None:
            missing.append("qty")
        return missing
