"""
Standard result of one delivery attempt to the fulfillment system.

Every dispatch client's notify() returns this object. The notifier only
knows this shape, never which backend is behind it.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class DispatchReceipt:
    status: str          # what the fulfillment system answered, e.g. "dispatched"
    dispatch_ref: str    # its reference for the order, stored on Order.dispatch_ref


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of the Dispatching step as seen by the orchestrator."""

    status: str          # "dispatched" | "queued" | "dead"
    dispatch_ref: str = ""
