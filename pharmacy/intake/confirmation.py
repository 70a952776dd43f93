"""
Explicit confirmation parsing.

Only an unambiguous yes counts. Hedged or conditional replies
("yes, but...", "maybe", "sure?") are not a confirmation, and the run
stays where it is.
"""

from typing import Any

AFFIRMATIVE_SIGNALS = frozenset({
    "yes",
    "y",
    "confirm",
    "confirmed",
    "i confirm",
    "yes please",
    "yes, please",
    "yes, confirm",
    "proceed",
    "place the order",
})


def is_affirmative(signal: Any) -> bool:
    if signal is True:
        return True
    if not isinstance(signal, str):
        return False
    normalized = " ".join(signal.strip().lower().split()).rstrip(".!")
    return normalized in AFFIRMATIVE_SIGNALS
