from .base import parse_qty
from .confirmation import is_affirmative
from .factory import get_adapter
from .types import FulfillmentRequest

__all__ = ["get_adapter", "is_affirmative", "parse_qty", "FulfillmentRequest"]
