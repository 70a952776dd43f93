from .factory import get_dispatch_client
from .types import DispatchReceipt, DispatchResult

__all__ = ["get_dispatch_client", "DispatchReceipt", "DispatchResult"]
