"""
BaseDispatchClient: abstract base for every fulfillment-system backend.

A new backend only has to:
1. subclass BaseDispatchClient
2. implement notify()
3. register one line in factory.py's registry

The notifier never knows which backend it is talking to.
"""

from abc import ABC, abstractmethod

from .types import DispatchReceipt


class BaseDispatchClient(ABC):

    @abstractmethod
    def notify(self, payload: dict, idempotency_key: str, timeout: float) -> DispatchReceipt:
        """
        Tell the fulfillment system that a committed order is ready.

        Args:
            payload:         order summary (order_id, medicine, qty, trace_id, ...)
            idempotency_key: the order id; consumers use it to drop duplicates
            timeout:         upper bound in seconds, the call must not block longer

        Returns:
            DispatchReceipt(status=..., dispatch_ref=...)

        Raises:
            DispatchFailure: on any delivery problem; the notifier logs it
                             and leaves the outbox message pending
        """
