"""
Factory: returns the dispatch client selected by settings.PHARMACY_DISPATCH_BACKEND.

A new backend only needs:
  1. a XxxDispatchClient(BaseDispatchClient) class in clients.py
  2. one line in the registry below
  no changes to the notifier or the orchestrator.
"""

from django.conf import settings

from .base import BaseDispatchClient


def _build_registry() -> dict[str, type[BaseDispatchClient]]:
    from .clients import LoggingDispatchClient, WebhookDispatchClient

    return {
        "log":     LoggingDispatchClient,
        "webhook": WebhookDispatchClient,
    }


def get_dispatch_client() -> BaseDispatchClient:
    """
    Read the backend from settings.PHARMACY_DISPATCH_BACKEND (default "log")
    and return an instance of the matching client.

    Raises:
        ValueError: unknown backend
    """
    backend = getattr(settings, "PHARMACY_DISPATCH_BACKEND", "log")
    registry = _build_registry()
    client_cls = registry.get(backend)

    if client_cls is None:
        raise ValueError(
            f"Unknown PHARMACY_DISPATCH_BACKEND: {backend!r}. "
            f"Known backends: {list(registry.keys())}"
        )

    return client_cls()
