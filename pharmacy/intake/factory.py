"""
Factory: request source string → adapter instance.

A new source only needs:
  1. an adapter class in adapters.py
  2. one line in _build_registry()
No orchestrator code changes.
"""

from ..exceptions import ValidationError
from .base import BaseIntakeAdapter


# key: source string (from the X-Request-Source header)
# value: adapter class (not instantiated)
def _build_registry() -> dict[str, type[BaseIntakeAdapter]]:
    # deferred import, avoids a cycle with adapters → base
    from .adapters import AgentAdapter, DirectAdapter

    return {
        "agent":  AgentAdapter,
        "direct": DirectAdapter,
    }


def get_adapter(source: str, raw_body: bytes | str | dict, content_type: str = "") -> BaseIntakeAdapter:
    """
    Return an instantiated adapter for source.

    Args:
        source:       request source, e.g. "agent" or "direct"
        raw_body:     raw request body (bytes / str) or an already parsed dict
        content_type: HTTP Content-Type, available to adapters

    Raises:
        ValidationError: unknown source
    """
    registry = _build_registry()
    adapter_cls = registry.get((source or "").strip().lower())

    if adapter_cls is None:
        raise ValidationError(
            message=f"Unknown request source: {source!r}.",
            code="UNKNOWN_SOURCE",
            detail={"known_sources": list(registry.keys())},
        )

    return adapter_cls(raw_body=raw_body, content_type=content_type)
