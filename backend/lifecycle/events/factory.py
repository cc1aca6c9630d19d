"""
Factory: webhook source string → adapter.

To add a source:
  1. add an adapter class in adapters.py
  2. add one line to the registry below
"""

from ..exceptions import ValidationError
from .base import BaseEventAdapter


def _build_registry() -> dict[str, type[BaseEventAdapter]]:
    # Deferred import to avoid a cycle with adapters → base
    from .adapters import ItemPriceEventAdapter, PlanEventAdapter, YousignEventAdapter

    return {
        "item_price": ItemPriceEventAdapter,
        "plan":       PlanEventAdapter,
        "yousign":    YousignEventAdapter,
    }


def get_adapter(source: str, raw_body: bytes | str, content_type: str = "",
                headers: dict | None = None) -> BaseEventAdapter:
    """
    Instantiated adapter for `source` (the <source> segment of the webhook URL).

    Raises:
        ValidationError: unknown source
    """
    registry = _build_registry()
    adapter_cls = registry.get(source)

    if adapter_cls is None:
        raise ValidationError(
            message=f"Unknown webhook source: {source!r}.",
            code="UNKNOWN_SOURCE",
            detail={"known_sources": list(registry.keys())},
            http_status=404,
        )

    return adapter_cls(raw_body=raw_body, content_type=content_type, headers=headers)
