"""
Handler contract and registry.

Handlers are ordinary classes registered per event type at startup. They
must tolerate concurrent persist calls for different batches of the same
type and must not rely on batch completion order.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Tuple

from telemetry_bus.core.errors import UnknownEventTypeError
from telemetry_bus.core.models import Event, EventType, ItemResult
from telemetry_bus.infrastructure.logging import get_logger

logger = get_logger(__name__)


class EventHandler(ABC):
    """Persists batches of one or more event types."""

    name: str = "handler"
    event_types: Tuple[EventType, ...] = ()

    @abstractmethod
    async def persist(self, events: List[Event]) -> List[ItemResult]:
        """
        Persist a batch.

        Returns:
            One ItemResult per event; a batch may be partially written
        """


class HandlerRegistry:
    """
    Static event type -> handler mapping.

    Usage:
        registry = HandlerRegistry()
        registry.register(HeatmapHandler(store))
        handler = registry.get(EventType.HEATMAP_INTERACTION)
    """

    def __init__(self, handlers: Optional[Iterable[EventHandler]] = None):
        self._handlers: Dict[EventType, EventHandler] = {}
        for handler in handlers or ():
            self.register(handler)

    def register(
        self,
        handler: EventHandler,
        event_types: Optional[Iterable[EventType | str]] = None,
    ) -> None:
        types = [EventType.parse(t) for t in (event_types or handler.event_types)]
        if not types:
            raise ValueError(f"{handler.name} declares no event types")

        for event_type in types:
            if event_type in self._handlers:
                raise ValueError(
                    f"{event_type.value} already handled by {self._handlers[event_type].name}"
                )
            self._handlers[event_type] = handler
            logger.debug("Handler registered", handler=handler.name, event_type=event_type.value)

    def get(self, event_type: EventType | str) -> EventHandler:
        try:
            return self._handlers[EventType.parse(event_type)]
        except (KeyError, ValueError):
            raise UnknownEventTypeError(str(getattr(event_type, "value", event_type))) from None

    @property
    def event_types(self) -> List[EventType]:
        return list(self._handlers)

    def __contains__(self, event_type: object) -> bool:
        try:
            return EventType.parse(event_type) in self._handlers  # type: ignore[arg-type]
        except ValueError:
            return False

    def __len__(self) -> int:
        return len(self._handlers)
