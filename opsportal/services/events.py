from __future__ import annotations

import logging
from typing import Awaitable, Callable

from opsportal.domain.events import DomainEvent


logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """In-process pub/sub for control-plane transitions.

    Publishing happens after the triggering transaction commits. Subscriber
    failures are logged and never propagate to the publisher, so a broken
    notification or audit write cannot undo a state transition.
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[type[DomainEvent], EventHandler]] = []

    def subscribe(self, event_type: type[DomainEvent], handler: EventHandler) -> None:
        self._subscribers.append((event_type, handler))

    async def publish(self, event: DomainEvent) -> None:
        for event_type, handler in list(self._subscribers):
            if not isinstance(event, event_type):
                continue
            try:
                await handler(event)
            except Exception as exc:  # noqa: BLE001 - subscribers are fire-and-forget
                logger.warning(
                    "event_handler_failed event_type=%s handler=%s",
                    event.event_type,
                    getattr(handler, "__qualname__", repr(handler)),
                    exc_info=exc,
                )


_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    # Lazily wire the default subscribers so services work without the API app.
    global _bus
    if _bus is None:
        from opsportal.services.audit import project_event
        from opsportal.services.notifications import emit_notifications

        bus = EventBus()
        bus.subscribe(DomainEvent, emit_notifications)
        bus.subscribe(DomainEvent, project_event)
        _bus = bus
    return _bus


def reset_event_bus() -> None:
    # Drop test subscribers and rebuild the default wiring on next use.
    global _bus
    _bus = None


async def publish(event: DomainEvent) -> None:
    await get_event_bus().publish(event)
