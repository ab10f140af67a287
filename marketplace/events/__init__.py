from ..collaborators import Collaborators
from .bus import EventBus, HandlerRegistration
from .order_events import register_order_event_handlers
from .product_events import register_product_event_handlers
from .types import Event, EventMetadata, EventType, Priority
from .user_events import register_user_event_handlers

__all__ = [
    "Event",
    "EventBus",
    "EventMetadata",
    "EventType",
    "HandlerRegistration",
    "Priority",
    "register_all_handlers",
]


def register_all_handlers(bus: EventBus, collaborators: Collaborators) -> None:
    register_order_event_handlers(bus, collaborators.cache, collaborators.realtime)
    register_product_event_handlers(
        bus, collaborators.cache, collaborators.realtime, collaborators.search
    )
    register_user_event_handlers(bus, collaborators.cache, collaborators.realtime)
