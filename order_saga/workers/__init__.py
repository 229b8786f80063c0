"""Background workers for async processing."""
from .event_subscriber import start_event_subscriber
from .outbox_dispatcher import start_outbox_dispatcher

__all__ = ["start_event_subscriber", "start_outbox_dispatcher"]
