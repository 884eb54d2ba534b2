"""
Events surfaced to UI and storage collaborators.
"""

import logging
from typing import Callable, List, Optional, Type
from dataclasses import dataclass

from .models import ExchangeRequest, Conversation


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """Base class for all engine events"""
    pass


@dataclass(frozen=True)
class RequestReceived(Event):
    request: ExchangeRequest


@dataclass(frozen=True)
class RequestAccepted(Event):
    request: ExchangeRequest


@dataclass(frozen=True)
class RequestDeclined(Event):
    request: ExchangeRequest


@dataclass(frozen=True)
class RequestRevoked(Event):
    request: ExchangeRequest


@dataclass(frozen=True)
class RequestExpired(Event):
    request: ExchangeRequest


@dataclass(frozen=True)
class ConversationCreated(Event):
    conversation: Conversation


@dataclass(frozen=True)
class ConversationConfirmed(Event):
    conversation: Conversation


@dataclass(frozen=True)
class ConversationRollback(Event):
    request_id: str
    reason: str
    rolled_back: bool


@dataclass(frozen=True)
class DeliveryFailed(Event):
    """A notice could not be delivered after all retries"""
    request_id: str
    reason: str


Listener = Callable[[Event], None]


class EventBus:
    """
    Synchronous fan-out of events to subscribed listeners.

    A failing listener is logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._listeners: List[tuple] = []

    def subscribe(self, listener: Listener, event_type: Optional[Type[Event]] = None):
        """
        Register a listener.

        Args:
            listener: Callable receiving the event
            event_type: Only deliver events of this type (all events if None)
        """
        self._listeners.append((event_type, listener))

    def unsubscribe(self, listener: Listener):
        self._listeners = [(t, l) for t, l in self._listeners if l is not listener]

    def emit(self, event: Event):
        for event_type, listener in list(self._listeners):
            if event_type is not None and not isinstance(event, event_type):
                continue
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", type(event).__name__)
