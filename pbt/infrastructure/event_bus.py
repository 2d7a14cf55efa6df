import threading
from typing import Type, Callable, List, Dict, Any, Optional
from pbt.domain.events import Event

class EventBus:
    """A synchronous event bus for decoupled communication.

    Callbacks run on the publishing thread. Subscribers that keep state must
    guard it themselves (see BatchTracker).
    """

    def __init__(self):
        self._subscribers: Dict[Type[Event], List[Callable[[Any], None]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[Event], callback: Optional[Callable[[Any], None]] = None):
        """Subscribes a callback to an event type (and its subclasses). Can be used as a decorator."""
        if callback is None:
            def decorator(func: Callable[[Any], None]):
                self.subscribe(event_type, func)
                return func
            return decorator

        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)

    def publish(self, event: Event):
        """Publishes an event to every subscriber of its type or a base type."""
        with self._lock:
            callbacks = [
                cb
                for event_type in type(event).__mro__
                for cb in self._subscribers.get(event_type, [])
            ]
        for callback in callbacks:
            callback(event)

    def clear(self):
        with self._lock:
            self._subscribers.clear()
