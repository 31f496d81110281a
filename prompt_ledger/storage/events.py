"""Change notification for store subscribers."""

import logging
import threading
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)

Subscriber = Callable[[Any], None]


class ChangeNotifier:
    """Holds subscriber callbacks and fires them after a mutation.

    A failing callback is logged and does not stop the others.
    """

    def __init__(self):
        self._subscribers: Dict[int, Subscriber] = {}
        self._next_id = 0
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` and return a function that removes it."""
        with self._lock:
            self._next_id += 1
            subscription_id = self._next_id
            self._subscribers[subscription_id] = callback

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(subscription_id, None)

        return unsubscribe

    def notify(self, state: Any) -> None:
        with self._lock:
            callbacks = list(self._subscribers.values())
        for callback in callbacks:
            try:
                callback(state)
            except Exception:
                logger.exception("Change subscriber failed")

    def __len__(self) -> int:
        return len(self._subscribers)
