"""
In-process event bus.

The engine modules announce what happened (customer created, message accepted,
receipt applied) without importing whoever cares. Dispatch workers and vendor
receipt timers emit from their own threads, so registration is guarded by a
lock and handlers run on the emitting thread.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]


class EventBus:
    """Named events fanned out to handlers in registration order."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event_name: str, handler: Handler):
        """Call `handler(event_data)` every time `event_name` is emitted."""
        with self._lock:
            self._handlers[event_name].append(handler)
        logger.debug(f"on '{event_name}': {getattr(handler, '__name__', handler)!s}")

    def off(self, event_name: str, handler: Handler) -> bool:
        """Unregister one handler. Returns False if it was not registered."""
        with self._lock:
            registered = self._handlers.get(event_name, [])
            if handler not in registered:
                return False
            registered.remove(handler)
            return True

    def emit(self, event_name: str, event_data: Optional[Dict[str, Any]] = None) -> int:
        """
        Run every handler for `event_name` with `event_data` ({} when omitted).

        A handler that raises is logged and skipped; the rest still run and
        the emitter never sees the error.

        Returns: number of handlers that completed
        """
        payload = {} if event_data is None else event_data
        with self._lock:
            # Snapshot so handlers may register more handlers while we iterate
            handlers = tuple(self._handlers.get(event_name, ()))

        logger.debug(f"emit '{event_name}' to {len(handlers)} handler(s): {payload}")

        completed = 0
        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:
                logger.error(
                    f"Handler {getattr(handler, '__name__', handler)!s} failed on '{event_name}': "
                    f"{type(e).__name__}: {e}"
                )
                continue
            completed += 1
        return completed

    def clear(self):
        """Drop every handler."""
        with self._lock:
            self._handlers.clear()


bus = EventBus()


# Ingestion
EVENT_CUSTOMER_CREATED = 'customer_created'
EVENT_ORDER_RECORDED = 'order_recorded'

# Campaign orchestration
EVENT_CAMPAIGN_CREATED = 'campaign_created'

# Delivery dispatch
EVENT_DISPATCH_STARTED = 'dispatch_started'
EVENT_MESSAGE_ACCEPTED = 'message_accepted'
EVENT_MESSAGE_FAILED = 'message_failed'
EVENT_DISPATCH_DRAINED = 'dispatch_drained'

# Receipt reconciliation
EVENT_RECEIPT_APPLIED = 'receipt_applied'
EVENT_CAMPAIGN_COMPLETED = 'campaign_completed'
