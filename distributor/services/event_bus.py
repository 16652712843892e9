"""In-process event bus for status updates

The orchestrator and the ingestion pipeline publish events; the dashboard
(or any other listener) subscribes. Delivery is best-effort: a failing
handler is logged and never breaks the publisher.
"""

import asyncio
import inspect
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from distributor.utils.logger import get_logger
from distributor.utils.time_utils import utcnow

logger = get_logger(__name__)

FILE_RECEIVED = "file:received"
FILE_REJECTED = "file:rejected"
UPLOAD_START = "upload:start"
UPLOAD_COMPLETE = "upload:complete"
SETTINGS_UPDATED = "settings:updated"

EVENT_TYPES = frozenset(
    [
        FILE_RECEIVED,
        FILE_REJECTED,
        UPLOAD_START,
        UPLOAD_COMPLETE,
        SETTINGS_UPDATED,
    ]
)


class Event(BaseModel):
    """A published event"""

    type: str = Field(..., description="One of EVENT_TYPES")
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


Handler = Callable[[Event], Any]


class EventBus:
    """Fan-out of events to subscribed handlers (sync or async)"""

    def __init__(self):
        self._subscribers: List[Tuple[Handler, Optional[Set[str]]]] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, handler: Handler, event_types: Optional[Iterable[str]] = None) -> Callable[[], None]:
        """
        Register a handler

        Args:
            handler: Callable taking an Event; coroutine functions are scheduled as tasks
            event_types: Restrict delivery to these types (default: all)

        Returns:
            Callable that removes the subscription
        """
        types = set(event_types) if event_types is not None else None
        if types:
            unknown = types - EVENT_TYPES
            if unknown:
                raise ValueError(f"Unknown event types: {sorted(unknown)}")

        subscription = (handler, types)
        self._subscribers.append(subscription)

        def unsubscribe():
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

        return unsubscribe

    def publish(self, event_type: str, **payload: Any) -> Event:
        """Deliver an event to every matching subscriber"""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")

        event = Event(type=event_type, payload=payload)
        for handler, types in list(self._subscribers):
            if types is not None and event_type not in types:
                continue
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    task = asyncio.ensure_future(outcome)
                    self._pending.add(task)
                    task.add_done_callback(self._on_handler_done)
            except Exception as e:
                logger.warning(f"Event handler failed for {event_type}: {e}")
        return event

    def _on_handler_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Async event handler failed: {task.exception()}")

    async def drain(self):
        """Wait for scheduled async handlers"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
