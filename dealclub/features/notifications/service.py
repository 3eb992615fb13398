"""
dealclub/features/notifications/service.py

In-process notification hub.

Workflows emit events after their transaction commits. Listeners (mailers,
webhooks, tests) subscribe to the hub. Emission is fire-and-forget: delivery
runs on a background worker, so the emitting request never waits on a
listener, and a failing listener is logged and skipped.

One worker thread delivers events in the order they were emitted.
`flush()` waits for queued deliveries; `shutdown()` stops the worker.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from dealclub.core.config import settings
from dealclub.core.logging import get_request_id

logger = logging.getLogger("dealclub")

DEAL_CREATED = "deal.created"
DEAL_EXPIRED = "deal.expired"
REDEMPTION_REQUESTED = "redemption.requested"
REDEMPTION_APPROVED = "redemption.approved"
REDEMPTION_REJECTED = "redemption.rejected"

EVENT_TYPES = frozenset(
    {DEAL_CREATED, DEAL_EXPIRED, REDEMPTION_REQUESTED, REDEMPTION_APPROVED, REDEMPTION_REJECTED}
)


@dataclass(frozen=True)
class NotificationEvent:
    event_type: str
    payload: Dict[str, Any]
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    request_id: Optional[str] = None


Listener = Callable[[NotificationEvent], None]


class NotificationHub:
    """
    Fan-out of notification events to registered listeners.

    Listeners register for one event type or for all ("*").
    Thread-safe registration; delivery runs on the hub's worker thread.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Set[Future] = set()

    def _get_executor(self) -> ThreadPoolExecutor:
        # Caller holds self._lock
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dealclub-notify")
        return self._executor

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def subscribe(self, event_type: str, listener: Listener) -> None:
        with self._lock:
            self._listeners.setdefault(event_type, []).append(listener)

    def unsubscribe(self, event_type: str, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(event_type, [])
            if listener in listeners:
                listeners.remove(listener)

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()

    def emit(self, event: NotificationEvent) -> int:
        """Queue delivery to the current listeners. Returns how many were queued."""
        with self._lock:
            targets = list(self._listeners.get(event.event_type, [])) + list(self._listeners.get("*", []))
        if not targets:
            return 0

        with self._lock:
            future = self._get_executor().submit(self._deliver, event, targets)
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return len(targets)

    def _deliver(self, event: NotificationEvent, targets: List[Listener]) -> int:
        delivered = 0
        for listener in targets:
            try:
                listener(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "[notify] listener failed",
                    extra={"event_type": event.event_type, "request_id": event.request_id},
                )
        return delivered

    def flush(self, timeout: Optional[float] = 5.0) -> None:
        """Block until every delivery queued so far has run."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self, wait_for_pending: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait_for_pending)


hub = NotificationHub()


def emit_notification(event_type: str, payload: Dict[str, Any], request_id: Optional[str] = None) -> None:
    """Emit an event on the shared hub. Never raises."""
    if not settings.NOTIFICATIONS_ENABLED:
        return
    if event_type not in EVENT_TYPES:
        logger.warning("[notify] unknown event type dropped", extra={"event_type": event_type})
        return
    event = NotificationEvent(
        event_type=event_type,
        payload=dict(payload),
        request_id=request_id or get_request_id(),
    )
    try:
        queued = hub.emit(event)
    except Exception:
        logger.exception("[notify] emit failed", extra={"event_type": event_type})
        return
    logger.info("[notify] %s queued=%d", event_type, queued, extra={"event_type": event_type})
