"""
Notification dispatch to external delivery collaborators.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional

from ..core.enums import NotificationKind
from ..core.interfaces import Notification, NotificationSink

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    """Outcome of handing one notification to the registered sinks."""
    notification: Notification
    delivered: int
    failed: int

    @property
    def success(self) -> bool:
        return self.failed == 0


class InMemoryNotificationSink(NotificationSink):
    """Sink that keeps every notification it receives."""

    def __init__(self):
        self._received: List[Notification] = []
        self._lock = threading.Lock()

    def deliver(self, notification: Notification) -> None:
        with self._lock:
            self._received.append(notification)

    @property
    def received(self) -> List[Notification]:
        with self._lock:
            return list(self._received)

    def of_kind(self, kind: NotificationKind) -> List[Notification]:
        return [n for n in self.received if n.kind == kind]

    def clear(self) -> None:
        with self._lock:
            self._received.clear()


class NotificationService:
    """Fans notifications out to every registered sink.

    Delivery is fire-and-forget: a failing sink is logged and skipped, and the
    operation that emitted the notification never sees the error.
    """

    def __init__(self, sinks: Optional[List[NotificationSink]] = None, max_history: int = 1000):
        self._sinks: Dict[str, NotificationSink] = {}
        self._history: Deque[DeliveryResult] = deque(maxlen=max_history)
        self._lock = threading.RLock()
        for sink in sinks or []:
            self.register_sink(sink)

    def register_sink(self, sink: NotificationSink, sink_id: Optional[str] = None) -> str:
        """Register a delivery sink."""
        sink_id = sink_id or f"{sink.__class__.__name__}_{id(sink)}"
        with self._lock:
            self._sinks[sink_id] = sink
        return sink_id

    def unregister_sink(self, sink_id: str) -> None:
        with self._lock:
            self._sinks.pop(sink_id, None)

    def notify(self, kind: NotificationKind, payload: Dict[str, Any],
               recipient_id: Optional[str] = None) -> DeliveryResult:
        """Build and dispatch a notification. A ``None`` recipient is a broadcast."""
        return self.dispatch(Notification(kind=kind, payload=payload, recipient_id=recipient_id))

    def dispatch(self, notification: Notification) -> DeliveryResult:
        with self._lock:
            sinks = list(self._sinks.items())

        delivered = failed = 0
        for sink_id, sink in sinks:
            try:
                sink.deliver(notification)
                delivered += 1
            except Exception as e:
                failed += 1
                logger.warning("Delivery of %s notification to %s failed: %s",
                               notification.kind.value, sink_id, e)

        result = DeliveryResult(notification=notification, delivered=delivered, failed=failed)
        with self._lock:
            self._history.append(result)
        return result

    def history(self, kind: Optional[NotificationKind] = None) -> List[DeliveryResult]:
        with self._lock:
            return [r for r in self._history if kind is None or r.notification.kind == kind]

    def get_statistics(self) -> Dict[str, Any]:
        """Get delivery statistics."""
        with self._lock:
            total = len(self._history)
            failed = sum(1 for r in self._history if not r.success)
            return {
                'total_dispatched': total,
                'with_failures': failed,
                'registered_sinks': len(self._sinks)
            }
