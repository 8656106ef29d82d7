import itertools
import logging
import threading
from typing import Callable, Dict, Optional

from pdv_worker.models import NotificationEvent, NotificationRecord
from pdv_worker.record_store import RecordStore

logger = logging.getLogger(__name__)

Listener = Callable[[NotificationEvent], None]


def subscription_key(platform_id: Optional[str], tenant_id: str) -> str:
    """Topic for a (platform, tenant) audience, e.g. ``p1_o1``."""
    return f"{platform_id or ''}_{tenant_id}"


class NotificationBus:
    """
    In-process publish/subscribe registry keyed by exact topic string.

    ``publish`` calls every listener registered for the key at that moment
    before returning. There is no backlog: a listener attached after a
    publish never sees that event.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._listeners: Dict[str, Dict[int, Listener]] = {}
        self._ids = itertools.count(1)

    def subscribe(self, key: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            token = next(self._ids)
            self._listeners.setdefault(key, {})[token] = listener
        logger.debug("bus_subscribed key=%s token=%d", key, token)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(key)
                if listeners is None or listeners.pop(token, None) is None:
                    return
                if not listeners:
                    del self._listeners[key]
            logger.debug("bus_unsubscribed key=%s token=%d", key, token)

        return unsubscribe

    def publish(self, key: str, event: NotificationEvent) -> int:
        """Deliver ``event`` to the current listeners of ``key``; returns how many were called."""
        with self._lock:
            listeners = list(self._listeners.get(key, {}).values())
        delivered = 0
        for listener in listeners:
            try:
                listener(event)
                delivered += 1
            except Exception as e:
                logger.warning("bus_listener_failed key=%s: %s", key, e)
        logger.debug("bus_published key=%s listeners=%d", key, len(listeners))
        return delivered

    def listener_count(self, key: Optional[str] = None) -> int:
        with self._lock:
            if key is not None:
                return len(self._listeners.get(key, {}))
            return sum(len(v) for v in self._listeners.values())


class Notifier:
    """Records a notification durably and pushes it to live listeners. The two writes are independent."""

    def __init__(self, bus: NotificationBus, store: RecordStore):
        self.bus = bus
        self.store = store

    def notify(self, event: NotificationEvent) -> None:
        key = subscription_key(event.platform_id, event.tenant_id)
        try:
            self.bus.publish(key, event)
        except Exception as e:
            logger.error("notification_publish_failed key=%s: %s", key, e)
        try:
            self.store.create_notification(NotificationRecord.from_event(event))
        except Exception as e:
            logger.error("notification_record_failed key=%s: %s", key, e)
        logger.info("notification_sent key=%s title=%r", key, event.title)
