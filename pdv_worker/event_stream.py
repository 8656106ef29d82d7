"""
Bridge between the notification bus and long-lived client streams.

The HTTP layer owns the connection; it hands this module a channel exposing
``send``, ``keep_alive`` and ``on_close``. ``QueueStreamChannel`` is a ready
channel for servers that drain frames from a generator (server-sent events).
"""
import itertools
import json
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional

from pdv_worker.models import NotificationEvent
from pdv_worker.notifications import NotificationBus, subscription_key

logger = logging.getLogger(__name__)

DEFAULT_RETRY_MS = 1000


@dataclass
class StreamFrame:
    data: Any
    event: Optional[str] = None
    id: Optional[str] = None
    retry: Optional[int] = None

    def encode(self) -> str:
        lines = []
        if self.id is not None:
            lines.append(f"id: {self.id}")
        if self.event:
            lines.append(f"event: {self.event}")
        if self.retry is not None:
            lines.append(f"retry: {self.retry}")
        payload = self.data if isinstance(self.data, str) else json.dumps(self.data, default=str)
        lines.extend(f"data: {line}" for line in payload.splitlines() or [""])
        return "\n".join(lines) + "\n\n"


class StreamChannel:
    def send(self, frame: StreamFrame) -> None:
        raise NotImplementedError

    def keep_alive(self) -> None:
        raise NotImplementedError

    def on_close(self, callback: Callable[[], None]) -> None:
        raise NotImplementedError


class QueueStreamChannel(StreamChannel):
    """Buffers frames for a server loop; ``close`` runs the registered close callbacks once."""

    def __init__(self, heartbeat_seconds: float = 15.0):
        self.heartbeat_seconds = heartbeat_seconds
        self.kept_alive = False
        self._frames: "queue.Queue[Optional[StreamFrame]]" = queue.Queue()
        self._close_callbacks: List[Callable[[], None]] = []
        self._closed = threading.Event()

    def send(self, frame: StreamFrame) -> None:
        if self._closed.is_set():
            raise ConnectionError("stream closed")
        self._frames.put(frame)

    def keep_alive(self) -> None:
        self.kept_alive = True

    def on_close(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._frames.put(None)
        for callback in self._close_callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("stream_close_callback_failed: %s", e)

    def pending(self) -> List[StreamFrame]:
        frames = []
        while True:
            try:
                frame = self._frames.get_nowait()
            except queue.Empty:
                return frames
            if frame is not None:
                frames.append(frame)

    def iter_encoded(self) -> Iterator[str]:
        """Yield SSE text until the channel closes, with comment heartbeats while idle."""
        while True:
            try:
                frame = self._frames.get(timeout=self.heartbeat_seconds)
            except queue.Empty:
                if self._closed.is_set():
                    return
                yield ": keep-alive\n\n"
                continue
            if frame is None:
                return
            yield frame.encode()


class EventStreamGateway:
    """Subscribes client channels to the bus under their tenant key."""

    def __init__(self, bus: NotificationBus):
        self.bus = bus

    def attach(self, channel: StreamChannel, platform_id: Optional[str], tenant_id: str) -> Callable[[], None]:
        """
        Start relaying events for (platform_id, tenant_id) to ``channel``.

        Returns the unsubscribe handle; it is also registered with the
        channel's close callback so a disconnect never leaks a listener.
        """
        key = subscription_key(platform_id, tenant_id)
        ids = itertools.count(1)
        try:
            channel.keep_alive()
            channel.send(StreamFrame(data="Connected"))
        except Exception as e:
            logger.error("stream_attach_failed key=%s: %s", key, e)
            self._send_error(channel, e)
            return lambda: None

        def forward(event: NotificationEvent) -> None:
            channel.send(StreamFrame(
                id=str(next(ids)),
                event="update",
                data=event.to_payload(),
                retry=DEFAULT_RETRY_MS,
            ))

        unsubscribe = self.bus.subscribe(key, forward)

        def on_close() -> None:
            unsubscribe()
            logger.info("stream_closed key=%s", key)

        channel.on_close(on_close)
        logger.info("stream_attached key=%s", key)
        return unsubscribe

    @staticmethod
    def _send_error(channel: StreamChannel, error: Exception) -> None:
        try:
            channel.send(StreamFrame(event="error", data={"message": str(error)}, retry=DEFAULT_RETRY_MS))
        except Exception:
            logger.debug("stream_error_frame_dropped")
