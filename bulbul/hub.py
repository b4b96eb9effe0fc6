# bulbul/hub.py
import asyncio
import logging
import threading
from typing import Optional, Protocol

from .errors import ConnectionLost
from .notifications import Notification

logger = logging.getLogger(__name__)

KEEPALIVE = ": keep-alive\n\n"


class Connection(Protocol):
    def send(self, message: str) -> None:
        """Queue one encoded message. Must not block; raises ConnectionLost."""


class BroadcastHub:
    """Fan-out of change notifications to every subscribed observer.

    Delivery is at-most-once: nothing is buffered for connections that are
    not subscribed at publish time and nothing is replayed.
    """

    def __init__(self):
        self._connections = set()
        self._lock = threading.Lock()

    def subscribe(self, connection: Connection) -> None:
        with self._lock:
            self._connections.add(connection)
        logger.info("Observer connected (%d active)", len(self))
        try:
            connection.send(Notification.connected().encode())
        except Exception as exc:
            logger.info("Observer dropped during handshake: %s", exc)
            self.unsubscribe(connection)

    def unsubscribe(self, connection: Connection) -> None:
        with self._lock:
            if connection not in self._connections:
                return
            self._connections.discard(connection)
        logger.info("Observer disconnected (%d active)", len(self))

    def publish(self, notification: Notification) -> int:
        message = notification.encode()
        with self._lock:
            targets = list(self._connections)

        delivered = 0
        for connection in targets:
            try:
                connection.send(message)
            except ConnectionLost as exc:
                logger.info("Dropping observer: %s", exc)
                self.unsubscribe(connection)
            except Exception:
                logger.exception("Observer write failed; dropping it")
                self.unsubscribe(connection)
            else:
                delivered += 1
        logger.debug("Published %s to %d/%d observers", notification.type.value, delivered, len(targets))
        return delivered

    def __len__(self):
        with self._lock:
            return len(self._connections)

    def __contains__(self, connection):
        with self._lock:
            return connection in self._connections


class EventStreamConnection:
    """One observer's bounded outbox, drained by the streaming response."""

    def __init__(self, max_pending: int = 100, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._queue = asyncio.Queue(maxsize=max_pending)
        self._loop = loop or asyncio.get_running_loop()
        self.closed = False

    def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionLost("connection closed")
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._put(message)
        else:
            self._loop.call_soon_threadsafe(self._put_or_close, message)

    def _put(self, message: str) -> None:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.close()
            raise ConnectionLost("observer too slow, outbox full")

    def _put_or_close(self, message: str) -> None:
        if self.closed:
            return
        try:
            self._put(message)
        except ConnectionLost:
            logger.info("Observer too slow, closing its stream")

    async def receive(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next queued message, or None once closed or when ``timeout`` elapses."""
        if self.closed and self._queue.empty():
            return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        self.closed = True


async def stream_events(hub: BroadcastHub, connection: EventStreamConnection, heartbeat: float = 15.0):
    """Body of the event stream response for one observer."""
    hub.subscribe(connection)
    try:
        while True:
            message = await connection.receive(timeout=heartbeat)
            if message is None:
                if connection.closed:
                    break
                yield KEEPALIVE
                continue
            yield message
    finally:
        connection.close()
        hub.unsubscribe(connection)
