"""
Relay Connection Pool

Shared websocket connections to Nostr relays. Each connection runs one reader
thread that dispatches relay messages to the subscriptions registered on it;
connections are reference counted per relay URL and closed when the last user
releases them.
"""

import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Optional, Callable, Any, List

from websocket import (
    create_connection,
    WebSocketException,
    WebSocketTimeoutException,
    WebSocketConnectionClosedException,
)
from pynostr.message_type import ClientMessageType, RelayMessageType

from wallet_errors import RelayUnavailable

logger = logging.getLogger(__name__)

# Not part of pynostr's RelayMessageType
RELAY_CLOSED = "CLOSED"


@dataclass
class Subscription:
    """A REQ registered on one relay connection"""
    sub_id: str
    filters: Dict[str, Any]
    on_event: Callable[[Dict[str, Any]], None]
    on_closed: Optional[Callable[[str], None]] = None


class RelayConnection:
    """One websocket to one relay"""

    def __init__(self, url: str, connect_timeout: float = 10.0, poll_interval: float = 1.0):
        self.url = url
        self.connect_timeout = connect_timeout
        self.poll_interval = poll_interval
        self.ref_count = 0
        self.connected = False

        self._ws = None
        self._running = False
        self._listen_thread: Optional[threading.Thread] = None
        self._send_lock = threading.Lock()
        self._handlers_lock = threading.Lock()
        self._subscriptions: Dict[str, Subscription] = {}
        self._ok_handlers: Dict[str, Callable[[bool, str], None]] = {}

        self.stats = {
            'messages_received': 0,
            'events_dispatched': 0,
            'events_published': 0,
            'notices': 0,
            'connected_at': None,
        }

    @property
    def is_alive(self) -> bool:
        return self.connected and self._running

    def connect(self):
        """Open the websocket and start the reader thread"""
        try:
            self._ws = create_connection(self.url, timeout=self.connect_timeout)
        except (WebSocketException, OSError) as e:
            raise RelayUnavailable(f"Could not connect to relay {self.url}: {e}") from e

        self._ws.settimeout(self.poll_interval)
        self.connected = True
        self._running = True
        self.stats['connected_at'] = time.time()

        self._listen_thread = threading.Thread(
            target=self._listen_loop,
            name=f"relay-reader-{self.url}",
            daemon=True,
        )
        self._listen_thread.start()
        logger.info(f"Connected to relay {self.url}")

    def _listen_loop(self):
        while self._running:
            try:
                raw = self._ws.recv()
            except WebSocketTimeoutException:
                continue
            except (WebSocketConnectionClosedException, WebSocketException, OSError) as e:
                if self._running:
                    logger.warning(f"Relay {self.url} connection lost: {e}")
                break

            if not raw:
                continue
            self.stats['messages_received'] += 1
            self._handle_message(raw)

        self._on_disconnect()

    def _handle_message(self, raw: str):
        try:
            message = json.loads(raw)
        except ValueError:
            logger.debug(f"Ignoring non-JSON message from {self.url}")
            return

        if not isinstance(message, list) or not message:
            return

        message_type = message[0]

        if message_type == RelayMessageType.EVENT and len(message) >= 3:
            with self._handlers_lock:
                subscription = self._subscriptions.get(message[1])
            if subscription is None or not isinstance(message[2], dict):
                return
            self.stats['events_dispatched'] += 1
            self._invoke(subscription.on_event, message[2])

        elif message_type == RelayMessageType.OK and len(message) >= 3:
            with self._handlers_lock:
                handler = self._ok_handlers.pop(message[1], None)
            if handler:
                reason = message[3] if len(message) > 3 else ""
                self._invoke(handler, bool(message[2]), str(reason))

        elif message_type == RELAY_CLOSED and len(message) >= 2:
            with self._handlers_lock:
                subscription = self._subscriptions.pop(message[1], None)
            if subscription and subscription.on_closed:
                reason = message[2] if len(message) > 2 else "closed by relay"
                self._invoke(subscription.on_closed, str(reason))

        elif message_type == RelayMessageType.NOTICE:
            self.stats['notices'] += 1
            logger.info(f"Relay {self.url} notice: {message[1] if len(message) > 1 else ''}")

        elif message_type == RelayMessageType.END_OF_STORED_EVENTS:
            logger.debug(f"End of stored events for {message[1] if len(message) > 1 else '?'} on {self.url}")

    def _invoke(self, handler: Callable, *args):
        try:
            handler(*args)
        except Exception as e:
            logger.exception(f"Relay message handler failed on {self.url}: {e}")

    def _on_disconnect(self):
        self.connected = False
        self._running = False
        with self._handlers_lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
            self._ok_handlers.clear()

        for subscription in subscriptions:
            if subscription.on_closed:
                self._invoke(subscription.on_closed, "connection closed")

    def send(self, message: List[Any]):
        data = json.dumps(message)
        with self._send_lock:
            if not self.connected or self._ws is None:
                raise RelayUnavailable(f"Relay {self.url} is not connected")
            try:
                self._ws.send(data)
            except (WebSocketException, OSError) as e:
                raise RelayUnavailable(f"Send to relay {self.url} failed: {e}") from e

    def subscribe(self, sub_id: str, filters: Dict[str, Any],
                  on_event: Callable[[Dict[str, Any]], None],
                  on_closed: Optional[Callable[[str], None]] = None):
        with self._handlers_lock:
            self._subscriptions[sub_id] = Subscription(sub_id, filters, on_event, on_closed)
        try:
            self.send([ClientMessageType.REQUEST, sub_id, filters])
        except RelayUnavailable:
            with self._handlers_lock:
                self._subscriptions.pop(sub_id, None)
            raise

    def unsubscribe(self, sub_id: str):
        with self._handlers_lock:
            subscription = self._subscriptions.pop(sub_id, None)
        if subscription is None or not self.connected:
            return
        try:
            self.send([ClientMessageType.CLOSE, sub_id])
        except RelayUnavailable as e:
            logger.debug(f"Could not close subscription {sub_id}: {e}")

    def publish(self, event_dict: Dict[str, Any], on_ok: Optional[Callable[[bool, str], None]] = None):
        event_id = event_dict.get('id')
        if on_ok and event_id:
            with self._handlers_lock:
                self._ok_handlers[event_id] = on_ok
        try:
            self.send([ClientMessageType.EVENT, event_dict])
        except RelayUnavailable:
            with self._handlers_lock:
                self._ok_handlers.pop(event_id, None)
            raise
        self.stats['events_published'] += 1

    def forget_ok_handler(self, event_id: str):
        with self._handlers_lock:
            self._ok_handlers.pop(event_id, None)

    @property
    def subscription_count(self) -> int:
        with self._handlers_lock:
            return len(self._subscriptions)

    def close(self):
        """Stop the reader thread and close the socket"""
        self._running = False
        if self._ws is not None:
            try:
                self._ws.close()
            except (WebSocketException, OSError) as e:
                logger.debug(f"Error closing relay {self.url}: {e}")
        if self._listen_thread and self._listen_thread is not threading.current_thread():
            self._listen_thread.join(timeout=self.poll_interval + 1)
        self.connected = False
        logger.info(f"Disconnected from relay {self.url}")


ConnectionFactory = Callable[[str, float], RelayConnection]


class RelayPool:
    """Reference counted relay connections shared by URL"""

    def __init__(self, connect_timeout: float = 10.0, connection_factory: Optional[ConnectionFactory] = None):
        self.connect_timeout = connect_timeout
        self._connection_factory = connection_factory or RelayConnection
        self._connections: Dict[str, RelayConnection] = {}
        self._url_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()
        self.stats = {
            'connections_opened': 0,
            'connections_closed': 0,
            'connect_failures': 0,
        }

    def _url_lock(self, url: str) -> threading.Lock:
        with self._lock:
            return self._url_locks.setdefault(url, threading.Lock())

    def acquire(self, url: str, timeout: Optional[float] = None) -> RelayConnection:
        """Get a live connection to ``url``, opening one if needed.

        ``timeout`` caps both the wait for another caller opening the same
        relay and the connect itself; it never exceeds ``connect_timeout``.
        """
        connect_timeout = self.connect_timeout if timeout is None else min(self.connect_timeout, timeout)
        started = time.monotonic()

        url_lock = self._url_lock(url)
        if not url_lock.acquire(timeout=connect_timeout):
            self.stats['connect_failures'] += 1
            raise RelayUnavailable(f"Timed out waiting for connection to relay {url}")
        try:
            with self._lock:
                connection = self._connections.get(url)
                if connection is not None and connection.is_alive:
                    connection.ref_count += 1
                    return connection

            remaining = connect_timeout - (time.monotonic() - started)
            if remaining <= 0:
                self.stats['connect_failures'] += 1
                raise RelayUnavailable(f"No time left to connect to relay {url}")

            connection = self._connection_factory(url, remaining)
            try:
                connection.connect()
            except RelayUnavailable:
                self.stats['connect_failures'] += 1
                raise

            with self._lock:
                # A dead connection stays with the users still holding it
                self._connections[url] = connection
                connection.ref_count += 1
                self.stats['connections_opened'] += 1
            return connection
        finally:
            url_lock.release()

    def release(self, connection: RelayConnection):
        with self._lock:
            connection.ref_count -= 1
            should_close = connection.ref_count <= 0
            if should_close and self._connections.get(connection.url) is connection:
                del self._connections[connection.url]

        if should_close:
            connection.close()
            self.stats['connections_closed'] += 1

    @contextmanager
    def connection(self, url: str, timeout: Optional[float] = None):
        """Scoped connection, released on every exit path"""
        connection = self.acquire(url, timeout=timeout)
        try:
            yield connection
        finally:
            self.release(connection)

    def close_all(self):
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()

        for connection in connections:
            connection.close()
            self.stats['connections_closed'] += 1

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            open_connections = {
                url: {
                    'ref_count': conn.ref_count,
                    'alive': conn.is_alive,
                    'subscriptions': conn.subscription_count,
                }
                for url, conn in self._connections.items()
            }
        return {
            **self.stats,
            'open_connections': open_connections,
        }
