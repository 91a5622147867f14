"""
Transport Router

Chooses between the HTTP bridge and the relay transport for each request and
falls back to the other transport at most once when the first is unavailable.
"""

import time
import logging
import threading
from typing import Optional, Dict, Any, List, Tuple

from nostr_clients.connection_uri import ConnectionDescriptor, abbreviate
from wallet_transports.base import Transport, TransportType, RequestEnvelope, ResponseEnvelope
from wallet_errors import TransportUnavailable, RequestTimeout

logger = logging.getLogger(__name__)


class TransportRouter:
    """Routes wallet requests across the available transports"""

    def __init__(self, relay: Transport, bridge: Optional[Transport] = None,
                 hint_ttl_seconds: float = 300):
        self.relay = relay
        self.bridge = bridge
        self.hint_ttl_seconds = hint_ttl_seconds
        self._hints: Dict[str, Tuple[TransportType, float]] = {}
        self._lock = threading.Lock()
        self.stats = {
            'requests': 0,
            'fallbacks': 0,
            'fallbacks_skipped': 0,
            'wins': {t.value: 0 for t in TransportType},
        }

    @property
    def transports(self) -> List[Transport]:
        return [t for t in (self.bridge, self.relay) if t is not None]

    def _get_hint(self, wallet_pubkey: str) -> Optional[TransportType]:
        with self._lock:
            hint = self._hints.get(wallet_pubkey)
            if hint is None:
                return None
            transport_type, expires = hint
            if expires <= time.monotonic():
                del self._hints[wallet_pubkey]
                return None
            return transport_type

    def _remember(self, wallet_pubkey: str, transport_type: TransportType):
        with self._lock:
            self._hints[wallet_pubkey] = (transport_type, time.monotonic() + self.hint_ttl_seconds)
            self.stats['wins'][transport_type.value] += 1

    def clear_hints(self):
        with self._lock:
            self._hints.clear()

    def order_for(self, wallet_pubkey: str) -> List[Transport]:
        """Transports in the order they will be tried"""
        if self.bridge is None:
            return [self.relay]
        if self._get_hint(wallet_pubkey) == TransportType.RELAY:
            return [self.relay, self.bridge]
        return [self.bridge, self.relay]

    def send(self, descriptor: ConnectionDescriptor, request: RequestEnvelope,
             timeout: float) -> ResponseEnvelope:
        """Send through the preferred transport with one fallback"""
        deadline = time.monotonic() + timeout
        order = self.order_for(descriptor.wallet_pubkey)
        primary = order[0]

        with self._lock:
            self.stats['requests'] += 1

        try:
            response = primary.send(descriptor, request, timeout)
        except TransportUnavailable as e:
            if len(order) < 2:
                raise

            if e.maybe_delivered and not request.idempotent:
                with self._lock:
                    self.stats['fallbacks_skipped'] += 1
                logger.warning(f"Not retrying {request.method} ({request.correlation_id}) on another "
                               f"transport, it may already have reached the wallet: {e}")
                raise

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RequestTimeout(f"No time left to retry {request.method}") from e

            fallback = order[1]
            logger.info(f"{primary.transport_type.value} unavailable for {request.method} "
                        f"on wallet {abbreviate(descriptor.wallet_pubkey)} ({e}), "
                        f"falling back to {fallback.transport_type.value}")
            with self._lock:
                self.stats['fallbacks'] += 1

            response = fallback.send(descriptor, request, remaining)
            self._remember(descriptor.wallet_pubkey, fallback.transport_type)
            return response

        self._remember(descriptor.wallet_pubkey, primary.transport_type)
        return response

    def health_check(self, descriptor: ConnectionDescriptor) -> Dict[str, bool]:
        return {t.transport_type.value: t.health_check(descriptor) for t in self.transports}

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = {
                'requests': self.stats['requests'],
                'fallbacks': self.stats['fallbacks'],
                'fallbacks_skipped': self.stats['fallbacks_skipped'],
                'wins': dict(self.stats['wins']),
                'hints': {k: v[0].value for k, v in self._hints.items()},
            }
        stats['transports'] = {t.transport_type.value: t.get_stats() for t in self.transports}
        return stats

    def close(self):
        for transport in self.transports:
            transport.close()
