"""
Wallet Transport Layer

Common interface for the transports that carry wallet connect requests (Nostr
relays and the HTTP bridge), together with the request and response envelopes
they exchange.
"""

import time
import uuid
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any

from nostr_clients.connection_uri import ConnectionDescriptor
from wallet_errors import (
    NWCError,
    ProtocolError,
    RequestTimeout,
    WalletError,
    wallet_error_from_payload,
)

logger = logging.getLogger(__name__)


class TransportType(Enum):
    """Transport types for wallet requests"""
    RELAY = "relay"
    BRIDGE = "bridge"


# Re-sending these could move funds twice
NON_IDEMPOTENT_METHODS = frozenset({'pay_invoice'})


@dataclass
class RequestEnvelope:
    """One logical wallet call"""
    method: str
    params: Dict[str, Any] = field(default_factory=dict)
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def idempotent(self) -> bool:
        return self.method not in NON_IDEMPOTENT_METHODS

    def to_payload(self) -> Dict[str, Any]:
        return {'method': self.method, 'params': self.params}


@dataclass
class ResponseEnvelope:
    """A wallet reply, either a result or an error object"""
    result_type: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    transport: Optional[TransportType] = None

    @classmethod
    def from_wire(cls, data: Any, expected_method: str,
                  transport: Optional[TransportType] = None) -> "ResponseEnvelope":
        """Validate a decoded ``{result_type, result?, error?}`` reply"""
        if not isinstance(data, dict):
            raise ProtocolError("Wallet response is not a JSON object")

        result_type = data.get('result_type') or expected_method
        if not isinstance(result_type, str):
            raise ProtocolError("Wallet response has an invalid result_type")

        error = data.get('error')
        if error is not None and not isinstance(error, dict):
            error = {'code': 'OTHER', 'message': str(error)}

        result = data.get('result')
        if error is None:
            if not isinstance(result, dict):
                raise ProtocolError("Wallet response has neither a result nor an error")
            if result_type != expected_method:
                raise ProtocolError(f"Expected {expected_method} response, got {result_type}")
        elif not isinstance(result, dict):
            result = None

        return cls(result_type=result_type, result=result, error=error, transport=transport)

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self):
        if self.error is not None:
            raise wallet_error_from_payload(self.error)


class Transport(ABC):
    """Base class for wallet request transports"""

    transport_type: TransportType = None

    def __init__(self):
        self._stats_lock = threading.Lock()
        self.stats = {
            'requests': 0,
            'successes': 0,
            'wallet_errors': 0,
            'failures': 0,
            'timeouts': 0,
            'total_latency_ms': 0.0,
            'last_error': None,
        }

    def send(self, descriptor: ConnectionDescriptor, request: RequestEnvelope,
             timeout: float) -> ResponseEnvelope:
        """Carry one request and return its successful response.

        Raises RequestTimeout, TransportUnavailable, ProtocolError or
        WalletError.
        """
        start_time = time.time()
        self._bump('requests')
        try:
            response = self._send(descriptor, request, timeout)
            response.transport = self.transport_type
            response.raise_for_error()
        except WalletError:
            self._bump('wallet_errors')
            raise
        except RequestTimeout as e:
            self._bump('timeouts', error=e)
            raise
        except NWCError as e:
            self._bump('failures', error=e)
            raise
        finally:
            with self._stats_lock:
                self.stats['total_latency_ms'] += (time.time() - start_time) * 1000

        self._bump('successes')
        return response

    def _bump(self, key: str, error: Optional[Exception] = None):
        with self._stats_lock:
            self.stats[key] += 1
            if error is not None:
                self.stats['last_error'] = str(error)

    @abstractmethod
    def _send(self, descriptor: ConnectionDescriptor, request: RequestEnvelope,
              timeout: float) -> ResponseEnvelope:
        pass

    @abstractmethod
    def health_check(self, descriptor: ConnectionDescriptor) -> bool:
        pass

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self.stats)
        stats['transport'] = self.transport_type.value if self.transport_type else None
        stats['avg_latency_ms'] = stats['total_latency_ms'] / stats['requests'] if stats['requests'] else 0.0
        return stats

    def close(self):
        pass


__all__ = [
    'TransportType',
    'RequestEnvelope',
    'ResponseEnvelope',
    'Transport',
    'NON_IDEMPOTENT_METHODS',
]
