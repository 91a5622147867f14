"""
HTTP Bridge Transport

Sends wallet requests to an HTTP service that talks to the wallet on our
behalf. Accepts both the direct ``{result}`` reply and the wrapped tool-call
reply in which the payload is JSON text inside ``result.content``.
"""

import json
import logging
from typing import Optional, Dict, Any
from urllib.parse import urlparse, urlunparse

import requests
from urllib3.exceptions import NewConnectionError

from nostr_clients.connection_uri import ConnectionDescriptor
from wallet_transports.base import Transport, TransportType, RequestEnvelope, ResponseEnvelope
from wallet_errors import BridgeUnavailable

logger = logging.getLogger(__name__)


def _never_connected(error: requests.exceptions.ConnectionError) -> bool:
    """True when the request could not have left this host"""
    if isinstance(error, requests.exceptions.ConnectTimeout):
        return True
    cause = error.args[0] if error.args else None
    return isinstance(getattr(cause, 'reason', cause), NewConnectionError)


class BridgeTransport(Transport):
    """Wallet requests through the HTTP bridge"""

    transport_type = TransportType.BRIDGE

    def __init__(self, bridge_url: str, api_key: Optional[str] = None,
                 timeout_seconds: float = 15.0, session: Optional[requests.Session] = None):
        super().__init__()
        self.bridge_url = bridge_url
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        })
        if api_key:
            self.session.headers['Authorization'] = f"Bearer {api_key}"

    def _build_body(self, descriptor: ConnectionDescriptor, request: RequestEnvelope) -> Dict[str, Any]:
        return {
            'id': request.correlation_id,
            'method': request.method,
            'params': request.params,
            'connectionDescriptor': {
                'wallet_pubkey': descriptor.wallet_pubkey,
                'relay_urls': list(descriptor.relay_urls),
                'secret': descriptor.secret,
                'lud16': descriptor.lud16,
                'connection_string': descriptor.to_uri(),
            },
        }

    def _send(self, descriptor: ConnectionDescriptor, request: RequestEnvelope,
              timeout: float) -> ResponseEnvelope:
        http_timeout = min(self.timeout_seconds, timeout)
        body = self._build_body(descriptor, request)

        try:
            response = self.session.post(
                self.bridge_url,
                json=body,
                headers={'X-NWC-Wallet': descriptor.wallet_pubkey},
                timeout=http_timeout,
            )
        except requests.exceptions.ConnectionError as e:
            raise BridgeUnavailable(f"Bridge connection failed: {e}",
                                    maybe_delivered=not _never_connected(e)) from e
        except requests.exceptions.Timeout as e:
            raise BridgeUnavailable(f"Bridge timed out after {http_timeout:.1f}s",
                                    maybe_delivered=True) from e
        except requests.exceptions.RequestException as e:
            raise BridgeUnavailable(f"Bridge request failed: {e}", maybe_delivered=True) from e

        if not response.ok:
            raise BridgeUnavailable(
                f"Bridge returned HTTP {response.status_code}",
                maybe_delivered=response.status_code >= 500,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise BridgeUnavailable("Bridge reply is not JSON", maybe_delivered=True) from e

        logger.debug(f"Bridge replied to {request.method} ({request.correlation_id})")
        return self._normalize(data, request.method)

    def _normalize(self, data: Any, method: str) -> ResponseEnvelope:
        if not isinstance(data, dict):
            raise BridgeUnavailable("Bridge reply is not a JSON object", maybe_delivered=True)

        result = data.get('result')
        error = data.get('error')

        if error is not None and result is None:
            return self._error_envelope(error, method)

        if isinstance(result, dict) and isinstance(result.get('content'), list):
            return self._normalize_tool_result(result, method)

        if isinstance(result, dict):
            return ResponseEnvelope.from_wire(
                {'result_type': data.get('result_type') or method, 'result': result},
                method,
                transport=TransportType.BRIDGE,
            )

        raise BridgeUnavailable("Bridge reply has no result", maybe_delivered=True)

    def _error_envelope(self, error: Any, method: str) -> ResponseEnvelope:
        if isinstance(error, dict) and isinstance(error.get('code'), str):
            return ResponseEnvelope(
                result_type=method,
                error={'code': error['code'], 'message': str(error.get('message') or '')},
                transport=TransportType.BRIDGE,
            )
        # JSON-RPC numeric codes come from the bridge itself, not the wallet
        raise BridgeUnavailable(f"Bridge error: {error}", maybe_delivered=True)

    def _normalize_tool_result(self, result: Dict[str, Any], method: str) -> ResponseEnvelope:
        text = None
        for item in result['content']:
            if isinstance(item, dict) and item.get('type', 'text') == 'text' and isinstance(item.get('text'), str):
                text = item['text']
                break

        if text is None:
            raise BridgeUnavailable("Bridge tool reply has no text content", maybe_delivered=True)

        try:
            inner = json.loads(text)
        except ValueError as e:
            if result.get('isError'):
                raise BridgeUnavailable(f"Bridge tool call failed: {text}", maybe_delivered=True) from e
            raise BridgeUnavailable("Bridge tool reply is not JSON", maybe_delivered=True) from e

        if not isinstance(inner, dict):
            raise BridgeUnavailable("Bridge tool reply is not a JSON object", maybe_delivered=True)

        if inner.get('error'):
            error = inner['error']
            if isinstance(error, str):
                error = {'code': 'OTHER', 'message': error}
            return self._error_envelope(error, method)

        if result.get('isError'):
            raise BridgeUnavailable(f"Bridge tool call failed: {text}", maybe_delivered=True)

        payload = inner['result'] if isinstance(inner.get('result'), dict) else inner
        return ResponseEnvelope.from_wire(
            {'result_type': inner.get('result_type') or method, 'result': payload},
            method,
            transport=TransportType.BRIDGE,
        )

    def _health_url(self) -> str:
        parsed = urlparse(self.bridge_url)
        return urlunparse((parsed.scheme, parsed.netloc, '/health', '', '', ''))

    def health_check(self, descriptor: Optional[ConnectionDescriptor] = None) -> bool:
        """Probe the bridge's health endpoint"""
        try:
            response = self.session.get(self._health_url(), timeout=min(self.timeout_seconds, 5.0))
        except requests.exceptions.RequestException as e:
            logger.debug(f"Bridge health check failed: {e}")
            return False
        return response.ok

    def close(self):
        self.session.close()
