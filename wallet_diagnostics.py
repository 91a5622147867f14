"""
Wallet Connection Diagnostics

This module checks each link between this client and the wallet (connection
string, relays, bridge, and an end-to-end request over each transport) and
renders the findings as a Markdown report.
"""

import time
import logging
from typing import Dict, Any, Optional, Callable
from datetime import datetime, timezone
from dataclasses import dataclass, field

from nostr_clients.connection_uri import ConnectionDescriptor, parse, abbreviate
from nostr_clients.relay_pool import RelayPool
from nostr_clients.relay_transport import RelayTransport
from wallet_transports import BridgeTransport, RequestEnvelope, Transport
from wallet_errors import NWCError, WalletError, ErrorKind

logger = logging.getLogger(__name__)

# Wallet refusals after which a small test invoice is tried instead of get_info
INVOICE_PROBE_KINDS = frozenset({ErrorKind.NOT_IMPLEMENTED, ErrorKind.RESTRICTED, ErrorKind.UNAUTHORIZED})
PROBE_AMOUNT_MSATS = 1000


@dataclass
class DiagnosticResult:
    """Outcome of one diagnostic check"""
    test: str
    success: bool
    duration_ms: float = 0.0
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class WalletDiagnostics:
    """Runs connectivity checks against one wallet connection"""

    def __init__(self, connection_string: str, bridge_url: Optional[str] = None,
                 bridge_api_key: Optional[str] = None, request_timeout: float = 10.0,
                 relay_pool: Optional[RelayPool] = None,
                 relay_transport: Optional[Transport] = None,
                 bridge_transport: Optional[Transport] = None,
                 probe_invoice: bool = True):
        self.connection_string = connection_string
        self.bridge_url = bridge_url
        self.request_timeout = request_timeout
        self.probe_invoice = probe_invoice
        self.relay_pool = relay_pool or RelayPool(connect_timeout=min(request_timeout, 5.0))
        self.relay_transport = relay_transport or RelayTransport(self.relay_pool)
        if bridge_transport is None and bridge_url:
            bridge_transport = BridgeTransport(bridge_url, api_key=bridge_api_key,
                                               timeout_seconds=request_timeout)
        self.bridge_transport = bridge_transport

    def _timed(self, test: str, check: Callable[[], DiagnosticResult]) -> DiagnosticResult:
        start_time = time.time()
        try:
            result = check()
        except NWCError as e:
            result = DiagnosticResult(test=test, success=False, error=e.user_message,
                                      details={'kind': e.kind.value, 'detail': str(e)})
        except Exception as e:
            logger.error(f"Diagnostic '{test}' raised unexpectedly: {e}")
            result = DiagnosticResult(test=test, success=False, error=str(e) or e.__class__.__name__)
        result.duration_ms = (time.time() - start_time) * 1000
        return result

    def run_full_diagnostics(self) -> Dict[str, DiagnosticResult]:
        """Run every check; never raises"""
        logger.info("Starting wallet connection diagnostics")

        results: Dict[str, DiagnosticResult] = {}
        results['connection_valid'] = self._timed('Connection String Validity', self.check_connection)

        descriptor = None
        if results['connection_valid'].success:
            descriptor = parse(self.connection_string)

        results['relay_reachable'] = self._timed('Relay WebSocket Connection',
                                                 lambda: self.check_relays(descriptor))
        results['bridge_reachable'] = self._timed('Bridge Connection', self.check_bridge)
        results['relay_request'] = self._timed('Relay Wallet Request',
                                               lambda: self.check_request(descriptor, self.relay_transport, 'Relay'))
        results['bridge_request'] = self._timed('Bridge Wallet Request',
                                                lambda: self.check_request(descriptor, self.bridge_transport, 'Bridge'))

        logger.info(f"Diagnostics complete: {sum(r.success for r in results.values())}/{len(results)} passed")
        return results

    def check_connection(self) -> DiagnosticResult:
        descriptor = parse(self.connection_string)
        return DiagnosticResult(
            test='Connection String Validity',
            success=True,
            details={
                'wallet_pubkey': abbreviate(descriptor.wallet_pubkey),
                'relay_urls': list(descriptor.relay_urls),
                'lud16': descriptor.lud16,
            },
        )

    def check_relays(self, descriptor: Optional[ConnectionDescriptor]) -> DiagnosticResult:
        test = 'Relay WebSocket Connection'
        if descriptor is None:
            return DiagnosticResult(test=test, success=False, error='No valid connection string')

        reachable: Dict[str, Any] = {}
        for relay_url in descriptor.relay_urls:
            start_time = time.time()
            try:
                with self.relay_pool.connection(relay_url):
                    reachable[relay_url] = {'ok': True, 'connect_ms': round((time.time() - start_time) * 1000)}
            except NWCError as e:
                reachable[relay_url] = {'ok': False, 'error': str(e)}

        success = any(entry['ok'] for entry in reachable.values())
        return DiagnosticResult(
            test=test,
            success=success,
            error=None if success else 'No relay accepted a connection',
            details={'relays': reachable},
        )

    def check_bridge(self) -> DiagnosticResult:
        test = 'Bridge Connection'
        if self.bridge_transport is None:
            # Not configured, so not a failure
            return DiagnosticResult(test=test, success=True, details={'configured': False})

        healthy = self.bridge_transport.health_check(None)
        return DiagnosticResult(
            test=test,
            success=healthy,
            error=None if healthy else 'Bridge health endpoint not reachable',
            details={'configured': True, 'bridge_url': self.bridge_url},
        )

    def check_request(self, descriptor: Optional[ConnectionDescriptor],
                      transport: Optional[Transport], name: str) -> DiagnosticResult:
        test = f'{name} Wallet Request'
        if transport is None:
            return DiagnosticResult(test=test, success=True, details={'configured': False})
        if descriptor is None:
            return DiagnosticResult(test=test, success=False, error='No valid connection string')

        try:
            response = transport.send(descriptor, RequestEnvelope('get_info'), self.request_timeout)
            return DiagnosticResult(
                test=f'{test} (get_info)',
                success=True,
                details={'methods': response.result.get('methods', [])},
            )
        except WalletError as e:
            if not self.probe_invoice or e.kind not in INVOICE_PROBE_KINDS:
                raise

        logger.info(f"get_info refused via {name.lower()}, probing with a test invoice")
        response = transport.send(
            descriptor,
            RequestEnvelope('make_invoice', {'amount': PROBE_AMOUNT_MSATS, 'description': 'Diagnostic test invoice'}),
            self.request_timeout,
        )
        return DiagnosticResult(
            test=f'{test} (make_invoice)',
            success=True,
            details={'invoice': bool(response.result.get('invoice') or response.result.get('bolt11'))},
        )

    @staticmethod
    def format_report(results: Dict[str, DiagnosticResult]) -> str:
        """Render diagnostic results as Markdown"""
        lines = [
            '# Wallet Connection Diagnostics',
            '',
            f"Generated: {datetime.now(timezone.utc).isoformat()}",
            '',
        ]

        for result in results.values():
            status = 'PASS' if result.success else 'FAIL'
            lines.append(f"## [{status}] {result.test}")
            lines.append(f"**Duration:** {result.duration_ms:.0f}ms")
            if result.error:
                lines.append(f"**Error:** {result.error}")
            if result.details:
                lines.append('**Details:**')
                for key, value in result.details.items():
                    lines.append(f"- {key}: {value}")
            lines.append('')

        lines.append('## Recommendations')
        lines.append('')

        def failed(name: str) -> bool:
            return name in results and not results[name].success

        if failed('connection_valid'):
            lines.append('- Fix the connection string: it must be a nostr+walletconnect URI with relay and secret')
        if failed('relay_reachable'):
            lines.append('- Check the relay: none of the wallet relays accepted a connection')
        if failed('relay_request') and not failed('bridge_request'):
            lines.append('- Keep the bridge enabled: relay requests fail but the bridge works')
        if not failed('relay_request') and failed('bridge_request'):
            lines.append('- Disable the bridge: it fails while relay requests work')
        if failed('relay_request') and failed('bridge_request'):
            lines.append('- Check wallet permissions and regenerate the connection string in your wallet')
        if failed('bridge_reachable'):
            lines.append('- Start the bridge service or remove NWC_BRIDGE_URL')

        return '\n'.join(lines)

    def close(self):
        self.relay_pool.close_all()
        if self.bridge_transport is not None:
            self.bridge_transport.close()
