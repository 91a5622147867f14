"""
Wallet Connect Client

This module provides the high-level wallet operations used by the rest of the
application: fetching wallet info, creating and paying invoices and reading
the balance, routed over the bridge or the wallet's relays.
"""

import time
import logging
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field

from core.config import Config
from core.capability_cache import CapabilityCache, CapabilitySet
from core.connection_store import ConnectionStore
from nostr_clients.connection_uri import ConnectionDescriptor, parse, abbreviate
from nostr_clients.nwc_crypto import CryptoEngine, Signer
from nostr_clients.relay_pool import RelayPool, ConnectionFactory
from nostr_clients.relay_transport import RelayTransport
from wallet_transports import BridgeTransport, TransportRouter, RequestEnvelope
from wallet_errors import (
    NWCError,
    ProtocolError,
    InvalidArgument,
    CapabilityUnsupported,
    ConnectionStringInvalid,
    WalletErrorHandler,
)

logger = logging.getLogger(__name__)

DEFAULT_INVOICE_EXPIRY_SECONDS = 3600


@dataclass
class Invoice:
    """A BOLT11 invoice created by the wallet"""
    bolt11: str
    payment_hash: str
    amount_millisats: int
    description: str = ""
    expires_at: int = 0


@dataclass
class PaymentResult:
    """Outcome of a successful payment"""
    preimage: str
    fees_paid: Optional[int] = None


@dataclass
class WalletInfo:
    """Wallet details from get_info"""
    alias: Optional[str] = None
    pubkey: Optional[str] = None
    network: Optional[str] = None
    block_height: Optional[int] = None
    block_hash: Optional[str] = None
    methods: List[str] = field(default_factory=list)
    synthesized: bool = False


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


class NWCWalletClient:
    """Lightning wallet operations over Nostr Wallet Connect"""

    def __init__(self, descriptor: ConnectionDescriptor, router: TransportRouter,
                 capability_cache: Optional[CapabilityCache] = None,
                 request_timeout: float = 30.0, strict_capabilities: bool = False,
                 error_handler: Optional[WalletErrorHandler] = None):
        self.descriptor = descriptor
        self.router = router
        self.capability_cache = capability_cache or CapabilityCache()
        self.request_timeout = request_timeout
        self.strict_capabilities = strict_capabilities
        self.error_handler = error_handler or WalletErrorHandler()

    @classmethod
    def from_config(cls, config: Optional[Config] = None, store: Optional[ConnectionStore] = None,
                    signer: Optional[Signer] = None,
                    relay_connection_factory: Optional[ConnectionFactory] = None) -> "NWCWalletClient":
        """Build a client from environment settings or the saved connection"""
        config = config or Config()

        connection_string = config.NWC_CONNECTION_STRING
        bridge_params = config.get_bridge_params()
        bridge_url = bridge_params.pop('bridge_url')
        if not connection_string:
            store = store or ConnectionStore(config.NWC_CONNECTION_STORE_PATH)
            record = store.load()
            if record is None:
                raise ConnectionStringInvalid("No wallet connection is configured")
            connection_string = record.connection_string
            bridge_url = bridge_url or record.bridge_url

        descriptor = parse(connection_string)

        pool = RelayPool(
            connect_timeout=config.NWC_RELAY_CONNECT_TIMEOUT_SECONDS,
            connection_factory=relay_connection_factory,
        )
        relay = RelayTransport(pool, CryptoEngine(verify_signatures=config.NWC_VERIFY_SIGNATURES), signer=signer)

        bridge = None
        if bridge_url:
            bridge = BridgeTransport(bridge_url, **bridge_params)

        router = TransportRouter(relay, bridge, hint_ttl_seconds=config.NWC_TRANSPORT_HINT_TTL_SECONDS)
        cache = CapabilityCache.from_url(config.REDIS_URL, ttl_seconds=config.NWC_CAPABILITY_TTL_SECONDS)

        logger.info(f"Wallet client for {abbreviate(descriptor.wallet_pubkey)} via "
                    f"{'bridge and relays' if bridge else 'relays'}")
        return cls(
            descriptor,
            router,
            capability_cache=cache,
            request_timeout=config.NWC_REQUEST_TIMEOUT_SECONDS,
            strict_capabilities=config.NWC_STRICT_CAPABILITIES,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        """Release relay sockets and HTTP sessions"""
        self.router.close()

    def _timeout(self, timeout: Optional[float]) -> float:
        if timeout is None:
            return self.request_timeout
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise InvalidArgument("timeout must be a positive number of seconds")
        return float(timeout)

    def _record(self, error: NWCError, method: str) -> NWCError:
        self.error_handler.handle_error(error, {'method': method})
        return error

    def _check_capability(self, method: str, timeout: float):
        capabilities = self.capability_cache.get(self.descriptor.wallet_pubkey)
        if capabilities is None and self.strict_capabilities:
            self.get_info(timeout=timeout)
            capabilities = self.capability_cache.get(self.descriptor.wallet_pubkey)
        capabilities = capabilities or CapabilitySet.default()

        if capabilities.supports(method):
            return
        if self.strict_capabilities:
            raise self._record(CapabilityUnsupported(method), method)
        logger.info(f"Wallet {abbreviate(self.descriptor.wallet_pubkey)} does not advertise "
                    f"{method}, sending anyway")

    def _call(self, method: str, params: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        request = RequestEnvelope(method=method, params=params)
        start_time = time.time()
        try:
            response = self.router.send(self.descriptor, request, timeout)
        except NWCError as e:
            raise self._record(e, method)
        except Exception as e:
            wrapped = ProtocolError(f"Unexpected failure during {method}: {e}")
            raise self._record(wrapped, method) from e

        logger.debug(f"{method} ({request.correlation_id}) answered via "
                     f"{response.transport.value if response.transport else '?'} "
                     f"in {(time.time() - start_time) * 1000:.0f}ms")
        return response.result or {}

    def get_info(self, *, timeout: Optional[float] = None) -> WalletInfo:
        """Fetch wallet info and refresh the cached capability set.

        Never raises for wallet or transport failures: the default capability
        set is returned instead, marked as synthesized.
        """
        wallet_pubkey = self.descriptor.wallet_pubkey
        timeout = self._timeout(timeout)
        try:
            result = self._call('get_info', {}, timeout)
        except NWCError as e:
            logger.warning(f"get_info failed for {abbreviate(wallet_pubkey)}, "
                           f"assuming default capabilities: {e}")
            capabilities = self.capability_cache.store_default(wallet_pubkey)
            return WalletInfo(methods=sorted(capabilities.methods), synthesized=True)

        methods = result.get('methods')
        if isinstance(methods, list):
            capabilities = self.capability_cache.store(wallet_pubkey, methods)
        else:
            capabilities = self.capability_cache.store_default(wallet_pubkey)

        return WalletInfo(
            alias=result.get('alias'),
            pubkey=result.get('pubkey'),
            network=result.get('network'),
            block_height=_as_int(result.get('block_height')),
            block_hash=result.get('block_hash'),
            methods=sorted(capabilities.methods),
            synthesized=False,
        )

    def make_invoice(self, amount_millisats: int, description: str = "",
                     expiry_seconds: int = DEFAULT_INVOICE_EXPIRY_SECONDS, *,
                     timeout: Optional[float] = None) -> Invoice:
        """Ask the wallet for a BOLT11 invoice"""
        if not _is_positive_int(amount_millisats):
            raise InvalidArgument("amount_millisats must be a positive integer")
        if not _is_positive_int(expiry_seconds):
            raise InvalidArgument("expiry_seconds must be a positive integer")
        if not isinstance(description, str):
            raise InvalidArgument("description must be a string")

        timeout = self._timeout(timeout)
        self._check_capability('make_invoice', timeout)

        result = self._call('make_invoice', {
            'amount': amount_millisats,
            'description': description,
            'expiry': expiry_seconds,
        }, timeout)

        bolt11 = result.get('invoice') or result.get('bolt11') or result.get('payment_request')
        if not isinstance(bolt11, str) or not bolt11:
            raise self._record(ProtocolError("make_invoice response has no invoice"), 'make_invoice')

        amount = _as_int(result.get('amount')) or _as_int(result.get('amount_msat')) or amount_millisats
        expires_at = _as_int(result.get('expires_at')) or int(time.time()) + expiry_seconds
        wallet_description = result.get('description')

        return Invoice(
            bolt11=bolt11,
            payment_hash=result.get('payment_hash') or result.get('checking_id') or "",
            amount_millisats=amount,
            description=wallet_description if isinstance(wallet_description, str) else description,
            expires_at=expires_at,
        )

    def pay_invoice(self, bolt11: str, amount_millisats: Optional[int] = None, *,
                    timeout: Optional[float] = None) -> PaymentResult:
        """Pay a BOLT11 invoice. Never re-sent once it may have reached the wallet."""
        if not isinstance(bolt11, str) or not bolt11.strip().lower().startswith('ln'):
            raise InvalidArgument("bolt11 must be a BOLT11 invoice string")
        if amount_millisats is not None and not _is_positive_int(amount_millisats):
            raise InvalidArgument("amount_millisats must be a positive integer")

        timeout = self._timeout(timeout)
        self._check_capability('pay_invoice', timeout)

        params: Dict[str, Any] = {'invoice': bolt11.strip()}
        if amount_millisats is not None:
            params['amount'] = amount_millisats

        result = self._call('pay_invoice', params, timeout)

        preimage = result.get('preimage')
        if not isinstance(preimage, str) or not preimage:
            raise self._record(ProtocolError("pay_invoice response has no preimage"), 'pay_invoice')

        return PaymentResult(preimage=preimage, fees_paid=_as_int(result.get('fees_paid')))

    def get_balance(self, *, timeout: Optional[float] = None) -> int:
        """Wallet balance in millisatoshis"""
        timeout = self._timeout(timeout)
        self._check_capability('get_balance', timeout)

        result = self._call('get_balance', {}, timeout)
        balance = _as_int(result.get('balance'))
        if balance is None:
            raise self._record(ProtocolError("get_balance response has no integer balance"), 'get_balance')
        return balance

    def capabilities(self) -> CapabilitySet:
        return self.capability_cache.get_or_default(self.descriptor.wallet_pubkey)

    def has_capability(self, method: str) -> bool:
        return self.capabilities().supports(method)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'wallet_pubkey': self.descriptor.wallet_pubkey,
            'router': self.router.get_stats(),
            'capability_cache': self.capability_cache.get_stats(),
            'errors': self.error_handler.get_error_statistics(),
        }
