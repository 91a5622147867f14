"""
Wallet Connect URI handling

Parses and serializes ``nostr+walletconnect://`` connection strings into
immutable connection descriptors.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple, Iterable, Dict, Any
from urllib.parse import parse_qs, unquote, urlencode, urlparse, quote

from pynostr.key import PrivateKey

from wallet_errors import ConnectionStringInvalid

logger = logging.getLogger(__name__)

SCHEME = "nostr+walletconnect"
RELAY_SCHEMES = ("ws", "wss")

_HEX64 = re.compile(r'^[0-9a-fA-F]{64}$')


def abbreviate(pubkey: str) -> str:
    """Shorten a public key for log lines"""
    if not pubkey or len(pubkey) <= 16:
        return pubkey
    return f"{pubkey[:8]}...{pubkey[-8:]}"


def _is_hex64(value: Any) -> bool:
    return isinstance(value, str) and bool(_HEX64.match(value))


def _is_relay_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme.lower() in RELAY_SCHEMES and bool(parsed.netloc)


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Everything needed to reach one wallet service"""
    wallet_pubkey: str
    relay_urls: Tuple[str, ...]
    secret: str
    lud16: Optional[str] = None

    def __post_init__(self):
        if not _is_hex64(self.wallet_pubkey):
            raise ConnectionStringInvalid("Wallet public key must be 64 hex characters")
        if not _is_hex64(self.secret):
            raise ConnectionStringInvalid("Secret must be 64 hex characters")

        if isinstance(self.relay_urls, str):
            relays = (self.relay_urls,)
        else:
            relays = tuple(self.relay_urls or ())
        if not relays:
            raise ConnectionStringInvalid("At least one relay is required")
        for relay in relays:
            if not _is_relay_url(relay):
                raise ConnectionStringInvalid(f"Invalid relay URL: {relay!r}")

        object.__setattr__(self, 'wallet_pubkey', self.wallet_pubkey.lower())
        object.__setattr__(self, 'secret', self.secret.lower())
        object.__setattr__(self, 'relay_urls', relays)
        object.__setattr__(self, 'lud16', self.lud16 or None)

    def to_uri(self) -> str:
        return serialize(self)

    def redacted(self) -> Dict[str, Any]:
        """Descriptor fields safe to log, the secret is never included"""
        return {
            'wallet_pubkey': self.wallet_pubkey,
            'relay_urls': list(self.relay_urls),
            'lud16': self.lud16,
        }

    def __repr__(self) -> str:
        return (f"ConnectionDescriptor(wallet_pubkey={abbreviate(self.wallet_pubkey)!r}, "
                f"relay_urls={self.relay_urls!r}, lud16={self.lud16!r})")


def _decode_relay(value: str) -> str:
    # Some generators percent-encode the relay before adding it to the query,
    # leaving it encoded twice.
    if '%' in value and '://' not in value:
        value = unquote(value)
    return value


def parse(uri: str) -> ConnectionDescriptor:
    """Parse a connection string into a ConnectionDescriptor.

    Raises ConnectionStringInvalid for anything that is not a well formed
    ``nostr+walletconnect`` URI with a wallet key, at least one ws/wss relay
    and a 64 hex character secret.
    """
    if not isinstance(uri, str):
        raise ConnectionStringInvalid("Connection string must be a string")

    try:
        return _parse(uri.strip())
    except ConnectionStringInvalid:
        raise
    except (ValueError, TypeError, UnicodeError) as e:
        raise ConnectionStringInvalid(f"Malformed connection string: {e}") from e


def _parse(uri: str) -> ConnectionDescriptor:
    prefix = f"{SCHEME}:"
    if not uri.lower().startswith(prefix):
        raise ConnectionStringInvalid(f"Connection string must start with {SCHEME}://")

    rest = uri[len(prefix):]
    if rest.startswith('//'):
        rest = rest[2:]

    pubkey, _, query = rest.partition('?')
    pubkey = pubkey.rstrip('/')
    if not _is_hex64(pubkey):
        raise ConnectionStringInvalid("Wallet public key must be 64 hex characters")

    params = parse_qs(query, keep_blank_values=True)

    relays = [_decode_relay(value) for value in params.get('relay', []) if value]
    if not relays:
        raise ConnectionStringInvalid("Connection string has no relay parameter")

    secrets = params.get('secret', [])
    if not secrets or not _is_hex64(secrets[0]):
        raise ConnectionStringInvalid("Connection string secret is missing or not 64 hex characters")

    lud16 = (params.get('lud16') or [None])[0] or None

    return ConnectionDescriptor(
        wallet_pubkey=pubkey,
        relay_urls=tuple(relays),
        secret=secrets[0],
        lud16=lud16,
    )


def is_valid(uri: str) -> bool:
    """Check a connection string without raising"""
    try:
        parse(uri)
        return True
    except ConnectionStringInvalid as e:
        logger.debug(f"Connection string rejected: {e}")
        return False


def serialize(descriptor: ConnectionDescriptor) -> str:
    """Render a descriptor back into its connection string"""
    params = [('relay', relay) for relay in descriptor.relay_urls]
    params.append(('secret', descriptor.secret))
    if descriptor.lud16:
        params.append(('lud16', descriptor.lud16))

    query = urlencode(params, quote_via=quote, safe='')
    return f"{SCHEME}://{descriptor.wallet_pubkey}?{query}"


def generate_connection_string(wallet_pubkey: str, relay_urls: Iterable[str],
                               lud16: Optional[str] = None) -> Tuple[str, str]:
    """Create a connection string with a freshly generated secret.

    Returns ``(connection_string, secret)``.
    """
    secret = PrivateKey().hex()
    descriptor = ConnectionDescriptor(
        wallet_pubkey=wallet_pubkey,
        relay_urls=tuple(relay_urls),
        secret=secret,
        lud16=lud16,
    )
    return serialize(descriptor), descriptor.secret
