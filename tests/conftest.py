"""
Pytest configuration and fixtures
"""

import pytest
import sys
import os

# Add project root to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pynostr.key import PrivateKey

from tests.test_config import configure_test_environment
from tests.fake_relay import FakeWallet, FakeRelayNetwork


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Configure test environment for all tests"""
    configure_test_environment()


@pytest.fixture
def client_key():
    """Client key pair derived from the connection secret"""
    return PrivateKey()


@pytest.fixture
def fake_wallet():
    """In-process wallet service answering real encrypted requests"""
    return FakeWallet()


@pytest.fixture
def relay_network(fake_wallet):
    """In-process relays connected to the fake wallet"""
    return FakeRelayNetwork(wallet=fake_wallet)


@pytest.fixture
def descriptor(fake_wallet, client_key):
    """Connection descriptor for the fake wallet with two relays"""
    from nostr_clients.connection_uri import ConnectionDescriptor
    return ConnectionDescriptor(
        wallet_pubkey=fake_wallet.pubkey,
        relay_urls=("wss://relay-one.example", "wss://relay-two.example"),
        secret=client_key.hex(),
    )


@pytest.fixture
def relay_pool(relay_network):
    """Relay pool that opens fake connections"""
    from nostr_clients.relay_pool import RelayPool
    pool = RelayPool(connect_timeout=1.0, connection_factory=relay_network.factory)
    yield pool
    pool.close_all()


@pytest.fixture
def relay_transport(relay_pool):
    """Relay transport over the fake relays"""
    from nostr_clients.relay_transport import RelayTransport
    return RelayTransport(relay_pool)


@pytest.fixture
def wallet_client(descriptor, relay_transport):
    """Wallet client routed over fake relays only"""
    from core.wallet_client import NWCWalletClient
    from wallet_transports import TransportRouter
    client = NWCWalletClient(descriptor, TransportRouter(relay_transport), request_timeout=2.0)
    yield client
    client.close()


@pytest.fixture
def wallet_error_handler():
    """Wallet error handler fixture"""
    from wallet_errors import WalletErrorHandler
    return WalletErrorHandler()
