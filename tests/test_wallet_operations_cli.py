"""
Test cases for the wallet operations example CLI
"""

import json
import os
import pytest
from unittest.mock import patch, MagicMock

from examples import wallet_operations
from core.wallet_client import Invoice
from wallet_errors import WalletError


@pytest.fixture
def store_path(tmp_path):
    path = str(tmp_path / "connection.json")
    with patch.dict(os.environ, {'NWC_CONNECTION_STORE_PATH': path}):
        yield path


@pytest.fixture(autouse=True)
def quiet_logging():
    with patch.object(wallet_operations, 'setup_logging'):
        yield


@pytest.mark.unit
class TestWalletOperationsCli:
    """Test cases for the CLI entry point"""

    def test_no_command(self, capsys):
        """Test help is shown without a command"""
        assert wallet_operations.main([]) == 2

    def test_save(self, store_path, descriptor, capsys):
        """Test saving a connection string"""
        code = wallet_operations.main(['save', '--connection', descriptor.to_uri(), '--bridge', 'http://localhost:3000/nwc'])

        assert code == 0
        assert os.path.exists(store_path)
        assert descriptor.wallet_pubkey[:8] in capsys.readouterr().out

    def test_save_invalid(self, store_path, capsys):
        """Test an invalid connection string is reported"""
        code = wallet_operations.main(['save', '--connection', 'nostr+walletconnect://bad'])

        assert code == 1
        output = capsys.readouterr()
        assert json.loads(output.out)['kind'] == 'CONNECTION_STRING_INVALID'
        assert not os.path.exists(store_path)

    def test_invoice(self, store_path, capsys):
        """Test creating an invoice prints it as JSON"""
        client = MagicMock()
        client.__enter__.return_value = client
        client.__exit__.return_value = False
        client.make_invoice.return_value = Invoice(bolt11='lnbc210n1ptest', payment_hash='ab' * 32,
                                                   amount_millisats=21000, description='Raffle ticket')

        with patch.object(wallet_operations.NWCWalletClient, 'from_config', return_value=client):
            code = wallet_operations.main(['--timeout', '5', 'invoice', '--amount', '21000',
                                           '--description', 'Raffle ticket'])

        assert code == 0
        client.make_invoice.assert_called_once_with(21000, 'Raffle ticket', 3600, timeout=5.0)
        assert json.loads(capsys.readouterr().out)['bolt11'] == 'lnbc210n1ptest'

    def test_wallet_error_exit_code(self, store_path, capsys):
        """Test wallet errors give exit code 1 and the normalized error"""
        client = MagicMock()
        client.__enter__.return_value = client
        client.__exit__.return_value = False
        client.get_balance.side_effect = WalletError('UNAUTHORIZED', 'no permission')

        with patch.object(wallet_operations.NWCWalletClient, 'from_config', return_value=client):
            code = wallet_operations.main(['balance'])

        assert code == 1
        assert json.loads(capsys.readouterr().out) == {
            'kind': 'UNAUTHORIZED',
            'message': 'You are not authorized to perform this operation.',
        }

    def test_balance_over_fake_relays(self, store_path, descriptor, relay_network, capsys):
        """Test the balance command end to end against the fake wallet"""
        wallet_operations.main(['save', '--connection', descriptor.to_uri()])
        capsys.readouterr()

        original = wallet_operations.NWCWalletClient.from_config.__func__

        def from_fake_config(cls, config=None, store=None):
            return original(cls, config, store=store, relay_connection_factory=relay_network.factory)

        with patch.object(wallet_operations.NWCWalletClient, 'from_config', classmethod(from_fake_config)):
            code = wallet_operations.main(['balance'])

        assert code == 0
        assert json.loads(capsys.readouterr().out) == {'balance_millisats': 150000, 'balance_sats': 150}

    def test_unconfigured(self, store_path, capsys):
        """Test commands fail cleanly when no connection is saved"""
        assert wallet_operations.main(['balance']) == 1
