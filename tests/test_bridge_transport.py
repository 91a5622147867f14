"""
Test cases for the HTTP bridge transport
"""

import json
import pytest
import requests
from unittest.mock import Mock
from urllib3.exceptions import MaxRetryError, NewConnectionError

from wallet_transports import BridgeTransport, RequestEnvelope, TransportType
from wallet_errors import BridgeUnavailable, ErrorKind, ProtocolError, WalletError

BRIDGE_URL = "http://localhost:3000/nwc"


def http_response(payload=None, status_code=200, text=None):
    response = Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    if text is not None:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = payload
    return response


@pytest.fixture
def session():
    mock_session = Mock()
    mock_session.headers = {}
    return mock_session


@pytest.fixture
def bridge(session):
    return BridgeTransport(BRIDGE_URL, api_key="test-api-key", timeout_seconds=15.0, session=session)


@pytest.mark.unit
class TestBridgeTransport:
    """Test cases for BridgeTransport"""

    def test_request_body(self, bridge, session, descriptor):
        """Test the request carries the method, params and connection details"""
        session.post.return_value = http_response({'result': {'balance': 5000}})
        request = RequestEnvelope('get_balance')

        bridge.send(descriptor, request, 30.0)

        args, kwargs = session.post.call_args
        assert args[0] == BRIDGE_URL
        assert kwargs['timeout'] == 15.0
        assert kwargs['headers']['X-NWC-Wallet'] == descriptor.wallet_pubkey
        body = kwargs['json']
        assert body['id'] == request.correlation_id
        assert body['method'] == 'get_balance'
        assert body['params'] == {}
        assert body['connectionDescriptor']['wallet_pubkey'] == descriptor.wallet_pubkey
        assert body['connectionDescriptor']['connection_string'] == descriptor.to_uri()

    def test_auth_header(self, bridge, session):
        """Test the API key is sent as a bearer token"""
        assert session.headers['Authorization'] == "Bearer test-api-key"

    def test_timeout_capped_by_request(self, bridge, session, descriptor):
        """Test the HTTP timeout never exceeds the caller's remaining time"""
        session.post.return_value = http_response({'result': {'balance': 5000}})
        bridge.send(descriptor, RequestEnvelope('get_balance'), 2.5)
        assert session.post.call_args[1]['timeout'] == 2.5

    def test_direct_result(self, bridge, session, descriptor):
        """Test a direct {result} reply"""
        session.post.return_value = http_response({'result': {'balance': 5000}})

        response = bridge.send(descriptor, RequestEnvelope('get_balance'), 5.0)

        assert response.result == {'balance': 5000}
        assert response.transport == TransportType.BRIDGE

    def test_tool_call_result(self, bridge, session, descriptor):
        """Test a wrapped tool-call reply with JSON text content"""
        inner = {'invoice': 'lnbc210n1ptest', 'payment_hash': 'ab' * 32, 'amount': 21000}
        session.post.return_value = http_response({
            'jsonrpc': '2.0',
            'result': {'content': [{'type': 'text', 'text': json.dumps(inner)}]},
        })

        response = bridge.send(descriptor, RequestEnvelope('make_invoice', {'amount': 21000}), 5.0)

        assert response.result == inner

    def test_tool_call_nested_result(self, bridge, session, descriptor):
        """Test tool-call text holding a full {result_type, result} reply"""
        text = json.dumps({'result_type': 'get_balance', 'result': {'balance': 42}})
        session.post.return_value = http_response({'result': {'content': [{'type': 'text', 'text': text}]}})

        response = bridge.send(descriptor, RequestEnvelope('get_balance'), 5.0)
        assert response.result == {'balance': 42}

    def test_wallet_error_reply(self, bridge, session, descriptor):
        """Test a wallet error relayed by the bridge becomes WalletError"""
        session.post.return_value = http_response({
            'error': {'code': 'INSUFFICIENT_BALANCE', 'message': 'balance too low'},
        })

        with pytest.raises(WalletError) as exc_info:
            bridge.send(descriptor, RequestEnvelope('pay_invoice', {'invoice': 'lnbc1'}), 5.0)
        assert exc_info.value.kind == ErrorKind.INSUFFICIENT_BALANCE

    def test_tool_call_error(self, bridge, session, descriptor):
        """Test an error inside tool-call content becomes WalletError"""
        text = json.dumps({'error': {'code': 'RESTRICTED', 'message': 'not allowed'}})
        session.post.return_value = http_response({
            'result': {'isError': True, 'content': [{'type': 'text', 'text': text}]},
        })

        with pytest.raises(WalletError) as exc_info:
            bridge.send(descriptor, RequestEnvelope('get_balance'), 5.0)
        assert exc_info.value.kind == ErrorKind.RESTRICTED

    def test_tool_call_plain_text_error(self, bridge, session, descriptor):
        """Test a non-JSON tool error is a bridge failure"""
        session.post.return_value = http_response({
            'result': {'isError': True, 'content': [{'type': 'text', 'text': 'relay timeout'}]},
        })

        with pytest.raises(BridgeUnavailable):
            bridge.send(descriptor, RequestEnvelope('get_balance'), 5.0)

    def test_jsonrpc_error_is_bridge_failure(self, bridge, session, descriptor):
        """Test numeric JSON-RPC errors come from the bridge, not the wallet"""
        session.post.return_value = http_response({'error': {'code': -32603, 'message': 'Internal error'}})

        with pytest.raises(BridgeUnavailable):
            bridge.send(descriptor, RequestEnvelope('get_balance'), 5.0)

    def test_server_error(self, bridge, session, descriptor):
        """Test 5xx replies are unavailable and possibly delivered"""
        session.post.return_value = http_response(status_code=502)

        with pytest.raises(BridgeUnavailable) as exc_info:
            bridge.send(descriptor, RequestEnvelope('pay_invoice', {'invoice': 'lnbc1'}), 5.0)

        assert exc_info.value.status_code == 502
        assert exc_info.value.maybe_delivered is True

    def test_client_error(self, bridge, session, descriptor):
        """Test 4xx replies were not acted on"""
        session.post.return_value = http_response(status_code=401)

        with pytest.raises(BridgeUnavailable) as exc_info:
            bridge.send(descriptor, RequestEnvelope('get_balance'), 5.0)
        assert exc_info.value.maybe_delivered is False

    def test_connect_timeout_not_delivered(self, bridge, session, descriptor):
        """Test a connect timeout means the request never left"""
        session.post.side_effect = requests.exceptions.ConnectTimeout("connect timed out")

        with pytest.raises(BridgeUnavailable) as exc_info:
            bridge.send(descriptor, RequestEnvelope('pay_invoice', {'invoice': 'lnbc1'}), 5.0)
        assert exc_info.value.maybe_delivered is False

    def test_read_timeout_maybe_delivered(self, bridge, session, descriptor):
        """Test a read timeout may have reached the wallet"""
        session.post.side_effect = requests.exceptions.ReadTimeout("read timed out")

        with pytest.raises(BridgeUnavailable) as exc_info:
            bridge.send(descriptor, RequestEnvelope('pay_invoice', {'invoice': 'lnbc1'}), 5.0)
        assert exc_info.value.maybe_delivered is True

    def test_refused_connection_not_delivered(self, bridge, session, descriptor):
        """Test a refused connection means the request never left"""
        refused = NewConnectionError(None, "Failed to establish a new connection: refused")
        session.post.side_effect = requests.exceptions.ConnectionError(
            MaxRetryError(None, "http://localhost:3000/nwc", reason=refused))

        with pytest.raises(BridgeUnavailable) as exc_info:
            bridge.send(descriptor, RequestEnvelope('pay_invoice', {'invoice': 'lnbc1'}), 5.0)
        assert exc_info.value.maybe_delivered is False

    def test_dropped_connection_maybe_delivered(self, bridge, session, descriptor):
        """Test a connection lost after the request went out may have reached the wallet"""
        session.post.side_effect = requests.exceptions.ConnectionError("Connection aborted.")

        with pytest.raises(BridgeUnavailable) as exc_info:
            bridge.send(descriptor, RequestEnvelope('pay_invoice', {'invoice': 'lnbc1'}), 5.0)
        assert exc_info.value.maybe_delivered is True

    def test_non_json_reply(self, bridge, session, descriptor):
        """Test an unreadable body is a bridge failure"""
        session.post.return_value = http_response(text="<html>")

        with pytest.raises(BridgeUnavailable):
            bridge.send(descriptor, RequestEnvelope('get_balance'), 5.0)

    def test_result_type_mismatch(self, bridge, session, descriptor):
        """Test a reply for a different method is a protocol error"""
        session.post.return_value = http_response({'result_type': 'get_info', 'result': {'alias': 'x'}})

        with pytest.raises(ProtocolError):
            bridge.send(descriptor, RequestEnvelope('get_balance'), 5.0)

    def test_health_check(self, bridge, session):
        """Test the health endpoint is probed at the bridge origin"""
        session.get.return_value = http_response({'status': 'ok'})

        assert bridge.health_check() is True
        assert session.get.call_args[0][0] == "http://localhost:3000/health"

        session.get.side_effect = requests.exceptions.ConnectionError("refused")
        assert bridge.health_check() is False
