from unittest.mock import MagicMock

import pytest
import requests

from client import RelayApiClient
from errors import ErrorKind, RelayError
from schemas import TxStatus

from conftest import HASH_A, SELLER

WIRE_TX = {
    'id': 'tx-1',
    'to': '0xa411c9Aa00E020e4f88Bc19996d29c5B7ADB4ACf',
    'value': '0',
    'data': None,
    'status': 'pending',
    'timestamp': 1700000000000,
    'updatedAt': 1700000000000,
    'hash': None,
    'acknowledged': False,
    'metadata': {'type': 'transfer', 'walletAddress': SELLER, 'chain': 'base'},
}


def _response(status_code, body):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    resp.json.return_value = body
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(session, monkeypatch):
    monkeypatch.setattr('client.time.sleep', lambda seconds: None)
    return RelayApiClient('http://relay.test/api/', SELLER, session=session, timeout=2, max_retries=2)


def test_fetch_pending_sends_wallet_header(client, session):
    session.request.return_value = _response(200, {'transactions': [WIRE_TX]})
    txs = client.fetch_pending()
    assert [t.id for t in txs] == ['tx-1']
    assert txs[0].status == TxStatus.PENDING
    args, kwargs = session.request.call_args
    assert args == ('GET', 'http://relay.test/api/transactions/pending')
    assert kwargs['headers'] == {'X-Wallet-Address': SELLER}
    assert kwargs['timeout'] == 2


def test_transport_errors_are_retried_then_fetch_failed(client, session):
    session.request.side_effect = requests.ConnectionError('refused')
    with pytest.raises(RelayError) as exc:
        client.fetch_pending()
    assert exc.value.kind == ErrorKind.FETCH_FAILED
    assert exc.value.retryable
    assert session.request.call_count == 3


def test_transport_error_recovers_on_retry(client, session):
    session.request.side_effect = [requests.Timeout('slow'), _response(200, {'transactions': []})]
    assert client.fetch_pending() == []


def test_server_error_kind_is_preserved(client, session):
    body = {'success': False, 'error': {'kind': 'invalid_transition', 'message': 'nope', 'detail': {'tx_id': 'tx-1'}}}
    session.request.return_value = _response(409, body)
    with pytest.raises(RelayError) as exc:
        client.update_status('tx-1', TxStatus.FAILED)
    assert exc.value.kind == ErrorKind.INVALID_TRANSITION
    assert exc.value.detail == {'tx_id': 'tx-1'}


def test_unknown_server_error_maps_by_status(client, session):
    session.request.return_value = _response(502, {'detail': 'bad gateway'})
    with pytest.raises(RelayError) as exc:
        client.fetch_pending()
    assert exc.value.kind == ErrorKind.FETCH_FAILED


def test_update_status_payload(client, session):
    confirmed = dict(WIRE_TX, status='confirmed', hash=HASH_A)
    session.request.return_value = _response(200, {'success': True, 'transaction': confirmed})
    tx = client.update_status('tx-1', TxStatus.CONFIRMED, HASH_A)
    assert tx.hash == HASH_A
    assert session.request.call_args.kwargs['json'] == {'status': 'confirmed', 'hash': HASH_A}


def test_follow_up_calls_are_not_retried(client, session):
    session.request.side_effect = requests.ConnectionError('refused')
    with pytest.raises(RelayError):
        client.activate_selling_order('sell-1', 'tx-1', HASH_A)
    assert session.request.call_count == 1
    args, kwargs = session.request.call_args
    assert args[1] == 'http://relay.test/api/selling-orders/sell-1/activate'
    assert kwargs['json'] == {'txId': 'tx-1', 'txHash': HASH_A}
