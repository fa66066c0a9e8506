from unittest.mock import MagicMock

import pytest
import requests

from chain import (
    BASE_NETWORK,
    ChainGuard,
    JsonRpcChainReader,
    WalletRpcError,
    get_token,
    is_user_rejection,
    parse_chain_id,
)
from errors import ErrorKind, RelayError

from conftest import FakeWallet, HASH_A


def test_parse_chain_id_formats():
    assert parse_chain_id(8453) == 8453
    assert parse_chain_id('8453') == 8453
    assert parse_chain_id('0x2105') == 8453


def test_network_params_for_wallet():
    params = BASE_NETWORK.to_wallet_params()
    assert params['chainId'] == '0x2105'
    assert params['nativeCurrency']['symbol'] == 'ETH'
    assert 'https://mainnet.base.org' in params['rpcUrls']
    assert BASE_NETWORK.tx_url(HASH_A) == f"https://basescan.org/tx/{HASH_A}"


def test_get_token_unknown_symbol():
    assert get_token('MXNe').decimals == 6
    with pytest.raises(RelayError) as exc:
        get_token('DOGE')
    assert exc.value.kind == ErrorKind.INVALID_REQUEST


def test_is_user_rejection():
    assert is_user_rejection(WalletRpcError(4001, 'nope'))
    assert is_user_rejection(Exception('User denied transaction signature'))
    assert not is_user_rejection(Exception('insufficient funds'))


# ----------------------------- ChainGuard ----------------------------

def test_already_on_required_chain():
    wallet = FakeWallet(chain_id=8453)
    assert ChainGuard(wallet).ensure_chain(8453) == 8453
    assert wallet.calls == []


def test_switches_to_known_chain():
    wallet = FakeWallet(chain_id=1, known_chains=(1, 8453))
    assert ChainGuard(wallet).ensure_chain(8453) == 8453
    assert wallet.calls == [('switch', '0x2105')]


def test_registers_unknown_chain_then_switches():
    wallet = FakeWallet(chain_id=1, known_chains=(1,))
    assert ChainGuard(wallet).ensure_chain(8453) == 8453
    assert wallet.calls == [('switch', '0x2105'), ('add', '0x2105'), ('switch', '0x2105')]


def test_no_wallet_is_provider_unavailable():
    with pytest.raises(RelayError) as exc:
        ChainGuard(None).ensure_chain(8453)
    assert exc.value.kind == ErrorKind.PROVIDER_UNAVAILABLE
    assert exc.value.retryable


def test_switch_rejected_by_user():
    wallet = FakeWallet(chain_id=1, known_chains=(1, 8453))
    wallet.switch_error = WalletRpcError(4001, 'User rejected the request.')
    with pytest.raises(RelayError) as exc:
        ChainGuard(wallet).ensure_chain(8453)
    assert exc.value.kind == ErrorKind.CHAIN_SWITCH_REJECTED
    assert wallet.current == 1


def test_registration_failure():
    wallet = FakeWallet(chain_id=1, known_chains=(1,))
    wallet.add_error = WalletRpcError(-32603, 'Internal error')
    with pytest.raises(RelayError) as exc:
        ChainGuard(wallet).ensure_chain(8453)
    assert exc.value.kind == ErrorKind.CHAIN_REGISTRATION_FAILED


def test_unregistered_network_parameters():
    wallet = FakeWallet(chain_id=1, known_chains=(1,))
    with pytest.raises(RelayError) as exc:
        ChainGuard(wallet).ensure_chain(10)
    assert exc.value.kind == ErrorKind.CHAIN_REGISTRATION_FAILED


def test_wallet_that_ignores_switch():
    wallet = FakeWallet(chain_id=1, known_chains=(1, 8453))
    wallet.switch_chain = lambda hex_chain_id: None
    with pytest.raises(RelayError) as exc:
        ChainGuard(wallet).ensure_chain(8453)
    assert exc.value.kind == ErrorKind.PROVIDER_UNAVAILABLE


# ---------------------------- JSON-RPC reader ------------------------

def _response(body):
    resp = MagicMock()
    resp.raise_for_status.return_value = None
    resp.json.return_value = body
    return resp


def test_reader_falls_back_to_next_endpoint():
    session = MagicMock()
    session.post.side_effect = [
        requests.ConnectionError('down'),
        _response({'jsonrpc': '2.0', 'id': 1, 'result': {'input': '0xabc'}}),
    ]
    reader = JsonRpcChainReader(['http://a', 'http://b'], timeout=1, session=session)
    assert reader.get_transaction_input(HASH_A) == '0xabc'
    assert [c.args[0] for c in session.post.call_args_list] == ['http://a', 'http://b']
    assert session.post.call_args.kwargs['timeout'] == 1


def test_reader_reads_first_receipt_log():
    session = MagicMock()
    session.post.return_value = _response({'result': {'logs': [{'data': '0x01'}, {'data': '0x02'}]}})
    reader = JsonRpcChainReader(['http://a'], timeout=1, session=session)
    assert reader.get_receipt_log_data(HASH_A) == '0x01'


def test_reader_all_endpoints_failing():
    session = MagicMock()
    session.post.return_value = _response({'error': {'code': -32000, 'message': 'boom'}})
    reader = JsonRpcChainReader(['http://a', 'http://b'], timeout=1, session=session)
    with pytest.raises(RelayError) as exc:
        reader.get_transaction_input(HASH_A)
    assert exc.value.kind == ErrorKind.PROVIDER_UNAVAILABLE
    assert session.post.call_count == 2
