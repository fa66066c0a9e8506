"""
Shared fixtures for the relay test suite.

Every test gets its own in-memory SQLite store, a fresh queue, order store and
voucher vault, a fake signing wallet and a fake chain reader. Nothing reaches
the network.
"""

import os

# Must be set before config.get_settings() is first called.
os.environ.setdefault('RELAY_DB_URL', 'sqlite://')
os.environ['RELAY_AUTOSTART'] = '0'
os.environ['KDF_ITERATIONS'] = '1000'
os.environ.setdefault('JWT_SECRET', 'test-secret')

import logging
from datetime import datetime, timedelta

import pytest

from chain import WalletRpcError
from database import init_db, make_engine
from errors import RelayError
from orders import OrderStore
from schemas import OrderKind, TxStatus
from transaction import PendingTransactionQueue
from vault import VoucherVault

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

SELLER = '0x' + '1' * 40
BUYER = '0x' + '2' * 40
FILLER = '0x' + '3' * 40
OTHER = '0x' + '4' * 40
HASH_A = '0x' + 'ab' * 32
HASH_B = '0x' + 'cd' * 32


# ----------------------------- Fakes -----------------------------

class FakeWallet:
    """Wallet EIP-1193 simulada: cambio/alta de red y envío."""

    def __init__(self, chain_id=8453, known_chains=(8453,), send_result=HASH_B):
        self.current = chain_id
        self.known = set(known_chains)
        self.send_result = send_result
        self.send_error = None
        self.switch_error = None
        self.add_error = None
        self.sent = []
        self.calls = []

    def chain_id(self):
        return hex(self.current)

    def switch_chain(self, hex_chain_id):
        self.calls.append(('switch', hex_chain_id))
        if self.switch_error:
            raise self.switch_error
        chain_id = int(hex_chain_id, 16)
        if chain_id not in self.known:
            raise WalletRpcError(4902, 'Unrecognized chain ID')
        self.current = chain_id

    def add_chain(self, params):
        self.calls.append(('add', params['chainId']))
        if self.add_error:
            raise self.add_error
        self.known.add(int(params['chainId'], 16))

    def send_transaction(self, tx):
        self.sent.append(tx)
        if self.send_error:
            raise self.send_error
        return self.send_result


class FakeChainReader:
    """Lecturas de cadena desde diccionarios en memoria."""

    def __init__(self):
        self.inputs = {}
        self.logs = {}
        self.error = None

    def get_transaction_input(self, tx_hash):
        if self.error:
            raise self.error
        return self.inputs.get(tx_hash)

    def get_receipt_log_data(self, tx_hash):
        if self.error:
            raise self.error
        return self.logs.get(tx_hash)


class ImmediateFuture:
    def __init__(self, result=None, error=None):
        self._result = result
        self._error = error

    def done(self):
        return True

    def exception(self):
        return self._error

    def result(self):
        if self._error:
            raise self._error
        return self._result


class InlineDispatcher:
    """Dispatcher síncrono: ejecuta en el mismo hilo y registra cada envío."""

    def __init__(self):
        self.submitted = []

    def submit(self, fn, *args):
        self.submitted.append(args)
        try:
            return ImmediateFuture(result=fn(*args))
        except RelayError as e:
            return ImmediateFuture(error=e)


def make_voucher(amount=100, reference='123456789012', expires='99/12/31 23:59:59', **overrides):
    voucher = {
        'TipoOperacion': '0004',
        'VersionQR': '01.01',
        'FechaExpiracionQR': expires,
        'FechaCreacionQR': '24/01/01 10:00:00',
        'EmisorQR': '101',
        'Monto': amount,
        'Concepto': 'Pago',
        'Operacion': {'CR': reference, 'Mensaje': 'OXXO Spin'},
    }
    voucher.update(overrides)
    return voucher


# ---------------------------- Fixtures ---------------------------

@pytest.fixture
def engine():
    eng = make_engine('sqlite://', in_memory=True)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def queue(engine):
    return PendingTransactionQueue(engine)


@pytest.fixture
def chain_reader():
    return FakeChainReader()


@pytest.fixture
def vault(engine, chain_reader, tmp_path):
    return VoucherVault(engine, chain_reader=chain_reader, upload_dir=tmp_path / 'uploads')


@pytest.fixture
def orders(queue, vault, engine):
    return OrderStore(queue, vault, engine)


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def confirm(queue):
    """Lleva una entrada por pending -> submitted -> confirmed."""
    def _confirm(tx_id, tx_hash=HASH_A):
        queue.update_status(tx_id, TxStatus.SUBMITTED)
        return queue.update_status(tx_id, TxStatus.CONFIRMED, tx_hash)
    return _confirm


@pytest.fixture
def active_selling_order(orders, confirm):
    def _create(amount='10', mxn_amount=100, seller=SELLER):
        order, tx_id = orders.create_selling_order(seller, 'XOC', amount, mxn_amount)
        confirm(tx_id)
        orders.activate(OrderKind.SELLING, order.order_id, HASH_A)
        return orders.get_selling_order(order.order_id)
    return _create


@pytest.fixture
def active_buying_order(orders, confirm):
    def _create(amount=100, reference='123456789012', buyer=BUYER, token_amount='5'):
        order, tx_id, secret = orders.create_buying_order(
            buyer, 'MXNe', token_amount, make_voucher(amount=amount, reference=reference))
        confirm(tx_id)
        orders.activate(OrderKind.BUYING, order.order_id, HASH_A)
        return orders.get_buying_order(order.order_id), secret
    return _create


@pytest.fixture
def filled_buying_order(orders, active_buying_order):
    def _create(**kwargs):
        order, secret = active_buying_order(**kwargs)
        orders.mark_filled(OrderKind.BUYING, order.order_id, FILLER, HASH_B)
        return orders.get_buying_order(order.order_id), secret
    return _create


@pytest.fixture
def local_now():
    return datetime.now() + timedelta(seconds=0)
