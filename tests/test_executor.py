import pytest

from chain import WalletRpcError
from errors import ErrorKind, RelayError
from executor import TransactionExecutor
from schemas import TransferMetadata, TxStatus

from conftest import FakeWallet, HASH_B, SELLER

TOKEN = '0xa411c9Aa00E020e4f88Bc19996d29c5B7ADB4ACf'


@pytest.fixture
def pending(queue):
    tx_id = queue.enqueue(to=TOKEN, value=10, data='0xa9059cbb', submitter_address=SELLER, chain='base',
                          metadata=TransferMetadata(wallet_address=SELLER))
    return queue.require(tx_id)


class FlakyQueue:
    """Reenvía a la cola real salvo el reporte de confirmed, que falla por red."""

    def __init__(self, queue, failures=1):
        self.queue = queue
        self.failures = failures

    def update_status(self, tx_id, new_status, tx_hash=None):
        if TxStatus(new_status) == TxStatus.CONFIRMED and self.failures:
            self.failures -= 1
            raise RelayError(ErrorKind.FETCH_FAILED, 'relay unreachable')
        return self.queue.update_status(tx_id, new_status, tx_hash)


def test_successful_execution_confirms(queue, wallet, pending):
    executor = TransactionExecutor(wallet, queue, required_chain_id=8453)
    assert executor.execute(pending) == HASH_B
    tx = queue.require(pending.id)
    assert tx.status == TxStatus.CONFIRMED
    assert tx.hash == HASH_B
    assert wallet.sent == [{'to': TOKEN, 'value': '0xa', 'data': '0xa9059cbb', 'from': SELLER}]


def test_switches_chain_before_sending(queue, pending):
    wallet = FakeWallet(chain_id=1, known_chains=(1, 8453))
    TransactionExecutor(wallet, queue, required_chain_id=8453).execute(pending)
    assert wallet.calls == [('switch', '0x2105')]
    assert queue.require(pending.id).status == TxStatus.CONFIRMED


def test_chain_failure_leaves_entry_pending(queue, pending):
    wallet = FakeWallet(chain_id=1, known_chains=(1, 8453))
    wallet.switch_error = WalletRpcError(4001, 'User rejected the request.')
    with pytest.raises(RelayError) as exc:
        TransactionExecutor(wallet, queue, required_chain_id=8453).execute(pending)
    assert exc.value.kind == ErrorKind.CHAIN_SWITCH_REJECTED
    assert queue.require(pending.id).status == TxStatus.PENDING
    assert wallet.sent == []


def test_user_rejection_marks_rejected(queue, wallet, pending):
    wallet.send_error = WalletRpcError(4001, 'User denied transaction signature')
    with pytest.raises(RelayError) as exc:
        TransactionExecutor(wallet, queue, required_chain_id=8453).execute(pending)
    assert exc.value.kind == ErrorKind.USER_REJECTED
    tx = queue.require(pending.id)
    assert tx.status == TxStatus.REJECTED
    assert tx.hash is None


def test_other_failure_marks_failed(queue, wallet, pending):
    wallet.send_error = WalletRpcError(-32000, 'insufficient funds for gas')
    with pytest.raises(RelayError) as exc:
        TransactionExecutor(wallet, queue, required_chain_id=8453).execute(pending)
    assert exc.value.kind == ErrorKind.SUBMISSION_FAILED
    assert queue.require(pending.id).status == TxStatus.FAILED


def test_empty_hash_is_a_failure(queue, wallet, pending):
    wallet.send_result = None
    with pytest.raises(RelayError):
        TransactionExecutor(wallet, queue, required_chain_id=8453).execute(pending)
    assert queue.require(pending.id).status == TxStatus.FAILED


def test_non_pending_entry_is_not_executed(queue, wallet, pending):
    queue.update_status(pending.id, TxStatus.SUBMITTED)
    executor = TransactionExecutor(wallet, queue, required_chain_id=8453)
    assert executor.execute(queue.require(pending.id)) is None
    assert wallet.sent == []


def test_unreported_confirmation_is_flushed_later(queue, wallet, pending):
    executor = TransactionExecutor(wallet, FlakyQueue(queue), required_chain_id=8453)
    assert executor.execute(pending) == HASH_B
    assert executor.unreported == {pending.id: HASH_B}
    assert queue.require(pending.id).status == TxStatus.SUBMITTED

    assert executor.flush_unreported() == 1
    assert executor.unreported == {}
    tx = queue.require(pending.id)
    assert tx.status == TxStatus.CONFIRMED
    assert tx.hash == HASH_B
