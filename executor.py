"""Ejecución de una transacción encolada con la wallet del usuario.

Secuencia: verificar red (ChainGuard), marcar submitted antes de pedir la
firma, enviar vía wallet y reportar confirmed/rejected/failed a la cola.
"""

import logging
from typing import Dict, Optional, Protocol

from chain import ChainGuard, WalletProvider, is_user_rejection
from errors import ErrorKind, RelayError
from schemas import TxStatus
from transaction import QueuedTransaction

logger = logging.getLogger('relay.executor')


class StatusSink(Protocol):
    def update_status(self, tx_id: str, new_status, tx_hash: Optional[str] = None): ...


class TransactionExecutor:
    """Firma y envía una entrada pendiente; nunca reintenta por su cuenta."""

    def __init__(self, wallet: WalletProvider, queue: StatusSink, guard: ChainGuard = None,
                 required_chain_id: int = None):
        self.wallet = wallet
        self.queue = queue
        self.guard = guard or ChainGuard(wallet)
        self.required_chain_id = required_chain_id
        # Hashes obtenidos cuyo "confirmed" no pudo reportarse todavía.
        self.unreported: Dict[str, str] = {}

    # _wallet_request: Forma de la transacción que recibe la wallet.
    def _wallet_request(self, tx: QueuedTransaction) -> dict:
        request = {'to': tx.to, 'value': hex(tx.value), 'data': tx.data or '0x'}
        if tx.wallet_address:
            request['from'] = tx.wallet_address
        return request

    def execute(self, tx: QueuedTransaction) -> Optional[str]:
        if tx.status != TxStatus.PENDING:
            logger.info("Transaction %s is %s, not executing", tx.id, tx.status.value)
            return tx.hash

        # Falla de red: la entrada queda pending y el error se propaga.
        self.guard.ensure_chain(self.required_chain_id)

        self.queue.update_status(tx.id, TxStatus.SUBMITTED)
        logger.info("Transaction %s submitted to wallet (%s)", tx.id, tx.tx_type)
        try:
            tx_hash = self.wallet.send_transaction(self._wallet_request(tx))
            if not tx_hash:
                raise RelayError(ErrorKind.SUBMISSION_FAILED, 'Wallet returned no transaction hash')
        except Exception as e:
            rejected = is_user_rejection(e)
            final = TxStatus.REJECTED if rejected else TxStatus.FAILED
            self._report_failure(tx.id, final)
            if rejected:
                logger.info("Transaction %s rejected by user", tx.id)
                raise RelayError(ErrorKind.USER_REJECTED, 'Transaction was rejected in the wallet',
                                 {'tx_id': tx.id}) from e
            logger.error("Transaction %s failed: %s", tx.id, e)
            raise RelayError(ErrorKind.SUBMISSION_FAILED, f"Transaction failed: {e}", {'tx_id': tx.id}) from e

        try:
            self.queue.update_status(tx.id, TxStatus.CONFIRMED, tx_hash)
        except RelayError as e:
            if not e.retryable:
                raise
            self.unreported[tx.id] = tx_hash
            logger.warning("Transaction %s confirmed as %s but report failed: %s", tx.id, tx_hash, e.message)
            return tx_hash
        logger.info("Transaction %s confirmed with hash %s", tx.id, tx_hash)
        return tx_hash

    def _report_failure(self, tx_id: str, status: TxStatus):
        try:
            self.queue.update_status(tx_id, status)
        except RelayError as e:
            logger.error("Could not record %s for transaction %s: %s", status.value, tx_id, e.message)
            raise

    # flush_unreported: Reintenta reportar los confirmed pendientes de envío.
    def flush_unreported(self) -> int:
        flushed = 0
        for tx_id, tx_hash in list(self.unreported.items()):
            try:
                self.queue.update_status(tx_id, TxStatus.CONFIRMED, tx_hash)
            except RelayError as e:
                if e.retryable:
                    logger.warning("Still unable to report %s for %s: %s", tx_hash, tx_id, e.message)
                    continue
                logger.error("Dropping unreported hash for %s: %s", tx_id, e.message)
            del self.unreported[tx_id]
            flushed += 1
        return flushed
