"""Relay del backend: concilia la cola de transacciones con el libro de órdenes.

Corre con cadencia propia, independiente del poller del cliente. Cada ciclo:
  1. vence órdenes y fills cuya vigencia terminó;
  2. activa o cancela órdenes pendientes según su transacción de creación;
  3. marca órdenes de compra como llenadas a partir de fills confirmados
     (con autocorrección cuando la orden ya fue llenada por esa entrada);
  4. registra liquidaciones del escrow y encola pagos pendientes;
  5. marca como conciliada (acknowledged) cada entrada terminada.
Repetir un ciclo no cambia nada. Un error en una entrada se registra y no
interrumpe el ciclo.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, List

from config import get_settings
from errors import RelayError
from orders import OrderStore
from scheduler import PeriodicTask
from schemas import OrderKind, OrderStatus, TxStatus
from transaction import PendingTransactionQueue, QueuedTransaction

logger = logging.getLogger('relay.filler')

ACTIVATION_TYPES = {
    'create_buying_order': OrderKind.BUYING,
    'activate_selling_order': OrderKind.SELLING,
}
FILL_TYPES = ('fill_buying_order',)
RELEASE_TYPES = ('release_selling_order', 'release_buying_order')
FAILED_TX_STATUSES = (TxStatus.REJECTED, TxStatus.FAILED)


@dataclass
class RelayReport:
    expired: List[str] = field(default_factory=list)
    activated: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    filled: List[str] = field(default_factory=list)
    healed: List[str] = field(default_factory=list)
    settled: List[str] = field(default_factory=list)
    payouts: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    acknowledged: List[str] = field(default_factory=list)
    errors: List[dict] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return any((self.expired, self.activated, self.cancelled, self.filled, self.healed,
                    self.settled, self.payouts))

    def to_dict(self):
        return asdict(self)


class FillerRelay:
    """Conciliación periódica e idempotente de transacciones con órdenes."""

    def __init__(self, queue: PendingTransactionQueue, orders: OrderStore, interval: float = None):
        self.queue = queue
        self.orders = orders
        self.task = PeriodicTask('filler-relay', interval or get_settings().relay_interval, self.tick)

    def start(self):
        self.task.start()

    def stop(self):
        self.task.stop()

    def tick(self, now: datetime = None) -> RelayReport:
        report = RelayReport()
        try:
            report.expired = [f"{kind}:{item_id}" for kind, item_id in self.orders.expire_due(now)]
        except RelayError as e:
            logger.error("Expiration pass failed: %s", e.message)
            report.errors.append({'step': 'expire', **e.to_dict()})

        for tx in self.queue.list_by_type(*ACTIVATION_TYPES, include_acknowledged=False):
            self._guarded(tx, self._reconcile_activation, report)
        for tx in self.queue.list_by_type(*FILL_TYPES, include_acknowledged=False):
            self._guarded(tx, self._reconcile_fill, report)
        for tx in self.queue.list_by_type(*RELEASE_TYPES, include_acknowledged=False):
            self._guarded(tx, self._reconcile_release, report)

        for order in self.orders.pending_payouts():
            try:
                tx_id = self.orders.settle_buying_payout(order.order_id)
            except RelayError as e:
                logger.error("Payout for order %s failed: %s", order.order_id, e.message)
                report.errors.append({'order_id': order.order_id, **e.to_dict()})
                continue
            if tx_id:
                report.payouts.append(tx_id)

        if report.changed or report.errors:
            logger.info("Relay tick: %s", {k: v for k, v in report.to_dict().items() if v})
        return report

    # _guarded: Aísla cada entrada; el error se registra y el ciclo continúa.
    def _guarded(self, tx: QueuedTransaction, fn: Callable, report: RelayReport):
        try:
            fn(tx, report)
        except RelayError as e:
            logger.error("Relay failed on %s (%s): %s", tx.id, tx.tx_type, e.message)
            report.errors.append({'tx_id': tx.id, **e.to_dict()})
        except Exception as e:
            logger.exception("Unexpected relay error on %s", tx.id)
            report.errors.append({'tx_id': tx.id, 'kind': 'unexpected', 'message': str(e)})

    def _ack(self, tx: QueuedTransaction, report: RelayReport):
        if self.queue.acknowledge(tx.id):
            report.acknowledged.append(tx.id)

    # ---------------------------- Activación ----------------------------

    def _reconcile_activation(self, tx: QueuedTransaction, report: RelayReport):
        if tx.is_open:
            return
        kind = ACTIVATION_TYPES[tx.tx_type]
        order = self.orders.find_order(kind, tx.order_id)
        if order is None:
            logger.warning("Order %s not found for transaction %s", tx.order_id, tx.id)
            return
        if order.tx_id != tx.id:
            logger.warning("Transaction %s is not the creation entry of order %s", tx.id, tx.order_id)
            report.skipped.append(tx.id)
            self._ack(tx, report)
            return

        if order.status == OrderStatus.PENDING.value:
            if tx.status == TxStatus.CONFIRMED:
                if self.orders.activate(kind, order.order_id, tx.hash):
                    report.activated.append(order.order_id)
            elif tx.status in FAILED_TX_STATUSES:
                if self.orders.reject_pending(kind, order.order_id):
                    report.cancelled.append(order.order_id)
        elif order.status == OrderStatus.CANCELLED.value and tx.status == TxStatus.CONFIRMED:
            logger.warning("Order %s was cancelled but its funding %s confirmed (%s)",
                           order.order_id, tx.id, tx.hash)
            report.skipped.append(tx.id)
        self._ack(tx, report)

    # ------------------------------ Fills ------------------------------

    def _reconcile_fill(self, tx: QueuedTransaction, report: RelayReport):
        order = self.orders.find_order(OrderKind.BUYING, tx.order_id)
        if order is None:
            logger.warning("Order %s not found for fill transaction %s", tx.order_id, tx.id)
            return

        if order.status == OrderStatus.FILLED.value:
            self._check_filled(tx, order, report)
            return
        if tx.is_open:
            return
        if tx.status in FAILED_TX_STATUSES:
            logger.info("Fill transaction %s for order %s is %s; order stays %s",
                        tx.id, order.order_id, tx.status.value, order.status)
            self._ack(tx, report)
            return

        if order.status == OrderStatus.ACTIVE.value:
            if self.orders.mark_filled(OrderKind.BUYING, order.order_id, tx.wallet_address, tx.hash):
                report.filled.append(order.order_id)
        else:
            logger.warning("Fill %s confirmed for order %s in status %s; tokens need manual review",
                           tx.id, order.order_id, order.status)
            report.skipped.append(tx.id)
        self._ack(tx, report)

    # _check_filled: Orden ya llenada; verifica si esta entrada es la que la llenó.
    def _check_filled(self, tx: QueuedTransaction, order, report: RelayReport):
        filled_by_this = (
            (tx.hash is not None and tx.hash == order.filler_tx_hash)
            or (tx.hash is None and tx.is_open and order.filler_tx_hash is not None
                and (order.filled_by or '').lower() == tx.wallet_address.lower())
        )
        if not filled_by_this:
            if tx.is_open:
                return
            if tx.status == TxStatus.CONFIRMED:
                logger.warning("Order %s already filled by %s; duplicate fill %s from %s needs refund",
                               order.order_id, order.filled_by, tx.id, tx.wallet_address)
                report.skipped.append(tx.id)
            self._ack(tx, report)
            return

        if tx.status != TxStatus.CONFIRMED:
            if not tx.is_open:
                logger.error("Order %s is filled by %s but the entry is %s", order.order_id, tx.id, tx.status.value)
                self._ack(tx, report)
                return
            self.queue.update_status(tx.id, TxStatus.CONFIRMED, order.filler_tx_hash)
            logger.info("Self-healed transaction %s to confirmed with %s", tx.id, order.filler_tx_hash)
            report.healed.append(tx.id)
        self._ack(tx, report)

    # --------------------------- Liquidación ----------------------------

    def _reconcile_release(self, tx: QueuedTransaction, report: RelayReport):
        if tx.is_open:
            return
        if tx.status == TxStatus.CONFIRMED:
            if tx.tx_type == 'release_selling_order':
                self.orders.record_fill_settlement(tx.metadata.fill_id, tx.hash)
            report.settled.append(tx.id)
            logger.info("Escrow release %s for order %s settled (%s)", tx.id, tx.order_id, tx.hash)
        else:
            logger.error("Escrow release %s for order %s ended %s", tx.id, tx.order_id, tx.status.value)
        self._ack(tx, report)
