"""Lazo cooperativo del lado del usuario.

En cada ciclo consulta la cola por REST, separa entradas abiertas y
terminadas, despacha a lo sumo una ejecución a la vez (la pendiente más
antigua) y dispara las acciones de seguimiento de las entradas confirmadas.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from config import get_settings
from errors import RelayError
from models import utcnow
from scheduler import PeriodicTask
from schemas import TxStatus
from transaction import QueuedTransaction

logger = logging.getLogger('relay.poller')

# tipo de entrada confirmada -> acción de seguimiento
FOLLOW_UP_ACTIONS = {
    'activate_selling_order': 'activate',
    'fill_buying_order': 'publish_fill',
}


@dataclass
class FollowUp:
    action: str
    tx_id: str
    order_id: str
    tx_hash: str


@dataclass
class PollerState:
    open: List[QueuedTransaction] = field(default_factory=list)
    completed: List[QueuedTransaction] = field(default_factory=list)
    in_flight: Optional[str] = None
    last_error: Optional[Exception] = None
    consecutive_failures: int = 0


class ClientPoller:
    """Conduce al ejecutor de forma serial a partir del estado de la cola."""

    def __init__(self, client, executor, retention_seconds: int = None, failure_threshold: int = None,
                 interval: float = None, dispatcher=None,
                 on_follow_up: Callable[[FollowUp], None] = None,
                 on_error: Callable[[Exception], None] = None,
                 clock: Callable[[], datetime] = utcnow):
        settings = get_settings()
        self.client = client
        self.executor = executor
        self.retention = timedelta(seconds=retention_seconds or settings.completed_retention)
        self.failure_threshold = failure_threshold or settings.fetch_failure_threshold
        self._owns_dispatcher = dispatcher is None
        self.dispatcher = dispatcher or ThreadPoolExecutor(max_workers=1, thread_name_prefix='tx-executor')
        self.on_follow_up = on_follow_up
        self.on_error = on_error
        self.clock = clock
        self.task = PeriodicTask('client-poller', interval or settings.client_poll_interval, self.tick)

        self._open: List[QueuedTransaction] = []
        self._completed: Dict[str, QueuedTransaction] = {}
        self._first_seen: Dict[str, datetime] = {}
        self._posted: Set[str] = set()
        self._in_flight: Optional[Future] = None
        self._in_flight_id: Optional[str] = None
        self._failures = 0
        self._last_error: Optional[Exception] = None

    def start(self):
        self.task.start()

    def stop(self):
        self.task.stop()
        if self._owns_dispatcher:
            # Una firma en curso no se cancela; solo se dejan de aceptar envíos.
            self.dispatcher.shutdown(wait=False)

    def state(self) -> PollerState:
        return PollerState(
            open=list(self._open),
            completed=sorted(self._completed.values(), key=lambda t: t.timestamp, reverse=True),
            in_flight=self._in_flight_id,
            last_error=self._last_error,
            consecutive_failures=self._failures,
        )

    # _surface: Entrega el error al llamador (ui, cli) además de registrarlo.
    def _surface(self, error: Exception):
        self._last_error = error
        if self.on_error:
            self.on_error(error)

    def _collect(self):
        if self._in_flight is None or not self._in_flight.done():
            return
        error = self._in_flight.exception()
        if error is not None:
            logger.warning("Execution of %s ended with %s", self._in_flight_id, error)
            self._surface(error)
        self._in_flight = None
        self._in_flight_id = None

    def tick(self) -> PollerState:
        self._collect()
        if self.executor.unreported:
            self.executor.flush_unreported()

        try:
            entries = self.client.fetch_pending()
        except RelayError as e:
            if not e.retryable:
                raise
            self._failures += 1
            logger.warning("Fetching queue failed (%d consecutive): %s", self._failures, e.message)
            if self._failures >= self.failure_threshold:
                self._surface(e)
            return self.state()
        self._failures = 0

        now = self.clock()
        self._open = sorted((t for t in entries if t.is_open), key=lambda t: (t.timestamp, t.id))
        for tx in entries:
            if tx.is_open:
                continue
            self._completed[tx.id] = tx
            self._first_seen.setdefault(tx.id, now)
        self._prune(now)
        # Los seguimientos se recuerdan mientras la entrada siga en la vista.
        self._posted.intersection_update(self._completed)

        for tx in list(self._completed.values()):
            self._follow_up(tx)
        self._dispatch()
        return self.state()

    # _prune: Las terminadas salen de la vista al superar la ventana de retención.
    def _prune(self, now: datetime):
        for tx_id, tx in list(self._completed.items()):
            finished_at = tx.updated_at or self._first_seen.get(tx_id, now)
            if now - finished_at > self.retention:
                del self._completed[tx_id]
                self._first_seen.pop(tx_id, None)

    def _follow_up(self, tx: QueuedTransaction):
        action = FOLLOW_UP_ACTIONS.get(tx.tx_type)
        if action is None or tx.status != TxStatus.CONFIRMED:
            return
        if tx.id in self._posted or tx.metadata.posted_to_marketplace:
            return
        try:
            if action == 'activate':
                self.client.activate_selling_order(tx.order_id, tx.id, tx.hash)
            else:
                self.client.publish_fill(tx.order_id, tx.id, tx.hash)
        except RelayError as e:
            logger.warning("Follow-up %s for %s failed: %s", action, tx.id, e.message)
            self._surface(e)
            if not e.retryable:
                # El servidor rechazó la acción; no se repite.
                self._posted.add(tx.id)
            return
        self._posted.add(tx.id)
        follow_up = FollowUp(action=action, tx_id=tx.id, order_id=tx.order_id, tx_hash=tx.hash)
        logger.info("Follow-up %s fired for %s (order %s)", action, tx.id, tx.order_id)
        if self.on_follow_up:
            self.on_follow_up(follow_up)

    # _dispatch: Nunca dos ejecuciones a la vez; siempre la pendiente más antigua.
    def _dispatch(self):
        if self._in_flight is not None:
            return
        pending = [t for t in self._open if t.status == TxStatus.PENDING]
        if not pending:
            return
        tx = pending[0]
        self._in_flight_id = tx.id
        self._in_flight = self.dispatcher.submit(self.executor.execute, tx)
        logger.info("Dispatched %s (%s) to executor", tx.id, tx.tx_type)
        self._collect()
