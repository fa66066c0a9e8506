"""Libro de órdenes de venta y compra y de los fills sobre órdenes de venta.

Toda transición de estado de una orden es compare-and-set sobre el estado leído
previamente; quien pierde la carrera recibe STALE_ORDER_STATE. Crear una orden
encola su transacción de liquidación en la cola de transacciones pendientes.

Transiciones válidas:
  pending -> active | cancelled
  active  -> filled | cancelled | expired
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from chain import get_token
from config import get_settings
from database import DBSession, compare_and_set
from errors import ErrorKind, RelayError, order_not_found, stale_order_state
from models import BuyingOrder, SellingOrder, SellingOrderFill, utcnow
from schemas import (
    ActivateSellingOrderMetadata,
    CreateBuyingOrderMetadata,
    FillBuyingOrderMetadata,
    FillStatus,
    OrderKind,
    OrderStatus,
    ReleaseBuyingOrderMetadata,
    ReleaseSellingOrderMetadata,
    TxStatus,
)
from transaction import PendingTransactionQueue, encode_erc20_transfer, to_base_units
from vouchers import check_amount, check_amount_range, check_not_expired, parse_voucher

logger = logging.getLogger('relay.orders')

MODELS = {OrderKind.SELLING: SellingOrder, OrderKind.BUYING: BuyingOrder}
OWNER_FIELD = {OrderKind.SELLING: 'seller', OrderKind.BUYING: 'buyer'}
FILL_HASH_FIELD = {OrderKind.SELLING: 'filled_tx_hash', OrderKind.BUYING: 'filler_tx_hash'}
HIDDEN_FIELDS = {'image_release_id', 'image_file_id', 'encrypted_payload'}

# Tipo de entrada -> (tipo de orden, estado en que la orden todavía admite firmarla)
ENTRY_ORDER_STATE = {
    'activate_selling_order': (OrderKind.SELLING, OrderStatus.PENDING),
    'create_buying_order': (OrderKind.BUYING, OrderStatus.PENDING),
    'fill_buying_order': (OrderKind.BUYING, OrderStatus.ACTIVE),
}


def _same_address(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def _positive_decimal(value, field_name: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise RelayError(ErrorKind.INVALID_REQUEST, f"Invalid {field_name}: {value}", {field_name: str(value)})
    if amount <= 0:
        raise RelayError(ErrorKind.INVALID_REQUEST, f"{field_name} must be positive", {field_name: str(value)})
    return amount


# order_to_dict: Serialización camelCase para la API (sin ids internos de imagen).
def order_to_dict(order) -> dict:
    data = order.model_dump(exclude=HIDDEN_FIELDS)
    result = {to_camel(k): (v.isoformat() if isinstance(v, datetime) else v) for k, v in data.items()}
    if isinstance(order, BuyingOrder):
        result['hasImage'] = order.image_file_id is not None and order.image_consumed_at is None
        result['kind'] = OrderKind.BUYING.value
    else:
        result['kind'] = OrderKind.SELLING.value
    return result


def fill_to_dict(fill: SellingOrderFill) -> dict:
    data = fill.model_dump(exclude={'encrypted_payload'})
    return {to_camel(k): (v.isoformat() if isinstance(v, datetime) else v) for k, v in data.items()}


class OrderStore:
    """Libro autoritativo de órdenes y fills."""

    def __init__(self, queue: PendingTransactionQueue, vault=None, bind=None):
        settings = get_settings()
        self.queue = queue
        self.vault = vault
        self.bind = bind
        self.escrow_address = settings.escrow_wallet_address
        self.chain_name = 'base'
        self.order_ttl = settings.order_ttl
        self.fill_ttl = settings.fill_ttl

    # ---------------------------- Lecturas ----------------------------

    def find_order(self, kind, order_id: str):
        with DBSession(self.bind) as s:
            return s.get(MODELS[OrderKind(kind)], order_id)

    def _require(self, kind, order_id: str):
        order = self.find_order(kind, order_id)
        if order is None:
            raise order_not_found(order_id)
        return order

    def get_selling_order(self, order_id: str) -> SellingOrder:
        return self._require(OrderKind.SELLING, order_id)

    def get_buying_order(self, order_id: str) -> BuyingOrder:
        return self._require(OrderKind.BUYING, order_id)

    def _list(self, model, owner_field: str, token=None, status=None, owner=None, limit: int = 50):
        statement = select(model)
        if token:
            statement = statement.where(model.token == getattr(token, 'value', token))
        if status:
            statement = statement.where(model.status == getattr(status, 'value', status))
        if owner:
            statement = statement.where(getattr(model, owner_field) == owner)
        statement = statement.order_by(model.created_at.desc()).limit(limit)
        with DBSession(self.bind) as s:
            return list(s.exec(statement).all())

    def list_selling_orders(self, token=None, status=None, seller=None, limit: int = 50) -> List[SellingOrder]:
        return self._list(SellingOrder, 'seller', token, status, seller, limit)

    def list_buying_orders(self, token=None, status=None, buyer=None, limit: int = 50) -> List[BuyingOrder]:
        return self._list(BuyingOrder, 'buyer', token, status, buyer, limit)

    def list_fills(self, order_id: str) -> List[SellingOrderFill]:
        self.get_selling_order(order_id)
        statement = (
            select(SellingOrderFill)
            .where(SellingOrderFill.order_id == order_id)
            .order_by(SellingOrderFill.created_at.desc())
        )
        with DBSession(self.bind) as s:
            return list(s.exec(statement).all())

    def get_fill(self, order_id: str, fill_id: str) -> SellingOrderFill:
        with DBSession(self.bind) as s:
            fill = s.get(SellingOrderFill, fill_id)
        if fill is None or fill.order_id != order_id:
            raise RelayError(ErrorKind.FILL_NOT_FOUND, f"Fill with ID {fill_id} not found",
                             {'order_id': order_id, 'fill_id': fill_id})
        return fill

    # ---------------------------- Creación ----------------------------

    # create_selling_order: Registra la orden y encola el depósito de tokens al escrow.
    def create_selling_order(self, seller: str, token, amount, mxn_amount, price=None, memo: str = None,
                             ttl_seconds: int = None) -> Tuple[SellingOrder, str]:
        token_info = get_token(token)
        quantity = _positive_decimal(amount, 'amount')
        mxn = _positive_decimal(mxn_amount, 'mxnAmount')
        now = utcnow()
        order_id = f"sell-{uuid.uuid4().hex[:12]}"

        data = encode_erc20_transfer(self.escrow_address, to_base_units(str(quantity), token_info.decimals))
        tx_id = self.queue.enqueue(
            to=token_info.address, value=0, data=data, submitter_address=seller, chain=self.chain_name,
            metadata=ActivateSellingOrderMetadata(wallet_address=seller, order_id=order_id,
                                                  token=token_info.symbol),
        )
        order = SellingOrder(
            order_id=order_id,
            seller=seller,
            token=token_info.symbol,
            amount=str(quantity),
            mxn_amount=float(mxn),
            price=str(price) if price is not None else None,
            status=OrderStatus.PENDING.value,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds or self.order_ttl),
            memo=memo,
            tx_id=tx_id,
        )
        with DBSession(self.bind) as s:
            s.add(order)
            s.commit()
        logger.info("Selling order %s created by %s: %s %s for %s MXN (tx %s)",
                    order_id, seller, quantity, token_info.symbol, mxn, tx_id)
        return order, tx_id

    def create_buying_order(self, buyer: str, token, token_amount, voucher_data, memo: str = None,
                            secret: str = None, ttl_seconds: int = None, now: datetime = None):
        """Valida el voucher, lo sella en la bóveda y encola el anclaje on-chain.

        Retorna (orden, tx_id, private_uuid). El private_uuid solo se entrega aquí.
        """
        token_info = get_token(token)
        quantity = _positive_decimal(token_amount, 'tokenAmount')
        voucher = parse_voucher(voucher_data)
        check_amount_range(voucher.amount)
        check_not_expired(voucher, now)
        self._ensure_reference_unused(voucher.reference_code)

        sealed = self.vault.seal_for_order(voucher, secret)
        created = utcnow()
        order_id = f"buy-{uuid.uuid4().hex[:12]}"
        tx_id = self.queue.enqueue(
            to=self.escrow_address, value=0, data=sealed.call_data, submitter_address=buyer,
            chain=self.chain_name,
            metadata=CreateBuyingOrderMetadata(wallet_address=buyer, order_id=order_id,
                                               public_uuid=sealed.public_uuid),
        )
        order = BuyingOrder(
            order_id=order_id,
            buyer=buyer,
            token=token_info.symbol,
            token_amount=str(quantity),
            mxn_amount=voucher.amount,
            status=OrderStatus.PENDING.value,
            created_at=created,
            expires_at=created + timedelta(seconds=ttl_seconds or self.order_ttl),
            memo=memo,
            reference_code=voucher.reference_code,
            qr_expiration=voucher.expiration,
            tx_id=tx_id,
            encrypted_payload=sealed.ciphertext,
            public_uuid=sealed.public_uuid,
            kdf=sealed.kdf,
        )
        with DBSession(self.bind) as s:
            s.add(order)
            s.commit()
        logger.info("Buying order %s created by %s: %s %s for %s MXN (tx %s)",
                    order_id, buyer, quantity, token_info.symbol, voucher.amount, tx_id)
        return order, tx_id, sealed.private_uuid

    # _ensure_reference_unused: Un código de referencia solo respalda una orden o un fill vigente.
    def _ensure_reference_unused(self, reference_code: str):
        live_orders = (OrderStatus.PENDING.value, OrderStatus.ACTIVE.value, OrderStatus.FILLED.value)
        live_fills = (FillStatus.PENDING.value, FillStatus.ACCEPTED.value)
        with DBSession(self.bind) as s:
            order = s.exec(
                select(BuyingOrder)
                .where(BuyingOrder.reference_code == reference_code)
                .where(BuyingOrder.status.in_(live_orders))
            ).first()
            fill = s.exec(
                select(SellingOrderFill)
                .where(SellingOrderFill.reference_code == reference_code)
                .where(SellingOrderFill.status.in_(live_fills))
            ).first()
        if order is not None or fill is not None:
            raise RelayError(ErrorKind.VOUCHER_ALREADY_USED,
                             f"QR code with reference {reference_code} has already been used",
                             {'reference_code': reference_code})

    # -------------------------- Transiciones --------------------------

    def _transition(self, kind: OrderKind, order_id: str, expected: OrderStatus, new: OrderStatus,
                    extra: dict = None) -> bool:
        model = MODELS[kind]
        values = {'status': new.value, 'updated_at': utcnow()}
        values.update(extra or {})
        with DBSession(self.bind) as s:
            changed = compare_and_set(s, model, model.order_id, order_id, expected.value, values)
            if changed:
                s.commit()
            else:
                s.rollback()
        if changed:
            logger.info("%s order %s: %s -> %s", kind.value.capitalize(), order_id, expected.value, new.value)
        return changed

    def activate(self, kind, order_id: str, tx_hash: Optional[str]) -> bool:
        """pending -> active registrando el hash de liquidación.

        Retorna False si la orden ya estaba activa con ese hash (repetición).
        """
        kind = OrderKind(kind)
        order = self._require(kind, order_id)
        if order.status == OrderStatus.ACTIVE.value and order.settlement_hash == tx_hash:
            return False
        if order.status != OrderStatus.PENDING.value:
            raise stale_order_state(order_id, OrderStatus.PENDING.value, order.status)
        extra = {'settlement_hash': tx_hash}
        if kind == OrderKind.BUYING:
            extra['on_chain_tx_hash'] = tx_hash
        if self._transition(kind, order_id, OrderStatus.PENDING, OrderStatus.ACTIVE, extra):
            return True
        current = self._require(kind, order_id)
        if current.status == OrderStatus.ACTIVE.value and current.settlement_hash == tx_hash:
            return False
        raise stale_order_state(order_id, OrderStatus.PENDING.value, current.status)

    # reject_pending: pending -> cancelled cuando la transacción de creación falló o fue rechazada.
    def reject_pending(self, kind, order_id: str) -> bool:
        kind = OrderKind(kind)
        order = self._require(kind, order_id)
        if order.status == OrderStatus.CANCELLED.value:
            return False
        if order.status != OrderStatus.PENDING.value:
            raise stale_order_state(order_id, OrderStatus.PENDING.value, order.status)
        if self._transition(kind, order_id, OrderStatus.PENDING, OrderStatus.CANCELLED):
            return True
        current = self._require(kind, order_id)
        if current.status == OrderStatus.CANCELLED.value:
            return False
        raise stale_order_state(order_id, OrderStatus.PENDING.value, current.status)

    def cancel(self, kind, order_id: str, caller: str):
        kind = OrderKind(kind)
        order = self._require(kind, order_id)
        if not _same_address(getattr(order, OWNER_FIELD[kind]), caller):
            raise RelayError(ErrorKind.UNAUTHORIZED, 'Only the order creator can cancel this order',
                             {'order_id': order_id})
        status = OrderStatus(order.status)
        if status == OrderStatus.CANCELLED:
            raise RelayError(ErrorKind.ORDER_CANCELLED, f"Order {order_id} is already cancelled",
                             {'order_id': order_id})
        if status == OrderStatus.FILLED:
            raise RelayError(ErrorKind.ORDER_ALREADY_FILLED, f"Order {order_id} has already been filled",
                             {'order_id': order_id})
        if status == OrderStatus.EXPIRED:
            raise RelayError(ErrorKind.ORDER_EXPIRED, f"Order {order_id} has expired", {'order_id': order_id})
        if not self._transition(kind, order_id, status, OrderStatus.CANCELLED):
            current = self._require(kind, order_id)
            raise stale_order_state(order_id, status.value, current.status)
        return self._require(kind, order_id)

    def mark_filled(self, kind, order_id: str, filler: str, tx_hash: Optional[str]) -> bool:
        """active -> filled con (filler, hash).

        Retorna False si la orden ya estaba llenada; nunca se llena dos veces.
        """
        kind = OrderKind(kind)
        order = self._require(kind, order_id)
        if order.status == OrderStatus.FILLED.value:
            return False
        if order.status != OrderStatus.ACTIVE.value:
            raise stale_order_state(order_id, OrderStatus.ACTIVE.value, order.status)
        extra = {'filled_by': filler, 'filled_at': utcnow(), FILL_HASH_FIELD[kind]: tx_hash}
        if self._transition(kind, order_id, OrderStatus.ACTIVE, OrderStatus.FILLED, extra):
            return True
        current = self._require(kind, order_id)
        if current.status == OrderStatus.FILLED.value:
            return False
        raise stale_order_state(order_id, OrderStatus.ACTIVE.value, current.status)

    # expire_due: Vence órdenes activas y fills pendientes cuya vigencia terminó.
    def expire_due(self, now: datetime = None) -> List[Tuple[str, str]]:
        now = now or utcnow()
        expired = []
        for kind, model in MODELS.items():
            with DBSession(self.bind) as s:
                due = s.exec(
                    select(model)
                    .where(model.status == OrderStatus.ACTIVE.value)
                    .where(model.expires_at <= now)
                ).all()
            for order in due:
                if self._transition(kind, order.order_id, OrderStatus.ACTIVE, OrderStatus.EXPIRED):
                    expired.append((kind.value, order.order_id))
        with DBSession(self.bind) as s:
            due_fills = s.exec(
                select(SellingOrderFill)
                .where(SellingOrderFill.status == FillStatus.PENDING.value)
                .where(SellingOrderFill.expires_at <= now)
            ).all()
            for fill in due_fills:
                if compare_and_set(s, SellingOrderFill, SellingOrderFill.fill_id, fill.fill_id,
                                   FillStatus.PENDING.value,
                                   {'status': FillStatus.EXPIRED.value, 'error': 'Fill expired'}):
                    expired.append(('fill', fill.fill_id))
            s.commit()
        if expired:
            logger.info("Expired %d orders/fills: %s", len(expired), expired)
        return expired

    # ----------------------- Entradas de la cola -----------------------

    def entry_blocker(self, tx, now: datetime = None) -> Optional[RelayError]:
        """Motivo por el que una entrada de orden ya no debe firmarse, o None.

        Las entradas de creación solo proceden con la orden en pending y las
        de fill con la orden activa y vigente. Las entradas quedan en la cola;
        simplemente no se ofrecen al ejecutor.
        """
        requirement = ENTRY_ORDER_STATE.get(tx.tx_type)
        if requirement is None or not tx.order_id:
            return None
        kind, required = requirement
        order = self.find_order(kind, tx.order_id)
        if order is None:
            return order_not_found(tx.order_id)
        if order.status != required.value:
            return stale_order_state(tx.order_id, required.value, order.status)
        if required == OrderStatus.ACTIVE and order.expires_at <= (now or utcnow()):
            return RelayError(ErrorKind.ORDER_EXPIRED, f"Order {tx.order_id} has expired",
                              {'order_id': tx.order_id})
        return None

    # check_executable: Rechaza la firma de una entrada cuya orden ya no la admite.
    def check_executable(self, tx):
        blocker = self.entry_blocker(tx)
        if blocker is not None:
            logger.info("Refusing to submit %s (%s): %s", tx.id, tx.tx_type, blocker.message)
            raise blocker

    # without_stale_entries: Oculta las entradas pending cuya orden ya no las admite.
    def without_stale_entries(self, entries: list) -> list:
        kept = []
        now = utcnow()
        for tx in entries:
            if tx.status == TxStatus.PENDING and self.entry_blocker(tx, now) is not None:
                logger.debug("Skipping %s (%s) for order %s", tx.id, tx.tx_type, tx.order_id)
                continue
            kept.append(tx)
        return kept

    # ------------------------------ Fills ------------------------------

    def _check_fillable(self, order, filler: str, owner_field: str, now: datetime):
        if _same_address(getattr(order, owner_field), filler):
            raise RelayError(ErrorKind.SAME_USER, 'You cannot fill your own order', {'order_id': order.order_id})
        status = OrderStatus(order.status)
        if status == OrderStatus.FILLED:
            raise RelayError(ErrorKind.ORDER_ALREADY_FILLED, f"Order {order.order_id} has already been filled",
                             {'order_id': order.order_id})
        if status == OrderStatus.CANCELLED:
            raise RelayError(ErrorKind.ORDER_CANCELLED, f"Order {order.order_id} has been cancelled",
                             {'order_id': order.order_id})
        if status == OrderStatus.EXPIRED or order.expires_at <= now:
            raise RelayError(ErrorKind.ORDER_EXPIRED, f"Order {order.order_id} has expired",
                             {'order_id': order.order_id})
        if status != OrderStatus.ACTIVE:
            raise RelayError(ErrorKind.ORDER_NOT_ACTIVE, f"Order {order.order_id} is not active yet",
                             {'order_id': order.order_id, 'status': order.status})

    def begin_buying_fill(self, order_id: str, filler: str) -> str:
        """Encola la transferencia de tokens del filler al escrow para una orden de compra.

        Si el mismo filler ya tiene una entrada abierta para la orden, se reutiliza.
        """
        order = self.get_buying_order(order_id)
        self._check_fillable(order, filler, 'buyer', utcnow())
        for tx in self.queue.list_for_order(order_id):
            if tx.tx_type == 'fill_buying_order' and tx.is_open and _same_address(tx.wallet_address, filler):
                logger.info("Reusing open fill transaction %s for order %s", tx.id, order_id)
                return tx.id

        token_info = get_token(order.token)
        data = encode_erc20_transfer(self.escrow_address, to_base_units(order.token_amount, token_info.decimals))
        tx_id = self.queue.enqueue(
            to=token_info.address, value=0, data=data, submitter_address=filler, chain=self.chain_name,
            metadata=FillBuyingOrderMetadata(wallet_address=filler, order_id=order_id,
                                             token=token_info.symbol, buyer=order.buyer),
        )
        logger.info("Fill transaction %s enqueued for buying order %s by %s", tx_id, order_id, filler)
        return tx_id

    def submit_selling_fill(self, order_id: str, filler: str, voucher_data, now: datetime = None):
        """Llena una orden de venta con un voucher.

        Valida el voucher, crea el fill pendiente y gana (o pierde) la carrera
        active -> filled. El ganador encola la liberación de tokens desde el
        escrow al filler en la misma transacción de base de datos que llena la
        orden. Retorna (fill, private_uuid del voucher sellado).
        """
        order = self.get_selling_order(order_id)
        self._check_fillable(order, filler, 'seller', utcnow())
        voucher = parse_voucher(voucher_data)
        check_not_expired(voucher, now)
        check_amount(voucher.amount, order.mxn_amount)
        self._ensure_reference_unused(voucher.reference_code)

        # La call data se arma antes de tocar la orden: un destinatario inválido no la deja llenada.
        fill_id = f"fill-{uuid.uuid4().hex[:12]}"
        token_info = get_token(order.token)
        data = encode_erc20_transfer(filler, to_base_units(order.amount, token_info.decimals))
        release = self.queue.build_record(
            to=token_info.address, value=0, data=data, submitter_address=self.escrow_address,
            chain=self.chain_name,
            metadata=ReleaseSellingOrderMetadata(wallet_address=self.escrow_address, order_id=order_id,
                                                 fill_id=fill_id, token=token_info.symbol, recipient=filler),
        )

        sealed = self.vault.seal_for_order(voucher) if self.vault is not None else None
        created = utcnow()
        fill = SellingOrderFill(
            fill_id=fill_id,
            order_id=order_id,
            filler=filler,
            reference_code=voucher.reference_code,
            voucher_amount=voucher.amount,
            voucher_expiration=voucher.expiration,
            encrypted_payload=sealed.ciphertext if sealed else None,
            public_uuid=sealed.public_uuid if sealed else None,
            status=FillStatus.PENDING.value,
            created_at=created,
            expires_at=created + timedelta(seconds=self.fill_ttl),
        )
        with DBSession(self.bind) as s:
            s.add(fill)
            s.commit()

        try:
            won = self._accept_fill(order_id, fill.fill_id, filler, release)
        except SQLAlchemyError:
            self._finish_fill(fill.fill_id, FillStatus.REJECTED, error='Release could not be enqueued')
            logger.exception("Fill %s for order %s rolled back", fill.fill_id, order_id)
            raise
        if not won:
            current = self.get_selling_order(order_id)
            self._finish_fill(fill.fill_id, FillStatus.REJECTED, error=f"Order is {current.status}")
            logger.warning("Fill %s lost the race for order %s (now %s)", fill.fill_id, order_id, current.status)
            raise stale_order_state(order_id, OrderStatus.ACTIVE.value, current.status)

        fill = self.get_fill(order_id, fill.fill_id)
        logger.info("Fill %s accepted for selling order %s; release %s enqueued", fill.fill_id, order_id, release.id)
        return fill, sealed.private_uuid if sealed else None

    # _accept_fill: active -> filled, fill aceptado y liberación encolada en una sola transacción.
    def _accept_fill(self, order_id: str, fill_id: str, filler: str, release) -> bool:
        now = utcnow()
        with DBSession(self.bind) as s:
            won = compare_and_set(s, SellingOrder, SellingOrder.order_id, order_id, OrderStatus.ACTIVE.value,
                                  {'status': OrderStatus.FILLED.value, 'filled_by': filler, 'filled_at': now,
                                   'updated_at': now})
            if won:
                s.add(release)
                won = compare_and_set(s, SellingOrderFill, SellingOrderFill.fill_id, fill_id,
                                      FillStatus.PENDING.value,
                                      {'status': FillStatus.ACCEPTED.value, 'completed_at': now,
                                       'settlement_tx_id': release.id})
            if not won:
                s.rollback()
                return False
            s.commit()
        logger.info("Selling order %s: active -> filled by %s", order_id, filler)
        return True

    def _finish_fill(self, fill_id: str, status: FillStatus, **values) -> SellingOrderFill:
        values.update({'status': status.value, 'completed_at': utcnow()})
        with DBSession(self.bind) as s:
            if not compare_and_set(s, SellingOrderFill, SellingOrderFill.fill_id, fill_id,
                                   FillStatus.PENDING.value, values):
                s.rollback()
                current = s.get(SellingOrderFill, fill_id)
                raise RelayError(ErrorKind.INVALID_TRANSITION,
                                 f"Fill {fill_id} is no longer pending ({current.status if current else 'missing'})",
                                 {'fill_id': fill_id})
            s.commit()
            return s.get(SellingOrderFill, fill_id)

    # record_fill_settlement: Hash de la liberación confirmada del escrow al filler.
    def record_fill_settlement(self, fill_id: str, tx_hash: str) -> bool:
        with DBSession(self.bind) as s:
            fill = s.get(SellingOrderFill, fill_id)
            if fill is None:
                raise RelayError(ErrorKind.FILL_NOT_FOUND, f"Fill with ID {fill_id} not found", {'fill_id': fill_id})
            if fill.settlement_hash == tx_hash:
                return False
            fill.settlement_hash = tx_hash
            s.add(fill)
            s.commit()
        logger.info("Fill %s settled with hash %s", fill_id, tx_hash)
        return True

    # ----------------------- Pago del escrow (compra) ------------------------

    def settle_buying_payout(self, order_id: str) -> Optional[str]:
        """Encola la transferencia del escrow al comprador una vez descargado el voucher.

        Solo se encola una vez por orden; retorna el id de la entrada o None.
        """
        order = self.get_buying_order(order_id)
        if (order.status != OrderStatus.FILLED.value or order.image_consumed_at is None
                or order.payout_tx_id is not None):
            return None
        token_info = get_token(order.token)
        placeholder = f"claim-{uuid.uuid4().hex}"
        with DBSession(self.bind) as s:
            claimed = compare_and_set(s, BuyingOrder, BuyingOrder.order_id, order_id, None,
                                      {'payout_tx_id': placeholder}, status_column=BuyingOrder.payout_tx_id)
            if not claimed:
                s.rollback()
                return None
            s.commit()
        data = encode_erc20_transfer(order.buyer, to_base_units(order.token_amount, token_info.decimals))
        tx_id = self.queue.enqueue(
            to=token_info.address, value=0, data=data, submitter_address=self.escrow_address,
            chain=self.chain_name,
            metadata=ReleaseBuyingOrderMetadata(wallet_address=self.escrow_address, order_id=order_id,
                                                token=token_info.symbol, recipient=order.buyer),
        )
        with DBSession(self.bind) as s:
            compare_and_set(s, BuyingOrder, BuyingOrder.order_id, order_id, placeholder,
                            {'payout_tx_id': tx_id, 'updated_at': utcnow()},
                            status_column=BuyingOrder.payout_tx_id)
            s.commit()
        logger.info("Escrow payout %s enqueued for buying order %s to %s", tx_id, order_id, order.buyer)
        return tx_id

    def pending_payouts(self) -> List[BuyingOrder]:
        with DBSession(self.bind) as s:
            return list(s.exec(
                select(BuyingOrder)
                .where(BuyingOrder.status == OrderStatus.FILLED.value)
                .where(BuyingOrder.image_consumed_at.is_not(None))
                .where(BuyingOrder.payout_tx_id.is_(None))
            ).all())

