"""Cola persistente de transacciones pendientes y su máquina de estados.

La cola es la fuente de verdad de las operaciones on-chain que esperan firma
o que ya recibieron liquidación. `update_status` es el único punto de mutación
del estado y escribe con compare-and-set sobre el estado leído.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from eth_abi import encode
from eth_abi.exceptions import EncodingError
from sqlmodel import select

from database import DBSession, compare_and_set
from errors import ErrorKind, RelayError, transaction_not_found
from models import PendingTransactionRecord, utcnow
from schemas import (
    OPEN_TX_STATUSES,
    TxStatus,
    dump_metadata,
    metadata_adapter,
    parse_metadata,
)

logger = logging.getLogger('relay.queue')

ERC20_TRANSFER_SELECTOR = '0xa9059cbb'
ERC20_APPROVE_SELECTOR = '0x095ea7b3'
WEI_PER_ETHER = Decimal(10) ** 18

# Transiciones válidas; todo lo demás es inválido salvo los reportes atrasados.
ALLOWED_TRANSITIONS = {
    TxStatus.PENDING: {TxStatus.SUBMITTED, TxStatus.CONFIRMED, TxStatus.REJECTED, TxStatus.FAILED},
    TxStatus.SUBMITTED: {TxStatus.CONFIRMED, TxStatus.REJECTED, TxStatus.FAILED},
    TxStatus.CONFIRMED: set(),
    TxStatus.REJECTED: set(),
    TxStatus.FAILED: set(),
}
FORWARD_RANK = {TxStatus.PENDING: 0, TxStatus.SUBMITTED: 1, TxStatus.CONFIRMED: 2}
HASH_STATUSES = (TxStatus.SUBMITTED, TxStatus.CONFIRMED)
CAS_ATTEMPTS = 3
ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


# ----------------------------- Formatting -----------------------------

# normalize_hex: Garantiza el prefijo 0x de direcciones, hashes y call data.
def normalize_hex(value: Optional[str]) -> Optional[str]:
    if value is None or value == '':
        return None
    return value if value.startswith('0x') else f"0x{value}"


# is_address: Dirección EVM de 20 bytes con prefijo 0x.
def is_address(value: Optional[str]) -> bool:
    return bool(value) and ADDRESS_RE.match(value) is not None


# normalize_value: Convierte decimal, hex o ether con punto a unidades base (wei).
def normalize_value(value) -> str:
    if value is None or value == '':
        return '0'
    if isinstance(value, int):
        return str(value)
    raw = str(value).strip()
    try:
        if raw.startswith('0x'):
            return str(int(raw, 16))
        if '.' in raw:
            return str(int(Decimal(raw) * WEI_PER_ETHER))
        return str(int(raw))
    except (ValueError, InvalidOperation):
        raise RelayError(ErrorKind.INVALID_REQUEST, f"Invalid transaction value: {value}", {'value': raw})


# classify_data: Tipo de operación según el selector de la call data.
def classify_data(data: Optional[str]) -> str:
    if not data or data == '0x':
        return 'native-transfer'
    lowered = data.lower()
    if lowered.startswith(ERC20_TRANSFER_SELECTOR):
        return 'token-transfer'
    if lowered.startswith(ERC20_APPROVE_SELECTOR):
        return 'token-approval'
    return 'contract-call'


# encode_erc20_transfer: Call data de transfer(address,uint256).
def encode_erc20_transfer(recipient: str, amount: int) -> str:
    try:
        encoded = encode(['address', 'uint256'], [recipient.lower(), int(amount)])
    except (EncodingError, AttributeError, ValueError) as e:
        raise RelayError(ErrorKind.INVALID_REQUEST, f"Invalid transfer recipient: {recipient}",
                         {'recipient': str(recipient)}) from e
    return ERC20_TRANSFER_SELECTOR + encoded.hex()


# to_base_units: Monto decimal de token a unidades enteras según sus decimales.
def to_base_units(amount: str, decimals: int) -> int:
    try:
        quantity = Decimal(str(amount))
    except InvalidOperation:
        raise RelayError(ErrorKind.INVALID_REQUEST, f"Invalid token amount: {amount}", {'amount': amount})
    if quantity <= 0:
        raise RelayError(ErrorKind.INVALID_REQUEST, f"Token amount must be positive: {amount}", {'amount': amount})
    return int(quantity * (Decimal(10) ** decimals))


def _to_millis(moment: datetime) -> int:
    return int((moment - datetime(1970, 1, 1)).total_seconds() * 1000)


def _from_millis(value) -> datetime:
    return datetime(1970, 1, 1) + timedelta(milliseconds=int(value))


@dataclass
class QueuedTransaction:
    """Vista de una entrada de la cola, leída del store o recibida por REST."""
    id: str
    to: str
    value: int
    data: Optional[str]
    status: TxStatus
    timestamp: datetime
    metadata: object
    hash: Optional[str] = None
    acknowledged: bool = False
    updated_at: Optional[datetime] = None

    @property
    def tx_type(self) -> str:
        return self.metadata.type

    @property
    def order_id(self) -> Optional[str]:
        return getattr(self.metadata, 'order_id', None)

    @property
    def wallet_address(self) -> str:
        return self.metadata.wallet_address

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TX_STATUSES

    @classmethod
    def from_record(cls, record: PendingTransactionRecord) -> 'QueuedTransaction':
        return cls(
            id=record.id,
            to=record.to,
            value=int(record.value),
            data=record.data,
            status=TxStatus(record.status),
            timestamp=record.created_at,
            metadata=parse_metadata(record.metadata_json),
            hash=record.hash,
            acknowledged=record.acknowledged,
            updated_at=record.updated_at,
        )

    @classmethod
    def from_wire(cls, payload: dict) -> 'QueuedTransaction':
        return cls(
            id=payload['id'],
            to=payload['to'],
            value=int(payload.get('value') or 0),
            data=payload.get('data'),
            status=TxStatus(payload['status']),
            timestamp=_from_millis(payload['timestamp']),
            metadata=metadata_adapter.validate_python(payload['metadata']),
            hash=payload.get('hash'),
            acknowledged=bool(payload.get('acknowledged', False)),
            updated_at=_from_millis(payload['updatedAt']) if payload.get('updatedAt') else None,
        )

    def to_wire(self) -> dict:
        return {
            'id': self.id,
            'to': self.to,
            'value': str(self.value),
            'data': self.data,
            'status': self.status.value,
            'timestamp': _to_millis(self.timestamp),
            'updatedAt': _to_millis(self.updated_at) if self.updated_at else None,
            'hash': self.hash,
            'acknowledged': self.acknowledged,
            'metadata': metadata_adapter.dump_python(self.metadata, by_alias=True, mode='json'),
        }


class PendingTransactionQueue:
    """Libro persistente de operaciones on-chain."""

    def __init__(self, bind=None):
        self.bind = bind

    # build_record: Entrada pending lista para insertarse, sin confirmar todavía.
    @staticmethod
    def build_record(to: str, value, data: Optional[str], submitter_address: str,
                     chain: str, metadata) -> PendingTransactionRecord:
        formatted_data = normalize_hex(data)
        meta = metadata.model_copy(update={
            'wallet_address': submitter_address,
            'chain': chain,
            'data_type': classify_data(formatted_data),
        })
        return PendingTransactionRecord(
            id=f"tx-{uuid.uuid4().hex}",
            to=normalize_hex(to),
            value=normalize_value(value),
            data=formatted_data,
            status=TxStatus.PENDING.value,
            tx_type=meta.type,
            order_id=getattr(meta, 'order_id', None),
            wallet_address=submitter_address,
            chain=chain,
            metadata_json=dump_metadata(meta),
        )

    # enqueue: Registra una operación nueva en estado pending y devuelve su id.
    def enqueue(self, to: str, value, data: Optional[str], submitter_address: str,
                chain: str, metadata) -> str:
        record = self.build_record(to, value, data, submitter_address, chain, metadata)
        with DBSession(self.bind) as s:
            s.add(record)
            s.commit()
        logger.info("Transaction %s enqueued (%s) for wallet %s", record.id, record.tx_type, submitter_address)
        return record.id

    def get(self, tx_id: str) -> Optional[QueuedTransaction]:
        with DBSession(self.bind) as s:
            record = s.get(PendingTransactionRecord, tx_id)
            return QueuedTransaction.from_record(record) if record else None

    def require(self, tx_id: str) -> QueuedTransaction:
        tx = self.get(tx_id)
        if tx is None:
            raise transaction_not_found(tx_id)
        return tx

    # list_pending: Entradas abiertas (pending/submitted), las más antiguas primero.
    def list_pending(self, wallet_address: Optional[str] = None) -> List[QueuedTransaction]:
        statement = (
            select(PendingTransactionRecord)
            .where(PendingTransactionRecord.status.in_([s.value for s in OPEN_TX_STATUSES]))
            .order_by(PendingTransactionRecord.created_at, PendingTransactionRecord.id)
        )
        if wallet_address:
            statement = statement.where(PendingTransactionRecord.wallet_address == wallet_address)
        return self._fetch(statement)

    # list_for_display: Abiertas más las terminales actualizadas dentro de la ventana.
    def list_for_display(self, wallet_address: Optional[str] = None, retention_seconds: int = 300,
                         now: Optional[datetime] = None) -> List[QueuedTransaction]:
        cutoff = (now or utcnow()) - timedelta(seconds=retention_seconds)
        open_values = [s.value for s in OPEN_TX_STATUSES]
        statement = (
            select(PendingTransactionRecord)
            .where(
                PendingTransactionRecord.status.in_(open_values)
                | (PendingTransactionRecord.updated_at >= cutoff)
            )
            .order_by(PendingTransactionRecord.created_at, PendingTransactionRecord.id)
        )
        if wallet_address:
            statement = statement.where(PendingTransactionRecord.wallet_address == wallet_address)
        return self._fetch(statement)

    # list_by_type: Entradas de uno o varios tipos de operación.
    def list_by_type(self, *tx_types: str, include_acknowledged: bool = True) -> List[QueuedTransaction]:
        statement = (
            select(PendingTransactionRecord)
            .where(PendingTransactionRecord.tx_type.in_(tx_types))
            .order_by(PendingTransactionRecord.created_at, PendingTransactionRecord.id)
        )
        if not include_acknowledged:
            statement = statement.where(PendingTransactionRecord.acknowledged == False)  # noqa: E712
        return self._fetch(statement)

    def list_for_order(self, order_id: str) -> List[QueuedTransaction]:
        statement = (
            select(PendingTransactionRecord)
            .where(PendingTransactionRecord.order_id == order_id)
            .order_by(PendingTransactionRecord.created_at)
        )
        return self._fetch(statement)

    def _fetch(self, statement) -> List[QueuedTransaction]:
        with DBSession(self.bind) as s:
            return [QueuedTransaction.from_record(r) for r in s.exec(statement).all()]

    def update_status(self, tx_id: str, new_status, tx_hash: Optional[str] = None) -> QueuedTransaction:
        """Aplica una transición de estado.

        Estado idéntico o reporte atrasado de un paso ya superado: no-op
        silencioso. Cualquier otra transición fuera de la tabla lanza
        INVALID_TRANSITION. La escritura es compare-and-set; si otro escritor
        se adelanta se relee y se vuelve a decidir.
        """
        try:
            target = TxStatus(new_status)
        except ValueError:
            raise RelayError(ErrorKind.INVALID_REQUEST, f"Unknown transaction status: {new_status}",
                             {'tx_id': tx_id, 'status': new_status})
        tx_hash = normalize_hex(tx_hash)

        for _ in range(CAS_ATTEMPTS):
            with DBSession(self.bind) as s:
                record = s.get(PendingTransactionRecord, tx_id)
                if record is None:
                    raise transaction_not_found(tx_id)
                current = TxStatus(record.status)
                missing_hash = record.hash is None

                if target == current:
                    if not (tx_hash and missing_hash and current in HASH_STATUSES):
                        return QueuedTransaction.from_record(record)
                    break

                if target not in ALLOWED_TRANSITIONS[current]:
                    if self._is_stale_report(current, target):
                        logger.info("Ignoring stale %s report for transaction %s (already %s)",
                                    target.value, tx_id, current.value)
                        return QueuedTransaction.from_record(record)
                    raise RelayError(
                        ErrorKind.INVALID_TRANSITION,
                        f"Transaction {tx_id} cannot move from {current.value} to {target.value}",
                        {'tx_id': tx_id, 'from': current.value, 'to': target.value},
                    )

                values = {'status': target.value, 'updated_at': utcnow()}
                if target == TxStatus.CONFIRMED:
                    final_hash = tx_hash or record.hash
                    if not final_hash:
                        raise RelayError(
                            ErrorKind.INVALID_TRANSITION,
                            f"Transaction {tx_id} cannot be confirmed without a settlement hash",
                            {'tx_id': tx_id, 'from': current.value, 'to': target.value},
                        )
                    values['hash'] = final_hash
                elif target == TxStatus.SUBMITTED:
                    if tx_hash:
                        values['hash'] = tx_hash
                else:
                    values['hash'] = None

                if compare_and_set(s, PendingTransactionRecord, PendingTransactionRecord.id,
                                   tx_id, current.value, values):
                    s.commit()
                    logger.info("Transaction %s: %s -> %s%s (%s)", tx_id, current.value, target.value,
                                f" hash={values['hash']}" if values.get('hash') else '', record.tx_type)
                    return self.require(tx_id)
                s.rollback()
        else:
            raise RelayError(ErrorKind.INVALID_TRANSITION,
                             f"Transaction {tx_id} kept changing while updating to {target.value}",
                             {'tx_id': tx_id, 'to': target.value})
        # Mismo estado reportado con el hash que faltaba.
        return self.update_hash(tx_id, tx_hash)

    @staticmethod
    def _is_stale_report(current: TxStatus, target: TxStatus) -> bool:
        if target == TxStatus.PENDING:
            return False
        if current not in FORWARD_RANK or target not in FORWARD_RANK:
            return False
        return FORWARD_RANK[target] < FORWARD_RANK[current]

    # update_hash: Registra el hash de liquidación de una entrada enviada.
    def update_hash(self, tx_id: str, tx_hash: str) -> QueuedTransaction:
        tx_hash = normalize_hex(tx_hash)
        if not tx_hash:
            raise RelayError(ErrorKind.INVALID_REQUEST, 'Hash is required', {'tx_id': tx_id})
        with DBSession(self.bind) as s:
            record = s.get(PendingTransactionRecord, tx_id)
            if record is None:
                raise transaction_not_found(tx_id)
            current = TxStatus(record.status)
            if record.hash == tx_hash:
                return QueuedTransaction.from_record(record)
            if current not in HASH_STATUSES or (current == TxStatus.CONFIRMED and record.hash):
                raise RelayError(
                    ErrorKind.INVALID_TRANSITION,
                    f"Cannot set hash on transaction {tx_id} with status {current.value}",
                    {'tx_id': tx_id, 'status': current.value},
                )
            if not compare_and_set(s, PendingTransactionRecord, PendingTransactionRecord.id, tx_id,
                                   current.value, {'hash': tx_hash, 'updated_at': utcnow()}):
                s.rollback()
                raise RelayError(ErrorKind.INVALID_TRANSITION,
                                 f"Transaction {tx_id} changed while setting its hash", {'tx_id': tx_id})
            s.commit()
        logger.info("Transaction %s hash set to %s", tx_id, tx_hash)
        return self.require(tx_id)

    # acknowledge: Marca la entrada como conciliada por el relay (el estado no cambia).
    def acknowledge(self, tx_id: str) -> bool:
        with DBSession(self.bind) as s:
            record = s.get(PendingTransactionRecord, tx_id)
            if record is None:
                raise transaction_not_found(tx_id)
            if record.acknowledged:
                return False
            record.acknowledged = True
            s.add(record)
            s.commit()
        logger.debug("Transaction %s acknowledged by relay", tx_id)
        return True

    # mark_posted: Registra que la acción de seguimiento de la entrada ya se publicó.
    def mark_posted(self, tx_id: str) -> bool:
        for _ in range(CAS_ATTEMPTS):
            with DBSession(self.bind) as s:
                record = s.get(PendingTransactionRecord, tx_id)
                if record is None:
                    raise transaction_not_found(tx_id)
                meta = parse_metadata(record.metadata_json)
                if meta.posted_to_marketplace:
                    return False
                posted = dump_metadata(meta.model_copy(update={'posted_to_marketplace': True}))
                # La metadata leída es la condición de la escritura.
                if compare_and_set(s, PendingTransactionRecord, PendingTransactionRecord.id, tx_id,
                                   record.metadata_json, {'metadata_json': posted},
                                   status_column=PendingTransactionRecord.metadata_json):
                    s.commit()
                    logger.info("Transaction %s follow-up posted", tx_id)
                    return True
                s.rollback()
        raise RelayError(ErrorKind.INVALID_TRANSITION, f"Transaction {tx_id} kept changing while marking it posted",
                         {'tx_id': tx_id})
