"""Modelos de datos persistentes.

Incluye la cola de transacciones pendientes, las órdenes de venta y compra,
los intentos de fill sobre órdenes de venta y el estado de la imagen del
voucher. Todas las fechas se guardan en UTC sin zona horaria.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlmodel import SQLModel, Field


# utcnow: Instante actual en UTC, sin tzinfo (formato que conserva SQLite).
def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PendingTransactionRecord(SQLModel, table=True):
    """Operación on-chain en espera o con liquidación recibida.

    Campos:
      status: pending | submitted | confirmed | rejected | failed.
      hash: Identificador de liquidación (solo en submitted/confirmed).
      acknowledged: El relay ya concilió esta entrada con su orden.
      metadata_json: Variante cerrada de metadata serializada (ver schemas).
    """
    __tablename__ = 'pending_transaction'

    id: str = Field(primary_key=True)
    to: str
    value: str = '0'
    data: Optional[str] = None
    status: str = Field(default='pending', index=True)
    tx_type: str = Field(index=True)
    order_id: Optional[str] = Field(default=None, index=True)
    wallet_address: str = Field(index=True)
    chain: str = 'base'
    hash: Optional[str] = Field(default=None, index=True)
    acknowledged: bool = False
    metadata_json: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SellingOrder(SQLModel, table=True):
    """Orden de venta: el vendedor deposita tokens en escrow a cambio de un voucher."""
    __tablename__ = 'selling_order'

    order_id: str = Field(primary_key=True)
    seller: str = Field(index=True)
    token: str = Field(index=True)
    amount: str
    mxn_amount: float
    price: Optional[str] = None
    status: str = Field(default='pending', index=True)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    memo: Optional[str] = None
    tx_id: Optional[str] = None
    settlement_hash: Optional[str] = None
    filled_at: Optional[datetime] = None
    filled_by: Optional[str] = None
    filled_tx_hash: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


class BuyingOrder(SQLModel, table=True):
    """Orden de compra: el comprador ofrece un voucher cifrado a cambio de tokens.

    El payload del voucher nunca se guarda en claro; solo el texto cifrado
    (hex), el UUID público y los parámetros de derivación de clave.
    """
    __tablename__ = 'buying_order'

    order_id: str = Field(primary_key=True)
    buyer: str = Field(index=True)
    token: str = Field(index=True)
    token_amount: str
    mxn_amount: float
    status: str = Field(default='pending', index=True)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    memo: Optional[str] = None
    reference_code: str = Field(index=True)
    qr_expiration: str
    tx_id: Optional[str] = None
    settlement_hash: Optional[str] = None
    on_chain_tx_hash: Optional[str] = None
    encrypted_payload: Optional[str] = None
    public_uuid: Optional[str] = Field(default=None, index=True)
    kdf: Optional[str] = None
    filled_at: Optional[datetime] = None
    filled_by: Optional[str] = None
    filler_tx_hash: Optional[str] = None
    has_been_decrypted: bool = False
    filler_decrypted_at: Optional[datetime] = None
    image_file_id: Optional[str] = None
    image_file_ext: Optional[str] = None
    image_release_id: Optional[str] = None
    image_released_at: Optional[datetime] = None
    image_consumed_at: Optional[datetime] = None
    payout_tx_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


class SellingOrderFill(SQLModel, table=True):
    """Intento de llenar una orden de venta con un voucher.

    Varios intentos por orden; como máximo uno llega a accepted.
    """
    __tablename__ = 'selling_order_fill'

    fill_id: str = Field(primary_key=True)
    order_id: str = Field(index=True)
    filler: str = Field(index=True)
    reference_code: str = Field(index=True)
    voucher_amount: float
    voucher_expiration: str
    encrypted_payload: Optional[str] = None
    public_uuid: Optional[str] = None
    status: str = Field(default='pending', index=True)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    completed_at: Optional[datetime] = None
    settlement_tx_id: Optional[str] = None
    settlement_hash: Optional[str] = None
    error: Optional[str] = None
