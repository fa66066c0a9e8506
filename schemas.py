"""Esquemas de dominio compartidos.

Estados de transacciones y órdenes, variantes cerradas de metadata por tipo de
operación y el formato del payload de voucher OXXO Spin.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class TxStatus(str, Enum):
    PENDING = 'pending'
    SUBMITTED = 'submitted'
    CONFIRMED = 'confirmed'
    REJECTED = 'rejected'
    FAILED = 'failed'


OPEN_TX_STATUSES = (TxStatus.PENDING, TxStatus.SUBMITTED)
TERMINAL_TX_STATUSES = (TxStatus.CONFIRMED, TxStatus.REJECTED, TxStatus.FAILED)


class OrderStatus(str, Enum):
    PENDING = 'pending'
    ACTIVE = 'active'
    FILLED = 'filled'
    CANCELLED = 'cancelled'
    EXPIRED = 'expired'


TERMINAL_ORDER_STATUSES = (OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.EXPIRED)


class OrderKind(str, Enum):
    SELLING = 'selling'
    BUYING = 'buying'


class FillStatus(str, Enum):
    PENDING = 'pending'
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'
    EXPIRED = 'expired'


class Token(str, Enum):
    XOC = 'XOC'
    MXNE = 'MXNe'
    USDC = 'USDC'


class RevealMethod(str, Enum):
    LOCAL = 'local'
    BLOCKCHAIN = 'blockchain'
    AUTO = 'auto'


# ------------------------ Metadata variants ------------------------

class _Metadata(BaseModel):
    """Campos comunes a toda variante de metadata de transacción."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    chain: str = 'base'
    wallet_address: str
    data_type: str = 'native-transfer'
    posted_to_marketplace: bool = False


class TransferMetadata(_Metadata):
    type: Literal['transfer'] = 'transfer'


class CreateBuyingOrderMetadata(_Metadata):
    type: Literal['create_buying_order'] = 'create_buying_order'
    order_id: str
    public_uuid: str


class ActivateSellingOrderMetadata(_Metadata):
    type: Literal['activate_selling_order'] = 'activate_selling_order'
    order_id: str
    token: Token


class FillBuyingOrderMetadata(_Metadata):
    type: Literal['fill_buying_order'] = 'fill_buying_order'
    order_id: str
    token: Token
    buyer: str


class ReleaseSellingOrderMetadata(_Metadata):
    type: Literal['release_selling_order'] = 'release_selling_order'
    order_id: str
    fill_id: str
    token: Token
    recipient: str


class ReleaseBuyingOrderMetadata(_Metadata):
    type: Literal['release_buying_order'] = 'release_buying_order'
    order_id: str
    token: Token
    recipient: str


TransactionMetadata = Annotated[
    Union[
        TransferMetadata,
        CreateBuyingOrderMetadata,
        ActivateSellingOrderMetadata,
        FillBuyingOrderMetadata,
        ReleaseSellingOrderMetadata,
        ReleaseBuyingOrderMetadata,
    ],
    Field(discriminator='type'),
]

metadata_adapter = TypeAdapter(TransactionMetadata)

# Variantes que referencian una orden y por lo tanto interesan al relay.
ORDER_METADATA_TYPES = (
    'create_buying_order',
    'activate_selling_order',
    'fill_buying_order',
    'release_selling_order',
    'release_buying_order',
)


# parse_metadata: Reconstruye la variante a partir del JSON almacenado.
def parse_metadata(raw: str):
    return metadata_adapter.validate_json(raw)


# dump_metadata: Serializa la variante con nombres camelCase (formato de cable).
def dump_metadata(meta) -> str:
    return metadata_adapter.dump_json(meta, by_alias=True).decode('utf-8')


# --------------------------- Voucher --------------------------------

class VoucherOperation(BaseModel):
    model_config = ConfigDict(extra='allow')

    CR: str
    Mensaje: Optional[str] = None
    Comisiones: Optional[str] = None
    CadenaEncriptada: Optional[str] = None
    Aux1: Optional[str] = None
    Aux2: Optional[str] = None


class VoucherPayload(BaseModel):
    """Payload del QR OXXO Spin tal como lo produce el emisor.

    TipoOperacion: discriminador de operación ("0004").
    Monto: valor facial en MXN.
    FechaExpiracionQR: "YY/MM/DD HH:MM:SS".
    Operacion.CR: código de referencia para conciliar con la contraparte.
    """
    model_config = ConfigDict(extra='allow')

    TipoOperacion: str
    VersionQR: Optional[str] = None
    FechaExpiracionQR: str
    FechaCreacionQR: Optional[str] = None
    EmisorQR: str
    Monto: float = Field(gt=0)
    Concepto: Optional[str] = None
    Operacion: VoucherOperation

    @property
    def reference_code(self) -> str:
        return self.Operacion.CR

    @property
    def amount(self) -> float:
        return self.Monto

    @property
    def expiration(self) -> str:
        return self.FechaExpiracionQR
