"""Aplicación FastAPI principal: cola de transacciones, órdenes y bóveda de vouchers.

El llamador se identifica con el header X-Wallet-Address. El endpoint manual
del relay exige un token bearer con rol "relay". Todo RelayError se traduce a
JSON con un único manejador.
"""

import base64
import binascii
import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from chain import JsonRpcChainReader
from config import configure_logging, get_settings
from database import init_db
from errors import ErrorKind, RelayError
from orders import OrderStore, fill_to_dict, order_to_dict
from relay import FillerRelay
from schemas import OrderKind, RevealMethod, Token, TxStatus
from security import decode_token
from transaction import PendingTransactionQueue, is_address
from vault import VoucherVault

settings = get_settings()
configure_logging()
logger = logging.getLogger('relay.api')

app = FastAPI(title="Voucher Relay API", version="0.1.0")
router = APIRouter(prefix="/api")
security = HTTPBearer()


# ----------------------------- Services --------------------------
class Services:
    """Componentes compartidos por las rutas (una instancia por proceso)."""
    def __init__(self, bind=None, chain_reader=None, upload_dir=None):
        self.queue = PendingTransactionQueue(bind)
        self.vault = VoucherVault(bind, chain_reader=chain_reader, upload_dir=upload_dir)
        self.orders = OrderStore(self.queue, self.vault, bind)
        self.relay = FillerRelay(self.queue, self.orders)


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = Services(chain_reader=JsonRpcChainReader())
    return _services


# ---------------------------- Schemas ----------------------------
class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StatusUpdatePayload(_Payload):
    """Nuevo estado reportado por el ejecutor del cliente."""
    status: TxStatus
    hash: Optional[str] = None


class HashPayload(_Payload):
    hash: str


class SellingOrderPayload(_Payload):
    """Payload para publicar una orden de venta."""
    token: Token
    amount: str
    mxn_amount: float
    price: Optional[str] = None
    memo: Optional[str] = None


class BuyingOrderPayload(_Payload):
    """Payload para publicar una orden de compra respaldada por un voucher."""
    token: Token
    token_amount: str
    qr_data: Union[str, dict]
    memo: Optional[str] = None


class SellingFillPayload(_Payload):
    qr_data: Union[str, dict]


class ActivatePayload(_Payload):
    tx_hash: str
    tx_id: Optional[str] = None


class ConfirmFillPayload(_Payload):
    tx_id: str
    tx_hash: str


class DecryptPayload(_Payload):
    """Secreto (UUID privado) entregado al crear la orden."""
    private_uuid: str
    method: RevealMethod = RevealMethod.AUTO


class ImagePayload(_Payload):
    filename: str
    content_base64: str


# ----------------------- Auth Dependencies -----------------------

def get_wallet(x_wallet_address: Optional[str] = Header(None)) -> Optional[str]:
    """Wallet del llamador si se envió el header (lecturas filtradas)."""
    return x_wallet_address


def require_wallet(x_wallet_address: Optional[str] = Header(None)) -> str:
    """Wallet obligatoria para operaciones que mutan estado."""
    if not x_wallet_address:
        raise RelayError(ErrorKind.UNAUTHORIZED, 'X-Wallet-Address header is required')
    if not is_address(x_wallet_address):
        raise RelayError(ErrorKind.INVALID_REQUEST, f"Invalid wallet address: {x_wallet_address}",
                         {'wallet': x_wallet_address})
    return x_wallet_address


def require_role(role: str):
    """Genera dependencia que valida el token bearer y su rol."""
    def checker(credentials: HTTPAuthorizationCredentials = Depends(security)):
        data = decode_token(credentials.credentials)
        if not data:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
        if data.get('role') != role:
            raise HTTPException(status_code=403, detail="Forbidden: insufficient role")
        return data
    return checker


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


# ------------------------- Error Handling ------------------------
@app.exception_handler(RelayError)
def relay_error_handler(request: Request, exc: RelayError):
    """Traduce cualquier RelayError a JSON con su categoría y código HTTP."""
    if exc.http_status >= 500:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.kind.value, exc.message)
    return JSONResponse(status_code=exc.http_status, content={"success": False, "error": exc.to_dict()})


# ------------------------- Startup Event -------------------------
@app.on_event("startup")
def on_startup():
    """Inicializa la base de datos y arranca el relay periódico."""
    init_db()
    if settings.relay_autostart:
        get_services().relay.start()


@app.on_event("shutdown")
def on_shutdown():
    if _services is not None:
        _services.relay.stop()


# ----------------------- Transaction Endpoints -------------------
@router.get('/transactions/pending')
def pending_transactions(wallet: Optional[str] = Depends(get_wallet), svc: Services = Depends(get_services)):
    """Entradas abiertas y terminadas recientes (ventana de retención)."""
    rows = svc.orders.without_stale_entries(svc.queue.list_for_display(wallet, settings.completed_retention))
    return {"transactions": [tx.to_wire() for tx in rows]}


@router.get('/transactions/{tx_id}')
def get_transaction(tx_id: str, svc: Services = Depends(get_services)):
    return {"transaction": svc.queue.require(tx_id).to_wire()}


def _owned_transaction(svc: Services, tx_id: str, wallet: str):
    tx = svc.queue.require(tx_id)
    if not _same(tx.wallet_address, wallet):
        raise RelayError(ErrorKind.UNAUTHORIZED, 'Transaction belongs to another wallet', {'tx_id': tx_id})
    return tx


@router.post('/transactions/{tx_id}/update')
def update_transaction(tx_id: str, payload: StatusUpdatePayload, wallet: str = Depends(require_wallet),
                       svc: Services = Depends(get_services)):
    """Transición de estado reportada por el ejecutor (no-op si se repite)."""
    tx = _owned_transaction(svc, tx_id, wallet)
    if payload.status == TxStatus.SUBMITTED and tx.status == TxStatus.PENDING:
        # Orden cancelada, llenada o vencida: no se pide la firma.
        svc.orders.check_executable(tx)
    tx = svc.queue.update_status(tx_id, payload.status, payload.hash)
    return {"success": True, "transaction": tx.to_wire()}


@router.post('/transactions/{tx_id}/hash')
def update_transaction_hash(tx_id: str, payload: HashPayload, wallet: str = Depends(require_wallet),
                            svc: Services = Depends(get_services)):
    _owned_transaction(svc, tx_id, wallet)
    tx = svc.queue.update_hash(tx_id, payload.hash)
    return {"success": True, "transaction": tx.to_wire()}


# ------------------------- Selling Orders ------------------------
@router.get('/selling-orders')
def list_selling_orders(token: Optional[Token] = None, order_status: Optional[str] = Query(None, alias='status'),
                        seller: Optional[str] = None, limit: int = 50, svc: Services = Depends(get_services)):
    rows = svc.orders.list_selling_orders(token, order_status, seller, limit)
    return {"orders": [order_to_dict(o) for o in rows]}


@router.post('/selling-orders')
def create_selling_order(payload: SellingOrderPayload, wallet: str = Depends(require_wallet),
                         svc: Services = Depends(get_services)):
    """Crea la orden y encola el depósito del vendedor al escrow."""
    order, tx_id = svc.orders.create_selling_order(wallet, payload.token, payload.amount, payload.mxn_amount,
                                                   payload.price, payload.memo)
    return {"success": True, "order": order_to_dict(order), "txId": tx_id}


@router.get('/selling-orders/{order_id}')
def get_selling_order(order_id: str, svc: Services = Depends(get_services)):
    return {"order": order_to_dict(svc.orders.get_selling_order(order_id))}


@router.post('/selling-orders/{order_id}/activate')
def activate_selling_order(order_id: str, payload: ActivatePayload, wallet: str = Depends(require_wallet),
                           svc: Services = Depends(get_services)):
    """Activa la orden a partir de su depósito confirmado en la cola."""
    order = svc.orders.get_selling_order(order_id)
    if not _same(order.seller, wallet):
        raise RelayError(ErrorKind.UNAUTHORIZED, 'Only the seller can activate this order', {'order_id': order_id})
    tx = svc.queue.require(payload.tx_id or order.tx_id)
    if tx.order_id != order_id or tx.tx_type != 'activate_selling_order':
        raise RelayError(ErrorKind.INVALID_REQUEST, 'Transaction does not fund this order',
                         {'order_id': order_id, 'tx_id': tx.id})
    if tx.status != TxStatus.CONFIRMED or tx.hash != payload.tx_hash:
        raise RelayError(ErrorKind.INVALID_REQUEST, 'Funding transaction is not confirmed with this hash',
                         {'order_id': order_id, 'tx_id': tx.id, 'status': tx.status.value})
    changed = svc.orders.activate(OrderKind.SELLING, order_id, tx.hash)
    svc.queue.mark_posted(tx.id)
    return {"success": True, "activated": changed, "order": order_to_dict(svc.orders.get_selling_order(order_id))}


@router.post('/selling-orders/{order_id}/cancel')
def cancel_selling_order(order_id: str, wallet: str = Depends(require_wallet), svc: Services = Depends(get_services)):
    order = svc.orders.cancel(OrderKind.SELLING, order_id, wallet)
    return {"success": True, "order": order_to_dict(order)}


@router.post('/selling-orders/{order_id}/fill')
def fill_selling_order(order_id: str, payload: SellingFillPayload, wallet: str = Depends(require_wallet),
                       svc: Services = Depends(get_services)):
    """Llena la orden con un voucher; el escrow libera los tokens al filler."""
    fill, private_uuid = svc.orders.submit_selling_fill(order_id, wallet, payload.qr_data)
    return {"success": True, "fill": fill_to_dict(fill), "privateUuid": private_uuid}


@router.get('/selling-orders/{order_id}/fills')
def list_selling_fills(order_id: str, svc: Services = Depends(get_services)):
    return {"fills": [fill_to_dict(f) for f in svc.orders.list_fills(order_id)]}


@router.get('/selling-orders/{order_id}/fills/{fill_id}')
def get_selling_fill(order_id: str, fill_id: str, svc: Services = Depends(get_services)):
    return {"fill": fill_to_dict(svc.orders.get_fill(order_id, fill_id))}


# ------------------------- Buying Orders -------------------------
@router.get('/buying-orders')
def list_buying_orders(token: Optional[Token] = None, order_status: Optional[str] = Query(None, alias='status'),
                       buyer: Optional[str] = None, limit: int = 50, svc: Services = Depends(get_services)):
    rows = svc.orders.list_buying_orders(token, order_status, buyer, limit)
    return {"orders": [order_to_dict(o) for o in rows]}


@router.post('/buying-orders')
def create_buying_order(payload: BuyingOrderPayload, wallet: str = Depends(require_wallet),
                        svc: Services = Depends(get_services)):
    """Sella el voucher y encola su anclaje; el UUID privado solo se entrega aquí."""
    order, tx_id, private_uuid = svc.orders.create_buying_order(wallet, payload.token, payload.token_amount,
                                                                payload.qr_data, payload.memo)
    return {"success": True, "order": order_to_dict(order), "txId": tx_id, "privateUuid": private_uuid}


@router.get('/buying-orders/{order_id}')
def get_buying_order(order_id: str, svc: Services = Depends(get_services)):
    return {"order": order_to_dict(svc.orders.get_buying_order(order_id))}


@router.post('/buying-orders/{order_id}/cancel')
def cancel_buying_order(order_id: str, wallet: str = Depends(require_wallet), svc: Services = Depends(get_services)):
    order = svc.orders.cancel(OrderKind.BUYING, order_id, wallet)
    return {"success": True, "order": order_to_dict(order)}


@router.post('/buying-orders/{order_id}/fill')
def fill_buying_order(order_id: str, wallet: str = Depends(require_wallet), svc: Services = Depends(get_services)):
    """Encola la transferencia de tokens del filler al escrow."""
    tx_id = svc.orders.begin_buying_fill(order_id, wallet)
    return {"success": True, "txId": tx_id}


@router.post('/buying-orders/{order_id}/fill/confirm')
def confirm_buying_fill(order_id: str, payload: ConfirmFillPayload, wallet: str = Depends(require_wallet),
                        svc: Services = Depends(get_services)):
    """Publica un fill confirmado; el relay llega al mismo resultado en su ciclo."""
    tx = _owned_transaction(svc, payload.tx_id, wallet)
    if tx.order_id != order_id or tx.tx_type != 'fill_buying_order':
        raise RelayError(ErrorKind.INVALID_REQUEST, 'Transaction does not fill this order',
                         {'order_id': order_id, 'tx_id': tx.id})
    if tx.status != TxStatus.CONFIRMED or tx.hash != payload.tx_hash:
        raise RelayError(ErrorKind.INVALID_REQUEST, 'Fill transaction is not confirmed with this hash',
                         {'order_id': order_id, 'tx_id': tx.id, 'status': tx.status.value})
    filled = svc.orders.mark_filled(OrderKind.BUYING, order_id, wallet, tx.hash)
    order = svc.orders.get_buying_order(order_id)
    if not filled and order.filler_tx_hash != tx.hash:
        raise RelayError(ErrorKind.ORDER_ALREADY_FILLED, f"Order {order_id} has already been filled",
                         {'order_id': order_id})
    svc.queue.mark_posted(tx.id)
    return {"success": True, "filled": filled, "order": order_to_dict(order)}


@router.post('/buying-orders/{order_id}/decrypt')
def decrypt_buying_order(order_id: str, payload: DecryptPayload, wallet: str = Depends(require_wallet),
                         svc: Services = Depends(get_services)):
    """Descifra el voucher (local, blockchain o auto) para el filler o el dueño."""
    result = svc.vault.reveal(order_id, payload.private_uuid, payload.method, wallet)
    return {
        "success": True,
        "method": result.method.value,
        "voucher": result.payload.model_dump(exclude_none=True),
    }


@router.post('/buying-orders/{order_id}/upload-image')
def upload_voucher_image(order_id: str, payload: ImagePayload, wallet: str = Depends(require_wallet),
                         svc: Services = Depends(get_services)):
    try:
        content = base64.b64decode(payload.content_base64, validate=True)
    except (binascii.Error, ValueError):
        raise RelayError(ErrorKind.INVALID_REQUEST, 'Image content must be base64 encoded', {'order_id': order_id})
    file_id = svc.vault.attach_image(order_id, content, payload.filename, wallet)
    return {"success": True, "fileId": file_id}


@router.post('/buying-orders/{order_id}/release-image')
def release_voucher_image(order_id: str, wallet: str = Depends(require_wallet),
                          svc: Services = Depends(get_services)):
    release = svc.vault.release_image(order_id, wallet)
    return {"success": True, "token": release.token, "expiresAt": release.expires_at.isoformat()}


@router.post('/buying-orders/{order_id}/request-download')
def request_image_download(order_id: str, wallet: str = Depends(require_wallet),
                           svc: Services = Depends(get_services)):
    """Enlace compartible de descarga única con expiración en el servidor."""
    url, release = svc.vault.request_download(order_id, wallet)
    return {"success": True, "downloadUrl": url, "expiresAt": release.expires_at.isoformat()}


@router.get('/buying-orders/{order_id}/download-image')
def download_voucher_image(order_id: str, token: str, svc: Services = Depends(get_services)):
    """Entrega la imagen una sola vez; después se borra del servidor."""
    image = svc.vault.download_image(token, order_id)
    return Response(
        content=image.content,
        media_type=image.media_type,
        headers={"Content-Disposition": f'attachment; filename="{image.filename}"'},
    )


# ------------------------------ Admin ----------------------------
@router.post('/admin/relay/tick')
def relay_tick(operator: dict = Depends(require_role('relay')), svc: Services = Depends(get_services)):
    """Ejecuta un ciclo del relay de inmediato y devuelve su reporte."""
    report = svc.relay.tick()
    logger.info("Manual relay tick by %s", operator.get('sub'))
    return {"success": True, "report": report.to_dict()}


# -------------------------- Utility ------------------------------
@router.get('/health')
def health(svc: Services = Depends(get_services)):
    """Verificación básica de salud y estado del relay."""
    return {
        "status": "ok",
        "chainId": settings.chain_id,
        "relayRunning": svc.relay.task.running,
    }


app.include_router(router)
