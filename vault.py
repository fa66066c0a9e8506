"""Bóveda de vouchers cifrados.

Cifra el payload del QR con una clave derivada del par público/privado de
UUIDs, lo descifra desde el almacén local o desde la transacción anclada en la
cadena y administra la divulgación de un solo uso de la imagen del voucher.

Cualquier falla de descifrado (secreto incorrecto, datos ausentes, cadena
inaccesible) se reporta con el mismo mensaje fijo.
"""

import base64
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol, Tuple, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import get_settings
from database import DBSession, compare_and_set
from errors import ErrorKind, RelayError, decryption_failed, order_not_found
from models import BuyingOrder, utcnow
from schemas import OrderStatus, RevealMethod, VoucherPayload
from security import create_release_token, decode_release_token
from vouchers import parse_voucher

logger = logging.getLogger('relay.vault')

ALLOWED_IMAGE_EXTENSIONS = ('.png', '.jpg', '.jpeg')
IMAGE_MEDIA_TYPES = {'.png': 'image/png', '.jpg': 'image/jpeg', '.jpeg': 'image/jpeg'}


# mask_secret: Solo los primeros y últimos cuatro caracteres aparecen en logs.
def mask_secret(secret: str) -> str:
    if not secret or len(secret) <= 8:
        return '****'
    return f"{secret[:4]}...{secret[-4:]}"


# ------------------------- Key derivation --------------------------

class KeyDerivation(Protocol):
    name: str

    def derive(self, secret: str, salt: str) -> bytes: ...


class Pbkdf2KeyDerivation:
    """PBKDF2-HMAC-SHA256; devuelve una clave Fernet (32 bytes en base64 urlsafe)."""

    def __init__(self, iterations: int = None):
        self.iterations = iterations or get_settings().kdf_iterations

    @property
    def name(self) -> str:
        return f"pbkdf2-sha256:{self.iterations}"

    def derive(self, secret: str, salt: str) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode('utf-8'),
            iterations=self.iterations,
        )
        return base64.urlsafe_b64encode(kdf.derive(secret.encode('utf-8')))


@dataclass
class SealedVoucher:
    ciphertext: str          # hex del token Fernet, apto para call data
    public_uuid: str
    kdf: str
    private_uuid: Optional[str] = None

    @property
    def call_data(self) -> str:
        return f"0x{self.ciphertext}"


@dataclass
class RevealResult:
    payload: VoucherPayload
    method: RevealMethod


@dataclass
class ReleaseToken:
    token: str
    expires_at: datetime
    release_id: str


@dataclass
class ImageDownload:
    content: bytes
    filename: str
    media_type: str


class VoucherVault:
    """Cifrado, descifrado y divulgación de imagen de los vouchers de órdenes de compra."""

    def __init__(self, bind=None, chain_reader=None, kdf: KeyDerivation = None,
                 upload_dir: Union[str, Path] = None):
        settings = get_settings()
        self.bind = bind
        self.chain_reader = chain_reader
        self.kdf = kdf or Pbkdf2KeyDerivation()
        self.upload_dir = Path(upload_dir or settings.upload_dir)
        self.release_window = settings.image_release_window
        self.download_link_ttl = settings.download_link_ttl
        self.api_base_url = settings.api_base_url

    # ----------------------------- Cifrado -----------------------------

    def _passphrase(self, public_uuid: str, secret: str) -> str:
        return f"{public_uuid}-{secret}"

    def _fernet(self, public_uuid: str, secret: str) -> Fernet:
        return Fernet(self.kdf.derive(self._passphrase(public_uuid, secret), public_uuid))

    # seal: Cifra el payload con el secreto dado; el UUID público es la sal y el localizador.
    def seal(self, payload: Union[str, dict, VoucherPayload], secret: str,
             public_uuid: str = None) -> SealedVoucher:
        if isinstance(payload, VoucherPayload):
            text = payload.model_dump_json(exclude_none=True)
        elif isinstance(payload, dict):
            text = json.dumps(payload)
        else:
            text = payload
        public_uuid = public_uuid or str(uuid.uuid4())
        token = self._fernet(public_uuid, secret).encrypt(text.encode('utf-8'))
        return SealedVoucher(ciphertext=token.hex(), public_uuid=public_uuid, kdf=self.kdf.name)

    # seal_for_order: Igual que seal, generando el UUID privado si no se provee.
    def seal_for_order(self, payload, secret: str = None) -> SealedVoucher:
        secret = secret or str(uuid.uuid4())
        sealed = self.seal(payload, secret)
        sealed.private_uuid = secret
        logger.info("Voucher sealed (public %s, secret %s)", sealed.public_uuid, mask_secret(secret))
        return sealed

    # open_sealed: Descifra un texto cifrado en hex; toda falla es DECRYPTION_FAILED.
    def open_sealed(self, ciphertext_hex: str, public_uuid: str, secret: str,
                    order_id: str = None) -> VoucherPayload:
        try:
            raw = ciphertext_hex[2:] if ciphertext_hex.startswith('0x') else ciphertext_hex
            token = bytes.fromhex(raw)
            plaintext = self._fernet(public_uuid, secret).decrypt(token)
            return parse_voucher(plaintext.decode('utf-8'))
        except (InvalidToken, ValueError, TypeError, AttributeError, RelayError) as e:
            logger.warning("Voucher decryption failed for order %s (%s)", order_id, type(e).__name__)
            raise decryption_failed(order_id) from None

    # ----------------------------- Reveal ------------------------------

    def _load_order(self, order_id: str) -> BuyingOrder:
        with DBSession(self.bind) as s:
            order = s.get(BuyingOrder, order_id)
        if order is None:
            raise order_not_found(order_id)
        return order

    def _authorize_reveal(self, order: BuyingOrder, caller: str):
        if order.status != OrderStatus.FILLED.value:
            raise RelayError(ErrorKind.UNAUTHORIZED, 'Voucher can only be decrypted once the order is filled',
                             {'order_id': order.order_id, 'status': order.status})
        allowed = {a.lower() for a in (order.filled_by, order.buyer) if a}
        if not caller or caller.lower() not in allowed:
            raise RelayError(ErrorKind.UNAUTHORIZED, 'Only the filler or the owner can decrypt this voucher',
                             {'order_id': order.order_id})

    def reveal(self, order_id: str, secret: str, method=RevealMethod.AUTO, caller: str = None) -> RevealResult:
        """Descifra el voucher de una orden llenada.

        local: usa el texto cifrado almacenado.
        blockchain: lee el input de la transacción anclada (o el primer log del recibo).
        auto: local y, si no resulta, blockchain.
        """
        method = RevealMethod(method)
        order = self._load_order(order_id)
        self._authorize_reveal(order, caller)

        if method == RevealMethod.LOCAL:
            payload = self._reveal_local(order, secret)
        elif method == RevealMethod.BLOCKCHAIN:
            payload = self._reveal_blockchain(order, secret)
        else:
            try:
                payload, method = self._reveal_local(order, secret), RevealMethod.LOCAL
            except RelayError:
                if not order.on_chain_tx_hash:
                    raise
                payload, method = self._reveal_blockchain(order, secret), RevealMethod.BLOCKCHAIN

        # La liberación de la imagen exige que el propio filler haya descifrado.
        by_filler = bool(order.filled_by) and caller.lower() == order.filled_by.lower()
        if not order.has_been_decrypted or (by_filler and order.filler_decrypted_at is None):
            with DBSession(self.bind) as s:
                stored = s.get(BuyingOrder, order_id)
                stored.has_been_decrypted = True
                if by_filler and stored.filler_decrypted_at is None:
                    stored.filler_decrypted_at = utcnow()
                stored.updated_at = utcnow()
                s.add(stored)
                s.commit()
        logger.info("Voucher for order %s revealed via %s by %s", order_id, method.value, caller)
        return RevealResult(payload=payload, method=method)

    def _reveal_local(self, order: BuyingOrder, secret: str) -> VoucherPayload:
        if not order.encrypted_payload or not order.public_uuid:
            raise decryption_failed(order.order_id)
        return self.open_sealed(order.encrypted_payload, order.public_uuid, secret, order.order_id)

    def _reveal_blockchain(self, order: BuyingOrder, secret: str) -> VoucherPayload:
        if not order.on_chain_tx_hash or not order.public_uuid or self.chain_reader is None:
            raise decryption_failed(order.order_id)
        try:
            data = self.chain_reader.get_transaction_input(order.on_chain_tx_hash)
        except RelayError as e:
            logger.warning("Chain read failed for order %s: %s", order.order_id, e.message)
            data = None
        if data and data != '0x':
            try:
                return self.open_sealed(data, order.public_uuid, secret, order.order_id)
            except RelayError:
                logger.info("Transaction input of %s did not decrypt, trying receipt log",
                            order.on_chain_tx_hash)
        try:
            log_data = self.chain_reader.get_receipt_log_data(order.on_chain_tx_hash)
        except RelayError as e:
            logger.warning("Receipt read failed for order %s: %s", order.order_id, e.message)
            raise decryption_failed(order.order_id) from None
        if not log_data or log_data == '0x':
            raise decryption_failed(order.order_id)
        return self.open_sealed(log_data, order.public_uuid, secret, order.order_id)

    # ----------------------------- Imagen ------------------------------

    def _image_path(self, order: BuyingOrder) -> Path:
        return self.upload_dir / f"{order.image_file_id}{order.image_file_ext}"

    # attach_image: Guarda la imagen del voucher (solo el dueño; png/jpg/jpeg).
    def attach_image(self, order_id: str, content: bytes, filename: str, caller: str) -> str:
        ext = Path(filename or '').suffix.lower()
        if ext not in ALLOWED_IMAGE_EXTENSIONS:
            raise RelayError(ErrorKind.INVALID_REQUEST, 'Only PNG and JPG images are allowed',
                             {'order_id': order_id, 'extension': ext})
        if not content:
            raise RelayError(ErrorKind.INVALID_REQUEST, 'Image is empty', {'order_id': order_id})
        order = self._load_order(order_id)
        if not caller or caller.lower() != order.buyer.lower():
            raise RelayError(ErrorKind.UNAUTHORIZED, 'Only the order owner can attach an image',
                             {'order_id': order_id})
        if order.image_consumed_at is not None:
            raise RelayError(ErrorKind.IMAGE_ALREADY_CONSUMED, 'Voucher image has already been downloaded',
                             {'order_id': order_id})

        self.upload_dir.mkdir(parents=True, exist_ok=True)
        previous = self._image_path(order) if order.image_file_id else None
        file_id = str(uuid.uuid4())
        (self.upload_dir / f"{file_id}{ext}").write_bytes(content)

        with DBSession(self.bind) as s:
            stored = s.get(BuyingOrder, order_id)
            stored.image_file_id = file_id
            stored.image_file_ext = ext
            stored.image_release_id = None
            stored.updated_at = utcnow()
            s.add(stored)
            s.commit()
        if previous is not None:
            previous.unlink(missing_ok=True)
        logger.info("Image %s%s attached to order %s", file_id, ext, order_id)
        return file_id

    def _issue_release(self, order_id: str, caller: str, ttl_seconds: int) -> ReleaseToken:
        order = self._load_order(order_id)
        if order.image_consumed_at is not None:
            raise RelayError(ErrorKind.IMAGE_ALREADY_CONSUMED, 'Voucher image has already been downloaded',
                             {'order_id': order_id})
        if order.status != OrderStatus.FILLED.value:
            raise RelayError(ErrorKind.UNAUTHORIZED, 'Image is only available once the order is filled',
                             {'order_id': order_id, 'status': order.status})
        if not caller or not order.filled_by or caller.lower() != order.filled_by.lower():
            raise RelayError(ErrorKind.UNAUTHORIZED, 'Only the filler can release the voucher image',
                             {'order_id': order_id})
        if order.filler_decrypted_at is None:
            raise RelayError(ErrorKind.UNAUTHORIZED, 'Voucher must be decrypted before releasing the image',
                             {'order_id': order_id})
        if not order.image_file_id or not self._image_path(order).exists():
            raise RelayError(ErrorKind.IMAGE_NOT_AVAILABLE, 'No image attached to this order',
                             {'order_id': order_id})

        release_id = uuid.uuid4().hex
        token, expires_at = create_release_token(order_id, release_id, caller, ttl_seconds)
        with DBSession(self.bind) as s:
            stored = s.get(BuyingOrder, order_id)
            stored.image_release_id = release_id
            stored.image_released_at = utcnow()
            stored.updated_at = utcnow()
            s.add(stored)
            s.commit()
        logger.info("Image release %s issued for order %s (expires %s)", release_id, order_id, expires_at)
        return ReleaseToken(token=token, expires_at=expires_at, release_id=release_id)

    # release_image: Token de descarga válido durante la ventana de liberación.
    def release_image(self, order_id: str, caller: str) -> ReleaseToken:
        return self._issue_release(order_id, caller, self.release_window)

    # request_download: Enlace compartible que embebe un token de liberación.
    def request_download(self, order_id: str, caller: str) -> Tuple[str, ReleaseToken]:
        release = self._issue_release(order_id, caller, self.download_link_ttl)
        url = f"{self.api_base_url}/buying-orders/{order_id}/download-image?token={release.token}"
        return url, release

    def download_image(self, token: str, order_id: str = None) -> ImageDownload:
        """Entrega la imagen una sola vez y la borra del almacenamiento."""
        claims = decode_release_token(token)
        token_order = claims.get('oid')
        if order_id is not None and order_id != token_order:
            raise RelayError(ErrorKind.IMAGE_NOT_AVAILABLE, 'Release token does not match this order',
                             {'order_id': order_id})
        order = self._load_order(token_order)
        if order.image_consumed_at is not None:
            raise RelayError(ErrorKind.IMAGE_ALREADY_CONSUMED, 'Voucher image has already been downloaded',
                             {'order_id': token_order})
        if order.image_release_id != claims.get('jti'):
            raise RelayError(ErrorKind.IMAGE_NOT_AVAILABLE, 'Release token has been superseded',
                             {'order_id': token_order})
        path = self._image_path(order)
        if not path.exists():
            raise RelayError(ErrorKind.IMAGE_NOT_AVAILABLE, 'Image file not found', {'order_id': token_order})

        content = path.read_bytes()
        with DBSession(self.bind) as s:
            now = utcnow()
            # El jti vigente se consume en la misma escritura: solo una descarga gana.
            won = compare_and_set(s, BuyingOrder, BuyingOrder.order_id, token_order, claims.get('jti'),
                                  {'image_consumed_at': now, 'image_release_id': None, 'updated_at': now},
                                  status_column=BuyingOrder.image_release_id)
            if not won:
                s.rollback()
                raise RelayError(ErrorKind.IMAGE_ALREADY_CONSUMED, 'Voucher image has already been downloaded',
                                 {'order_id': token_order})
            s.commit()
        path.unlink(missing_ok=True)
        logger.info("Image for order %s downloaded and deleted", token_order)
        return ImageDownload(
            content=content,
            filename=f"voucher-{token_order}{order.image_file_ext}",
            media_type=IMAGE_MEDIA_TYPES.get(order.image_file_ext, 'application/octet-stream'),
        )
