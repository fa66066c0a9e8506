"""Políticas de voucher OXXO Spin.

Lectura del payload del QR, fecha de expiración (YY/MM/DD HH:MM:SS), tolerancia
de monto y rango permitido para órdenes de compra.
"""

import json
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Union

from pydantic import ValidationError

from errors import ErrorKind, RelayError
from schemas import VoucherPayload

OXXO_SPIN_OPERATION_TYPE = '0004'
OXXO_SPIN_EMISOR_ID = '101'
MIN_ORDER_AMOUNT_MXN = 5
MAX_ORDER_AMOUNT_MXN = 10000
MAX_MXN_AMOUNT_DIFFERENCE_PERCENT = 5


def _invalid(message: str, **detail) -> RelayError:
    return RelayError(ErrorKind.INVALID_VOUCHER, message, detail)


# parse_voucher: Valida el payload (texto JSON o dict) contra el formato OXXO Spin.
def parse_voucher(raw: Union[str, bytes, dict]) -> VoucherPayload:
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise _invalid(f"Could not parse QR code data: {e}")
    if not isinstance(raw, dict):
        raise _invalid('QR code data must be a JSON object')
    try:
        voucher = VoucherPayload.model_validate(raw)
    except ValidationError as e:
        raise _invalid(f"Invalid QR code data: {e.error_count()} field error(s)",
                       fields=[str(err['loc'][0]) for err in e.errors() if err.get('loc')])
    if voucher.TipoOperacion != OXXO_SPIN_OPERATION_TYPE:
        raise _invalid('Invalid operation type', tipo_operacion=voucher.TipoOperacion)
    if voucher.EmisorQR != OXXO_SPIN_EMISOR_ID:
        raise _invalid('Invalid emisor ID', emisor=voucher.EmisorQR)
    parse_qr_date(voucher.FechaExpiracionQR)
    return voucher


def parse_qr_date(text: str) -> datetime:
    """Convierte "YY/MM/DD HH:MM:SS" (hora opcional) a datetime local sin zona.

    El año de dos dígitos se interpreta como 2000 + YY.
    """
    try:
        parts = text.strip().split(' ')
        year, month, day = (int(p) for p in parts[0].split('/'))
        hours = minutes = seconds = 0
        if len(parts) > 1 and parts[1]:
            hours, minutes, seconds = (int(p) for p in parts[1].split(':'))
        return datetime(2000 + year, month, day, hours, minutes, seconds)
    except (AttributeError, ValueError) as e:
        raise _invalid(f"Invalid date format: {text}") from e


# check_not_expired: Compara la expiración del voucher contra "ahora" (hora local).
def check_not_expired(voucher: VoucherPayload, now: datetime = None) -> datetime:
    expiration = parse_qr_date(voucher.FechaExpiracionQR)
    if expiration < (now or datetime.now()):
        raise RelayError(ErrorKind.VOUCHER_EXPIRED,
                         f"QR code has expired on {voucher.FechaExpiracionQR}",
                         {'expiration': voucher.FechaExpiracionQR})
    return expiration


# check_amount: Monto facial dentro de ±5 % (inclusivo) del monto esperado en MXN.
def check_amount(voucher_amount, expected_amount, tolerance_percent=MAX_MXN_AMOUNT_DIFFERENCE_PERCENT) -> None:
    try:
        actual = Decimal(str(voucher_amount))
        expected = Decimal(str(expected_amount))
    except InvalidOperation:
        raise _invalid(f"Invalid amount: {voucher_amount}")
    tolerance = expected * Decimal(tolerance_percent) / Decimal(100)
    if actual < expected - tolerance or actual > expected + tolerance:
        raise RelayError(
            ErrorKind.AMOUNT_MISMATCH,
            f"QR code amount ({voucher_amount} MXN) does not match order amount ({expected_amount} MXN)",
            {'voucher_amount': str(actual), 'expected_amount': str(expected), 'tolerance_percent': tolerance_percent},
        )


# check_amount_range: Límites de monto para órdenes de compra.
def check_amount_range(amount, minimum=MIN_ORDER_AMOUNT_MXN, maximum=MAX_ORDER_AMOUNT_MXN) -> None:
    if amount < minimum or amount > maximum:
        raise _invalid(f"Amount {amount} MXN is outside the allowed range ({minimum}-{maximum} MXN)",
                       amount=amount, minimum=minimum, maximum=maximum)
