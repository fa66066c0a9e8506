"""Taxonomía de errores del relay.

Un único tipo de excepción (RelayError) etiquetado con un ErrorKind. La
categoría, la regla de reintento y el código HTTP se derivan del kind, de modo
que cada frontera (API, poller, relay) decide con un solo `match` sobre la
categoría en lugar de cadenas de `isinstance`.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    NETWORK = 'network'
    WALLET = 'wallet'
    VALIDATION = 'validation'
    CONSISTENCY = 'consistency'
    DECRYPTION = 'decryption'


class ErrorKind(str, Enum):
    # network / transporte
    FETCH_FAILED = 'fetch_failed'
    PROVIDER_UNAVAILABLE = 'provider_unavailable'
    # interacción con la wallet
    USER_REJECTED = 'user_rejected'
    CHAIN_SWITCH_REJECTED = 'chain_switch_rejected'
    CHAIN_REGISTRATION_FAILED = 'chain_registration_failed'
    SUBMISSION_FAILED = 'submission_failed'
    # validación
    AMOUNT_MISMATCH = 'amount_mismatch'
    VOUCHER_EXPIRED = 'voucher_expired'
    INVALID_VOUCHER = 'invalid_voucher'
    VOUCHER_ALREADY_USED = 'voucher_already_used'
    ORDER_NOT_FOUND = 'order_not_found'
    FILL_NOT_FOUND = 'fill_not_found'
    TRANSACTION_NOT_FOUND = 'transaction_not_found'
    ORDER_ALREADY_FILLED = 'order_already_filled'
    ORDER_CANCELLED = 'order_cancelled'
    ORDER_EXPIRED = 'order_expired'
    ORDER_NOT_ACTIVE = 'order_not_active'
    UNAUTHORIZED = 'unauthorized'
    SAME_USER = 'same_user'
    INVALID_REQUEST = 'invalid_request'
    # consistencia
    STALE_ORDER_STATE = 'stale_order_state'
    INVALID_TRANSITION = 'invalid_transition'
    # descifrado / divulgación
    DECRYPTION_FAILED = 'decryption_failed'
    IMAGE_ALREADY_CONSUMED = 'image_already_consumed'
    IMAGE_NOT_AVAILABLE = 'image_not_available'
    RELEASE_EXPIRED = 'release_expired'


_CATEGORY_BY_KIND = {
    ErrorKind.FETCH_FAILED: ErrorCategory.NETWORK,
    ErrorKind.PROVIDER_UNAVAILABLE: ErrorCategory.NETWORK,
    ErrorKind.USER_REJECTED: ErrorCategory.WALLET,
    ErrorKind.CHAIN_SWITCH_REJECTED: ErrorCategory.WALLET,
    ErrorKind.CHAIN_REGISTRATION_FAILED: ErrorCategory.WALLET,
    ErrorKind.SUBMISSION_FAILED: ErrorCategory.WALLET,
    ErrorKind.AMOUNT_MISMATCH: ErrorCategory.VALIDATION,
    ErrorKind.VOUCHER_EXPIRED: ErrorCategory.VALIDATION,
    ErrorKind.INVALID_VOUCHER: ErrorCategory.VALIDATION,
    ErrorKind.VOUCHER_ALREADY_USED: ErrorCategory.VALIDATION,
    ErrorKind.ORDER_NOT_FOUND: ErrorCategory.VALIDATION,
    ErrorKind.FILL_NOT_FOUND: ErrorCategory.VALIDATION,
    ErrorKind.TRANSACTION_NOT_FOUND: ErrorCategory.VALIDATION,
    ErrorKind.ORDER_ALREADY_FILLED: ErrorCategory.VALIDATION,
    ErrorKind.ORDER_CANCELLED: ErrorCategory.VALIDATION,
    ErrorKind.ORDER_EXPIRED: ErrorCategory.VALIDATION,
    ErrorKind.ORDER_NOT_ACTIVE: ErrorCategory.VALIDATION,
    ErrorKind.UNAUTHORIZED: ErrorCategory.VALIDATION,
    ErrorKind.SAME_USER: ErrorCategory.VALIDATION,
    ErrorKind.INVALID_REQUEST: ErrorCategory.VALIDATION,
    ErrorKind.STALE_ORDER_STATE: ErrorCategory.CONSISTENCY,
    ErrorKind.INVALID_TRANSITION: ErrorCategory.CONSISTENCY,
    ErrorKind.DECRYPTION_FAILED: ErrorCategory.DECRYPTION,
    ErrorKind.IMAGE_ALREADY_CONSUMED: ErrorCategory.DECRYPTION,
    ErrorKind.IMAGE_NOT_AVAILABLE: ErrorCategory.DECRYPTION,
    ErrorKind.RELEASE_EXPIRED: ErrorCategory.DECRYPTION,
}

_HTTP_STATUS_BY_KIND = {
    ErrorKind.ORDER_NOT_FOUND: 404,
    ErrorKind.FILL_NOT_FOUND: 404,
    ErrorKind.TRANSACTION_NOT_FOUND: 404,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.IMAGE_ALREADY_CONSUMED: 410,
    ErrorKind.RELEASE_EXPIRED: 410,
}

_HTTP_STATUS_BY_CATEGORY = {
    ErrorCategory.NETWORK: 503,
    ErrorCategory.WALLET: 502,
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.CONSISTENCY: 409,
    ErrorCategory.DECRYPTION: 403,
}

# Mensaje fijo: no revela cuál de las comprobaciones falló.
DECRYPTION_FAILED_MESSAGE = 'Unable to decrypt voucher data with the supplied secret'


class RelayError(Exception):
    """Error etiquetado del relay.

    Campos:
      kind: ErrorKind concreto.
      message: Resumen legible para el usuario.
      detail: Carga estructurada (ids, montos, estados) para logs y clientes.
    """
    def __init__(self, kind: ErrorKind, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.detail = detail or {}

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORY_BY_KIND[self.kind]

    @property
    def retryable(self) -> bool:
        """Red y wallet se presentan con opción de reintento; el resto tal cual."""
        return self.category in (ErrorCategory.NETWORK, ErrorCategory.WALLET)

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS_BY_KIND.get(self.kind, _HTTP_STATUS_BY_CATEGORY[self.category])

    def to_dict(self):
        return {
            'kind': self.kind.value,
            'category': self.category.value,
            'message': self.message,
            'detail': self.detail,
            'retryable': self.retryable,
        }

    def __repr__(self):
        return f"RelayError({self.kind.value!r}, {self.message!r})"


# decryption_failed: Error uniforme para cualquier falla del descifrado.
def decryption_failed(order_id: str) -> RelayError:
    return RelayError(ErrorKind.DECRYPTION_FAILED, DECRYPTION_FAILED_MESSAGE, {'order_id': order_id})


def order_not_found(order_id: str) -> RelayError:
    return RelayError(ErrorKind.ORDER_NOT_FOUND, f"Order with ID {order_id} not found", {'order_id': order_id})


def transaction_not_found(tx_id: str) -> RelayError:
    return RelayError(ErrorKind.TRANSACTION_NOT_FOUND, f"Transaction with ID {tx_id} not found", {'tx_id': tx_id})


def stale_order_state(order_id: str, expected: str, actual: str) -> RelayError:
    return RelayError(
        ErrorKind.STALE_ORDER_STATE,
        f"Order {order_id} changed concurrently (expected {expected}, found {actual})",
        {'order_id': order_id, 'expected': expected, 'actual': actual},
    )
