"""Cliente REST del relay usado por el poller del lado del usuario.

Cada llamada tiene timeout; las lecturas se reintentan un número acotado de
veces. Los errores del servidor se reconstruyen como RelayError con el kind
que el servidor reportó.
"""

import logging
import time
from typing import List, Optional

import requests

from config import get_settings
from errors import ErrorKind, RelayError
from transaction import QueuedTransaction

logger = logging.getLogger('relay.client')

WALLET_HEADER = 'X-Wallet-Address'


class RelayApiClient:
    """Acceso HTTP a la cola de transacciones y a las acciones de seguimiento."""

    def __init__(self, base_url: str = None, wallet_address: str = None, session: requests.Session = None,
                 timeout: float = None, max_retries: int = None):
        settings = get_settings()
        self.base_url = (base_url or settings.api_base_url).rstrip('/')
        self.wallet_address = wallet_address
        self.session = session or requests.Session()
        self.timeout = timeout or settings.request_timeout
        self.max_retries = settings.max_retries if max_retries is None else max_retries

    def _headers(self):
        return {WALLET_HEADER: self.wallet_address} if self.wallet_address else {}

    # _request: Ejecuta la llamada; solo reintenta fallas de transporte cuando retry=True.
    def _request(self, method: str, path: str, retry: bool = False, **kwargs):
        url = f"{self.base_url}{path}"
        attempts = self.max_retries + 1 if retry else 1
        last_error = None
        for attempt in range(attempts):
            try:
                resp = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
            except requests.RequestException as e:
                last_error = e
                logger.warning("%s %s failed (attempt %d/%d): %s", method, path, attempt + 1, attempts, e)
                if attempt + 1 < attempts:
                    time.sleep(0.2 * (attempt + 1))
                continue
            return self._parse(resp, path)
        raise RelayError(ErrorKind.FETCH_FAILED, f"Unable to reach relay API: {last_error}",
                         {'path': path})

    def _parse(self, resp: requests.Response, path: str) -> dict:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.ok:
            return body
        error = body.get('error') if isinstance(body, dict) else None
        if isinstance(error, dict):
            try:
                kind = ErrorKind(error.get('kind'))
            except ValueError:
                kind = None
            if kind is not None:
                raise RelayError(kind, error.get('message', 'Request failed'), error.get('detail'))
        if resp.status_code >= 500:
            raise RelayError(ErrorKind.FETCH_FAILED, f"Relay API error {resp.status_code}",
                             {'path': path, 'status': resp.status_code})
        raise RelayError(ErrorKind.INVALID_REQUEST, f"Relay API rejected request ({resp.status_code})",
                         {'path': path, 'status': resp.status_code})

    # ---------------------------- Cola ----------------------------

    def fetch_pending(self) -> List[QueuedTransaction]:
        body = self._request('GET', '/transactions/pending', retry=True)
        return [QueuedTransaction.from_wire(item) for item in body.get('transactions', [])]

    # update_status: Las repeticiones son no-op en el servidor, por eso se reintenta.
    def update_status(self, tx_id: str, new_status, tx_hash: Optional[str] = None) -> QueuedTransaction:
        payload = {'status': getattr(new_status, 'value', new_status)}
        if tx_hash:
            payload['hash'] = tx_hash
        body = self._request('POST', f"/transactions/{tx_id}/update", retry=True, json=payload)
        return QueuedTransaction.from_wire(body['transaction'])

    def update_hash(self, tx_id: str, tx_hash: str) -> QueuedTransaction:
        body = self._request('POST', f"/transactions/{tx_id}/hash", retry=True, json={'hash': tx_hash})
        return QueuedTransaction.from_wire(body['transaction'])

    # ------------------------ Seguimiento -------------------------

    def activate_selling_order(self, order_id: str, tx_id: str, tx_hash: str) -> dict:
        return self._request('POST', f"/selling-orders/{order_id}/activate",
                             json={'txId': tx_id, 'txHash': tx_hash})

    def publish_fill(self, order_id: str, tx_id: str, tx_hash: str) -> dict:
        return self._request('POST', f"/buying-orders/{order_id}/fill/confirm",
                             json={'txId': tx_id, 'txHash': tx_hash})
