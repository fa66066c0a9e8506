"""Verificación de red y lecturas de cadena.

Contiene los parámetros de la red requerida (Base mainnet), el registro de
tokens soportados, el protocolo de la wallet firmante, ChainGuard (fuerza a la
wallet a la red requerida antes de cualquier envío) y un lector JSON-RPC con
timeout acotado usado por la bóveda para el descifrado vía blockchain.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Tuple

import requests

from config import get_settings
from errors import ErrorKind, RelayError

logger = logging.getLogger('relay.chain')

# Códigos EIP-1193 / MetaMask
USER_REJECTED_CODE = 4001
UNRECOGNIZED_CHAIN_CODE = 4902


# ----------------------------- Networks -----------------------------

@dataclass(frozen=True)
class NetworkParams:
    """Registro inmutable de una red EVM."""
    chain_id: int
    name: str
    native_symbol: str
    native_decimals: int
    rpc_urls: Tuple[str, ...]
    explorer_url: str

    @property
    def hex_chain_id(self) -> str:
        return hex(self.chain_id)

    # to_wallet_params: Formato de wallet_addEthereumChain.
    def to_wallet_params(self) -> dict:
        return {
            'chainId': self.hex_chain_id,
            'chainName': self.name,
            'nativeCurrency': {
                'name': 'Ether',
                'symbol': self.native_symbol,
                'decimals': self.native_decimals,
            },
            'rpcUrls': list(self.rpc_urls),
            'blockExplorerUrls': [self.explorer_url],
        }

    def tx_url(self, tx_hash: str) -> str:
        return f"{self.explorer_url}/tx/{tx_hash}"

    def address_url(self, address: str) -> str:
        return f"{self.explorer_url}/address/{address}"


BASE_CHAIN_ID = 8453

BASE_NETWORK = NetworkParams(
    chain_id=BASE_CHAIN_ID,
    name='Base',
    native_symbol='ETH',
    native_decimals=18,
    rpc_urls=('https://mainnet.base.org', 'https://base-mainnet.public.blastapi.io'),
    explorer_url='https://basescan.org',
)

NETWORKS: Dict[int, NetworkParams] = {BASE_CHAIN_ID: BASE_NETWORK}


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    address: str
    decimals: int


TOKENS: Dict[str, TokenInfo] = {
    'XOC': TokenInfo('XOC', '0xa411c9Aa00E020e4f88Bc19996d29c5B7ADB4ACf', 18),
    'MXNe': TokenInfo('MXNe', '0x269caE7Dc59803e5C596c95756faEeBb6030E0aF', 6),
    'USDC': TokenInfo('USDC', '0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913', 6),
}


# get_token: Busca un token soportado por símbolo.
def get_token(symbol) -> TokenInfo:
    key = getattr(symbol, 'value', symbol)
    token = TOKENS.get(key)
    if token is None:
        raise RelayError(ErrorKind.INVALID_REQUEST, f"Unsupported token: {key}", {'token': key})
    return token


# parse_chain_id: Acepta enteros, decimales en texto o hex ("0x2105").
def parse_chain_id(value) -> int:
    if isinstance(value, int):
        return value
    raw = str(value).strip()
    return int(raw, 16) if raw.lower().startswith('0x') else int(raw)


# ------------------------------ Wallet ------------------------------

class WalletRpcError(Exception):
    """Error reportado por la wallet (código EIP-1193 y mensaje)."""
    def __init__(self, code: Optional[int], message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class WalletProvider(Protocol):
    def chain_id(self): ...

    def switch_chain(self, hex_chain_id: str) -> None: ...

    def add_chain(self, params: dict) -> None: ...

    def send_transaction(self, tx: dict) -> str: ...


# is_user_rejection: Código 4001 o mensaje de rechazo/cancelación.
def is_user_rejection(exc: Exception) -> bool:
    if getattr(exc, 'code', None) == USER_REJECTED_CODE:
        return True
    text = str(exc).lower()
    return any(word in text for word in ('rejected', 'denied', 'cancelled', 'canceled'))


# is_unrecognized_chain: La wallet no conoce la red solicitada.
def is_unrecognized_chain(exc: Exception) -> bool:
    if getattr(exc, 'code', None) == UNRECOGNIZED_CHAIN_CODE:
        return True
    text = str(exc).lower()
    return 'unrecognized' in text or 'not been added' in text


class ChainGuard:
    """Asegura que la wallet firmante esté en la red requerida.

    Cualquier falla se propaga como RelayError; nunca se ignora.
    """

    def __init__(self, wallet: Optional[WalletProvider], networks: Dict[int, NetworkParams] = None):
        self.wallet = wallet
        self.networks = networks or NETWORKS

    def _current_chain(self) -> int:
        try:
            return parse_chain_id(self.wallet.chain_id())
        except (WalletRpcError, ValueError, OSError) as e:
            raise RelayError(ErrorKind.PROVIDER_UNAVAILABLE, f"Unable to read wallet chain: {e}") from e

    def ensure_chain(self, required_chain_id: int = None) -> int:
        required = required_chain_id or get_settings().chain_id
        if self.wallet is None:
            raise RelayError(ErrorKind.PROVIDER_UNAVAILABLE, 'No wallet provider available')

        current = self._current_chain()
        if current == required:
            return current

        logger.info("Wallet on chain %s, switching to %s", current, required)
        try:
            self.wallet.switch_chain(hex(required))
        except WalletRpcError as e:
            if is_user_rejection(e):
                raise RelayError(ErrorKind.CHAIN_SWITCH_REJECTED,
                                 'Network switch was rejected in the wallet',
                                 {'required': required, 'current': current}) from e
            if not is_unrecognized_chain(e):
                raise RelayError(ErrorKind.PROVIDER_UNAVAILABLE, f"Failed to switch network: {e.message}",
                                 {'required': required, 'code': e.code}) from e
            self._register_and_switch(required)

        switched = self._current_chain()
        if switched != required:
            raise RelayError(ErrorKind.PROVIDER_UNAVAILABLE,
                             f"Wallet stayed on chain {switched} after switching to {required}",
                             {'required': required, 'current': switched})
        return switched

    # _register_and_switch: Registra la red en la wallet y reintenta el cambio una vez.
    def _register_and_switch(self, required: int):
        params = self.networks.get(required)
        if params is None:
            raise RelayError(ErrorKind.CHAIN_REGISTRATION_FAILED,
                             f"No network parameters registered for chain {required}", {'required': required})
        logger.info("Chain %s unknown to wallet, registering %s", required, params.name)
        try:
            self.wallet.add_chain(params.to_wallet_params())
        except WalletRpcError as e:
            raise RelayError(ErrorKind.CHAIN_REGISTRATION_FAILED, f"Failed to add {params.name} network: {e.message}",
                             {'required': required, 'code': e.code}) from e
        try:
            self.wallet.switch_chain(params.hex_chain_id)
        except WalletRpcError as e:
            if is_user_rejection(e):
                raise RelayError(ErrorKind.CHAIN_SWITCH_REJECTED,
                                 'Network switch was rejected in the wallet', {'required': required}) from e
            raise RelayError(ErrorKind.CHAIN_REGISTRATION_FAILED,
                             f"Failed to switch to {params.name} after adding it: {e.message}",
                             {'required': required, 'code': e.code}) from e


# --------------------------- Chain reads ----------------------------

class ChainReader(Protocol):
    def get_transaction_input(self, tx_hash: str) -> Optional[str]: ...

    def get_receipt_log_data(self, tx_hash: str) -> Optional[str]: ...


class JsonRpcChainReader:
    """Lecturas JSON-RPC con timeout acotado, probando cada endpoint en orden."""

    def __init__(self, rpc_urls: List[str] = None, timeout: float = None, session: requests.Session = None):
        settings = get_settings()
        self.rpc_urls = list(rpc_urls or settings.chain_rpc_urls)
        self.timeout = timeout or settings.rpc_timeout
        self.session = session or requests.Session()

    def _call(self, method: str, params: list):
        payload = {'jsonrpc': '2.0', 'id': 1, 'method': method, 'params': params}
        last_error = None
        for url in self.rpc_urls:
            try:
                resp = self.session.post(url, json=payload, timeout=self.timeout)
                resp.raise_for_status()
                body = resp.json()
            except (requests.RequestException, ValueError) as e:
                logger.warning("RPC %s failed on %s: %s", method, url, e)
                last_error = str(e)
                continue
            if body.get('error'):
                logger.warning("RPC %s returned error on %s: %s", method, url, body['error'])
                last_error = str(body['error'])
                continue
            return body.get('result')
        raise RelayError(ErrorKind.PROVIDER_UNAVAILABLE, f"Chain RPC unavailable for {method}",
                         {'method': method, 'error': last_error})

    def get_transaction_input(self, tx_hash: str) -> Optional[str]:
        tx = self._call('eth_getTransactionByHash', [tx_hash])
        if not tx:
            return None
        return tx.get('input') or tx.get('data')

    def get_receipt_log_data(self, tx_hash: str) -> Optional[str]:
        receipt = self._call('eth_getTransactionReceipt', [tx_hash])
        if not receipt or not receipt.get('logs'):
            return None
        return receipt['logs'][0].get('data')
