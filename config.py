"""Módulo de configuración del relay de transacciones y órdenes.

Proporciona lectura de variables de entorno (con soporte de archivo .env local)
y los parámetros de cadena, cadencias de los lazos y ventanas de retención
usados por la cola de transacciones, el relay y la bóveda de vouchers.

Formato opcional en CHAIN_RPC_URLS:
  "url1,url2,..." lista de endpoints RPC de la red requerida.
"""

import logging
import os
from pathlib import Path
from functools import lru_cache
from typing import List

from dotenv import load_dotenv

DEFAULT_ESCROW_WALLET = '0x9c77c6fafc1eb0821F1De12972Ef0199C97C6e45'


# parse_url_list: Convierte la cadena cruda de endpoints en una lista limpia.
def parse_url_list(raw: str) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(',') if item.strip()]


# get_settings: Devuelve (cacheado) la instancia única de Settings.
@lru_cache
def get_settings():
    return Settings()


class Settings:
    """Agrupa todos los parámetros de configuración usados en la aplicación.

    Se inicializa leyendo variables de entorno. Incluye la red requerida,
    intervalos de sondeo, ventanas de expiración y parámetros de cifrado.
    """
    def __init__(self):
        # Cargar .env local (aislado al directorio del módulo)
        base_dir = Path(__file__).resolve().parent
        load_dotenv(base_dir / '.env')

        default_db_path = base_dir / 'relay.db'
        self.database_url = os.getenv('RELAY_DB_URL', f"sqlite:///{default_db_path}")
        self.jwt_secret = os.getenv('JWT_SECRET', 'dev-secret-change')
        self.jwt_algorithm = os.getenv('JWT_ALG', 'HS256')
        self.jwt_exp_minutes = int(os.getenv('JWT_EXP_MIN', '60'))

        # Red requerida para cualquier envío
        self.chain_id = int(os.getenv('CHAIN_ID', '8453'))
        self.chain_rpc_url = os.getenv('CHAIN_RPC_URL', 'https://mainnet.base.org')
        self.chain_rpc_urls = parse_url_list(os.getenv('CHAIN_RPC_URLS', '')) or [
            self.chain_rpc_url,
            'https://base-mainnet.public.blastapi.io',
        ]
        self.escrow_wallet_address = os.getenv('ESCROW_WALLET_ADDRESS', DEFAULT_ESCROW_WALLET)

        # Parámetros de red
        self.api_base_url = os.getenv('API_BASE_URL', 'http://localhost:4000/api').rstrip('/')
        self.request_timeout = float(os.getenv('REQUEST_TIMEOUT', '3'))
        self.max_retries = int(os.getenv('REQUEST_RETRIES', '2'))
        self.rpc_timeout = float(os.getenv('RPC_TIMEOUT', '10'))

        # Cadencias independientes de ambos observadores
        self.client_poll_interval = float(os.getenv('CLIENT_POLL_INTERVAL_SEC', '3'))
        self.relay_interval = float(os.getenv('RELAY_INTERVAL_SEC', '20'))
        self.completed_retention = int(os.getenv('COMPLETED_RETENTION_SEC', '300'))
        self.fetch_failure_threshold = int(os.getenv('FETCH_FAILURE_THRESHOLD', '3'))
        self.relay_autostart = os.getenv('RELAY_AUTOSTART', '1').lower() not in ('0', 'false', 'no')

        # Vigencias de órdenes, fills y liberación de imagen
        self.order_ttl = int(os.getenv('ORDER_TTL_SEC', str(7 * 24 * 60 * 60)))
        self.fill_ttl = int(os.getenv('FILL_TTL_SEC', str(15 * 60)))
        self.image_release_window = int(os.getenv('IMAGE_RELEASE_WINDOW_SEC', '30'))
        self.download_link_ttl = int(os.getenv('DOWNLOAD_LINK_TTL_SEC', '300'))

        # Bóveda de vouchers
        self.kdf_iterations = int(os.getenv('KDF_ITERATIONS', '200000'))
        self.upload_dir = Path(os.getenv('UPLOAD_DIR', str(base_dir / 'uploads')))

        self.log_level = os.getenv('LOG_LEVEL', 'INFO').upper()


# configure_logging: Aplica formato y nivel comunes a todos los loggers "relay.*".
def configure_logging(level: str = None):
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, level or settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
