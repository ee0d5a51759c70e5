"""Runtime settings read from the environment (and a local .env file)."""
import logging
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to the default."""
    raw = os.getenv(name)
    if raw is None:
        return default
    clean = raw.strip()
    return clean if clean else default


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_string(name) or default)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env_string(name) or default)
    except ValueError:
        return default


DB_PATH = _env_string('STOCK_DB_PATH', 'stock.db')
CREDENTIALS_PATH = _env_string('STOCK_CREDENTIALS_PATH', 'credentials.json')

# Paired server (host comes from the credential store, see stock_credentials)
SERVER_PORT = _env_int('STOCK_SERVER_PORT', 8000)
CATALOG_PATH = _env_string('STOCK_CATALOG_PATH', '/data-download')
UPLOAD_PATH = _env_string('STOCK_UPLOAD_PATH', '/upload-orders')
REQUEST_TIMEOUT = _env_float('STOCK_REQUEST_TIMEOUT', 60)
DOWNLOAD_TIMEOUT = _env_float('STOCK_DOWNLOAD_TIMEOUT', 120)
DOWNLOAD_RETRIES = _env_int('STOCK_DOWNLOAD_RETRIES', 3)
USER_AGENT = _env_string('STOCK_USER_AGENT', 'StockEntrySync/1.0')

# Local JSON API
API_HOST = _env_string('STOCK_API_HOST', '127.0.0.1')
API_PORT = _env_int('STOCK_API_PORT', 5000)

# Serial scanner agent
SCANNER_SERIAL_PORT = _env_string('SCANNER_SERIAL_PORT', 'COM4')
SCANNER_SERIAL_BAUD = _env_int('SCANNER_SERIAL_BAUD', 9600)
SCANNER_POST_URL = _env_string('SCANNER_POST_URL', f'http://127.0.0.1:{API_PORT}/api/scan')
SCANNER_DEBOUNCE = _env_float('SCANNER_DEBOUNCE', 1.0)
SCANNER_RECONNECT = _env_float('SCANNER_RECONNECT', 5)
SCANNER_POST_TIMEOUT = _env_float('SCANNER_POST_TIMEOUT', 10)
SCANNER_AGENT_AUTO_START = _env_string('SCANNER_AGENT_AUTO_START', '0') == '1'

LOG_LEVEL_NAME = (_env_string('STOCK_LOG_LEVEL', 'INFO') or 'INFO').upper()
LOG_LEVEL = getattr(logging, LOG_LEVEL_NAME, logging.INFO)


def configure_logging(component: str) -> None:
    """Console logging for an entry point, tagged with the component name."""
    logging.basicConfig(
        level=LOG_LEVEL,
        format=f'[{component}] %(asctime)s %(levelname)s %(message)s',
    )
