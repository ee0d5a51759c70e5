"""HTTP client for the paired inventory server."""
import json
import logging
import re
import time
import uuid
from typing import Any, Dict, Optional

import requests

import stock_config as cfg
from stock_credentials import CredentialStore
from stock_errors import AuthError, NetworkError, PayloadError, RemoteError

logger = logging.getLogger(__name__)


def _error_message_from_response(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ('message', 'detail', 'error'):
            if body.get(key):
                return str(body[key])
    text = (resp.text or '').strip()
    if len(text) > 200:
        text = text[:200] + '…'
    return text or f'HTTP {resp.status_code}'


def base_url_for_host(host: str, port: int = cfg.SERVER_PORT) -> str:
    """``192.168.1.5``, ``http://192.168.1.5:8000`` and ``192.168.1.5:8000`` all map to one URL."""
    clean = re.sub(r'^https?://', '', host.strip()).rstrip('/')
    clean = re.sub(r':\d+$', '', clean)
    return f'http://{clean}:{port}'


class SyncClient:
    def __init__(self, base_url: str, token: Optional[str] = None,
                 timeout: float = cfg.REQUEST_TIMEOUT, download_timeout: float = cfg.DOWNLOAD_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self.download_timeout = download_timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'Content-Type': 'application/json',
            'User-Agent': cfg.USER_AGENT,
            'Cache-Control': 'no-cache, no-store, must-revalidate',
            'Pragma': 'no-cache',
        })

    @classmethod
    def from_credentials(cls, credentials: CredentialStore, port: int = cfg.SERVER_PORT, **kwargs) -> 'SyncClient':
        host = credentials.paired_host()
        if not host:
            raise NetworkError('No paired server. Connect to a server first.')
        return cls(base_url_for_host(host, port), token=credentials.token(), **kwargs)

    def close(self):
        self.session.close()

    def _headers(self) -> Dict[str, str]:
        headers = {'X-Request-ID': uuid.uuid4().hex}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    def _request(self, method: str, path: str, timeout: Optional[float] = None, **kwargs) -> requests.Response:
        url = self.base_url + (path if path.startswith('/') else f'/{path}')
        try:
            resp = self.session.request(method, url, headers=self._headers(),
                                        timeout=timeout or self.timeout, **kwargs)
        except requests.Timeout as exc:
            raise NetworkError(f'{method} {path} timed out') from exc
        except requests.RequestException as exc:
            raise NetworkError(f'{method} {path} failed: {exc}') from exc
        logger.debug('%s %s -> %s', method, path, resp.status_code)
        if resp.status_code in (401, 403):
            raise AuthError('Authentication failed. Please login again.')
        if not 200 <= resp.status_code < 300:
            raise RemoteError(f'{method} {path} rejected: {_error_message_from_response(resp)}',
                              status_code=resp.status_code)
        return resp

    def fetch_catalog(self, path: str = cfg.CATALOG_PATH) -> Any:
        """GET the catalog payload; cache-busting params keep proxies from replaying old data."""
        params = {'_download': int(time.time() * 1000), '_cache': uuid.uuid4().hex[:12]}
        resp = self._request('GET', path, timeout=self.download_timeout, params=params)
        try:
            data = resp.json()
        except ValueError as exc:
            raise PayloadError(f'Catalog response is not JSON: {resp.text[:200]!r}') from exc
        if isinstance(data, dict) and data.get('detail') == 'Token missing':
            raise AuthError('Authentication failed. Please login again.')
        return data

    def post_orders(self, payload: Dict[str, Any], path: str = cfg.UPLOAD_PATH) -> Any:
        """POST the order batch; returns the decoded body (text when it is not JSON)."""
        resp = self._request('POST', path, data=json.dumps(payload))
        try:
            return resp.json()
        except ValueError:
            return resp.text

    def check_status(self) -> bool:
        """Connectivity check: the server answers ``{"status": "online"}``."""
        try:
            resp = self._request('GET', '/status', timeout=8)
            body = resp.json()
        except (NetworkError, AuthError, ValueError) as exc:
            logger.info('Status check failed for %s: %s', self.base_url, exc)
            return False
        return isinstance(body, dict) and body.get('status') == 'online'
