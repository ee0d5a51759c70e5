"""Opaque key/value credential store (token, user id, paired server host).

The login and pairing flows that write these values live outside this
package; the sync engine only reads them.
"""
import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

TOKEN_KEYS = ('token', 'access_token')
USER_ID_KEY = 'user_id'
PAIRED_HOST_KEY = 'paired_ip'


class CredentialStore:
    """Dictionary persisted as JSON; ``path=None`` keeps it in memory only."""

    def __init__(self, path: Optional[str] = None, initial: Optional[Dict[str, str]] = None):
        self.path = Path(path) if path else None
        self._values: Dict[str, str] = {}
        if self.path and self.path.exists():
            try:
                self._values = json.loads(self.path.read_text(encoding='utf-8')) or {}
            except (OSError, ValueError) as exc:
                logger.warning("Ignoring unreadable credential file %s: %s", self.path, exc)
                self._values = {}
        if initial:
            self._values.update(initial)

    def get(self, key: str) -> Optional[str]:
        value = self._values.get(key)
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    def set(self, key: str, value: str) -> None:
        self._values[key] = value
        self._flush()

    def delete(self, key: str) -> None:
        if self._values.pop(key, None) is not None:
            self._flush()

    def _flush(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + '.tmp')
        tmp.write_text(json.dumps(self._values, indent=2), encoding='utf-8')
        os.replace(tmp, self.path)

    # convenience readers
    def token(self) -> Optional[str]:
        for key in TOKEN_KEYS:
            value = self.get(key)
            if value:
                return value
        return None

    def user_id(self) -> Optional[str]:
        return self.get(USER_ID_KEY)

    def paired_host(self) -> Optional[str]:
        return self.get(PAIRED_HOST_KEY)
