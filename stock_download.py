"""Catalog download: fetch, normalize, persist, retry with exponential backoff."""
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import stock_config as cfg
import stock_store as ss
from stock_credentials import CredentialStore
from stock_errors import AuthError, DownloadInProgressError, PayloadError, StoreError, SyncError

logger = logging.getLogger(__name__)

# Later wrappers win when a payload carries both
WRAPPER_KEYS = ("data", "result")


@dataclass(frozen=True)
class CatalogField:
    """One logical array of the catalog and the keys servers have used for it, in priority order."""
    name: str
    keys: Tuple[str, ...]

    def extract(self, body: Dict[str, Any]) -> List[Any]:
        for key in self.keys:
            value = body.get(key)
            if isinstance(value, list) and value:
                return value
        return []


MASTER_FIELD = CatalogField("master", (
    "masterData", "master", "masters", "master_data",
    "suppliers", "vendor", "vendors", "supplier_data",
))
PRODUCT_FIELD = CatalogField("product", (
    "productData", "products", "product", "product_data",
    "items", "inventory", "item_data", "stock_data",
))


def _to_number(value: Any) -> float:
    if value in (None, "", False):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    return int(number) if number.is_integer() else number


def _first(record: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def _normalize_supplier(record: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(record, dict):
        return None
    code = str(_first(record, "code", "supplier_code", "supplierCode") or "").strip()
    if not code:
        return None
    name = _first(record, "name", "supplier_name", "supplierName")
    return {
        "code": code,
        "name": str(name).strip() if name is not None else code,
        "place": _first(record, "place", "city", "location"),
    }


def _normalize_product(record: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(record, dict):
        return None
    barcode = str(_first(record, "barcode", "bar_code") or "").strip()
    if not barcode:
        return None
    code = _first(record, "code", "itemcode", "item_code", "itemCode")
    return {
        "code": str(code).strip() if code is not None else barcode,
        "name": _first(record, "name", "product_name", "item_name"),
        "barcode": barcode,
        "quantity": _to_number(_first(record, "quantity", "qty", "stock")),
        "salesprice": _to_number(_first(record, "salesprice", "salesPrice", "sales_price")),
        "bmrp": _to_number(_first(record, "bmrp", "mrp")),
        "cost": _to_number(_first(record, "cost", "rate")),
        "batch_supplier": _first(record, "batch_supplier", "batchSupplier"),
    }


def normalize_catalog_payload(data: Any) -> Dict[str, List[Dict[str, Any]]]:
    """Map any known response shape onto ``{"master": [...], "product": [...]}``.

    Absence of both arrays is a valid "nothing new" answer; a payload that is
    not a JSON object is a PayloadError.
    """
    if data is None:
        raise PayloadError("Empty response from server")
    if not isinstance(data, dict):
        raise PayloadError(f"Unexpected catalog payload type: {type(data).__name__}")
    body = data
    for key in WRAPPER_KEYS:
        if isinstance(data.get(key), dict):
            body = data[key]

    catalog: Dict[str, List[Dict[str, Any]]] = {}
    for fld, normalize in ((MASTER_FIELD, _normalize_supplier), (PRODUCT_FIELD, _normalize_product)):
        raw = fld.extract(body)
        rows = [r for r in (normalize(rec) for rec in raw) if r]
        if len(rows) != len(raw):
            logger.warning("Skipped %d %s record(s) without a key", len(raw) - len(rows), fld.name)
        catalog[fld.name] = rows

    if not catalog["master"] and not catalog["product"]:
        arrays = sorted(k for k, v in body.items() if isinstance(v, list))
        logger.warning("No catalog data in any expected key (list keys present: %s)", arrays or "none")
    return catalog


@dataclass
class CatalogResult:
    master_data: List[Dict[str, Any]] = field(default_factory=list)
    product_data: List[Dict[str, Any]] = field(default_factory=list)
    attempts: int = 0
    last_synced: Optional[str] = None

    @property
    def total_records(self) -> int:
        return len(self.master_data) + len(self.product_data)

    def summary(self) -> Dict[str, Any]:
        return {
            "master_count": len(self.master_data),
            "product_count": len(self.product_data),
            "total_records": self.total_records,
            "attempts": self.attempts,
            "last_synced": self.last_synced,
        }


def persist_catalog(conn: sqlite3.Connection, catalog: Dict[str, List[Dict[str, Any]]]) -> str:
    """Upsert both catalogs and stamp sync_info in one transaction."""
    try:
        with ss.transaction(conn):
            if catalog["master"]:
                ss.upsert_suppliers(conn, catalog["master"])
            if catalog["product"]:
                ss.upsert_products(conn, catalog["product"])
            return ss.set_last_synced(conn)
    except sqlite3.Error as exc:
        raise StoreError(f"Saving catalog failed: {exc}") from exc


class DownloadState:
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class CatalogDownloader:
    """Runs catalog downloads and keeps the state of the latest run.

    Only one run at a time: a call while a run is in progress raises
    DownloadInProgressError until ``reset()`` is called.
    """

    def __init__(self, conn: sqlite3.Connection, client: Any, credentials: CredentialStore,
                 catalog_path: str = cfg.CATALOG_PATH,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time):
        self.conn = conn
        self.client = client
        self.credentials = credentials
        self.catalog_path = catalog_path
        self._sleep = sleep
        self._clock = clock
        self.reset()

    def reset(self):
        self.state = DownloadState.IDLE
        self.last_error: Optional[str] = None
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self.attempts = 0

    def status(self) -> Dict[str, Any]:
        duration = None
        if self.start_time is not None and self.end_time is not None:
            duration = self.end_time - self.start_time
        return {
            "state": self.state,
            "in_progress": self.state == DownloadState.IN_PROGRESS,
            "last_error": self.last_error,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": duration,
            "attempts": self.attempts,
        }

    def _check_auth(self):
        if not self.credentials.token():
            raise AuthError("No access token found. Please login again.")

    def _attempt(self) -> CatalogResult:
        self._check_auth()
        raw = self.client.fetch_catalog(self.catalog_path)
        catalog = normalize_catalog_payload(raw)
        last_synced = persist_catalog(self.conn, catalog)
        return CatalogResult(master_data=catalog["master"], product_data=catalog["product"],
                             last_synced=last_synced)

    def download_with_retry(self, max_retries: int = cfg.DOWNLOAD_RETRIES) -> CatalogResult:
        if self.state == DownloadState.IN_PROGRESS:
            raise DownloadInProgressError("A catalog download is already running")
        max_retries = max(1, int(max_retries))
        self.state = DownloadState.IN_PROGRESS
        self.start_time = self._clock()
        self.end_time = None
        self.last_error = None
        self.attempts = 0
        last_exc: Optional[SyncError] = None

        try:
            for attempt in range(1, max_retries + 1):
                self.attempts = attempt
                logger.info("Download attempt %d/%d", attempt, max_retries)
                try:
                    result = self._attempt()
                except AuthError as exc:
                    self.last_error = str(exc)
                    logger.error("Download aborted: %s", exc)
                    raise
                except SyncError as exc:
                    last_exc = exc
                    self.last_error = str(exc)
                    logger.warning("Download attempt %d failed: %s", attempt, exc)
                    if attempt < max_retries:
                        delay = 2 ** attempt
                        logger.info("Waiting %ss before next retry", delay)
                        self._sleep(delay)
                    continue
                result.attempts = attempt
                self.state = DownloadState.COMPLETED
                self.last_error = None
                self.end_time = self._clock()
                logger.info("Download completed on attempt %d: %d supplier(s), %d product(s) in %.1fs",
                            attempt, len(result.master_data), len(result.product_data),
                            self.end_time - self.start_time)
                return result
        except BaseException as exc:
            self.state = DownloadState.FAILED
            self.end_time = self._clock()
            if self.last_error is None:
                self.last_error = str(exc) or type(exc).__name__
            raise

        self.state = DownloadState.FAILED
        self.end_time = self._clock()
        logger.error("All %d download attempt(s) failed: %s", max_retries, self.last_error)
        raise last_exc
