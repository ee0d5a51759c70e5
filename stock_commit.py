"""Commit staged pending items into the durable orders_to_sync queue.

Policy: per-item best effort. The whole commit runs in one transaction and
each item in its own savepoint; an item that fails is rolled back to its
savepoint and stays in pending_items, every other item is written to
orders_to_sync and removed from pending_items.
"""
import datetime as dt
import logging
import math
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import stock_store as ss
from stock_errors import PartialCommitError, StoreError, SyncError, ValidationError
from stock_staging import StagingSession

logger = logging.getLogger(__name__)

UNKNOWN_USER = "unknown"


@dataclass
class CommitResult:
    success_count: int = 0
    error_count: int = 0
    order_ids: List[int] = field(default_factory=list)
    committed_barcodes: List[str] = field(default_factory=list)
    failed_barcodes: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return self.error_count > 0

    def raise_for_errors(self):
        if self.error_count:
            raise PartialCommitError(self)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _is_blank_number(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return True
    try:
        number = float(value)
    except (TypeError, ValueError):
        return True
    return math.isnan(number) or number == 0


def find_incomplete_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Items whose MRP, cost or quantity is missing, zero or not a number."""
    flagged = []
    for item in items:
        missing = [label for label, key in (("mrp", "bmrp"), ("cost", "cost"), ("quantity", "quantity"))
                   if _is_blank_number(item.get(key))]
        if missing:
            flagged.append({"id": item.get("id"), "barcode": item.get("barcode"),
                            "name": item.get("name"), "missing": missing})
    return flagged


def effective_rate(item: Dict[str, Any]) -> float:
    edited = item.get("eCost") or 0
    return float(edited if edited != 0 else (item.get("cost") or 0))


def _item_code(conn: sqlite3.Connection, item: Dict[str, Any]) -> str:
    barcode = item["barcode"]
    if item.get("isManualEntry"):
        return barcode
    return ss.product_code_for_barcode(conn, barcode) or barcode


def _commit_item(conn: sqlite3.Connection, item: Dict[str, Any], user_id: str,
                 supplier_code: str, order_date: str) -> int:
    rate = effective_rate(item)
    order_id = ss.insert_order_to_sync(conn, {
        "supplier_code": item.get("supplier_code") or supplier_code,
        "userid": user_id,
        "itemcode": _item_code(conn, item),
        "barcode": item["barcode"],
        "quantity": item.get("quantity"),
        "rate": rate,
        "mrp": item.get("bmrp") or 0,
        "order_date": order_date,
        "product_name": item.get("name"),
    })
    if ss.update_product_stock(conn, item["barcode"], item.get("quantity"), rate):
        logger.debug("Updated product_data stock/cost for %s", item["barcode"])
    return order_id


def commit_session(conn: sqlite3.Connection, session: StagingSession, user_id: Optional[str],
                   allow_incomplete: bool = False, order_date: Optional[str] = None) -> CommitResult:
    """Turn every staged item into a pending order.

    Items with zero/missing MRP, cost or quantity raise ValidationError unless
    ``allow_incomplete`` is set (the user confirmed the warning).
    """
    items = session.reload()
    result = CommitResult()
    if not items:
        return result

    flagged = find_incomplete_items(items)
    if flagged and not allow_incomplete:
        names = ", ".join(str(f["name"] or f["barcode"]) for f in flagged)
        raise ValidationError(
            f"{len(flagged)} item(s) have missing or zero MRP, cost or quantity: {names}",
            items=flagged,
        )

    if not user_id:
        logger.warning("Committing without a user id; orders will be tagged %r", UNKNOWN_USER)
    user = user_id or UNKNOWN_USER
    day = order_date or dt.datetime.now(dt.timezone.utc).date().isoformat()
    supplier = session.supplier_code or ""
    committed_ids: List[int] = []

    logger.info("Committing %d pending item(s) for user %s", len(items), user)
    try:
        with ss.transaction(conn):
            for item in items:
                try:
                    with ss.transaction(conn):
                        order_id = _commit_item(conn, item, user, supplier, day)
                except (SyncError, ValueError, TypeError, KeyError) as exc:
                    result.error_count += 1
                    result.failed_barcodes.append(item.get("barcode"))
                    logger.warning("Failed to commit pending item %s (%s): %s",
                                   item.get("id"), item.get("barcode"), exc)
                    continue
                committed_ids.append(item["id"])
                result.order_ids.append(order_id)
                result.committed_barcodes.append(item["barcode"])
                result.success_count += 1
            if committed_ids:
                ss.delete_pending_items(conn, committed_ids)
    except sqlite3.Error as exc:
        raise StoreError(f"Commit failed: {exc}") from exc
    finally:
        session.reload()

    if result.error_count:
        logger.warning("Commit finished with %d saved, %d failed", result.success_count, result.error_count)
    else:
        logger.info("Commit finished: %d order(s) queued for upload", result.success_count)
    return result
