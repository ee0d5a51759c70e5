"""Entry session: the list of scanned lines waiting to be committed.

Every mutation is written to ``pending_items`` first and the in-memory list is
then reloaded from the table, so ``session.items`` always mirrors the store.
"""
import logging
import math
import sqlite3
import time
from typing import Any, Dict, List, Optional, Union

import stock_store as ss
from stock_errors import DuplicateError, NotFoundError, ValidationError
from stock_resolver import resolve_barcode

logger = logging.getLogger(__name__)

_UNSET = object()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _first_number(*values: Any) -> float:
    """First value that is not None (0 counts), coerced to float."""
    for value in values:
        if value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return 0.0


def _non_negative_number(label: str, value: Any) -> float:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{label} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be a number")
    if math.isnan(number) or math.isinf(number) or number < 0:
        raise ValidationError(f"{label} must be zero or more")
    return number


def _non_negative_int(label: str, value: Any) -> int:
    number = _non_negative_number(label, value)
    if not number.is_integer():
        raise ValidationError(f"{label} must be a whole number")
    return int(number)


class StagingSession:
    def __init__(self, conn: sqlite3.Connection, supplier_code: Optional[str] = None):
        self.conn = conn
        self.supplier_code = supplier_code
        self.items: List[Dict[str, Any]] = []
        self.reload()

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    def reload(self) -> List[Dict[str, Any]]:
        self.items = ss.list_pending_items(self.conn)
        return self.items

    def find_by_barcode(self, barcode: str) -> Optional[Dict[str, Any]]:
        for item in self.items:
            if item["barcode"] == barcode:
                return item
        return ss.find_pending_by_barcode(self.conn, barcode)

    def _reject_duplicate(self, barcode: str):
        existing = self.find_by_barcode(barcode)
        if existing:
            raise DuplicateError(
                f"Product already scanned: {existing.get('name') or barcode}",
                existing=existing,
            )

    def add_resolved(self, product: Dict[str, Any]) -> Dict[str, Any]:
        """Stage a catalog product picked by scan, search or disambiguation."""
        barcode = str(product.get("barcode") or "").strip()
        if not barcode:
            raise ValidationError("Product has no barcode")
        self._reject_duplicate(barcode)
        item = {
            "barcode": barcode,
            "name": product.get("name"),
            "bmrp": _first_number(product.get("bmrp"), product.get("mrp")),
            "cost": _first_number(product.get("cost"), product.get("bmrp"), product.get("mrp")),
            "quantity": 0,
            "eCost": 0,
            "currentStock": _first_number(product.get("quantity")),
            "scannedAt": _now_ms(),
            "product": product.get("product") or "",
            "brand": product.get("brand") or "",
            "supplier_code": self.supplier_code,
            "batchSupplier": product.get("batch_supplier") or product.get("batchSupplier"),
            "isManualEntry": False,
        }
        item_id = ss.insert_pending_item(self.conn, item)
        logger.info("Staged %s (%s) as pending item %s", barcode, item["name"], item_id)
        self.reload()
        return ss.get_pending_item(self.conn, item_id)

    def add_manual(self, barcode: str, name: str, mrp: Any, cost: Any, quantity: Any) -> Dict[str, Any]:
        """Stage a product that is not in the downloaded catalog."""
        barcode = (barcode or "").strip()
        name = (name or "").strip()
        if not barcode:
            raise ValidationError("Barcode is required")
        if not name:
            raise ValidationError("Product name is required")
        mrp_value = _non_negative_number("MRP", mrp)
        cost_value = _non_negative_number("Cost", cost)
        qty_value = _non_negative_int("Quantity", quantity)
        self._reject_duplicate(barcode)
        item_id = ss.insert_pending_item(self.conn, {
            "barcode": barcode,
            "name": name,
            "bmrp": mrp_value,
            "cost": cost_value,
            "quantity": qty_value,
            "eCost": 0,
            "currentStock": 0,
            "scannedAt": _now_ms(),
            "supplier_code": self.supplier_code,
            "isManualEntry": True,
        })
        logger.info("Staged manual entry %s (%s) as pending item %s", barcode, name, item_id)
        self.reload()
        return ss.get_pending_item(self.conn, item_id)

    def scan(self, code: str) -> Union[Dict[str, Any], List[Dict[str, Any]]]:
        """Resolve a scanned code; a single match is staged and returned.

        Several matches are returned as a list and nothing is staged. No match
        raises NotFoundError so the caller can offer manual entry.
        """
        matches = resolve_barcode(self.conn, code)
        if len(matches) == 1:
            return self.add_resolved(matches[0])
        return matches

    def edit(self, item_id: int, quantity: Any = _UNSET, edited_cost: Any = _UNSET,
             batch_supplier: Any = _UNSET) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if quantity is not _UNSET:
            fields["quantity"] = _non_negative_int("Quantity", quantity)
        if edited_cost is not _UNSET:
            fields["eCost"] = _non_negative_number("Cost", edited_cost)
        if batch_supplier is not _UNSET:
            fields["batchSupplier"] = (str(batch_supplier).strip() or None) if batch_supplier is not None else None
        if not ss.update_pending_item(self.conn, item_id, fields):
            raise NotFoundError(f"Pending item {item_id} does not exist")
        self.reload()
        return ss.get_pending_item(self.conn, item_id)

    def remove(self, item_id: int) -> None:
        if not ss.delete_pending_item(self.conn, item_id):
            raise NotFoundError(f"Pending item {item_id} does not exist")
        logger.info("Removed pending item %s", item_id)
        self.reload()

    def totals(self) -> Dict[str, Any]:
        quantity = 0
        value = 0.0
        for item in self.items:
            qty = item.get("quantity") or 0
            rate = item.get("eCost") or item.get("cost") or 0
            quantity += qty
            value += qty * rate
        return {"lines": len(self.items), "quantity": quantity, "value": round(value, 2)}
