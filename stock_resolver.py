"""Barcode lookup against the local product catalog.

A scanned code ``X`` matches the stored barcode ``X`` exactly, and also the
variant barcodes ``"X :<suffix>"`` and ``"X:<suffix>"`` used for multi-pack
SKUs that share a base barcode.
"""
import logging
import sqlite3
from typing import Any, Dict, List

from stock_errors import NotFoundError, StoreError, ValidationError

logger = logging.getLogger(__name__)

VARIANT_DELIMITERS = (" :", ":")
NAME_SEARCH_MIN_CHARS = 2


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def resolve_barcode(conn: sqlite3.Connection, code: str) -> List[Dict[str, Any]]:
    """Return exact matches, then space-delimited variants, then colon-delimited variants.

    Raises NotFoundError when nothing matches. When several rows come back the
    caller has to let the user pick one.
    """
    code = (code or "").strip()
    if not code:
        raise ValidationError("Barcode is empty")
    try:
        groups = [conn.execute("SELECT * FROM product_data WHERE barcode = ?", (code,)).fetchall()]
        for delim in VARIANT_DELIMITERS:
            pattern = _escape_like(code + delim) + "%"
            groups.append(conn.execute(
                "SELECT * FROM product_data WHERE barcode LIKE ? ESCAPE '\\' ORDER BY barcode",
                (pattern,),
            ).fetchall())
    except sqlite3.Error as exc:
        raise StoreError(f"Barcode lookup failed for {code}: {exc}") from exc

    matches: List[Dict[str, Any]] = []
    seen = set()
    for rows in groups:
        for row in rows:
            if row["barcode"] in seen:
                continue
            seen.add(row["barcode"])
            matches.append(dict(row))
    logger.debug(
        "Barcode %s: exact=%d space-variants=%d colon-variants=%d",
        code, len(groups[0]), len(groups[1]), len(groups[2]),
    )
    if not matches:
        raise NotFoundError(f"Barcode {code} is not in the product catalog")
    return matches


def search_products(conn: sqlite3.Connection, text: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Case-insensitive name/code search for the manual lookup mode."""
    text = (text or "").strip()
    if len(text) < NAME_SEARCH_MIN_CHARS:
        raise ValidationError(f"Enter at least {NAME_SEARCH_MIN_CHARS} characters to search")
    like = "%" + _escape_like(text.lower()) + "%"
    try:
        rows = conn.execute("""
            SELECT * FROM product_data
            WHERE lower(COALESCE(name, '')) LIKE ? ESCAPE '\\'
               OR lower(COALESCE(code, '')) LIKE ? ESCAPE '\\'
            ORDER BY name COLLATE NOCASE
            LIMIT ?
        """, (like, like, int(limit))).fetchall()
    except sqlite3.Error as exc:
        raise StoreError(f"Product search failed: {exc}") from exc
    return [dict(r) for r in rows]
