"""Order upload: post the pending sync queue as one batch.

Uploads are never retried automatically; a retry could insert the batch twice
on the server. Marking orders as synced is a separate step run by the caller
after the server acknowledged the batch (see ``sync_pending_orders``).
"""
import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import stock_store as ss
from stock_credentials import CredentialStore
from stock_errors import AuthError, RemoteError

logger = logging.getLogger(__name__)

FAILURE_STATUSES = ("error", "failed", "failure")


@dataclass
class UploadResult:
    success: bool
    message: str
    uploaded_count: int = 0
    order_ids: List[int] = field(default_factory=list)
    marked_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def format_order(row: Dict[str, Any]) -> Dict[str, Any]:
    """Local orders_to_sync row -> the server's upload shape."""
    return {
        "supplier_code": row.get("supplier_code") or "",
        "user_id": row.get("userid"),
        "itemcode": row.get("itemcode"),
        "barcode": row.get("barcode"),
        "quantity": row.get("quantity"),
        "rate": row.get("rate"),
        "mrp": row.get("mrp"),
        "order_date": row.get("order_date"),
        "product_name": row.get("product_name") or "",
        "created_at": row.get("created_at"),
    }


def interpret_upload_response(body: Any, count: int) -> Tuple[str, int]:
    """Return (message, uploaded_count) for an acknowledged 2xx body.

    Raises RemoteError only when the body explicitly reports a failure; any
    other 2xx answer counts as an acknowledgement.
    """
    if isinstance(body, dict):
        message = body.get("message") or body.get("detail")
        if body.get("success") is True:
            try:
                uploaded = int(body.get("uploaded_count"))
            except (TypeError, ValueError):
                uploaded = count
            return message or "Orders uploaded successfully", uploaded
        if str(body.get("status") or "").lower() == "success":
            return message or "Orders uploaded successfully", count
        if body.get("success") is False or str(body.get("status") or "").lower() in FAILURE_STATUSES:
            raise RemoteError(f"Server rejected the upload: {message or body}")
    elif isinstance(body, str) and "success" in body.lower():
        return body.strip(), count
    logger.warning("Unexpected upload response format, treating as accepted: %r", body)
    return "Orders processed by server", count


def upload_orders(client: Any, orders: List[Dict[str, Any]], credentials: CredentialStore) -> UploadResult:
    if not orders:
        return UploadResult(success=True, message="Nothing to upload")
    if not credentials.token():
        raise AuthError("Authentication token not found. Please login again.")

    formatted = [format_order(o) for o in orders]
    logger.info("Uploading %d order(s)", len(formatted))
    body = client.post_orders({"orders": formatted, "total_orders": len(formatted)})
    message, uploaded = interpret_upload_response(body, len(formatted))
    logger.info("Upload acknowledged: %s (%d order(s))", message, uploaded)
    return UploadResult(
        success=True,
        message=message,
        uploaded_count=uploaded,
        order_ids=[o["id"] for o in orders if o.get("id") is not None],
    )


def sync_pending_orders(conn: sqlite3.Connection, client: Any, credentials: CredentialStore,
                        delete: bool = False, orders: Optional[List[Dict[str, Any]]] = None) -> UploadResult:
    """Upload pending orders, then mark exactly those rows synced (or delete them).

    A crash between the server acknowledgement and the local update leaves
    the batch pending; that window is the only way an order can be sent twice.
    """
    if orders is None:
        orders = ss.get_pending_orders(conn)
    result = upload_orders(client, orders, credentials)
    if result.success and result.order_ids:
        if delete:
            result.marked_count = ss.delete_orders(conn, result.order_ids)
            logger.info("Deleted %d uploaded order(s)", result.marked_count)
        else:
            result.marked_count = ss.mark_orders_synced(conn, result.order_ids)
            logger.info("Marked %d order(s) as synced", result.marked_count)
    return result
