#!/usr/bin/env python3
# Local store: SQLite schema, versioned migrations, catalog upserts, staging + sync queue tables
import datetime as dt
import functools
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from stock_errors import SchemaError, StoreError

logger = logging.getLogger(__name__)

SYNC_PENDING = "pending"
SYNC_SYNCED = "synced"

# Column bodies, shared by the create step and the rebuild migrations
TABLES: Dict[str, str] = {
    "master_data": """
      code  TEXT PRIMARY KEY NOT NULL,
      name  TEXT NOT NULL,
      place TEXT
    """,
    "product_data": """
      code           TEXT NOT NULL,
      name           TEXT,
      barcode        TEXT PRIMARY KEY,
      quantity       NUMERIC,
      salesprice     NUMERIC,
      bmrp           NUMERIC,
      cost           NUMERIC,
      batch_supplier TEXT
    """,
    "pending_items": """
      id            INTEGER PRIMARY KEY AUTOINCREMENT,
      barcode       TEXT NOT NULL,
      name          TEXT,
      bmrp          REAL,
      cost          REAL,
      quantity      INTEGER,
      eCost         REAL,
      currentStock  INTEGER,
      scannedAt     INTEGER,
      product       TEXT,
      brand         TEXT,
      supplier_code TEXT,
      batchSupplier TEXT,
      isManualEntry INTEGER NOT NULL DEFAULT 0
    """,
    "orders_to_sync": """
      id            INTEGER PRIMARY KEY AUTOINCREMENT,
      supplier_code TEXT NOT NULL DEFAULT '',
      userid        TEXT NOT NULL,
      itemcode      TEXT NOT NULL,
      barcode       TEXT NOT NULL,
      quantity      INTEGER NOT NULL,
      rate          REAL NOT NULL,
      mrp           REAL NOT NULL,
      order_date    TEXT NOT NULL,
      sync_status   TEXT NOT NULL DEFAULT 'pending',
      created_at    TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
      product_name  TEXT
    """,
    "sync_info": """
      id          INTEGER PRIMARY KEY CHECK (id = 1),
      last_synced TEXT
    """,
}

INDEXES: Dict[str, List[str]] = {
    "pending_items": [
        "CREATE INDEX IF NOT EXISTS idx_pending_items_barcode ON pending_items(barcode)",
    ],
    "orders_to_sync": [
        "CREATE INDEX IF NOT EXISTS idx_orders_to_sync_status ON orders_to_sync(sync_status, created_at)",
    ],
}

EDITABLE_PENDING_FIELDS = ("quantity", "eCost", "batchSupplier")


def iso_now() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def connect(db_path: str) -> sqlite3.Connection:
    """Open the single store handle. Autocommit mode: transactions are explicit."""
    try:
        conn = sqlite3.connect(db_path, timeout=30, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
    except sqlite3.Error as exc:
        raise StoreError(f"Cannot open database {db_path}: {exc}") from exc
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """BEGIN IMMEDIATE/COMMIT with rollback on error; nests as a SAVEPOINT."""
    if conn.in_transaction:
        name = f"sp_{uuid.uuid4().hex[:12]}"
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield conn
        except BaseException:
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        else:
            conn.execute(f"RELEASE SAVEPOINT {name}")
    else:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")


def _store_op(func: Callable) -> Callable:
    """Translate raw sqlite errors into StoreError at the store boundary."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except sqlite3.Error as exc:
            raise StoreError(f"{func.__name__} failed: {exc}") from exc
    return wrapper


def _rows(cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
    return [dict(r) for r in cursor.fetchall()]


def _one(cursor: sqlite3.Cursor) -> Optional[Dict[str, Any]]:
    row = cursor.fetchone()
    return dict(row) if row else None


# ---------- SCHEMA + MIGRATIONS ----------
def _table_columns(conn: sqlite3.Connection, table: str) -> List[str]:
    return [row["name"] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]


def _declared_columns(table: str) -> List[str]:
    cols = []
    for line in TABLES[table].strip().splitlines():
        line = line.strip().rstrip(",")
        if line:
            cols.append(line.split()[0])
    return cols


def _create_table(conn: sqlite3.Connection, table: str, name: Optional[str] = None, if_not_exists: bool = True):
    guard = "IF NOT EXISTS " if if_not_exists else ""
    conn.execute(f"CREATE TABLE {guard}{name or table} ({TABLES[table]})")


def _create_indexes(conn: sqlite3.Connection, table: str):
    for sql in INDEXES.get(table, []):
        conn.execute(sql)


def _rebuild_table(conn: sqlite3.Connection, table: str, fill: Optional[Dict[str, str]] = None) -> bool:
    """Bring a legacy table to the declared column set.

    Renames the old table, creates the new one, copies the columns both share
    (plus ``fill`` expressions for new required columns) and drops the old copy.
    Returns False when the table already has the declared shape.
    """
    existing = _table_columns(conn, table)
    target = _declared_columns(table)
    if not existing:
        _create_table(conn, table)
        _create_indexes(conn, table)
        return True
    if set(existing) == set(target):
        return False
    logger.info("Migrating %s: %s -> %s", table, sorted(existing), sorted(target))
    old = f"{table}_old"
    conn.execute(f"DROP TABLE IF EXISTS {old}")
    conn.execute(f"ALTER TABLE {table} RENAME TO {old}")
    _create_table(conn, table, if_not_exists=False)
    dest: List[str] = []
    src: List[str] = []
    for col in target:
        if col in existing:
            dest.append(col)
            src.append(col)
        elif fill and col in fill:
            dest.append(col)
            src.append(fill[col])
    conn.execute(
        f"INSERT INTO {table} ({', '.join(dest)}) SELECT {', '.join(src)} FROM {old}"
    )
    conn.execute(f"DROP TABLE {old}")
    _create_indexes(conn, table)
    return True


def _migration_create_tables(conn: sqlite3.Connection):
    for table in TABLES:
        _create_table(conn, table)
        # legacy shapes get their indexes when they are rebuilt
        if set(_declared_columns(table)) <= set(_table_columns(conn, table)):
            _create_indexes(conn, table)


def _migration_product_batch_supplier(conn: sqlite3.Connection):
    conn.execute("ALTER TABLE product_data ADD COLUMN batch_supplier TEXT")


def _migration_pending_items_shape(conn: sqlite3.Connection):
    _rebuild_table(conn, "pending_items")


def _migration_orders_to_sync_shape(conn: sqlite3.Connection):
    # legacy rows predate itemcode/created_at; the barcode doubles as item code
    _rebuild_table(conn, "orders_to_sync", fill={
        "itemcode": "barcode",
        "created_at": "CURRENT_TIMESTAMP",
        "supplier_code": "''",
    })


MIGRATIONS: List[Tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "create base tables", _migration_create_tables),
    (2, "add product_data.batch_supplier", _migration_product_batch_supplier),
    (3, "rebuild pending_items", _migration_pending_items_shape),
    (4, "rebuild orders_to_sync", _migration_orders_to_sync_shape),
]
SCHEMA_VERSION = MIGRATIONS[-1][0]


def schema_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("PRAGMA user_version").fetchone()[0])


def _set_schema_version(conn: sqlite3.Connection, version: int):
    conn.execute(f"PRAGMA user_version = {int(version)}")


def init_db(conn: sqlite3.Connection) -> int:
    """Create/migrate the schema. Returns the number of migrations applied.

    Raises SchemaError on anything other than a benign duplicate-column failure;
    callers must not stage or commit against a store that failed to initialize.
    """
    try:
        current = schema_version(conn)
    except sqlite3.Error as exc:
        raise SchemaError(f"Cannot read schema version: {exc}") from exc
    applied = 0
    for version, label, step in MIGRATIONS:
        if version <= current:
            continue
        try:
            with transaction(conn):
                step(conn)
                _set_schema_version(conn, version)
        except sqlite3.OperationalError as exc:
            if "duplicate column" not in str(exc).lower():
                raise SchemaError(f"Migration {version} ({label}) failed: {exc}") from exc
            logger.info("Migration %s (%s) already applied: %s", version, label, exc)
            try:
                _set_schema_version(conn, version)
            except sqlite3.Error as ver_exc:
                raise SchemaError(f"Cannot record schema version {version}: {ver_exc}") from ver_exc
        except sqlite3.Error as exc:
            raise SchemaError(f"Migration {version} ({label}) failed: {exc}") from exc
        applied += 1
        logger.debug("Applied migration %s (%s)", version, label)
    if applied:
        logger.info("Database schema at version %s (%d migration(s) applied)", SCHEMA_VERSION, applied)
    return applied


# ---------- CATALOG (download side) ----------
@_store_op
def upsert_suppliers(conn: sqlite3.Connection, suppliers: Iterable[Dict[str, Any]]) -> int:
    stored = 0
    with transaction(conn):
        for s in suppliers:
            conn.execute(
                "INSERT OR REPLACE INTO master_data (code, name, place) VALUES (?,?,?)",
                (s["code"], s.get("name") or s["code"], s.get("place")),
            )
            stored += 1
    return stored


@_store_op
def upsert_products(conn: sqlite3.Connection, products: Iterable[Dict[str, Any]]) -> int:
    sql = """
    INSERT OR REPLACE INTO product_data (code, name, barcode, quantity, salesprice, bmrp, cost, batch_supplier)
    VALUES (:code, :name, :barcode, :quantity, :salesprice, :bmrp, :cost, :batch_supplier)
    """
    stored = 0
    with transaction(conn):
        for p in products:
            conn.execute(sql, {
                "code": p.get("code") or p["barcode"],
                "name": p.get("name"),
                "barcode": p["barcode"],
                "quantity": p.get("quantity") or 0,
                "salesprice": p.get("salesprice") or 0,
                "bmrp": p.get("bmrp") or 0,
                "cost": p.get("cost") or 0,
                "batch_supplier": p.get("batch_supplier"),
            })
            stored += 1
    return stored


@_store_op
def fetch_suppliers(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    return _rows(conn.execute("SELECT code, name, place FROM master_data ORDER BY name COLLATE NOCASE"))


@_store_op
def search_suppliers(conn: sqlite3.Connection, text: str) -> List[Dict[str, Any]]:
    like = f"%{text.strip()}%"
    return _rows(conn.execute(
        "SELECT code, name, place FROM master_data WHERE name LIKE ? OR code LIKE ? ORDER BY name COLLATE NOCASE",
        (like, like),
    ))


@_store_op
def get_product_by_barcode(conn: sqlite3.Connection, barcode: str) -> Optional[Dict[str, Any]]:
    return _one(conn.execute("SELECT * FROM product_data WHERE barcode = ?", (barcode,)))


@_store_op
def product_code_for_barcode(conn: sqlite3.Connection, barcode: str) -> Optional[str]:
    row = conn.execute("SELECT code FROM product_data WHERE barcode = ?", (barcode,)).fetchone()
    if not row or not row["code"]:
        return None
    return row["code"]


@_store_op
def update_product_stock(conn: sqlite3.Connection, barcode: str, quantity: float, cost: float) -> bool:
    cur = conn.execute(
        "UPDATE product_data SET quantity = ?, cost = ? WHERE barcode = ?",
        (quantity, cost, barcode),
    )
    return cur.rowcount > 0


# ---------- PENDING ITEMS (staging) ----------
@_store_op
def insert_pending_item(conn: sqlite3.Connection, item: Dict[str, Any]) -> int:
    cur = conn.execute("""
        INSERT INTO pending_items
          (barcode, name, bmrp, cost, quantity, eCost, currentStock, scannedAt,
           product, brand, supplier_code, batchSupplier, isManualEntry)
        VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
    """, (
        item["barcode"],
        item.get("name"),
        item.get("bmrp") or 0,
        item.get("cost") or 0,
        item.get("quantity") or 0,
        item.get("eCost") or 0,
        item.get("currentStock") or 0,
        item["scannedAt"],
        item.get("product") or "",
        item.get("brand") or "",
        item.get("supplier_code"),
        item.get("batchSupplier"),
        1 if item.get("isManualEntry") else 0,
    ))
    return int(cur.lastrowid)


@_store_op
def update_pending_item(conn: sqlite3.Connection, item_id: int, fields: Dict[str, Any]) -> bool:
    """Only quantity, eCost and batchSupplier are editable after staging."""
    unknown = set(fields) - set(EDITABLE_PENDING_FIELDS)
    if unknown:
        raise ValueError(f"Pending item fields are not editable: {sorted(unknown)}")
    if not fields:
        row = conn.execute("SELECT 1 FROM pending_items WHERE id = ?", (item_id,)).fetchone()
        return row is not None
    assignments = ", ".join(f"{col} = ?" for col in fields)
    cur = conn.execute(
        f"UPDATE pending_items SET {assignments} WHERE id = ?",
        (*fields.values(), item_id),
    )
    return cur.rowcount > 0


@_store_op
def delete_pending_item(conn: sqlite3.Connection, item_id: int) -> bool:
    return conn.execute("DELETE FROM pending_items WHERE id = ?", (item_id,)).rowcount > 0


@_store_op
def delete_pending_items(conn: sqlite3.Connection, item_ids: Iterable[int]) -> int:
    cur = conn.executemany("DELETE FROM pending_items WHERE id = ?", [(i,) for i in item_ids])
    return max(cur.rowcount, 0)


@_store_op
def list_pending_items(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    return _rows(conn.execute("SELECT * FROM pending_items ORDER BY scannedAt DESC, id DESC"))


@_store_op
def get_pending_item(conn: sqlite3.Connection, item_id: int) -> Optional[Dict[str, Any]]:
    return _one(conn.execute("SELECT * FROM pending_items WHERE id = ?", (item_id,)))


@_store_op
def find_pending_by_barcode(conn: sqlite3.Connection, barcode: str) -> Optional[Dict[str, Any]]:
    return _one(conn.execute("SELECT * FROM pending_items WHERE barcode = ? LIMIT 1", (barcode,)))


# ---------- ORDERS TO SYNC (upload side) ----------
@_store_op
def insert_order_to_sync(conn: sqlite3.Connection, order: Dict[str, Any]) -> int:
    cur = conn.execute("""
        INSERT INTO orders_to_sync
          (supplier_code, userid, itemcode, barcode, quantity, rate, mrp, order_date,
           sync_status, created_at, product_name)
        VALUES (?,?,?,?,?,?,?,?,?,?,?)
    """, (
        order.get("supplier_code") or "",
        order["userid"],
        order["itemcode"],
        order["barcode"],
        order["quantity"],
        order["rate"],
        order["mrp"],
        order["order_date"],
        SYNC_PENDING,
        order.get("created_at") or iso_now(),
        order.get("product_name") or "",
    ))
    return int(cur.lastrowid)


@_store_op
def get_pending_orders(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    return _rows(conn.execute(
        "SELECT * FROM orders_to_sync WHERE sync_status = ? ORDER BY created_at, id",
        (SYNC_PENDING,),
    ))


@_store_op
def mark_orders_synced(conn: sqlite3.Connection, order_ids: Optional[Iterable[int]] = None) -> int:
    """pending -> synced for the given ids (every pending row when ids is None)."""
    with transaction(conn):
        if order_ids is None:
            cur = conn.execute(
                "UPDATE orders_to_sync SET sync_status = ? WHERE sync_status = ?",
                (SYNC_SYNCED, SYNC_PENDING),
            )
        else:
            cur = conn.executemany(
                "UPDATE orders_to_sync SET sync_status = ? WHERE id = ? AND sync_status = ?",
                [(SYNC_SYNCED, oid, SYNC_PENDING) for oid in order_ids],
            )
    return max(cur.rowcount, 0)


@_store_op
def delete_orders(conn: sqlite3.Connection, order_ids: Iterable[int]) -> int:
    with transaction(conn):
        cur = conn.executemany("DELETE FROM orders_to_sync WHERE id = ?", [(oid,) for oid in order_ids])
    return max(cur.rowcount, 0)


@_store_op
def purge_synced_orders(conn: sqlite3.Connection) -> int:
    with transaction(conn):
        cur = conn.execute("DELETE FROM orders_to_sync WHERE sync_status = ?", (SYNC_SYNCED,))
    return cur.rowcount


# ---------- SYNC INFO ----------
@_store_op
def set_last_synced(conn: sqlite3.Connection, timestamp: Optional[str] = None) -> str:
    ts = timestamp or iso_now()
    conn.execute("INSERT OR REPLACE INTO sync_info (id, last_synced) VALUES (1, ?)", (ts,))
    return ts


@_store_op
def get_last_synced(conn: sqlite3.Connection) -> Optional[str]:
    row = conn.execute("SELECT last_synced FROM sync_info WHERE id = 1").fetchone()
    return row["last_synced"] if row else None


@_store_op
def local_data_stats(conn: sqlite3.Connection) -> Dict[str, Any]:
    """Counts shown on the sync dashboard."""
    master = conn.execute("SELECT COUNT(*) AS c FROM master_data").fetchone()["c"]
    product = conn.execute("SELECT COUNT(*) AS c FROM product_data").fetchone()["c"]
    staged = conn.execute("SELECT COUNT(*) AS c FROM pending_items").fetchone()["c"]
    row = conn.execute(
        "SELECT COUNT(*) AS c, COALESCE(SUM(quantity), 0) AS q FROM orders_to_sync WHERE sync_status = ?",
        (SYNC_PENDING,),
    ).fetchone()
    return {
        "master_count": int(master),
        "product_count": int(product),
        "pending_items": int(staged),
        "pending_orders": int(row["c"]),
        "pending_quantity": row["q"],
        "last_synced": get_last_synced(conn),
    }
