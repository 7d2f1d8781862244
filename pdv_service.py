#!/usr/bin/env python3
# PDV local store: SQLite sync queue + entity cache + NDJSON backups
import os, sys, json, uuid, sqlite3, argparse, datetime as dt
from pathlib import Path
from typing import List, Dict, Any, Optional

DB_PATH = os.environ.get("PDV_DB_PATH", "pdv.db")
BACKUP_DIR = os.environ.get("PDV_BACKUP_DIR", "pdv_backup")

QUEUE_STATUSES = ("pending", "syncing", "synced", "failed", "conflict")
ENTITY_TYPES = ("sale", "stock_movement", "cash_movement", "fiscal_document")
DEFAULT_MAX_RETRIES = 5


def iso_now() -> str:
    return dt.datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


def connect(db_path: str = DB_PATH) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
    init_db(conn)
    return conn


def init_db(conn: sqlite3.Connection):
    _ensure_queue_table(conn)
    _ensure_cache_tables(conn)
    conn.commit()


def _ensure_queue_table(conn: sqlite3.Connection):
    """Durable queue of operations waiting for the backend."""
    conn.execute("""
    CREATE TABLE IF NOT EXISTS sync_queue (
      id               TEXT PRIMARY KEY,
      entity_type      TEXT NOT NULL,
      payload_json     TEXT NOT NULL,
      priority         INTEGER NOT NULL DEFAULT 5,
      retry_count      INTEGER NOT NULL DEFAULT 0,
      max_retries      INTEGER NOT NULL DEFAULT 5,
      status           TEXT NOT NULL DEFAULT 'pending',
      error            TEXT,
      created_utc      TEXT NOT NULL,
      last_attempt_utc TEXT
    )
    """)
    conn.execute("""
    CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status, priority, created_utc)
    """)


def _ensure_cache_tables(conn: sqlite3.Connection):
    conn.execute("""
    CREATE TABLE IF NOT EXISTS entity_cache (
      key         TEXT PRIMARY KEY,
      entity_type TEXT NOT NULL,
      company_id  TEXT,
      data_json   TEXT NOT NULL,
      cached_utc  TEXT NOT NULL
    )
    """)
    conn.execute("""
    CREATE INDEX IF NOT EXISTS idx_entity_cache_type ON entity_cache(entity_type, company_id)
    """)
    conn.execute("""
    CREATE TABLE IF NOT EXISTS meta (
      key   TEXT PRIMARY KEY,
      value TEXT
    )
    """)


def _row_to_item(row: sqlite3.Row) -> Dict[str, Any]:
    item = dict(row)
    item["payload"] = json.loads(item.pop("payload_json") or "{}")
    return item


# ---------- SYNC QUEUE ----------
def enqueue(conn: sqlite3.Connection, entity_type: str, payload: Dict[str, Any],
            priority: int = 5, max_retries: int = DEFAULT_MAX_RETRIES) -> str:
    """Queue an operation for the backend. Lower priority number syncs first."""
    if entity_type not in ENTITY_TYPES:
        raise ValueError(f"Unknown entity type {entity_type!r}")
    item_id = str(uuid.uuid4())
    conn.execute("""
        INSERT INTO sync_queue (id, entity_type, payload_json, priority, retry_count, max_retries, status, created_utc)
        VALUES (?,?,?,?,0,?,'pending',?)
    """, (item_id, entity_type, json.dumps(payload, separators=(",", ":"), default=str),
          int(priority), int(max_retries), iso_now()))
    conn.commit()
    return item_id


def get_item(conn: sqlite3.Connection, item_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM sync_queue WHERE id=?", (item_id,)).fetchone()
    return _row_to_item(row) if row else None


def get_pending(conn: sqlite3.Connection, limit: int = 50) -> List[Dict[str, Any]]:
    rows = conn.execute("""
        SELECT * FROM sync_queue WHERE status='pending'
        ORDER BY priority ASC, created_utc ASC, rowid ASC LIMIT ?
    """, (limit,)).fetchall()
    return [_row_to_item(r) for r in rows]


def claim_item(conn: sqlite3.Connection, item_id: str) -> bool:
    """Move one pending item to syncing; False when another pusher got it first."""
    cur = conn.execute("""
        UPDATE sync_queue SET status='syncing', last_attempt_utc=? WHERE id=? AND status='pending'
    """, (iso_now(), item_id))
    conn.commit()
    return cur.rowcount == 1


def update_status(conn: sqlite3.Connection, item_id: str, status: str, error: Optional[str] = None):
    """Set status after a sync attempt; moving back to pending counts as a retry."""
    if status not in QUEUE_STATUSES:
        raise ValueError(f"Unknown queue status {status!r}")
    bump = 1 if status == "pending" else 0
    conn.execute("""
        UPDATE sync_queue
           SET status=?, last_attempt_utc=?, error=COALESCE(?, error), retry_count=retry_count+?
         WHERE id=?
    """, (status, iso_now(), error, bump, item_id))
    conn.commit()


def handle_failure(conn: sqlite3.Connection, item_id: str, error: str) -> Optional[str]:
    """Count a failed attempt: back to pending until max_retries, then failed."""
    row = conn.execute("SELECT retry_count, max_retries FROM sync_queue WHERE id=?", (item_id,)).fetchone()
    if not row:
        return None
    retries = int(row["retry_count"]) + 1
    status = "failed" if retries >= int(row["max_retries"]) else "pending"
    conn.execute("""
        UPDATE sync_queue SET retry_count=?, status=?, error=?, last_attempt_utc=? WHERE id=?
    """, (retries, status, error, iso_now(), item_id))
    conn.commit()
    return status


def queue_stats(conn: sqlite3.Connection) -> Dict[str, int]:
    stats = {st: 0 for st in QUEUE_STATUSES}
    for row in conn.execute("SELECT status, COUNT(*) AS c FROM sync_queue GROUP BY status"):
        stats[row["status"]] = int(row["c"])
    return stats


def cleanup(conn: sqlite3.Connection, older_than_seconds: float = 24 * 60 * 60) -> int:
    """Delete synced/failed items created before the cutoff."""
    cutoff = (dt.datetime.utcnow() - dt.timedelta(seconds=older_than_seconds)).replace(microsecond=0).isoformat() + "Z"
    cur = conn.execute("""
        DELETE FROM sync_queue WHERE status IN ('synced','failed') AND created_utc < ?
    """, (cutoff,))
    conn.commit()
    return cur.rowcount


def retry_failed(conn: sqlite3.Connection) -> int:
    cur = conn.execute("""
        UPDATE sync_queue SET status='pending', retry_count=0, error=NULL WHERE status='failed'
    """)
    conn.commit()
    return cur.rowcount


# ---------- ENTITY CACHE ----------
def cache_entities(conn: sqlite3.Connection, entity_type: str, company_id: Optional[str], items: List[Dict[str, Any]]) -> int:
    now = iso_now()
    count = 0
    for item in items:
        key_id = item.get("id")
        if key_id is None:
            continue
        conn.execute("""
            INSERT INTO entity_cache (key, entity_type, company_id, data_json, cached_utc) VALUES (?,?,?,?,?)
            ON CONFLICT(key) DO UPDATE SET
                company_id=excluded.company_id,
                data_json=excluded.data_json,
                cached_utc=excluded.cached_utc
        """, (f"{entity_type}:{key_id}", entity_type, company_id,
              json.dumps(item, separators=(",", ":"), default=str), now))
        count += 1
    conn.commit()
    return count


def get_cached_entities(conn: sqlite3.Connection, entity_type: str, company_id: Optional[str] = None) -> List[Dict[str, Any]]:
    if company_id is None:
        rows = conn.execute("SELECT data_json FROM entity_cache WHERE entity_type=? ORDER BY rowid", (entity_type,))
    else:
        rows = conn.execute(
            "SELECT data_json FROM entity_cache WHERE entity_type=? AND company_id=? ORDER BY rowid",
            (entity_type, company_id)
        )
    return [json.loads(r["data_json"]) for r in rows]


def clear_entity_cache(conn: sqlite3.Connection, entity_type: Optional[str] = None) -> int:
    if entity_type is None:
        cur = conn.execute("DELETE FROM entity_cache")
    else:
        cur = conn.execute("DELETE FROM entity_cache WHERE entity_type=?", (entity_type,))
    conn.commit()
    return cur.rowcount


def set_meta(conn: sqlite3.Connection, key: str, value: Optional[str]):
    conn.execute("""
        INSERT INTO meta (key, value) VALUES (?,?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
    """, (key, value))
    conn.commit()


def get_meta(conn: sqlite3.Connection, key: str) -> Optional[str]:
    row = conn.execute("SELECT value FROM meta WHERE key=?", (key,)).fetchone()
    return row["value"] if row else None


# ---------- SALE ITEMS ----------
def _as_float(value: Any) -> float:
    if value in (None, "", False):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _normalize_sale_item(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    # cart-line shape carries id/price, stored sale items carry product_id/unit_price
    if "product_id" in raw:
        product_id = raw.get("product_id")
        unit_price = raw.get("unit_price", raw.get("price"))
    else:
        product_id = raw.get("id") or raw.get("item_id")
        unit_price = raw.get("price", raw.get("unit_price", raw.get("rate")))
    if not product_id:
        return None
    quantity = raw.get("quantity", raw.get("qty"))
    item = {
        "product_id": str(product_id),
        "name": raw.get("name") or raw.get("item_name") or "",
        "sku": raw.get("sku") or "",
        "quantity": round(_as_float(quantity), 3),
        "unit_price": round(_as_float(unit_price), 2),
        "unit": raw.get("unit") or "UN",
        "discount_percent": _as_float(raw.get("discount_percent")),
    }
    if raw.get("ncm"):
        item["ncm"] = raw["ncm"]
    if raw.get("category"):
        item["category"] = raw["category"]
    return item


def normalize_sale_items(raw: Any) -> List[Dict[str, Any]]:
    """
    Accepts every historical items payload and returns SaleItem dicts:
      - JSON string of any of the shapes below
      - {'items': [...]} wrapper
      - [ {'product_id', 'unit_price', 'quantity', ...} ]     (sale item)
      - [ {'id', 'price', 'quantity', ...} ]                  (cart line)
    Items without a product id or with non-positive quantity are dropped.
    """
    if raw is None:
        return []
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="ignore")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw.strip() else []
        except ValueError:
            return []
    if isinstance(raw, dict):
        raw = raw.get("items") or raw.get("items_json") or []
        if isinstance(raw, str):
            return normalize_sale_items(raw)
    if not isinstance(raw, (list, tuple)):
        return []
    items = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        item = _normalize_sale_item(entry)
        if item and item["quantity"] > 0:
            items.append(item)
    return items


# ---------- BACKUPS ----------
def ensure_dir(p: str):
    Path(p).mkdir(parents=True, exist_ok=True)


def backup_ndjson(conn: sqlite3.Connection, day: Optional[str] = None, backup_dir: Optional[str] = None) -> Path:
    """
    day: 'YYYY-MM-DD' in UTC. Defaults to today.
    Writes every queued sale created that day as one JSON object per line.
    """
    if day is None:
        day = dt.datetime.utcnow().date().isoformat()
    target_dir = backup_dir or BACKUP_DIR
    ensure_dir(target_dir)
    start = day + "T00:00:00Z"
    end = (dt.datetime.fromisoformat(day) + dt.timedelta(days=1)).date().isoformat() + "T00:00:00Z"

    sales_path = Path(target_dir) / f"sales_{day}.ndjson"
    with open(sales_path, "w", encoding="utf-8") as f:
        q = """
        SELECT id, status, created_utc, payload_json FROM sync_queue
        WHERE entity_type='sale' AND created_utc >= ? AND created_utc < ? ORDER BY created_utc
        """
        for r in conn.execute(q, (start, end)):
            record = {"id": r["id"], "status": r["status"], "created_utc": r["created_utc"],
                      "payload": json.loads(r["payload_json"])}
            f.write(json.dumps(record, separators=(",", ":")) + "\n")
    return sales_path


def main():
    ap = argparse.ArgumentParser(description="PDV local store")
    ap.add_argument("--init", action="store_true", help="Initialize database schema")
    ap.add_argument("--push", action="store_true", help="Push pending queue items to the backend")
    ap.add_argument("--stats", action="store_true", help="Print queue counts by status")
    ap.add_argument("--cleanup", action="store_true", help="Delete synced/failed items older than a day")
    ap.add_argument("--retry-failed", action="store_true", help="Reset failed items to pending")
    ap.add_argument("--backup", action="store_true", help="Write NDJSON backup for today")
    ap.add_argument("--db", default=DB_PATH, help="Path to SQLite DB")
    args = ap.parse_args()

    conn = connect(args.db)

    if args.init:
        print("Initialized schema in", args.db)

    if args.retry_failed:
        print(f"Reset {retry_failed(conn)} failed item(s)")

    if args.push:
        import sync_worker
        result = sync_worker.push_pending(conn, sync_worker.build_client())
        print(f"Pushed: synced={result['synced']}, failed={result['failed']}")

    if args.cleanup:
        print(f"Removed {cleanup(conn)} old item(s)")

    if args.backup:
        print("Backup written to", backup_ndjson(conn))

    if args.stats:
        json.dump(queue_stats(conn), sys.stdout, indent=2)
        print()


if __name__ == "__main__":
    main()
