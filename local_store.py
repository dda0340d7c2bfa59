#!/usr/bin/env python3
# Local store: optimistic device view of transactions, credit customers and products
import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from pos_errors import UnknownEntityError
from pos_models import (
    CreditCustomer,
    OperationKind,
    Product,
    SyncOperation,
    Transaction,
    iso_now,
    parse_many,
)
from sync_queue import SyncQueue

log = logging.getLogger(__name__)

# Snapshot keys the desktop uses, with the snake_case spelling accepted too
SNAPSHOT_KEYS = {
    "transactions": ("transactions",),
    "credit_customers": ("creditCustomers", "credit_customers"),
    "products": ("products",),
    "categories": ("categories",),
}

ENTITY_TABLES = ("transactions", "credit_customers", "products")


def connect(db_path: str = "pos_mobile.db") -> sqlite3.Connection:
    # The scheduler thread shares this connection; SyncQueue.lock serializes access
    conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def ensure_store_tables(conn: sqlite3.Connection):
    for table in ENTITY_TABLES:
        conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {table} (
          id           TEXT PRIMARY KEY,
          payload_json TEXT NOT NULL,
          modified_utc TEXT NOT NULL
        )
        """)
    conn.execute("""
    CREATE TABLE IF NOT EXISTS settings (
      key   TEXT PRIMARY KEY,
      value TEXT
    )
    """)
    conn.commit()


@dataclass(frozen=True)
class LocalMutation:
    """A device-originated change. Applying it always queues exactly one SyncOperation."""
    kind: str
    payload: Dict[str, Any]

    def to_operation(self) -> SyncOperation:
        return SyncOperation.create(self.kind, self.payload)


def _snapshot_rows(snapshot: Dict[str, Any], key: str) -> Optional[list]:
    for name in SNAPSHOT_KEYS[key]:
        if name in snapshot and isinstance(snapshot[name], list):
            return snapshot[name]
    return None


class LocalStore:
    def __init__(self, conn: sqlite3.Connection, queue: SyncQueue):
        self.conn = conn
        self.queue = queue
        self._lock = queue.lock
        self._transactions: Dict[str, Transaction] = {}
        self._customers: Dict[str, CreditCustomer] = {}
        self._products: Dict[str, Product] = {}
        self._categories: List[str] = []
        ensure_store_tables(conn)
        self._load()

    def _load(self):
        self._transactions = self._load_table("transactions", Transaction.from_dict)
        self._customers = self._load_table("credit_customers", CreditCustomer.from_dict)
        self._products = self._load_table("products", Product.from_dict)
        raw = self.get_setting("categories")
        if raw:
            try:
                self._categories = [str(c) for c in json.loads(raw)]
            except (TypeError, ValueError):
                self._categories = []

    def _load_table(self, table: str, parser: Callable[[Dict[str, Any]], Any]) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for row in self.conn.execute(f"SELECT id, payload_json FROM {table} ORDER BY rowid ASC"):
            try:
                out[row["id"]] = parser(json.loads(row["payload_json"]))
            except (TypeError, ValueError) as exc:
                log.error("Skipping unreadable %s row %s: %s", table, row["id"], exc)
        return out

    # ---------- optimistic local writes ----------
    def apply_local(self, mutation: LocalMutation) -> SyncOperation:
        """Apply ``mutation`` in memory and queue its SyncOperation in the same step."""
        with self._lock:
            kind = mutation.kind
            payload = mutation.payload
            if kind == OperationKind.CREATE_TRANSACTION.value:
                txn = Transaction.from_dict(payload)
                self._transactions[txn.id] = txn
                self._persist("transactions", txn.id, txn.to_dict())
            elif kind == OperationKind.ADD_CREDIT_CUSTOMER.value:
                customer = CreditCustomer.from_dict(payload)
                self._customers[customer.id] = customer
                self._persist("credit_customers", customer.id, customer.to_dict())
            elif kind == OperationKind.UPDATE_CREDIT_CUSTOMER.value:
                customer_id = payload.get("id")
                current = self._customers.get(customer_id)
                if current is None:
                    log.error("Refusing to queue %s for unknown customer %r", kind, customer_id)
                    raise UnknownEntityError("credit customer", customer_id)
                updated = current.with_updates(payload.get("updates") or {})
                self._customers[updated.id] = updated
                self._persist("credit_customers", updated.id, updated.to_dict())
            else:
                raise ValueError(f"Unsupported local mutation: {kind}")
            return self.queue.enqueue(mutation.to_operation())

    # ---------- authoritative merges ----------
    def apply_remote(self, snapshot: Dict[str, Any]) -> Dict[str, int]:
        """
        Merge a pulled snapshot. Remote wins by id, except entities with an
        operation still in the queue: those keep their local version, and are
        kept even if the snapshot does not list them yet. Collections missing
        from the snapshot are left alone.
        """
        summary: Dict[str, int] = {}
        if not isinstance(snapshot, dict):
            log.warning("Ignoring snapshot of type %s", type(snapshot).__name__)
            return summary
        with self._lock:
            protected = self.queue.pending_targets()
            rows = _snapshot_rows(snapshot, "transactions")
            if rows is not None:
                self._transactions, summary["transactions"] = self._merge(
                    "transactions", self._transactions, rows, Transaction.from_dict, protected)
            rows = _snapshot_rows(snapshot, "credit_customers")
            if rows is not None:
                self._customers, summary["credit_customers"] = self._merge(
                    "credit_customers", self._customers, rows, CreditCustomer.from_dict, protected)
            rows = _snapshot_rows(snapshot, "products")
            if rows is not None:
                self._products, summary["products"] = self._merge(
                    "products", self._products, rows, Product.from_dict, protected)
            rows = _snapshot_rows(snapshot, "categories")
            if rows is not None:
                self._categories = _category_names(rows)
                self.set_setting("categories", json.dumps(self._categories))
                summary["categories"] = len(self._categories)
        return summary

    def _merge(
        self,
        table: str,
        current: Dict[str, Any],
        rows: list,
        parser: Callable[[Dict[str, Any]], Any],
        protected: Set[str],
    ) -> Tuple[Dict[str, Any], int]:
        remote, skipped = parse_many(rows, parser)
        if skipped:
            log.warning("Skipped %d malformed %s row(s) in snapshot", skipped, table)
        merged: Dict[str, Any] = {}
        kept_local = 0
        for entity in remote:
            if entity.id in protected and entity.id in current:
                merged[entity.id] = current[entity.id]
                kept_local += 1
            else:
                merged[entity.id] = entity
        for entity_id, entity in current.items():
            if entity_id not in merged and entity_id in protected:
                merged[entity_id] = entity
                kept_local += 1
        if kept_local:
            log.info("Kept %d unconfirmed local %s over the snapshot", kept_local, table)
        self._replace_table(table, merged)
        return merged, len(merged)

    def apply_corrections(self, entities: Iterable[Dict[str, Any]]) -> int:
        """Apply entity versions returned with a push acknowledgement."""
        applied = 0
        with self._lock:
            protected = self.queue.pending_targets()
            for raw in entities or []:
                if not isinstance(raw, dict):
                    continue
                kind = str(raw.get("type") or "").lower()
                try:
                    if kind == "transaction":
                        entity, bucket, table = Transaction.from_dict(raw), self._transactions, "transactions"
                    elif kind in ("credit-customer", "credit_customer", "creditcustomer"):
                        entity, bucket, table = CreditCustomer.from_dict(raw), self._customers, "credit_customers"
                    elif kind == "product":
                        entity, bucket, table = Product.from_dict(raw), self._products, "products"
                    else:
                        log.debug("Ignoring correction of unknown type %r", kind)
                        continue
                except ValueError as exc:
                    log.warning("Ignoring malformed %s correction: %s", kind, exc)
                    continue
                if entity.id in protected:
                    # A newer local change is still queued for this entity
                    continue
                bucket[entity.id] = entity
                self._persist(table, entity.id, entity.to_dict())
                applied += 1
        return applied

    # ---------- persistence ----------
    def _persist(self, table: str, entity_id: str, payload: Dict[str, Any]):
        try:
            with self.conn:
                self.conn.execute(f"""
                    INSERT INTO {table} (id, payload_json, modified_utc) VALUES (?,?,?)
                    ON CONFLICT(id) DO UPDATE SET
                      payload_json=excluded.payload_json,
                      modified_utc=excluded.modified_utc
                """, (entity_id, json.dumps(payload, separators=(",", ":")), iso_now()))
        except sqlite3.Error as exc:
            log.warning("Failed to persist %s %s (kept in memory): %s", table, entity_id, exc)

    def _replace_table(self, table: str, entities: Dict[str, Any]):
        now = iso_now()
        try:
            with self.conn:
                self.conn.execute(f"DELETE FROM {table}")
                self.conn.executemany(
                    f"INSERT INTO {table} (id, payload_json, modified_utc) VALUES (?,?,?)",
                    [(eid, json.dumps(e.to_dict(), separators=(",", ":")), now) for eid, e in entities.items()],
                )
        except sqlite3.Error as exc:
            log.warning("Failed to persist merged %s (kept in memory): %s", table, exc)

    def get_setting(self, key: str) -> Optional[str]:
        with self._lock:
            try:
                row = self.conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
            except sqlite3.Error as exc:
                log.warning("Failed to read setting %s: %s", key, exc)
                return None
            return row["value"] if row else None

    def set_setting(self, key: str, value: Optional[str]):
        with self._lock:
            try:
                with self.conn:
                    self.conn.execute("""
                        INSERT INTO settings (key, value) VALUES (?, ?)
                        ON CONFLICT(key) DO UPDATE SET value=excluded.value
                    """, (key, value))
            except sqlite3.Error as exc:
                log.warning("Failed to save setting %s: %s", key, exc)

    # ---------- read-only views ----------
    def transactions(self) -> List[Transaction]:
        with self._lock:
            return list(self._transactions.values())

    def get_transaction(self, txn_id: str) -> Optional[Transaction]:
        with self._lock:
            return self._transactions.get(txn_id)

    def has_transaction(self, txn_id: str) -> bool:
        with self._lock:
            return txn_id in self._transactions

    def credit_customers(self) -> List[CreditCustomer]:
        with self._lock:
            return list(self._customers.values())

    def get_credit_customer(self, customer_id: str) -> Optional[CreditCustomer]:
        with self._lock:
            return self._customers.get(customer_id)

    def products(self) -> List[Product]:
        with self._lock:
            return list(self._products.values())

    def categories(self) -> List[str]:
        with self._lock:
            if self._categories:
                return list(self._categories)
            seen: Dict[str, None] = {}
            for p in self._products.values():
                if p.category:
                    seen.setdefault(p.category, None)
            return list(seen)


def _category_names(rows: list) -> List[str]:
    names: List[str] = []
    for row in rows:
        name = row.get("name") if isinstance(row, dict) else row
        if name not in (None, "") and str(name) not in names:
            names.append(str(name))
    return names
