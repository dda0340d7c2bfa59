"""
Ordered log of mutations not yet confirmed by the remote authority.

The in-memory list is the source of truth for the running process and the
``outbox`` table mirrors it so pending work survives a restart. A failed
disk write is logged and the operation stays queued in memory.

Operations leave the queue only through ``acknowledge``. ``requeue`` bumps
the attempt count in place, so the drain order never changes.
"""
import json
import logging
import sqlite3
import threading
from dataclasses import replace
from typing import List, Optional, Set

from pos_models import CREATE_KINDS, SyncOperation

log = logging.getLogger(__name__)


def ensure_outbox_table(conn: sqlite3.Connection):
    conn.execute("""
    CREATE TABLE IF NOT EXISTS outbox (
      seq          INTEGER PRIMARY KEY,
      op_id        TEXT NOT NULL UNIQUE,
      kind         TEXT NOT NULL,
      ref_id       TEXT,
      dedup_key    TEXT NOT NULL,
      created_utc  TEXT NOT NULL,
      payload_json TEXT NOT NULL,
      attempts     INTEGER NOT NULL DEFAULT 0,
      last_error   TEXT
    )
    """)
    conn.commit()


class SyncQueue:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        # Shared with LocalStore so entity writes and enqueues serialize together
        self.lock = threading.RLock()
        self._ops: List[SyncOperation] = []
        self._last_seq = 0
        ensure_outbox_table(conn)
        self._load()

    def _load(self):
        rows = self.conn.execute("""
            SELECT seq, op_id, kind, created_utc, payload_json, attempts, last_error
            FROM outbox ORDER BY seq ASC
        """).fetchall()
        for r in rows:
            self._last_seq = max(self._last_seq, int(r["seq"]))
            try:
                payload = json.loads(r["payload_json"])
            except (TypeError, ValueError):
                log.error("Dropping unreadable outbox row seq=%s op=%s", r["seq"], r["op_id"])
                continue
            self._ops.append(SyncOperation(
                kind=r["kind"],
                payload=payload,
                id=r["op_id"],
                created_at=r["created_utc"],
                attempts=int(r["attempts"] or 0),
                last_error=r["last_error"],
                seq=int(r["seq"]),
            ))
        if self._ops:
            log.info("Loaded %d pending operation(s) from outbox", len(self._ops))

    # ---------- writes ----------
    def enqueue(self, op: SyncOperation) -> SyncOperation:
        """Append ``op`` and return the queued copy. Never raises for storage errors."""
        with self.lock:
            if op.kind in CREATE_KINDS:
                for existing in self._ops:
                    if existing.dedup_key == op.dedup_key:
                        log.info("Skipping duplicate %s already pending as %s", op.dedup_key, existing.id)
                        return existing
            self._last_seq += 1
            queued = replace(op, seq=self._last_seq)
            self._ops.append(queued)
            try:
                with self.conn:
                    self.conn.execute("""
                        INSERT INTO outbox (seq, op_id, kind, ref_id, dedup_key, created_utc, payload_json, attempts, last_error)
                        VALUES (?,?,?,?,?,?,?,?,?)
                    """, (
                        queued.seq, queued.id, queued.kind, queued.target_id, queued.dedup_key,
                        queued.created_at, json.dumps(queued.payload, separators=(",", ":")),
                        queued.attempts, queued.last_error,
                    ))
            except sqlite3.Error as exc:
                log.warning("Outbox write failed for %s (%s); holding it in memory only", queued.dedup_key, exc)
            return queued

    def acknowledge(self, op_id: str) -> bool:
        """Remove a confirmed operation. Returns False when it was already gone."""
        with self.lock:
            idx = self._index(op_id)
            if idx is None:
                return False
            del self._ops[idx]
            try:
                with self.conn:
                    self.conn.execute("DELETE FROM outbox WHERE op_id=?", (op_id,))
            except sqlite3.Error as exc:
                log.warning("Outbox delete failed for %s: %s", op_id, exc)
            return True

    def requeue(self, op_id: str, error: Optional[str] = None) -> Optional[SyncOperation]:
        """Record a failed attempt. The operation keeps its position."""
        with self.lock:
            idx = self._index(op_id)
            if idx is None:
                return None
            updated = replace(self._ops[idx], attempts=self._ops[idx].attempts + 1, last_error=error)
            self._ops[idx] = updated
            try:
                with self.conn:
                    self.conn.execute(
                        "UPDATE outbox SET attempts=?, last_error=? WHERE op_id=?",
                        (updated.attempts, error, op_id),
                    )
            except sqlite3.Error as exc:
                log.warning("Outbox attempt update failed for %s: %s", op_id, exc)
            return updated

    # ---------- reads ----------
    def peek_batch(self, n: int) -> List[SyncOperation]:
        with self.lock:
            return list(self._ops[:max(0, n)])

    def get(self, op_id: str) -> Optional[SyncOperation]:
        with self.lock:
            idx = self._index(op_id)
            return self._ops[idx] if idx is not None else None

    def all(self) -> List[SyncOperation]:
        with self.lock:
            return list(self._ops)

    def pending_count(self) -> int:
        with self.lock:
            return len(self._ops)

    def __len__(self) -> int:
        return self.pending_count()

    def pending_targets(self) -> Set[str]:
        """Ids of entities that still have an unconfirmed operation."""
        with self.lock:
            return {op.target_id for op in self._ops if op.target_id}

    def _index(self, op_id: str) -> Optional[int]:
        for idx, op in enumerate(self._ops):
            if op.id == op_id:
                return idx
        return None
