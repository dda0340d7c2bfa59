"""
Reconciler between the local store/queue and the remote authority.

One flush cycle runs at a time. A push or pull requested while a cycle is
running is recorded and run by the active cycle once it finishes, so queue
order is never raced and merges never overlap a push.

Push: drain the queue front to back in bounded batches. A batch is cut
before any operation that references an entity created earlier in the same
batch, so a dependent operation only goes out after its creator is
acknowledged. A failed batch stays in the queue untouched (attempts bumped)
and the engine backs off exponentially.

Pull: fetch the snapshot and hand it to ``LocalStore.apply_remote``. A pull
runs whenever the authority is still reachable, even if the push in the same
cycle failed or is backing off.
"""
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from authority_client import AuthorityClient
from connection_manager import ConnectionManager
from local_store import LocalStore
from pos_errors import AuthenticationError, RemoteError, TransientRemoteError
from pos_models import SyncOperation, iso_now
from sync_queue import SyncQueue

log = logging.getLogger(__name__)

PUSH = "push"
PULL = "pull"

OK_OUTCOMES = ("ok", "success", "acknowledged", "duplicate")


class EngineState(str, Enum):
    IDLE = "idle"
    DRAINING = "draining"
    PUSHING = "pushing"
    PULLING = "pulling"


@dataclass
class FlushResult:
    status: str = "ok"  # ok | offline | backoff | coalesced | failed
    acknowledged: int = 0
    requeued: int = 0
    batches: int = 0
    pulled: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "acknowledged": self.acknowledged,
            "requeued": self.requeued,
            "batches": self.batches,
            "pulled": self.pulled,
            "error": self.error,
        }


class SyncEngine:
    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueue,
        client: AuthorityClient,
        connection: ConnectionManager,
        batch_size: int = 25,
        backoff_base: float = 2.0,
        backoff_max: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.queue = queue
        self.client = client
        self.connection = connection
        self.batch_size = max(1, int(batch_size))
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._clock = clock
        self._flush_lock = threading.Lock()
        self._trigger_lock = threading.Lock()
        self._deferred: Set[str] = set()
        self._failures = 0
        self._retry_at = 0.0
        self.state = EngineState.IDLE
        self.last_sync_at: Optional[str] = None
        self.last_error: Optional[str] = None

    # ---------- triggers ----------
    def flush(self, force: bool = False) -> FlushResult:
        return self._run({PUSH}, force)

    def pull(self, force: bool = False) -> FlushResult:
        return self._run({PULL}, force)

    def sync(self, force: bool = False) -> FlushResult:
        return self._run({PUSH, PULL}, force)

    @property
    def retry_in(self) -> float:
        return max(0.0, self._retry_at - self._clock())

    def _run(self, wanted: Set[str], force: bool) -> FlushResult:
        # Deferring and releasing both happen under _trigger_lock, so a
        # deferred trigger is always picked up by the running cycle.
        with self._trigger_lock:
            if not self._flush_lock.acquire(blocking=False):
                self._deferred |= wanted
                log.debug("Flush already running; deferred %s", sorted(wanted))
                return FlushResult(status="coalesced")
        released = False
        try:
            result = self._cycle(wanted, force)
            while True:
                with self._trigger_lock:
                    extra, self._deferred = self._deferred, set()
                    if not extra:
                        self.state = EngineState.IDLE
                        self._flush_lock.release()
                        released = True
                        return result
                result = self._merge_results(result, self._cycle(extra, force=False))
        finally:
            if not released:
                self.state = EngineState.IDLE
                self._flush_lock.release()

    @staticmethod
    def _merge_results(first: FlushResult, second: FlushResult) -> FlushResult:
        status = second.status if first.status == "ok" else first.status
        return FlushResult(
            status=status,
            acknowledged=first.acknowledged + second.acknowledged,
            requeued=first.requeued + second.requeued,
            batches=first.batches + second.batches,
            pulled=first.pulled or second.pulled,
            error=second.error or first.error,
        )

    def _cycle(self, wanted: Set[str], force: bool) -> FlushResult:
        if not self.connection.is_online():
            return FlushResult(status="offline")
        result = FlushResult()
        if PUSH in wanted:
            if force or self._clock() >= self._retry_at:
                self._drain(result)
            else:
                result.status = "backoff"
        # Backoff and rejected operations only hold back the push
        if PULL in wanted and self.connection.is_online():
            self._pull(result)
        return result

    # ---------- push ----------
    def next_batch(self) -> List[SyncOperation]:
        """Oldest pending operations, cut before the first in-batch dependency."""
        batch: List[SyncOperation] = []
        created: Set[str] = set()
        for op in self.queue.peek_batch(self.batch_size):
            if batch and op.references & created:
                break
            batch.append(op)
            if op.creates:
                created.add(op.creates)
        return batch

    def _drain(self, result: FlushResult):
        self.state = EngineState.DRAINING
        while True:
            batch = self.next_batch()
            if not batch:
                break
            self.state = EngineState.PUSHING
            result.batches += 1
            try:
                response = self.client.push_operations(batch)
            except AuthenticationError as exc:
                self.connection.mark_auth_failed(exc)
                self._fail_batch(batch, str(exc), result)
                return
            except RemoteError as exc:
                if isinstance(exc, TransientRemoteError):
                    self.connection.mark_offline()
                else:
                    self.connection.mark_online()
                self._fail_batch(batch, str(exc), result)
                return
            self.connection.mark_online()
            if not self._settle(batch, response, result):
                return
            self.state = EngineState.DRAINING
        self._failures = 0
        self._retry_at = 0.0
        self.last_error = None
        self.last_sync_at = iso_now()

    def _settle(self, batch: List[SyncOperation], response: Dict[str, Any], result: FlushResult) -> bool:
        """Acknowledge what the authority confirmed. Returns False if anything failed."""
        outcomes = response.get("results") if isinstance(response, dict) else None
        if isinstance(outcomes, list):
            by_id = {str(o.get("id")): o for o in outcomes if isinstance(o, dict)}
            corrections = []
            failed: List[str] = []
            for op in batch:
                outcome = by_id.get(op.id)
                status = str((outcome or {}).get("status") or "ok").lower()
                if outcome is not None and status in OK_OUTCOMES:
                    self.queue.acknowledge(op.id)
                    result.acknowledged += 1
                    if isinstance(outcome.get("entity"), dict):
                        corrections.append(outcome["entity"])
                else:
                    error = (outcome or {}).get("error") or ("no result returned" if outcome is None else status)
                    self.queue.requeue(op.id, error=str(error))
                    result.requeued += 1
                    failed.append(f"{op.dedup_key}: {error}")
            self.store.apply_corrections(corrections)
            if failed:
                result.status = "failed"
                result.error = "; ".join(failed)
                self._back_off(result.error)
                return False
            return True

        if isinstance(response, dict) and response.get("success") is False:
            self._fail_batch(batch, str(response.get("error") or response.get("message") or "push rejected"), result)
            return False

        for op in batch:
            self.queue.acknowledge(op.id)
        result.acknowledged += len(batch)
        entities = response.get("entities") if isinstance(response, dict) else None
        if isinstance(entities, list):
            self.store.apply_corrections(entities)
        log.info("Pushed %d operation(s)", len(batch))
        return True

    def _fail_batch(self, batch: List[SyncOperation], error: str, result: FlushResult):
        for op in batch:
            self.queue.requeue(op.id, error=error)
        result.requeued += len(batch)
        result.status = "failed"
        result.error = error
        self._back_off(error)

    def _back_off(self, error: str):
        self._failures += 1
        delay = min(self.backoff_base * (2 ** (self._failures - 1)), self.backoff_max)
        self._retry_at = self._clock() + delay
        self.last_error = error
        log.warning("Sync push failed (%s); retrying in %.1fs", error, delay)

    # ---------- pull ----------
    def _pull(self, result: FlushResult):
        self.state = EngineState.PULLING
        try:
            snapshot = self.client.pull_snapshot()
        except AuthenticationError as exc:
            self.connection.mark_auth_failed(exc)
            self._pull_failed(str(exc), result)
            return
        except RemoteError as exc:
            if isinstance(exc, TransientRemoteError):
                self.connection.mark_offline()
            self._pull_failed(str(exc), result)
            return
        self.connection.mark_online()
        summary = self.store.apply_remote(snapshot)
        result.pulled = True
        self.last_sync_at = iso_now()
        log.info("Merged snapshot: %s", ", ".join(f"{k}={v}" for k, v in sorted(summary.items())) or "empty")

    def _pull_failed(self, error: str, result: FlushResult):
        result.status = "failed"
        result.error = error
        self.last_error = error
        log.warning("Sync pull failed: %s", error)
