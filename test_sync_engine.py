import copy
import sqlite3
import threading
import time
import unittest

from connection_manager import ConnectionManager
from local_store import LocalMutation, LocalStore
from pos_errors import AuthenticationError, RemoteError, TransientRemoteError
from pos_models import ConnectionConfig
from sync_engine import EngineState, SyncEngine
from sync_queue import SyncQueue


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeAuthority:
    """In-process stand-in for the desktop POS sync API."""

    def __init__(self):
        self.config = None
        self.reachable = True
        self.pushes = []
        self.pull_count = 0
        self.fail_next = []
        self.responder = None
        self.print_error = None
        self.printed = []
        self.reports = []
        self.customers = {}
        self.transactions = {}
        self.received = []

    def check_status(self):
        return self.reachable

    def push_operations(self, operations):
        wire = [op.to_wire() for op in operations]
        self.pushes.append(copy.deepcopy(wire))
        if self.fail_next:
            raise self.fail_next.pop(0)
        if self.responder:
            response = self.responder(wire)
            if response is not None:
                return response
        for entry in wire:
            self._apply(entry)
        return {"results": [{"id": entry["id"], "status": "ok"} for entry in wire]}

    def _apply(self, entry):
        self.received.append(entry["id"])
        data = entry["data"]
        if entry["type"] == "transaction":
            self.transactions[data["id"]] = copy.deepcopy(data)
        elif entry["type"] == "add-credit-customer":
            self.customers.setdefault(data["id"], copy.deepcopy(data))
        elif entry["type"] == "update-credit-customer":
            self.customers[data["id"]].update(data["updates"])

    def pull_snapshot(self):
        self.pull_count += 1
        return {
            "transactions": list(self.transactions.values()),
            "creditCustomers": list(self.customers.values()),
        }

    def print_receipt(self, transaction):
        if self.print_error:
            raise self.print_error
        self.printed.append(transaction.id)
        return {"success": True}

    def print_report(self, report):
        if self.print_error:
            raise self.print_error
        self.reports.append(report)
        return {"success": True}


def make_core(client=None, batch_size=25):
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    queue = SyncQueue(conn)
    store = LocalStore(conn, queue)
    client = client or FakeAuthority()
    connection = ConnectionManager(client, ConnectionConfig(base_url="http://desk.local", api_key="secret"))
    clock = FakeClock()
    engine = SyncEngine(
        store, queue, client, connection,
        batch_size=batch_size, backoff_base=2.0, backoff_max=30.0, clock=clock,
    )
    return conn, queue, store, client, connection, engine, clock


def _sale(txn_id, total=100, customer_id=None):
    payload = {
        "id": txn_id,
        "items": [{"product": {"id": "P1", "name": "Soda", "price": total}, "quantity": 1}],
        "total": total,
        "paymentMethod": "credit" if customer_id else "cash",
        "timestamp": "2024-01-01T10:00:00.000Z",
        "status": "completed",
    }
    if customer_id:
        payload["creditCustomerId"] = customer_id
    return LocalMutation("transaction", payload)


def _new_customer(cid, balance=0):
    return LocalMutation("add-credit-customer", {"id": cid, "name": "Jane", "phone": "0700", "balance": balance})


class SyncEngineTest(unittest.TestCase):
    def setUp(self):
        (self.conn, self.queue, self.store, self.client,
         self.connection, self.engine, self.clock) = make_core()
        self.connection.mark_online()

    def tearDown(self):
        self.conn.close()

    def test_flush_acknowledges_everything_in_order(self):
        for i in range(3):
            self.store.apply_local(_sale(f"TXN{i}"))
        result = self.engine.flush()
        self.assertEqual(result.status, "ok")
        self.assertEqual(result.acknowledged, 3)
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(list(self.client.transactions), ["TXN0", "TXN1", "TXN2"])
        self.assertIsNotNone(self.engine.last_sync_at)

    def test_failed_batch_is_resubmitted_verbatim(self):
        for i in range(3):
            self.store.apply_local(_sale(f"TXN{i}"))
        before = [op.id for op in self.queue.all()]
        self.client.fail_next = [TransientRemoteError("connection refused")]

        result = self.engine.flush()
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.requeued, 3)
        self.assertEqual([op.id for op in self.queue.all()], before)
        self.assertEqual([op.attempts for op in self.queue.all()], [1, 1, 1])
        self.assertFalse(self.connection.is_online())

        self.connection.mark_online()
        self.clock.advance(60)
        result = self.engine.flush()
        self.assertEqual(result.status, "ok")
        self.assertEqual(self.client.pushes[0], self.client.pushes[1])
        self.assertEqual(len(self.queue), 0)

    def test_order_preserved_across_repeated_failures(self):
        for i in range(5):
            self.store.apply_local(_sale(f"TXN{i}"))
        expected = [op.id for op in self.queue.all()]
        self.client.fail_next = [RemoteError("rejected", 400) for _ in range(3)]
        for _ in range(3):
            self.assertEqual(self.engine.flush(force=True).status, "failed")
        self.engine.flush(force=True)
        self.assertEqual(self.client.received, expected)

    def test_backoff_doubles_until_cap(self):
        self.store.apply_local(_sale("TXN1"))
        self.client.fail_next = [RemoteError("rejected", 400), RemoteError("rejected", 400)]

        self.engine.flush()
        self.assertEqual(self.engine.retry_in, 2.0)
        self.assertEqual(self.engine.flush().status, "backoff")
        self.assertEqual(len(self.client.pushes), 1)

        self.engine.flush(force=True)
        self.assertEqual(self.engine.retry_in, 4.0)

        self.clock.advance(4)
        self.assertEqual(self.engine.flush().status, "ok")
        self.assertEqual(self.engine.retry_in, 0.0)

        self.engine._failures = 10
        self.engine._back_off("boom")
        self.assertEqual(self.engine.retry_in, 30.0)

    def test_per_operation_results(self):
        self.store.apply_local(_sale("TXN1"))
        self.store.apply_local(_sale("TXN2"))
        self.client.responder = lambda wire: {"results": [
            {"id": wire[0]["id"], "status": "ok"},
            {"id": wire[1]["id"], "status": "error", "error": "bad total"},
        ]}
        result = self.engine.flush()
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.acknowledged, 1)
        pending = self.queue.all()
        self.assertEqual([op.target_id for op in pending], ["TXN2"])
        self.assertEqual(pending[0].last_error, "bad total")

    def test_explicit_failure_response(self):
        self.store.apply_local(_sale("TXN1"))
        self.client.responder = lambda wire: {"success": False, "error": "locked"}
        result = self.engine.flush()
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.error, "locked")
        self.assertEqual(len(self.queue), 1)

    def test_auth_failure_requires_reconnect(self):
        self.store.apply_local(_sale("TXN1"))
        self.client.fail_next = [AuthenticationError("bad key", 401)]
        self.engine.flush()
        self.assertTrue(self.connection.needs_reconnect())
        self.assertEqual(len(self.queue), 1)

        self.assertFalse(self.connection.check_reachable())
        self.assertEqual(self.engine.flush(force=True).status, "offline")

        self.connection.configure("http://desk.local", "new-secret")
        self.assertTrue(self.connection.check_reachable())
        self.assertEqual(self.engine.flush(force=True).status, "ok")
        self.assertEqual(len(self.queue), 0)

    def test_offline_flush_is_a_no_op(self):
        self.store.apply_local(_sale("TXN1"))
        self.connection.mark_offline()
        self.assertEqual(self.engine.flush().status, "offline")
        self.assertEqual(self.client.pushes, [])
        self.assertEqual(len(self.queue), 1)

    def test_batch_is_cut_before_dependent_operation(self):
        self.store.apply_local(_new_customer("C1"))
        self.store.apply_local(_sale("TXN1", total=300, customer_id="C1"))
        self.store.apply_local(LocalMutation("update-credit-customer", {"id": "C1", "updates": {"balance": 300}}))

        self.assertEqual([op.kind for op in self.engine.next_batch()], ["add-credit-customer"])
        result = self.engine.flush()
        self.assertEqual(result.status, "ok")
        self.assertEqual([len(batch) for batch in self.client.pushes], [1, 2])

    def test_update_waits_for_failing_create(self):
        self.store.apply_local(_new_customer("C1"))
        self.store.apply_local(LocalMutation("update-credit-customer", {"id": "C1", "updates": {"balance": 500}}))
        self.client.fail_next = [RemoteError("rejected", 400) for _ in range(3)]
        for _ in range(3):
            self.engine.flush(force=True)
        self.assertEqual([[e["type"] for e in batch] for batch in self.client.pushes],
                         [["add-credit-customer"]] * 3)
        self.engine.flush(force=True)
        self.assertEqual(self.client.pushes[-1][0]["type"], "update-credit-customer")
        self.assertEqual(self.client.customers["C1"]["balance"], 500)

    def test_batch_size_limit(self):
        conn, queue, store, client, connection, engine, _ = make_core(batch_size=2)
        try:
            connection.mark_online()
            for i in range(5):
                store.apply_local(_sale(f"TXN{i}"))
            engine.flush()
            self.assertEqual([len(batch) for batch in client.pushes], [2, 2, 1])
        finally:
            conn.close()

    def test_trigger_during_flush_is_coalesced(self):
        self.store.apply_local(_sale("TXN1"))
        inner = []
        self.client.responder = lambda wire: inner.append(self.engine.pull())
        result = self.engine.flush()
        self.assertEqual(inner[0].status, "coalesced")
        self.assertTrue(result.pulled)
        self.assertEqual(self.client.pull_count, 1)
        self.assertEqual(len(self.queue), 0)

    def test_pull_runs_while_push_is_backing_off(self):
        self.store.apply_local(_sale("TXN1"))
        self.client.fail_next = [RemoteError("rejected", 400)]
        self.engine.flush()
        self.assertGreater(self.engine.retry_in, 0)

        self.client.customers["C9"] = {"id": "C9", "name": "Remote", "phone": "0711", "balance": 40}
        result = self.engine.pull()
        self.assertTrue(result.pulled)
        self.assertEqual(self.client.pull_count, 1)
        self.assertEqual(len(self.client.pushes), 1)
        self.assertEqual(self.store.get_credit_customer("C9").balance, 40)

    def test_sync_still_pulls_when_push_is_rejected(self):
        self.store.apply_local(_sale("TXN1"))
        self.client.fail_next = [RemoteError("rejected", 400)]
        result = self.engine.sync(force=True)
        self.assertEqual(result.status, "failed")
        self.assertTrue(result.pulled)
        self.assertEqual(self.client.pull_count, 1)
        self.assertIsNotNone(self.store.get_transaction("TXN1"))
        self.assertEqual(len(self.queue), 1)

    def test_sync_skips_pull_once_authority_is_unreachable(self):
        self.store.apply_local(_sale("TXN1"))
        self.client.fail_next = [TransientRemoteError("timed out")]
        result = self.engine.sync(force=True)
        self.assertFalse(result.pulled)
        self.assertEqual(self.client.pull_count, 0)

    def test_sale_recorded_mid_push_goes_out_in_next_batch(self):
        self.store.apply_local(_sale("TXN1"))

        def checkout_during_push(wire):
            if not self.store.has_transaction("TXN2"):
                self.store.apply_local(_sale("TXN2"))

        self.client.responder = checkout_during_push
        result = self.engine.flush()
        self.assertEqual(result.status, "ok")
        self.assertEqual(result.batches, 2)
        self.assertEqual([[e["data"]["id"] for e in batch] for batch in self.client.pushes],
                         [["TXN1"], ["TXN2"]])
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(list(self.client.transactions), ["TXN1", "TXN2"])

    def test_edit_made_while_snapshot_is_fetched_survives_merge(self):
        self.store.apply_local(_new_customer("C1"))
        self.engine.sync()
        self.assertEqual(len(self.queue), 0)

        def fetch_then_edit():
            snapshot = FakeAuthority.pull_snapshot(self.client)
            self.store.apply_local(LocalMutation(
                "update-credit-customer", {"id": "C1", "updates": {"balance": 99}}))
            return snapshot

        self.client.pull_snapshot = fetch_then_edit
        result = self.engine.pull()
        self.assertTrue(result.pulled)
        self.assertEqual(self.client.customers["C1"]["balance"], 0)
        self.assertEqual(self.store.get_credit_customer("C1").balance, 99)
        self.assertEqual(len(self.queue), 1)

    def test_concurrent_triggers_leave_nothing_deferred(self):
        for i in range(5):
            self.store.apply_local(_sale(f"TXN{i}"))
        self.client.responder = lambda wire: time.sleep(0.001)

        def hammer():
            for n in range(20):
                (self.engine.flush if n % 2 else self.engine.pull)()

        threads = [threading.Thread(target=hammer) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(self.engine._deferred, set())
        self.assertEqual(self.engine.state, EngineState.IDLE)
        self.assertFalse(self.engine._flush_lock.locked())
        self.assertEqual(len(self.queue), 0)

    def test_sync_pulls_after_push(self):
        self.store.apply_local(_new_customer("C1"))
        self.client.customers["C9"] = {"id": "C9", "name": "Remote", "phone": "0711", "balance": 40}
        result = self.engine.sync()
        self.assertTrue(result.pulled)
        self.assertEqual(self.store.get_credit_customer("C9").balance, 40)
        self.assertIsNotNone(self.store.get_credit_customer("C1"))

    def test_credit_balance_matches_authority_after_sync(self):
        self.store.apply_local(_new_customer("C1"))
        self.engine.sync()
        current = self.store.get_credit_customer("C1")
        self.store.apply_local(LocalMutation(
            "update-credit-customer", {"id": "C1", "updates": {"balance": current.balance + 500}}))
        self.engine.sync()
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(self.client.customers["C1"]["balance"], 500)
        self.assertEqual(self.store.get_credit_customer("C1").balance, 500)


if __name__ == "__main__":
    unittest.main()
