import os
import sqlite3
import tempfile
import unittest

from local_store import LocalMutation, LocalStore, connect
from pos_errors import UnknownEntityError
from sync_queue import SyncQueue


def _memory_store():
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    queue = SyncQueue(conn)
    return conn, queue, LocalStore(conn, queue)


def _customer(cid, name="Jane", balance=0):
    return {"id": cid, "name": name, "phone": "0700", "balance": balance, "createdAt": "2024-01-01T00:00:00.000Z"}


class LocalStoreTest(unittest.TestCase):
    def setUp(self):
        self.conn, self.queue, self.store = _memory_store()

    def tearDown(self):
        self.conn.close()

    def test_apply_local_queues_exactly_one_operation(self):
        op = self.store.apply_local(LocalMutation("add-credit-customer", _customer("C1")))
        self.assertEqual(len(self.queue), 1)
        self.assertEqual(op.kind, "add-credit-customer")
        self.assertEqual(self.store.get_credit_customer("C1").name, "Jane")

        self.store.apply_local(LocalMutation("update-credit-customer", {"id": "C1", "updates": {"balance": 50}}))
        self.assertEqual(len(self.queue), 2)
        self.assertEqual(self.store.get_credit_customer("C1").balance, 50)

    def test_update_of_unknown_customer_is_rejected_without_queueing(self):
        with self.assertLogs("local_store", level="ERROR"):
            with self.assertRaises(UnknownEntityError):
                self.store.apply_local(LocalMutation("update-credit-customer", {"id": "nope", "updates": {"balance": 1}}))
        self.assertEqual(len(self.queue), 0)

    def test_unsupported_kind(self):
        with self.assertRaises(ValueError):
            self.store.apply_local(LocalMutation("delete-everything", {"id": "x"}))
        self.assertEqual(len(self.queue), 0)

    def test_pending_entities_survive_a_pull(self):
        self.store.apply_local(LocalMutation("add-credit-customer", _customer("C1", name="Local")))
        summary = self.store.apply_remote({
            "creditCustomers": [_customer("C1", name="Remote"), _customer("C2", name="Other")],
        })
        self.assertEqual(summary["credit_customers"], 2)
        self.assertEqual(self.store.get_credit_customer("C1").name, "Local")
        self.assertEqual(self.store.get_credit_customer("C2").name, "Other")

    def test_pending_entity_missing_from_snapshot_is_kept(self):
        self.store.apply_local(LocalMutation("add-credit-customer", _customer("C1")))
        self.store.apply_remote({"creditCustomers": [_customer("C2")]})
        self.assertIsNotNone(self.store.get_credit_customer("C1"))

    def test_remote_wins_once_acknowledged(self):
        op = self.store.apply_local(LocalMutation("add-credit-customer", _customer("C1", name="Local")))
        self.queue.acknowledge(op.id)
        self.store.apply_remote({"creditCustomers": [_customer("C1", name="Remote", balance=10)]})
        customer = self.store.get_credit_customer("C1")
        self.assertEqual(customer.name, "Remote")
        self.assertEqual(customer.balance, 10)

    def test_confirmed_entities_absent_remotely_are_dropped(self):
        op = self.store.apply_local(LocalMutation("add-credit-customer", _customer("C1")))
        self.queue.acknowledge(op.id)
        self.store.apply_remote({"creditCustomers": []})
        self.assertIsNone(self.store.get_credit_customer("C1"))

    def test_missing_collections_are_left_alone(self):
        self.store.apply_remote({
            "products": [{"id": "P1", "name": "Soda", "price": 50, "category": "Drinks"}],
            "creditCustomers": [_customer("C1")],
        })
        summary = self.store.apply_remote({"products": [{"id": "P2", "name": "Bread", "price": 60}]})
        self.assertNotIn("credit_customers", summary)
        self.assertIsNotNone(self.store.get_credit_customer("C1"))
        self.assertEqual([p.id for p in self.store.products()], ["P2"])

    def test_malformed_snapshot_rows_are_skipped(self):
        with self.assertLogs("local_store", level="WARNING"):
            self.store.apply_remote({"products": [{"name": "no id"}, {"id": "P1", "name": "Soda"}]})
        self.assertEqual([p.id for p in self.store.products()], ["P1"])

    def test_categories_from_snapshot_or_products(self):
        self.store.apply_remote({"products": [
            {"id": "P1", "name": "Soda", "category": "Drinks"},
            {"id": "P2", "name": "Juice", "category": "Drinks"},
            {"id": "P3", "name": "Bread", "category": "Bakery"},
        ]})
        self.assertEqual(self.store.categories(), ["Drinks", "Bakery"])
        self.store.apply_remote({"categories": [{"id": 1, "name": "Snacks"}, "Drinks"]})
        self.assertEqual(self.store.categories(), ["Snacks", "Drinks"])

    def test_corrections_skip_entities_with_pending_changes(self):
        self.store.apply_remote({"creditCustomers": [_customer("C1"), _customer("C2")]})
        self.store.apply_local(LocalMutation("update-credit-customer", {"id": "C1", "updates": {"balance": 75}}))
        applied = self.store.apply_corrections([
            dict(_customer("C1", balance=1), type="credit-customer"),
            dict(_customer("C2", balance=2), type="credit-customer"),
            {"type": "mystery", "id": "X"},
        ])
        self.assertEqual(applied, 1)
        self.assertEqual(self.store.get_credit_customer("C1").balance, 75)
        self.assertEqual(self.store.get_credit_customer("C2").balance, 2)


class LocalStorePersistenceTest(unittest.TestCase):
    def test_state_reloads_from_disk(self):
        with tempfile.TemporaryDirectory() as tmp:
            db_path = os.path.join(tmp, "pos.db")
            conn = connect(db_path)
            queue = SyncQueue(conn)
            store = LocalStore(conn, queue)
            store.apply_local(LocalMutation("transaction", {
                "id": "TXN1",
                "items": [{"product": {"id": "P1", "name": "Soda", "price": 50}, "quantity": 2}],
                "total": 100,
                "paymentMethod": "cash",
                "timestamp": "2024-01-01T10:00:00.000Z",
                "status": "completed",
            }))
            store.set_setting("connection", '{"apiUrl": "http://desk.local"}')
            conn.close()

            conn = connect(db_path)
            try:
                queue = SyncQueue(conn)
                store = LocalStore(conn, queue)
                txn = store.get_transaction("TXN1")
                self.assertEqual(txn.total, 100)
                self.assertEqual(txn.items[0].name, "Soda")
                self.assertEqual(len(queue), 1)
                self.assertEqual(store.get_setting("connection"), '{"apiUrl": "http://desk.local"}')
            finally:
                conn.close()


if __name__ == "__main__":
    unittest.main()
