#!/usr/bin/env python3
# Mobile POS core: optimistic sales + credit ledger over a durable sync queue
import datetime as dt
import json
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from authority_client import AuthorityClient
from closing_report import ClosingReport, aggregate
from connection_manager import ConnectionManager
from local_store import LocalMutation, LocalStore, connect
from pos_config import DEFAULT_OPERATOR_NAME, Settings
from pos_errors import RemoteError, UnknownEntityError
from pos_models import (
    ConnectionConfig,
    CreditCustomer,
    LineItem,
    OperationKind,
    PaymentMethod,
    Product,
    SyncStatus,
    Transaction,
    TransactionStatus,
    iso_now,
)
from sync_engine import FlushResult, SyncEngine
from sync_queue import SyncQueue

log = logging.getLogger(__name__)

CONNECTION_SETTING = "connection"


def spawn_side_effect(func: Callable[..., Any], *args: Any) -> None:
    """Run a best-effort side effect on its own daemon thread."""
    threading.Thread(target=func, args=args, name="pos-side-effect", daemon=True).start()


def _line_item(item: Union[LineItem, Dict[str, Any]]) -> LineItem:
    if isinstance(item, LineItem):
        return item
    if isinstance(item, dict):
        return LineItem.from_dict(item)
    raise TypeError(f"Unsupported line item: {item!r}")


def _total_text(total: float) -> str:
    value = float(total)
    return str(int(value)) if value.is_integer() else str(value)


class PosService:
    """
    The only entry point presentation code uses. Every write pairs the local
    change with its queued SyncOperation under the store lock; reads return
    immutable records.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueue,
        client: AuthorityClient,
        connection: ConnectionManager,
        engine: SyncEngine,
        operator_id: Optional[str] = None,
        operator_name: Optional[str] = None,
        dispatch: Callable[..., None] = spawn_side_effect,
    ):
        self.store = store
        self.queue = queue
        self.client = client
        self.connection = connection
        self.engine = engine
        self.operator_id = operator_id
        self.operator_name = operator_name
        self._dispatch = dispatch
        self._lock = queue.lock
        self._last_txn_ms = 0
        self.on_enqueue: Optional[Callable[[], None]] = None

    def set_operator(self, operator_id: Optional[str], operator_name: Optional[str]):
        self.operator_id = operator_id
        self.operator_name = operator_name

    # ---------- sales ----------
    def submit_sale(
        self,
        items: Iterable[Union[LineItem, Dict[str, Any]]],
        total: Optional[float] = None,
        payment_method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        credit_customer: Union[CreditCustomer, str, None] = None,
        print_receipt: bool = True,
    ) -> Transaction:
        """
        Record a completed sale locally and queue it for the authority.

        A credit sale with a customer also queues the customer's new balance.
        The sale is final once this returns; printing runs separately and
        its failure is only logged.
        """
        method = PaymentMethod.parse(payment_method)
        if method is None:
            raise ValueError(f"Unknown payment method: {payment_method!r}")
        lines = tuple(_line_item(i) for i in items or [])
        if not lines:
            raise ValueError("A sale needs at least one line item")
        computed = sum(line.line_total for line in lines)
        if total is None:
            total = computed
        elif abs(float(total) - computed) > 0.005:
            log.warning("Sale total %.2f differs from line items %.2f; keeping the given total", float(total), computed)

        with self._lock:
            customer = None
            if credit_customer is not None and method == PaymentMethod.CREDIT:
                customer_id = credit_customer.id if isinstance(credit_customer, CreditCustomer) else str(credit_customer)
                customer = self.store.get_credit_customer(customer_id)
                if customer is None:
                    log.error("Credit sale references unknown customer %r", customer_id)
                    raise UnknownEntityError("credit customer", customer_id)
            if method == PaymentMethod.CREDIT and customer is None:
                log.warning("Credit sale recorded without a customer; no balance will be updated")

            txn = Transaction(
                id=self._next_transaction_id(),
                items=lines,
                total=float(total),
                payment_method=method.value,
                timestamp=iso_now(),
                cashier_id=self.operator_id,
                cashier_name=self.operator_name,
                cashier=self.operator_name or DEFAULT_OPERATOR_NAME,
                credit_customer_id=customer.id if customer else None,
                credit_customer_name=customer.name if customer else None,
                status=TransactionStatus.COMPLETED.value,
            )
            self.store.apply_local(LocalMutation(OperationKind.CREATE_TRANSACTION.value, txn.to_dict()))
            if customer is not None:
                self.store.apply_local(LocalMutation(
                    OperationKind.UPDATE_CREDIT_CUSTOMER.value,
                    {"id": customer.id, "updates": {"balance": customer.balance + txn.total}},
                ))

        log.info("Recorded sale %s total=%.2f method=%s", txn.id, txn.total, txn.payment_method)
        self._notify_enqueue()
        if print_receipt:
            self._dispatch(self._print_receipt, txn)
        return txn

    def _next_transaction_id(self) -> str:
        ms = int(time.time() * 1000)
        if ms <= self._last_txn_ms:
            ms = self._last_txn_ms + 1
        while self.store.has_transaction(f"TXN{ms}"):
            ms += 1
        self._last_txn_ms = ms
        return f"TXN{ms}"

    def reprint_receipt(self, transaction_id: str) -> Transaction:
        txn = self.store.get_transaction(transaction_id)
        if txn is None:
            raise UnknownEntityError("transaction", transaction_id)
        self._dispatch(self._print_receipt, txn)
        return txn

    def _print_receipt(self, txn: Transaction):
        try:
            self.client.print_receipt(txn)
            log.info("Receipt for %s sent to printer", txn.id)
        except RemoteError as exc:
            log.warning("Print failed or offline for %s: %s", txn.id, exc)

    # ---------- credit customers ----------
    def add_credit_customer(self, name: str, phone: str) -> CreditCustomer:
        name = (name or "").strip()
        phone = (phone or "").strip()
        if not name or not phone:
            raise ValueError("Customer name and phone are required")
        customer = CreditCustomer(id=str(uuid.uuid4()), name=name, phone=phone, balance=0.0, created_at=iso_now())
        with self._lock:
            self.store.apply_local(LocalMutation(OperationKind.ADD_CREDIT_CUSTOMER.value, customer.to_dict()))
        log.info("Added credit customer %s (%s)", customer.name, customer.id)
        self._notify_enqueue()
        return customer

    def adjust_credit_balance(self, customer_id: str, delta: float) -> CreditCustomer:
        with self._lock:
            current = self.store.get_credit_customer(customer_id)
            if current is None:
                log.error("Balance adjustment for unknown customer %r", customer_id)
                raise UnknownEntityError("credit customer", customer_id)
            new_balance = current.balance + float(delta)
            self.store.apply_local(LocalMutation(
                OperationKind.UPDATE_CREDIT_CUSTOMER.value,
                {"id": customer_id, "updates": {"balance": new_balance}},
            ))
            updated = self.store.get_credit_customer(customer_id)
        self._notify_enqueue()
        return updated

    def search_credit_customers(self, query: str = "") -> List[CreditCustomer]:
        q = (query or "").strip()
        customers = self.store.credit_customers()
        if not q:
            return customers
        return [c for c in customers if q.lower() in c.name.lower() or q in c.phone]

    # ---------- reports ----------
    def get_closing_report(self, report_date: Union[str, dt.date, None] = None) -> ClosingReport:
        day = report_date or dt.datetime.now(dt.timezone.utc).date()
        return aggregate(self.store.transactions(), day)

    def print_closing_report(self, report_date: Union[str, dt.date, None] = None) -> Dict[str, Any]:
        report = self.get_closing_report(report_date)
        try:
            return self.client.print_report(report.to_dict())
        except RemoteError as exc:
            log.warning("Closing report print failed: %s", exc)
            return {"success": False, "error": str(exc)}

    # ---------- browsing ----------
    def list_transactions(self, query: Optional[str] = None, mine_only: bool = True) -> List[Transaction]:
        txs = self.store.transactions()
        if mine_only:
            txs = [t for t in txs if (self.operator_id and t.cashier_id == self.operator_id)
                   or (self.operator_name and t.cashier == self.operator_name)]
        q = (query or "").strip().lower()
        if q:
            txs = [t for t in txs if q in t.id.lower() or q in _total_text(t.total)]
        return sorted(txs, key=lambda t: t.timestamp, reverse=True)

    def search_products(self, query: str = "", category: Optional[str] = None) -> List[Product]:
        q = (query or "").strip().lower()
        wanted = None if category in (None, "", "All") else category
        return [
            p for p in self.store.products()
            if (wanted is None or p.category == wanted) and q in p.name.lower()
        ]

    def list_categories(self) -> List[str]:
        return self.store.categories()

    def list_credit_customers(self) -> List[CreditCustomer]:
        return self.store.credit_customers()

    # ---------- connectivity & sync ----------
    def get_sync_status(self) -> SyncStatus:
        return SyncStatus(
            pending_count=self.queue.pending_count(),
            online=self.connection.is_online(),
            needs_reconnect=self.connection.needs_reconnect(),
            last_sync_at=self.engine.last_sync_at,
            last_error=self.engine.last_error,
        )

    def configure_connection(self, base_url: Optional[str], api_key: Optional[str]) -> bool:
        config = self.connection.configure(base_url, api_key)
        self.store.set_setting(CONNECTION_SETTING, json.dumps(config.to_dict()))
        online = self.connection.check_reachable()
        if online:
            self._notify_enqueue()
        return online

    def sync_now(self, force: bool = True) -> FlushResult:
        if not self.connection.is_online():
            self.connection.check_reachable()
        return self.engine.sync(force=force)

    def refresh(self) -> FlushResult:
        """Pull the authority snapshot, e.g. when the app comes to the foreground."""
        if not self.connection.is_online():
            self.connection.check_reachable()
        return self.engine.pull()

    def _notify_enqueue(self):
        hook = self.on_enqueue
        if hook is None:
            return
        try:
            hook()
        except Exception:
            log.exception("Sync wake-up hook failed")


def build_service(settings: Settings, dispatch: Callable[..., None] = spawn_side_effect) -> PosService:
    conn = connect(settings.db_path)
    queue = SyncQueue(conn)
    store = LocalStore(conn, queue)
    config = ConnectionConfig(base_url=settings.api_url, api_key=settings.api_key)
    saved = store.get_setting(CONNECTION_SETTING)
    if saved:
        try:
            stored = ConnectionConfig.from_dict(json.loads(saved))
        except (TypeError, ValueError):
            log.warning("Ignoring unreadable saved connection settings")
        else:
            if stored.base_url:
                config = stored
    client = AuthorityClient(config, api_prefix=settings.api_prefix, timeout=settings.request_timeout)
    connection = ConnectionManager(client, config)
    engine = SyncEngine(
        store, queue, client, connection,
        batch_size=settings.batch_size,
        backoff_base=settings.backoff_base,
        backoff_max=settings.backoff_max,
    )
    return PosService(
        store, queue, client, connection, engine,
        operator_id=settings.operator_id,
        operator_name=settings.operator_name,
        dispatch=dispatch,
    )
