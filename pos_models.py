"""
Domain records for the mobile POS core.

Every record maps to and from the desktop's JSON shape (camelCase keys) through
``to_dict`` / ``from_dict``. Readers are lenient: missing names, prices or
operators fall back to documented defaults instead of failing.
"""
import datetime as dt
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple


def iso_now() -> str:
    """UTC timestamp in the same shape the desktop writes (millisecond precision, Z suffix)."""
    now = dt.datetime.now(dt.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _as_number(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return value
    if value in (None, ""):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _first(*values: Any) -> Any:
    """Return the first truthy value (the desktop chains fields with ``||``)."""
    for value in values:
        if value:
            return value
    return None


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


class PaymentMethod(str, Enum):
    CASH = "cash"
    MOBILE_MONEY = "mpesa"
    CREDIT = "credit"

    @classmethod
    def parse(cls, value: Any) -> Optional["PaymentMethod"]:
        if isinstance(value, cls):
            return value
        raw = (_clean_str(value) or "").lower()
        aliases = {"mobile-money": "mpesa", "mobile_money": "mpesa", "m-pesa": "mpesa"}
        try:
            return cls(aliases.get(raw, raw))
        except ValueError:
            return None


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class OperationKind(str, Enum):
    """Wire names of queued operations, as the desktop sync endpoint knows them."""
    CREATE_TRANSACTION = "transaction"
    ADD_CREDIT_CUSTOMER = "add-credit-customer"
    UPDATE_CREDIT_CUSTOMER = "update-credit-customer"


# Kinds that bring a new entity into existence on the remote side
CREATE_KINDS = frozenset({OperationKind.CREATE_TRANSACTION.value, OperationKind.ADD_CREDIT_CUSTOMER.value})


def _kind_value(kind: Any) -> str:
    return kind.value if isinstance(kind, Enum) else str(kind)


@dataclass(frozen=True)
class LineItem:
    product_id: Optional[str]
    name: str = "Item"
    unit_price: float = 0.0
    quantity: float = 0
    category: Optional[str] = None

    @property
    def line_total(self) -> float:
        return self.quantity * self.unit_price

    def to_dict(self) -> Dict[str, Any]:
        product = _drop_none({
            "id": self.product_id,
            "name": self.name,
            "price": self.unit_price,
            "category": self.category,
        })
        return {"product": product, "quantity": self.quantity}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LineItem":
        """Accepts ``{product: {...}, quantity}`` as well as flat cart rows."""
        product = data.get("product") if isinstance(data.get("product"), dict) else {}
        return cls(
            product_id=_clean_str(_first(product.get("id"), data.get("id"), data.get("productId"))),
            name=_clean_str(_first(product.get("name"), data.get("name"))) or "Item",
            unit_price=_as_number(_first(product.get("price"), data.get("price"))),
            quantity=_as_number(data.get("quantity"), 0),
            category=_clean_str(_first(product.get("category"), data.get("category"))),
        )


@dataclass(frozen=True)
class Transaction:
    id: str
    items: Tuple[LineItem, ...]
    total: float
    payment_method: str
    timestamp: str
    cashier_id: Optional[str] = None
    cashier_name: Optional[str] = None
    cashier: Optional[str] = None
    credit_customer_id: Optional[str] = None
    credit_customer_name: Optional[str] = None
    status: str = TransactionStatus.COMPLETED.value

    @property
    def operator(self) -> Optional[str]:
        return self.cashier or self.cashier_name

    @property
    def items_total(self) -> float:
        return sum(item.line_total for item in self.items)

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "id": self.id,
            "items": [item.to_dict() for item in self.items],
            "total": self.total,
            "paymentMethod": self.payment_method,
            "timestamp": self.timestamp,
            "cashierId": self.cashier_id,
            "cashierName": self.cashier_name,
            "cashier": self.cashier,
            "creditCustomerId": self.credit_customer_id,
            "creditCustomer": self.credit_customer_name,
            "creditCustomerName": self.credit_customer_name,
            "status": self.status,
        })

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        txn_id = _clean_str(data.get("id"))
        if not txn_id:
            raise ValueError("transaction id missing")
        items = tuple(
            LineItem.from_dict(row) for row in (data.get("items") or []) if isinstance(row, dict)
        )
        method = PaymentMethod.parse(data.get("paymentMethod"))
        total = data.get("total")
        status = TransactionStatus.PENDING.value
        if _clean_str(data.get("status")):
            status = str(data["status"]).strip().lower()
        return cls(
            id=txn_id,
            items=items,
            total=_as_number(total) if total not in (None, "") else sum(i.line_total for i in items),
            payment_method=method.value if method else (_clean_str(data.get("paymentMethod")) or ""),
            timestamp=_clean_str(data.get("timestamp")) or "",
            cashier_id=_clean_str(data.get("cashierId")),
            cashier_name=_clean_str(data.get("cashierName")),
            cashier=_clean_str(data.get("cashier")),
            credit_customer_id=_clean_str(data.get("creditCustomerId")),
            credit_customer_name=_clean_str(_first(data.get("creditCustomerName"), data.get("creditCustomer"))),
            status=status,
        )


@dataclass(frozen=True)
class CreditCustomer:
    id: str
    name: str
    phone: str = ""
    balance: float = 0.0
    created_at: str = field(default_factory=iso_now)

    def with_updates(self, updates: Dict[str, Any]) -> "CreditCustomer":
        changes: Dict[str, Any] = {}
        if "balance" in updates:
            changes["balance"] = _as_number(updates["balance"], self.balance)
        if "name" in updates and _clean_str(updates["name"]):
            changes["name"] = str(updates["name"]).strip()
        if "phone" in updates and updates["phone"] is not None:
            changes["phone"] = str(updates["phone"]).strip()
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "balance": self.balance,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CreditCustomer":
        cid = _clean_str(data.get("id"))
        if not cid:
            raise ValueError("credit customer id missing")
        return cls(
            id=cid,
            name=_clean_str(data.get("name")) or "",
            phone=_clean_str(data.get("phone")) or "",
            balance=_as_number(data.get("balance")),
            created_at=_clean_str(_first(data.get("createdAt"), data.get("created_at"))) or "",
        )


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    price: float = 0.0
    category: Optional[str] = None
    stock: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "category": self.category,
            "stock": self.stock,
        })

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Product":
        pid = _clean_str(data.get("id"))
        if not pid:
            raise ValueError("product id missing")
        stock = _first(data.get("stock"), data.get("quantity"))
        return cls(
            id=pid,
            name=_clean_str(data.get("name")) or "Item",
            price=_as_number(data.get("price")),
            category=_clean_str(data.get("category")),
            stock=_as_number(stock) if stock is not None else None,
        )


@dataclass(frozen=True)
class SyncOperation:
    """
    One pending mutation. ``seq`` is the queue position assigned on enqueue;
    ``attempts`` and ``last_error`` are local bookkeeping and never sent.
    """
    kind: str
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=iso_now)
    attempts: int = 0
    last_error: Optional[str] = None
    seq: Optional[int] = None

    @property
    def target_id(self) -> Optional[str]:
        return _clean_str(self.payload.get("id"))

    @property
    def dedup_key(self) -> str:
        return f"{self.kind}:{self.target_id or ''}"

    @property
    def creates(self) -> Optional[str]:
        if self.kind in CREATE_KINDS:
            return self.target_id
        return None

    @property
    def references(self) -> FrozenSet[str]:
        """Entity ids this operation needs to exist remotely before it is sent."""
        refs = set()
        if self.kind == OperationKind.CREATE_TRANSACTION.value:
            customer_id = _clean_str(self.payload.get("creditCustomerId"))
            if customer_id:
                refs.add(customer_id)
        elif self.kind not in CREATE_KINDS and self.target_id:
            refs.add(self.target_id)
        return frozenset(refs)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.kind,
            "data": self.payload,
            "timestamp": self.created_at,
            "dedupKey": self.dedup_key,
        }

    @classmethod
    def create(cls, kind: Any, payload: Dict[str, Any]) -> "SyncOperation":
        return cls(kind=_kind_value(kind), payload=dict(payload))


@dataclass
class ConnectionConfig:
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    last_known_reachable: bool = False

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    def to_dict(self) -> Dict[str, Any]:
        return {"apiUrl": self.base_url, "apiKey": self.api_key}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionConfig":
        return cls(
            base_url=_clean_str(_first(data.get("apiUrl"), data.get("base_url"))),
            api_key=_clean_str(_first(data.get("apiKey"), data.get("api_key"))),
        )


@dataclass(frozen=True)
class SyncStatus:
    pending_count: int
    online: bool
    needs_reconnect: bool = False
    last_sync_at: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pendingCount": self.pending_count,
            "online": self.online,
            "needsReconnect": self.needs_reconnect,
            "lastSyncAt": self.last_sync_at,
            "lastError": self.last_error,
        }


def parse_many(rows: Iterable[Any], parser) -> Tuple[list, int]:
    """Parse a list of wire rows, skipping malformed ones. Returns (records, skipped)."""
    records = []
    skipped = 0
    for row in rows or []:
        if not isinstance(row, dict):
            skipped += 1
            continue
        try:
            records.append(parser(row))
        except (TypeError, ValueError):
            skipped += 1
    return records, skipped
