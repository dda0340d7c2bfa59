"""
End-of-day closing report.

``aggregate`` is a pure function of the transactions it is given: it keeps the
completed ones stamped with the requested date, groups them by cashier
(``Unknown`` when a sale has no operator), totals each payment method, and
rolls items up by product *name*. Two products with different ids but the
same name share one report line.
"""
import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Union

from pos_models import PaymentMethod, Transaction, TransactionStatus

UNKNOWN_CASHIER = "Unknown"


@dataclass
class ItemSales:
    name: str
    quantity: float = 0
    total: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "quantity": self.quantity, "total": self.total}


@dataclass
class CashierSummary:
    cashier_name: str
    items: List[ItemSales] = field(default_factory=list)
    transactions: List[Transaction] = field(default_factory=list)
    total_sales: float = 0.0
    cash_total: float = 0.0
    mpesa_total: float = 0.0
    credit_total: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cashierName": self.cashier_name,
            "items": [i.to_dict() for i in self.items],
            "transactions": [t.to_dict() for t in self.transactions],
            "totalSales": self.total_sales,
            "cashTotal": self.cash_total,
            "mpesaTotal": self.mpesa_total,
            "creditTotal": self.credit_total,
        }


@dataclass
class ClosingReport:
    date: str
    cashiers: List[CashierSummary] = field(default_factory=list)
    total_cash: float = 0.0
    total_mpesa: float = 0.0
    total_credit: float = 0.0
    grand_total: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "cashiers": [c.to_dict() for c in self.cashiers],
            "totalCash": self.total_cash,
            "totalMpesa": self.total_mpesa,
            "totalCredit": self.total_credit,
            "grandTotal": self.grand_total,
        }


def _date_key(value: Union[str, dt.date, dt.datetime]) -> str:
    if isinstance(value, dt.datetime):
        return value.date().isoformat()
    if isinstance(value, dt.date):
        return value.isoformat()
    return str(value).strip()[:10]


def _method_total(txs: List[Transaction], method: PaymentMethod) -> float:
    return sum(t.total for t in txs if t.payment_method == method.value)


def _item_sales(txs: List[Transaction]) -> List[ItemSales]:
    rows: Dict[str, ItemSales] = {}
    for t in txs:
        for item in t.items:
            row = rows.setdefault(item.name, ItemSales(name=item.name))
            row.quantity += item.quantity
            row.total += item.quantity * item.unit_price
    # sorted() is stable, so equal totals keep first-sold order
    return sorted(rows.values(), key=lambda r: r.total, reverse=True)


def aggregate(transactions: Iterable[Transaction], report_date: Union[str, dt.date, dt.datetime]) -> ClosingReport:
    day = _date_key(report_date)
    day_txs = [
        t for t in transactions
        if (t.timestamp or "").startswith(day) and t.status == TransactionStatus.COMPLETED.value
    ]

    groups: Dict[str, List[Transaction]] = {}
    for t in day_txs:
        groups.setdefault(t.operator or UNKNOWN_CASHIER, []).append(t)

    cashiers = []
    for name, txs in groups.items():
        cash = _method_total(txs, PaymentMethod.CASH)
        mpesa = _method_total(txs, PaymentMethod.MOBILE_MONEY)
        credit = _method_total(txs, PaymentMethod.CREDIT)
        cashiers.append(CashierSummary(
            cashier_name=name,
            items=_item_sales(txs),
            transactions=txs,
            total_sales=cash + mpesa + credit,
            cash_total=cash,
            mpesa_total=mpesa,
            credit_total=credit,
        ))

    total_cash = sum(c.cash_total for c in cashiers)
    total_mpesa = sum(c.mpesa_total for c in cashiers)
    total_credit = sum(c.credit_total for c in cashiers)
    return ClosingReport(
        date=day,
        cashiers=cashiers,
        total_cash=total_cash,
        total_mpesa=total_mpesa,
        total_credit=total_credit,
        grand_total=total_cash + total_mpesa + total_credit,
    )
