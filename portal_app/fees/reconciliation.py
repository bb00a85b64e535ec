"""
Fee reconciliation over plain ledger records.

The Payment ledger is the source of truth for what a student has paid;
StudentFee rows are a cache of the figures computed here. Nothing in this
module touches the database.

Two payment scopes are supported:

* ``student`` - every completed payment of the student counts toward every
  one of their fee rows, so each row shows the student's overall total paid.
* ``fee`` - a payment only counts toward the fee structure it was made
  against.

In both scopes the summary's total_paid is the sum of all completed payments.
"""
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Tuple

from ..errors import InputError

STUDENT_SCOPE = "student"
FEE_SCOPE = "fee"
PAYMENT_SCOPES = (STUDENT_SCOPE, FEE_SCOPE)

PAYMENT_COMPLETED = "completed"

STATUS_PAID = "paid"
STATUS_PARTIAL = "partial"
STATUS_UNPAID = "unpaid"
STATUSES = (STATUS_PAID, STATUS_PARTIAL, STATUS_UNPAID)

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")
# Numeric(12, 2) columns
MAX_MONEY = Decimal("9999999999.99")


def to_money(value, field="amount") -> Decimal:
    """
    Coerce a number or numeric string to a 2dp Decimal.

    NaN, infinities, more than two decimal places and magnitudes the money
    columns cannot hold are rejected with InputError.
    """
    if value is None or isinstance(value, bool):
        raise InputError(f"{field} must be a number.", details={field: value})
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        if not amount.is_finite():
            raise InputError(f"{field} must be a finite number.", details={field: str(value)})
        if abs(amount) > MAX_MONEY:
            raise InputError(f"{field} is too large.", details={field: str(value), "max": str(MAX_MONEY)})
        cents = amount.quantize(CENTS)
    except (InvalidOperation, ValueError):
        raise InputError(f"{field} must be a number.", details={field: str(value)}) from None
    if cents != amount:
        raise InputError(f"{field} cannot have more than two decimal places.", details={field: str(value)})
    return cents


def money_out(value):
    return float(value) if value is not None else None


def fee_status(outstanding, total_paid):
    if outstanding <= 0:
        return STATUS_PAID
    if total_paid > 0:
        return STATUS_PARTIAL
    return STATUS_UNPAID


@dataclass(frozen=True)
class BilledFee:
    """One StudentFee row as the engine sees it."""
    student_fee_id: Any
    fee_structure_id: Any
    total_billed: Decimal


@dataclass(frozen=True)
class PaymentRecord:
    payment_id: Any
    fee_structure_id: Any
    amount_paid: Decimal
    payment_date: Optional[date] = None
    status: str = PAYMENT_COMPLETED

    @property
    def counts(self):
        return (self.status or "").strip().lower() == PAYMENT_COMPLETED


@dataclass(frozen=True)
class FeeRowState:
    student_fee_id: Any
    fee_structure_id: Any
    total_billed: Decimal
    total_paid: Decimal
    outstanding: Decimal
    status: str
    last_payment_date: Optional[date]

    def to_dict(self):
        return {
            "student_fee_id": self.student_fee_id,
            "fee_structure_id": self.fee_structure_id,
            "total_billed": money_out(self.total_billed),
            "total_paid": money_out(self.total_paid),
            "outstanding": money_out(self.outstanding),
            "status": self.status,
            "last_payment_date": self.last_payment_date.isoformat() if self.last_payment_date else None,
        }


@dataclass(frozen=True)
class FeeSummary:
    student_id: Any
    total_billed: Decimal
    total_paid: Decimal
    outstanding: Decimal
    status: str
    payment_count: int
    last_payment_date: Optional[date]
    scope: str
    rows: Tuple[FeeRowState, ...] = ()

    def to_dict(self):
        return {
            "student_id": self.student_id,
            "total_billed": money_out(self.total_billed),
            "total_paid": money_out(self.total_paid),
            "outstanding": money_out(self.outstanding),
            "status": self.status,
            "payment_count": self.payment_count,
            "last_payment_date": self.last_payment_date.isoformat() if self.last_payment_date else None,
            "scope": self.scope,
            "rows": [r.to_dict() for r in self.rows],
        }


def _paid(payments):
    total = sum((p.amount_paid for p in payments), ZERO)
    last = max((p.payment_date for p in payments if p.payment_date), default=None)
    return to_money(total), last


def reconcile_rows(student_id, fee_rows: Iterable[BilledFee], payments: Iterable[PaymentRecord],
                   scope=STUDENT_SCOPE) -> FeeSummary:
    """
    Billed vs paid vs outstanding for one student.

    Pure and idempotent: the same rows and payments always give the same
    summary. Only completed payments count.
    """
    if scope not in PAYMENT_SCOPES:
        raise InputError("Unknown fee payment scope.", details={"scope": scope})

    fee_rows = list(fee_rows)
    completed = []
    for p in payments:
        if not p.counts:
            continue
        completed.append(PaymentRecord(
            p.payment_id, p.fee_structure_id, to_money(p.amount_paid, "amount_paid"),
            p.payment_date, p.status,
        ))

    total_paid, last_date = _paid(completed)

    states = []
    for row in fee_rows:
        billed = to_money(row.total_billed, "total_billed")
        if scope == STUDENT_SCOPE:
            row_paid, row_last = total_paid, last_date
        else:
            row_paid, row_last = _paid([p for p in completed if p.fee_structure_id == row.fee_structure_id])
        outstanding = billed - row_paid
        states.append(FeeRowState(
            student_fee_id=row.student_fee_id,
            fee_structure_id=row.fee_structure_id,
            total_billed=billed,
            total_paid=row_paid,
            outstanding=outstanding,
            status=fee_status(outstanding, row_paid),
            last_payment_date=row_last,
        ))

    total_billed = to_money(sum((s.total_billed for s in states), ZERO))
    outstanding = total_billed - total_paid
    return FeeSummary(
        student_id=student_id,
        total_billed=total_billed,
        total_paid=total_paid,
        outstanding=outstanding,
        status=fee_status(outstanding, total_paid),
        payment_count=len(completed),
        last_payment_date=last_date,
        scope=scope,
        rows=tuple(states),
    )


def cache_mismatches(cached_rows, summary: FeeSummary):
    """
    Compare cached StudentFee figures against a fresh summary.

    ``cached_rows`` maps student_fee_id to an object with total_billed,
    total_paid, outstanding_balance and status attributes.
    """
    problems = []
    for state in summary.rows:
        cached = cached_rows.get(state.student_fee_id)
        if cached is None:
            problems.append({"student_fee_id": state.student_fee_id, "field": "row", "cached": None})
            continue
        pairs = (
            ("total_billed", to_money(cached.total_billed or 0), state.total_billed),
            ("total_paid", to_money(cached.total_paid or 0), state.total_paid),
            ("outstanding_balance", to_money(cached.outstanding_balance or 0), state.outstanding),
            ("status", (cached.status or "").strip().lower(), state.status),
        )
        for name, have, want in pairs:
            if have != want:
                problems.append({
                    "student_fee_id": state.student_fee_id,
                    "field": name,
                    "cached": str(have),
                    "expected": str(want),
                })
    return problems
