"""Pure fee arithmetic: record amounts/status, discounts, FIFO allocation plans, year summaries, ledger folds."""

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from app.core.enums import DiscountType, FeeStatus, LedgerEntryType

ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_decimal(val) -> Decimal:
    if val is None:
        return ZERO
    return val if isinstance(val, Decimal) else Decimal(str(val))


def money(val) -> Decimal:
    return to_decimal(val).quantize(CENT, rounding=ROUND_HALF_UP)


def _due(val) -> Optional[date]:
    if val is None or isinstance(val, date):
        return val
    return date.fromisoformat(str(val)[:10])


# --- Record amounts ---
@dataclass(frozen=True)
class FeeAmounts:
    actual_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    status: str


def stored_status(final_amount, paid_amount) -> str:
    """Status persisted on a fee record: Paid, Partial or Pending."""
    final = to_decimal(final_amount)
    paid = to_decimal(paid_amount)
    if paid >= final:
        return FeeStatus.PAID.value
    if paid > 0:
        return FeeStatus.PARTIAL.value
    return FeeStatus.PENDING.value


def calculate_fee_amounts(
    actual_fee,
    discount_amount,
    paid_amount,
    due_date=None,
    today: Optional[date] = None,
) -> FeeAmounts:
    """Amounts for display; an untouched record past its due date shows as Overdue."""
    today = today or date.today()
    actual = to_decimal(actual_fee)
    discount = to_decimal(discount_amount)
    paid = to_decimal(paid_amount)
    final = actual - discount
    balance = max(ZERO, final - paid)

    if balance == 0:
        status = FeeStatus.PAID.value
    elif paid > 0:
        status = FeeStatus.PARTIAL.value
    elif _due(due_date) is not None and _due(due_date) < today:
        status = FeeStatus.OVERDUE.value
    else:
        status = FeeStatus.PENDING.value
    return FeeAmounts(actual, discount, final, paid, balance, status)


def calculate_discount_amount(base_amount, discount_type: str, discount_value) -> Decimal:
    """Fixed discounts are capped at the base amount; percentages are rounded to cents."""
    base = to_decimal(base_amount)
    value = to_decimal(discount_value)
    if discount_type == DiscountType.PERCENTAGE.value:
        return money(base * value / Decimal("100"))
    return money(min(value, base))


# --- FIFO allocation ---
@dataclass(frozen=True)
class AllocationLine:
    fee_record_id: Any
    fee_type: str
    academic_year_id: Any
    due_date: Optional[date]
    balance_before: Decimal
    allocated_amount: Decimal

    @property
    def balance_after(self) -> Decimal:
        return self.balance_before - self.allocated_amount


@dataclass
class AllocationPlan:
    payment_amount: Decimal
    lines: List[AllocationLine] = field(default_factory=list)

    @property
    def total_allocated(self) -> Decimal:
        return sum((line.allocated_amount for line in self.lines), ZERO)

    @property
    def remaining_amount(self) -> Decimal:
        return self.payment_amount - self.total_allocated


def fifo_sort_key(record) -> Tuple:
    """priority_order first, then due date (undated last), then creation."""
    due = _due(record.due_date)
    return (
        record.priority_order if record.priority_order is not None else 10,
        due is None,
        due or date.max,
        record.created_at,
    )


def plan_fifo_allocation(records: Iterable[Any], payment_amount) -> AllocationPlan:
    """
    Spread payment_amount over records oldest-obligation-first.
    Records that are Paid, blocked, or without balance are skipped.
    """
    plan = AllocationPlan(payment_amount=to_decimal(payment_amount))
    remaining = plan.payment_amount
    eligible = [
        r for r in records
        if not r.payment_blocked and r.status != FeeStatus.PAID.value and r.balance_fee > 0
    ]
    for record in sorted(eligible, key=fifo_sort_key):
        if remaining <= 0:
            break
        balance = to_decimal(record.balance_fee)
        amount = min(remaining, balance)
        plan.lines.append(
            AllocationLine(
                fee_record_id=record.id,
                fee_type=record.fee_type,
                academic_year_id=record.academic_year_id,
                due_date=_due(record.due_date),
                balance_before=balance,
                allocated_amount=amount,
            )
        )
        remaining -= amount
    return plan


# --- Year summary ---
@dataclass(frozen=True)
class YearSummary:
    academic_year: str
    total_collected: Decimal
    total_pending: Decimal
    total_discount: Decimal
    total_students: int
    collection_rate: Decimal
    overdue_count: int


def summarize_year(
    records: Sequence[Any],
    academic_years: Sequence[Any],
    academic_year_id,
    today: Optional[date] = None,
) -> YearSummary:
    """
    Single pass over fee rows of one academic year.

    total_pending counts only positive balances, so for rows that are not overpaid
    total_collected + total_pending + total_discount equals the sum of actual fees.
    Overdue means status Pending with a due date before today.
    """
    today = today or date.today()
    year = next((y for y in academic_years if str(y.id) == str(academic_year_id)), None)
    if year is None:
        return YearSummary("", ZERO, ZERO, ZERO, 0, ZERO, 0)

    total_collected = ZERO
    total_discount = ZERO
    total_pending = ZERO
    students = set()
    overdue = 0
    for rec in records:
        if str(rec.academic_year_id) != str(academic_year_id):
            continue
        paid = to_decimal(rec.paid_amount)
        discount = to_decimal(rec.discount_amount)
        total_collected += paid
        total_discount += discount
        total_pending += max(ZERO, to_decimal(rec.actual_fee) - discount - paid)
        students.add(str(rec.student_id))
        due = _due(rec.due_date)
        if rec.status == FeeStatus.PENDING.value and due is not None and due < today:
            overdue += 1

    total_expected = total_collected + total_pending + total_discount
    rate = money(total_collected / total_expected * 100) if total_expected > 0 else ZERO
    return YearSummary(
        academic_year=year.name,
        total_collected=total_collected,
        total_pending=total_pending,
        total_discount=total_discount,
        total_students=len(students),
        collection_rate=rate,
        overdue_count=overdue,
    )


# --- Ledger projection ---
@dataclass
class LedgerBalance:
    debits: Decimal = ZERO
    credits: Decimal = ZERO

    @property
    def balance(self) -> Decimal:
        return self.debits - self.credits

    def post(self, entry_type: str, amount) -> None:
        if entry_type == LedgerEntryType.DEBIT.value:
            self.debits += to_decimal(amount)
        elif entry_type == LedgerEntryType.CREDIT.value:
            self.credits += to_decimal(amount)
        else:
            raise ValueError(f"Unknown ledger entry type: {entry_type}")


def project_balances(entries: Iterable[Any], key=lambda e: (e.student_id, e.academic_year_id)) -> Dict[Any, LedgerBalance]:
    """Fold ledger entries into balances grouped by key (default: student and academic year)."""
    balances: Dict[Any, LedgerBalance] = {}
    for entry in entries:
        balances.setdefault(key(entry), LedgerBalance()).post(entry.entry_type, entry.amount)
    return balances
