from datetime import date, datetime
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest

from app.api.v1.fees.calculations import (
    LedgerBalance,
    calculate_discount_amount,
    calculate_fee_amounts,
    money,
    plan_fifo_allocation,
    project_balances,
    stored_status,
    summarize_year,
)

TODAY = date(2025, 6, 15)


def _record(fee_type, balance, priority=10, due=None, status="Pending", blocked=False, created=1):
    return SimpleNamespace(
        id=uuid4(),
        fee_type=fee_type,
        academic_year_id="ay",
        balance_fee=Decimal(balance),
        priority_order=priority,
        due_date=due,
        status=status,
        payment_blocked=blocked,
        created_at=datetime(2025, 4, 1, 0, 0, created),
    )


def test_money_rounds_half_up() -> None:
    assert money("10.005") == Decimal("10.01")
    assert money(None) == Decimal("0.00")
    assert money(3) == Decimal("3.00")


def test_stored_status() -> None:
    assert stored_status(Decimal("1000"), Decimal("0")) == "Pending"
    assert stored_status(Decimal("1000"), Decimal("1")) == "Partial"
    assert stored_status(Decimal("1000"), Decimal("1000")) == "Paid"
    # Fully discounted record
    assert stored_status(Decimal("0"), Decimal("0")) == "Paid"


def test_fee_amounts_status_progression() -> None:
    pending = calculate_fee_amounts("1000", "100", "0", due_date=date(2025, 7, 1), today=TODAY)
    assert pending.final_amount == Decimal("900")
    assert pending.balance_amount == Decimal("900")
    assert pending.status == "Pending"

    overdue = calculate_fee_amounts("1000", "0", "0", due_date=date(2025, 5, 1), today=TODAY)
    assert overdue.status == "Overdue"

    partial_past_due = calculate_fee_amounts("1000", "0", "10", due_date=date(2025, 5, 1), today=TODAY)
    assert partial_past_due.status == "Partial"

    paid = calculate_fee_amounts("1000", "100", "900", today=TODAY)
    assert paid.balance_amount == Decimal("0")
    assert paid.status == "Paid"


def test_fee_amounts_balance_never_negative() -> None:
    amounts = calculate_fee_amounts("500", "0", "600", today=TODAY)
    assert amounts.balance_amount == Decimal("0")


def test_fee_amounts_accepts_iso_due_date_strings() -> None:
    assert calculate_fee_amounts("500", "0", "0", due_date="2025-01-01", today=TODAY).status == "Overdue"


def test_discount_amounts() -> None:
    assert calculate_discount_amount(Decimal("1000"), "percentage", Decimal("10")) == Decimal("100.00")
    assert calculate_discount_amount(Decimal("333"), "percentage", Decimal("10")) == Decimal("33.30")
    assert calculate_discount_amount(Decimal("1000"), "fixed", Decimal("250")) == Decimal("250.00")
    # Fixed discount larger than the fee is capped
    assert calculate_discount_amount(Decimal("1000"), "fixed", Decimal("5000")) == Decimal("1000.00")


def test_fifo_orders_by_priority_then_due_date() -> None:
    tuition = _record("Tuition", "1000", due=date(2025, 5, 1))
    transport = _record("Transport", "300", due=date(2025, 4, 15))
    books = _record("Books", "200", due=None)
    dues = _record("Previous Year Dues", "500", priority=0, due=date(2025, 9, 1))

    plan = plan_fifo_allocation([tuition, transport, books, dues], Decimal("1000"))

    assert [line.fee_type for line in plan.lines] == ["Previous Year Dues", "Transport", "Tuition"]
    assert [line.allocated_amount for line in plan.lines] == [Decimal("500"), Decimal("300"), Decimal("200")]
    assert plan.lines[-1].balance_after == Decimal("800")
    assert plan.total_allocated == Decimal("1000")
    assert plan.remaining_amount == Decimal("0")


def test_fifo_skips_blocked_and_paid_records() -> None:
    blocked = _record("Blocked", "100", priority=1, blocked=True)
    paid = _record("Paid", "0", priority=1, status="Paid")
    open_record = _record("Open", "100", priority=5)

    plan = plan_fifo_allocation([blocked, paid, open_record], Decimal("150"))

    assert [line.fee_type for line in plan.lines] == ["Open"]
    assert plan.remaining_amount == Decimal("50")


def test_fifo_tie_breaks_on_creation_order() -> None:
    first = _record("First", "100", created=1)
    second = _record("Second", "100", created=2)
    plan = plan_fifo_allocation([second, first], Decimal("150"))
    assert [line.fee_type for line in plan.lines] == ["First", "Second"]
    assert plan.lines[1].allocated_amount == Decimal("50")


def test_summarize_year() -> None:
    year = SimpleNamespace(id="ay1", name="2025-2026")
    other = SimpleNamespace(id="ay0", name="2024-2025")

    def row(student, actual, discount, paid, status, due=None, year_id="ay1"):
        return SimpleNamespace(
            academic_year_id=year_id,
            student_id=student,
            actual_fee=Decimal(actual),
            discount_amount=Decimal(discount),
            paid_amount=Decimal(paid),
            status=status,
            due_date=due,
        )

    rows = [
        row("s1", "1000", "100", "900", "Paid"),
        row("s1", "500", "0", "0", "Pending", due=date(2025, 5, 1)),
        row("s2", "1000", "0", "250", "Partial", due=date(2025, 5, 1)),
        row("s3", "800", "0", "0", "Pending", year_id="ay0"),
    ]

    summary = summarize_year(rows, [year, other], "ay1", today=TODAY)

    assert summary.academic_year == "2025-2026"
    assert summary.total_collected == Decimal("1150")
    assert summary.total_discount == Decimal("100")
    assert summary.total_pending == Decimal("1250")
    assert summary.total_students == 2
    assert summary.overdue_count == 1
    assert summary.collection_rate == Decimal("46.00")
    in_year = [r for r in rows if r.academic_year_id == "ay1"]
    assert summary.total_collected + summary.total_pending + summary.total_discount == sum(
        r.actual_fee for r in in_year
    )


def test_summarize_unknown_year_is_empty() -> None:
    summary = summarize_year([], [], "missing")
    assert summary.total_students == 0
    assert summary.collection_rate == Decimal("0")


def test_collection_rate_is_zero_when_nothing_is_expected() -> None:
    year = SimpleNamespace(id="ay1", name="2025-2026")
    waived = SimpleNamespace(
        academic_year_id="ay1",
        student_id="s1",
        actual_fee=Decimal("0"),
        discount_amount=Decimal("0"),
        paid_amount=Decimal("0"),
        status="Paid",
        due_date=date(2025, 5, 1),
    )

    empty = summarize_year([], [year], "ay1", today=TODAY)
    assert empty.academic_year == "2025-2026"
    assert empty.collection_rate == Decimal("0")

    zero_rows = summarize_year([waived], [year], "ay1", today=TODAY)
    assert zero_rows.total_students == 1
    assert zero_rows.collection_rate == Decimal("0")
    assert zero_rows.total_collected + zero_rows.total_pending + zero_rows.total_discount == Decimal("0")
    assert zero_rows.overdue_count == 0


def test_ledger_projection() -> None:
    def entry(student, year, entry_type, amount):
        return SimpleNamespace(student_id=student, academic_year_id=year, entry_type=entry_type, amount=Decimal(amount))

    balances = project_balances(
        [
            entry("s1", "y1", "DEBIT", "1000"),
            entry("s1", "y1", "CREDIT", "100"),
            entry("s1", "y1", "CREDIT", "400"),
            entry("s1", "y1", "DEBIT", "50"),
            entry("s2", "y1", "DEBIT", "700"),
        ]
    )
    assert balances[("s1", "y1")].balance == Decimal("550")
    assert balances[("s1", "y1")].debits == Decimal("1050")
    assert balances[("s2", "y1")].balance == Decimal("700")


def test_ledger_balance_rejects_unknown_entry_type() -> None:
    with pytest.raises(ValueError):
        LedgerBalance().post("SIDEWAYS", Decimal("1"))
