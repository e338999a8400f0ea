"""Fee ledger: append-only debit/credit entries. Balances are derived by summation, never stored."""

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Numeric, String, Text, Uuid, event

from app.db.session import Base


class FeeLedgerEntry(Base):
    """
    Immutable ledger entry. DEBIT raises what a student owes (fee assessed, reversal,
    dues carried in); CREDIT lowers it (discount, payment, dues carried out).
    fee_record_id is NULL for year-level entries such as CARRY_FORWARD_OUT.
    """

    __tablename__ = "fee_ledger_entries"
    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_fee_ledger_amount_positive"),
        CheckConstraint("entry_type IN ('DEBIT','CREDIT')", name="chk_fee_ledger_entry_type"),
        Index("ix_fee_ledger_student_year", "student_id", "academic_year_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="RESTRICT"), nullable=False)
    academic_year_id = Column(Uuid, ForeignKey("academic_years.id", ondelete="RESTRICT"), nullable=False)
    fee_record_id = Column(Uuid, ForeignKey("student_fee_records.id", ondelete="RESTRICT"), nullable=True, index=True)
    entry_type = Column(String(10), nullable=False)
    source = Column(String(30), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    # Payment, reversal, discount or promotion id that produced the entry
    reference_id = Column(Uuid, nullable=True)
    description = Column(Text, nullable=True)
    created_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)


@event.listens_for(FeeLedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target: FeeLedgerEntry) -> None:
    raise ValueError("fee_ledger_entries is append-only; post a compensating entry instead")


@event.listens_for(FeeLedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target: FeeLedgerEntry) -> None:
    raise ValueError("fee_ledger_entries is append-only; post a compensating entry instead")
