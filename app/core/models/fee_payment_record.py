"""Payment records, their allocation over fee records, and reversals."""

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import relationship

from app.db.session import Base


class FeePaymentRecord(Base):
    """A payment received from a student. One payment may settle several fee records (see PaymentAllocation)."""

    __tablename__ = "fee_payment_records"
    __table_args__ = (CheckConstraint("amount_paid > 0", name="chk_fee_payment_amount"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="RESTRICT"), nullable=False, index=True)
    # First fee record the payment settled
    fee_record_id = Column(Uuid, ForeignKey("student_fee_records.id", ondelete="RESTRICT"), nullable=False)
    target_academic_year_id = Column(Uuid, ForeignKey("academic_years.id", ondelete="RESTRICT"), nullable=False)
    amount_paid = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String(30), nullable=False)  # CASH, UPI, CARD, BANK, CHEQUE
    payment_date = Column(Date, nullable=False)
    receipt_number = Column(String(50), nullable=False, unique=True)
    payment_receiver = Column(String(255), nullable=True)
    reference_number = Column(String(100), nullable=True)
    late_fee = Column(Numeric(12, 2), nullable=False, default=0)
    notes = Column(Text, nullable=True)
    created_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    allocations = relationship(
        "PaymentAllocation",
        back_populates="payment",
        order_by="PaymentAllocation.allocation_order",
    )


class PaymentAllocation(Base):
    """Share of a payment applied to one fee record, in FIFO order."""

    __tablename__ = "payment_allocations"
    __table_args__ = (CheckConstraint("allocated_amount > 0", name="chk_payment_allocation_amount"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_record_id = Column(Uuid, ForeignKey("fee_payment_records.id", ondelete="RESTRICT"), nullable=False, index=True)
    fee_record_id = Column(Uuid, ForeignKey("student_fee_records.id", ondelete="RESTRICT"), nullable=False, index=True)
    allocated_amount = Column(Numeric(12, 2), nullable=False)
    # Amount of this allocation already unwound by reversals
    reversed_amount = Column(Numeric(12, 2), nullable=False, default=0)
    allocation_order = Column(Integer, nullable=False)
    allocation_date = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    payment = relationship("FeePaymentRecord", back_populates="allocations")
    fee_record = relationship("StudentFeeRecord")


class PaymentReversal(Base):
    """Reversal or refund of (part of) a payment."""

    __tablename__ = "payment_reversals"
    __table_args__ = (CheckConstraint("reversal_amount > 0", name="chk_payment_reversal_amount"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_record_id = Column(Uuid, ForeignKey("fee_payment_records.id", ondelete="RESTRICT"), nullable=False, index=True)
    reversal_type = Column(String(20), nullable=False)  # reversal | refund
    reversal_amount = Column(Numeric(12, 2), nullable=False)
    reason = Column(Text, nullable=False)
    notes = Column(Text, nullable=True)
    authorized_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reversal_date = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    payment = relationship("FeePaymentRecord", backref="reversals")
