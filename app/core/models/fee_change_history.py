"""Per-record audit trail for fee mutations, plus discount history."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import relationship

from app.db.session import Base


class FeeChangeHistory(Base):
    """One row per mutation of a student fee record (creation, discount, payment, reversal, block)."""

    __tablename__ = "fee_change_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    fee_record_id = Column(Uuid, ForeignKey("student_fee_records.id", ondelete="RESTRICT"), nullable=False, index=True)
    change_type = Column(String(30), nullable=False)
    amount = Column(Numeric(12, 2), nullable=True)
    previous_value = Column(Numeric(12, 2), nullable=True)
    new_value = Column(Numeric(12, 2), nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    payment_method = Column(String(30), nullable=True)
    receipt_number = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)
    changed_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    change_date = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    fee_record = relationship("StudentFeeRecord", backref="change_history")


class DiscountHistory(Base):
    """Every discount applied to a fee record, including replacements."""

    __tablename__ = "discount_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    fee_record_id = Column(Uuid, ForeignKey("student_fee_records.id", ondelete="RESTRICT"), nullable=False, index=True)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="RESTRICT"), nullable=False)
    discount_type = Column(String(20), nullable=False)  # fixed | percentage
    discount_value = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False)
    previous_discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    reason = Column(Text, nullable=False)
    notes = Column(Text, nullable=True)
    applied_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    applied_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
