"""Student fee record: one fee type per student per academic year. Mutable projection kept in step with the ledger."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from app.core.enums import FeeStatus
from app.db.session import Base


class StudentFeeRecord(Base):
    """
    Fee assessed to a student for an academic year.
    actual_fee is immutable after creation; discount_amount and paid_amount move with
    discounts, payments and reversals, each of which also posts a ledger entry.
    """

    __tablename__ = "student_fee_records"
    __table_args__ = (
        UniqueConstraint("student_id", "academic_year_id", "fee_type", name="uq_student_fee_record_year_type"),
        CheckConstraint("actual_fee >= 0", name="chk_student_fee_record_actual_fee"),
        CheckConstraint("discount_amount >= 0", name="chk_student_fee_record_discount"),
        CheckConstraint("paid_amount >= 0", name="chk_student_fee_record_paid"),
        CheckConstraint("status IN ('Pending','Partial','Paid')", name="chk_student_fee_record_status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="RESTRICT"), nullable=False, index=True)
    academic_year_id = Column(Uuid, ForeignKey("academic_years.id", ondelete="RESTRICT"), nullable=False, index=True)
    class_id = Column(Uuid, ForeignKey("classes.id"), nullable=False)
    fee_structure_id = Column(Uuid, ForeignKey("fee_structures.id", ondelete="SET NULL"), nullable=True)
    fee_type = Column(String(100), nullable=False)

    actual_fee = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    discount_notes = Column(Text, nullable=True)
    discount_updated_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    discount_updated_at = Column(DateTime(timezone=True), nullable=True)
    paid_amount = Column(Numeric(12, 2), nullable=False, default=0)
    due_date = Column(Date, nullable=True)
    status = Column(String(20), nullable=False, default=FeeStatus.PENDING.value)  # Pending, Partial, Paid

    # Lower numbers are settled first by FIFO allocation; carried-forward dues use 0.
    priority_order = Column(Integer, nullable=False, default=10)
    payment_blocked = Column(Boolean, nullable=False, default=False)
    blocked_reason = Column(Text, nullable=True)
    blocked_at = Column(DateTime(timezone=True), nullable=True)
    blocked_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    is_carry_forward = Column(Boolean, nullable=False, default=False)
    carry_forward_source_year_id = Column(Uuid, ForeignKey("academic_years.id", ondelete="RESTRICT"), nullable=True)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    student = relationship("Student", backref="fee_records")
    academic_year = relationship("AcademicYear", foreign_keys=[academic_year_id])
    school_class = relationship("SchoolClass")

    @property
    def final_fee(self) -> Decimal:
        return Decimal(str(self.actual_fee or 0)) - Decimal(str(self.discount_amount or 0))

    @property
    def balance_fee(self) -> Decimal:
        return max(Decimal("0"), self.final_fee - Decimal(str(self.paid_amount or 0)))
