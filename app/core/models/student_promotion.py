import uuid
from datetime import datetime

from sqlalchemy import Column, Date, DateTime, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import relationship

from app.db.session import Base


class StudentPromotion(Base):
    """Outcome of a year-end promotion for one student. idempotency_key groups one executed batch."""

    __tablename__ = "student_promotions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    from_academic_year_id = Column(Uuid, ForeignKey("academic_years.id", ondelete="RESTRICT"), nullable=False)
    to_academic_year_id = Column(Uuid, ForeignKey("academic_years.id", ondelete="RESTRICT"), nullable=False)
    from_class_id = Column(Uuid, ForeignKey("classes.id"), nullable=False)
    to_class_id = Column(Uuid, ForeignKey("classes.id"), nullable=True)
    promotion_type = Column(String(20), nullable=False)  # promoted | repeated | dropout
    promotion_date = Column(Date, nullable=False)
    carried_forward_amount = Column(Numeric(12, 2), nullable=False, default=0)
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    idempotency_key = Column(String(100), nullable=True, index=True)
    promoted_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    student = relationship("Student")
