import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from app.db.session import Base


class FeeStructure(Base):
    """Class-level fee template per academic year. Student fee records are generated from active rows."""

    __tablename__ = "fee_structures"
    __table_args__ = (
        UniqueConstraint("academic_year_id", "class_id", "fee_type", name="uq_fee_structure_year_class_type"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    academic_year_id = Column(Uuid, ForeignKey("academic_years.id", ondelete="RESTRICT"), nullable=False)
    class_id = Column(Uuid, ForeignKey("classes.id"), nullable=False)
    fee_type = Column(String(100), nullable=False)  # Tuition Fee, Transport Fee, ...
    amount = Column(Numeric(12, 2), nullable=False)
    frequency = Column(String(20), nullable=False, default="annual")
    due_date = Column(Date, nullable=True)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    academic_year = relationship("AcademicYear")
    school_class = relationship("SchoolClass")
