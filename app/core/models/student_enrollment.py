"""Temporal (SCD-2) enrollment history: one row per validity interval, never overwritten."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Index, String, Text, Uuid, event, inspect
from sqlalchemy.orm import relationship

from app.core.enums import EnrollmentStatus
from app.db.session import Base


class StudentEnrollment(Base):
    """
    Student enrollment in a class for an academic year, valid over [valid_from, valid_to).
    valid_to is NULL while the row is current. A class change closes the current row and
    inserts a new one; the key columns of an existing row never change.
    """

    __tablename__ = "student_enrollments"
    __table_args__ = (
        Index("ix_student_enrollments_student_valid_from", "student_id", "valid_from"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False)
    academic_year_id = Column(Uuid, ForeignKey("academic_years.id", ondelete="RESTRICT"), nullable=False)
    class_id = Column(Uuid, ForeignKey("classes.id"), nullable=False)
    status = Column(String(20), nullable=False, default=EnrollmentStatus.ACTIVE.value)
    valid_from = Column(Date, nullable=False)
    valid_to = Column(Date, nullable=True)
    is_current = Column(Boolean, nullable=False, default=True)
    change_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    student = relationship("Student", backref="enrollments")
    academic_year = relationship("AcademicYear")
    school_class = relationship("SchoolClass", lazy="joined")


IMMUTABLE_ENROLLMENT_COLUMNS = ("student_id", "academic_year_id", "class_id", "valid_from")


@event.listens_for(StudentEnrollment, "before_update")
def _reject_enrollment_overwrite(mapper, connection, target: StudentEnrollment) -> None:
    state = inspect(target)
    for column in IMMUTABLE_ENROLLMENT_COLUMNS:
        if state.attrs[column].history.has_changes():
            raise ValueError(f"student_enrollments.{column} is immutable; insert a new version instead")
