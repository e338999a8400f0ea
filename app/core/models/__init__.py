from app.core.models.academic_year import AcademicYear
from app.core.models.class_model import SchoolClass
from app.core.models.student import Student
from app.core.models.student_enrollment import StudentEnrollment
from app.core.models.fee_structure import FeeStructure
from app.core.models.student_fee_record import StudentFeeRecord
from app.core.models.fee_payment_record import FeePaymentRecord, PaymentAllocation, PaymentReversal
from app.core.models.fee_change_history import DiscountHistory, FeeChangeHistory
from app.core.models.fee_ledger_entry import FeeLedgerEntry
from app.core.models.student_promotion import StudentPromotion
from app.core.models.security_event import SecurityEvent

__all__ = [
    "AcademicYear",
    "SchoolClass",
    "Student",
    "StudentEnrollment",
    "FeeStructure",
    "StudentFeeRecord",
    "FeePaymentRecord",
    "PaymentAllocation",
    "PaymentReversal",
    "DiscountHistory",
    "FeeChangeHistory",
    "FeeLedgerEntry",
    "StudentPromotion",
    "SecurityEvent",
]
