from enum import Enum


class UserRole(str, Enum):
    ADMIN = "admin"
    TEACHER = "teacher"
    PARENT = "parent"
    ACCOUNTANT = "accountant"


class AcademicYearStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class StudentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ARCHIVED = "ARCHIVED"


class EnrollmentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    TRANSFERRED = "TRANSFERRED"
    PROMOTED = "PROMOTED"
    REPEATED = "REPEATED"
    DROPOUT = "DROPOUT"
    ARCHIVED = "ARCHIVED"


class FeeStatus(str, Enum):
    PENDING = "Pending"
    PARTIAL = "Partial"
    PAID = "Paid"
    # Display-only; never stored
    OVERDUE = "Overdue"


class FeeFrequency(str, Enum):
    ONE_TIME = "one_time"
    MONTHLY = "monthly"
    TERM_WISE = "term_wise"
    ANNUAL = "annual"


class DiscountType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    UPI = "UPI"
    CARD = "CARD"
    BANK = "BANK"
    CHEQUE = "CHEQUE"


class ReversalType(str, Enum):
    REVERSAL = "reversal"
    REFUND = "refund"


class LedgerEntryType(str, Enum):
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


class LedgerSource(str, Enum):
    FEE_ASSESSED = "FEE_ASSESSED"
    DISCOUNT = "DISCOUNT"
    DISCOUNT_REVERSAL = "DISCOUNT_REVERSAL"
    PAYMENT = "PAYMENT"
    REVERSAL = "REVERSAL"
    CARRY_FORWARD_IN = "CARRY_FORWARD_IN"
    CARRY_FORWARD_OUT = "CARRY_FORWARD_OUT"


class FeeChangeType(str, Enum):
    CREATED = "created"
    DISCOUNT = "discount"
    PAYMENT = "payment"
    REVERSAL = "reversal"
    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"
    CARRY_FORWARD = "carry_forward"


class PromotionType(str, Enum):
    PROMOTED = "promoted"
    REPEATED = "repeated"
    DROPOUT = "dropout"


PREVIOUS_YEAR_DUES_FEE_TYPE = "Previous Year Dues"
