"""Fees schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.core.enums import DiscountType, FeeFrequency, PaymentMethod, ReversalType


# --- Fee Structure ---
class FeeStructureCreate(BaseModel):
    academic_year_id: UUID
    class_id: UUID
    fee_type: str = Field(..., min_length=1, max_length=100, description="e.g. Tuition Fee, Transport Fee")
    amount: Decimal = Field(..., ge=0)
    frequency: FeeFrequency = FeeFrequency.ANNUAL
    due_date: Optional[date] = None
    description: Optional[str] = None


class FeeStructureResponse(BaseModel):
    id: UUID
    academic_year_id: UUID
    class_id: UUID
    class_name: Optional[str] = None
    fee_type: str
    amount: Decimal
    frequency: str
    due_date: Optional[date] = None
    description: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# --- Student Fee Records ---
class GenerateFeeRecordsRequest(BaseModel):
    """Create missing fee records for enrolled students from the year's fee structures."""

    academic_year_id: UUID
    class_id: Optional[UUID] = None


class GenerateFeeRecordsResponse(BaseModel):
    academic_year_id: UUID
    students_processed: int
    records_created: int


class FeeRecordResponse(BaseModel):
    id: UUID
    student_id: UUID
    student_name: Optional[str] = None
    admission_number: Optional[str] = None
    academic_year_id: UUID
    class_id: UUID
    class_name: Optional[str] = None
    fee_type: str
    actual_fee: Decimal
    discount_amount: Decimal
    final_fee: Decimal
    paid_amount: Decimal
    balance_fee: Decimal
    due_date: Optional[date] = None
    status: str = Field(..., description="Stored status: Pending, Partial, Paid")
    display_status: str = Field(..., description="Status for display; Overdue when unpaid past the due date")
    discount_notes: Optional[str] = None
    priority_order: int
    payment_blocked: bool
    blocked_reason: Optional[str] = None
    is_carry_forward: bool
    carry_forward_source_year_id: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime


class StudentFeesResponse(BaseModel):
    student_id: UUID
    academic_year_id: UUID
    records: List[FeeRecordResponse]
    total_actual: Decimal
    total_discount: Decimal
    total_paid: Decimal
    total_balance: Decimal


# --- Discount ---
class DiscountCreate(BaseModel):
    """Replaces the record's current discount."""

    discount_type: DiscountType
    discount_value: Decimal = Field(..., ge=0)
    reason: str = Field(..., min_length=1)
    notes: Optional[str] = None


class DiscountHistoryResponse(BaseModel):
    id: UUID
    fee_record_id: UUID
    student_id: UUID
    discount_type: str
    discount_value: Decimal
    discount_amount: Decimal
    previous_discount_amount: Decimal
    reason: str
    notes: Optional[str] = None
    applied_by: Optional[UUID] = None
    applied_at: datetime


class BulkDiscountCreate(DiscountCreate):
    """Same discount applied to each listed fee record. A percentage is taken of each record's own fee."""

    fee_record_ids: List[UUID] = Field(..., min_length=1)


class BulkDiscountFailure(BaseModel):
    fee_record_id: UUID
    status_code: int
    error: str


class BulkDiscountResponse(BaseModel):
    applied: List[FeeRecordResponse]
    failed: List[BulkDiscountFailure]


# --- Reports ---
class StudentDiscountReportItem(BaseModel):
    student_id: UUID
    student_name: str
    admission_number: str
    class_name: Optional[str] = None
    total_discount: Decimal
    discount_count: int


class YearDiscountReportItem(BaseModel):
    academic_year_id: UUID
    academic_year: str
    total_fees: Decimal
    total_discount: Decimal
    discount_percentage: Decimal
    discount_count: int


class DiscountReport(BaseModel):
    """Discounts grouped by student (largest first) and by academic year (newest first)."""

    students: List[StudentDiscountReportItem]
    years: List[YearDiscountReportItem]


class BlockedStudentItem(BaseModel):
    student_id: UUID
    student_name: str
    admission_number: str
    blocked_balance: Decimal
    records: List[FeeRecordResponse]


class BlockedPaymentsReport(BaseModel):
    academic_year_id: UUID
    students_count: int
    total_blocked_balance: Decimal
    items: List[BlockedStudentItem]


# --- Payment ---
class PaymentCreate(BaseModel):
    amount_paid: Decimal = Field(..., gt=0, decimal_places=2)
    payment_method: PaymentMethod
    payment_date: Optional[date] = None
    payment_receiver: Optional[str] = Field(None, max_length=255)
    reference_number: Optional[str] = Field(None, max_length=100)
    late_fee: Decimal = Field(Decimal("0"), ge=0, decimal_places=2)
    notes: Optional[str] = None


class PaymentAllocationResponse(BaseModel):
    fee_record_id: UUID
    fee_type: str
    academic_year_id: UUID
    allocated_amount: Decimal
    reversed_amount: Decimal
    allocation_order: int


class PaymentResponse(BaseModel):
    id: UUID
    student_id: UUID
    fee_record_id: UUID
    target_academic_year_id: UUID
    amount_paid: Decimal
    reversed_amount: Decimal
    payment_method: str
    payment_date: date
    receipt_number: str
    payment_receiver: Optional[str] = None
    reference_number: Optional[str] = None
    late_fee: Decimal
    notes: Optional[str] = None
    created_by: Optional[UUID] = None
    created_at: datetime
    allocations: List[PaymentAllocationResponse] = []


# --- FIFO allocation ---
class FifoPaymentRequest(PaymentCreate):
    """Lump payment spread over a student's outstanding records, oldest obligation first."""

    academic_year_id: Optional[UUID] = Field(None, description="Limit allocation to one academic year")


class AllocationPreviewLine(BaseModel):
    fee_record_id: UUID
    fee_type: str
    academic_year_id: UUID
    due_date: Optional[date] = None
    balance_before: Decimal
    allocated_amount: Decimal
    balance_after: Decimal


class AllocationPreview(BaseModel):
    student_id: UUID
    payment_amount: Decimal
    total_outstanding: Decimal
    total_allocated: Decimal
    remaining_amount: Decimal
    lines: List[AllocationPreviewLine]


# --- Reversal ---
class PaymentReversalCreate(BaseModel):
    reversal_type: ReversalType
    reversal_amount: Decimal = Field(..., gt=0, decimal_places=2)
    reason: str = Field(..., min_length=1)
    notes: Optional[str] = None


class PaymentReversalResponse(BaseModel):
    id: UUID
    payment_record_id: UUID
    reversal_type: str
    reversal_amount: Decimal
    reason: str
    notes: Optional[str] = None
    authorized_by: Optional[UUID] = None
    reversal_date: datetime


# --- Block / unblock ---
class PaymentBlockRequest(BaseModel):
    reason: str = Field(..., min_length=1)


# --- Change history ---
class FeeChangeHistoryResponse(BaseModel):
    id: UUID
    fee_record_id: UUID
    change_type: str
    amount: Optional[Decimal] = None
    previous_value: Optional[Decimal] = None
    new_value: Optional[Decimal] = None
    old_values: Optional[dict] = None
    new_values: Optional[dict] = None
    payment_method: Optional[str] = None
    receipt_number: Optional[str] = None
    notes: Optional[str] = None
    changed_by: Optional[UUID] = None
    change_date: datetime


# --- Summary ---
class YearSummaryResponse(BaseModel):
    academic_year_id: UUID
    academic_year: str
    total_collected: Decimal
    total_pending: Decimal
    total_discount: Decimal
    total_students: int
    collection_rate: Decimal = Field(..., description="Percent of expected collected, 2 decimal places")
    overdue_count: int


# --- Previous year dues ---
class PreviousYearDuesItem(BaseModel):
    fee_record_id: UUID
    student_id: UUID
    student_name: Optional[str] = None
    admission_number: Optional[str] = None
    source_academic_year_id: Optional[UUID] = None
    actual_fee: Decimal
    paid_amount: Decimal
    balance_fee: Decimal
    status: str


class PreviousYearDuesSummary(BaseModel):
    academic_year_id: UUID
    students_with_dues: int
    total_carried_forward: Decimal
    total_collected: Decimal
    total_outstanding: Decimal
    items: List[PreviousYearDuesItem]


# --- Ledger ---
class LedgerEntryResponse(BaseModel):
    id: UUID
    student_id: UUID
    academic_year_id: UUID
    fee_record_id: Optional[UUID] = None
    entry_type: str
    source: str
    amount: Decimal
    reference_id: Optional[UUID] = None
    description: Optional[str] = None
    created_by: Optional[UUID] = None
    created_at: datetime


class StudentLedgerResponse(BaseModel):
    student_id: UUID
    academic_year_id: Optional[UUID] = None
    entries: List[LedgerEntryResponse]
    total_debits: Decimal
    total_credits: Decimal
    balance: Decimal


class ReconciliationMismatch(BaseModel):
    fee_record_id: UUID
    student_id: UUID
    fee_type: str
    record_balance: Decimal
    ledger_balance: Decimal
    difference: Decimal


class ReconciliationReport(BaseModel):
    academic_year_id: UUID
    records_checked: int
    mismatches: List[ReconciliationMismatch]
    is_consistent: bool
