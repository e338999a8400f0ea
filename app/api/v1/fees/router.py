"""Fees router: fee structures, student fee records, discounts, payments, reversals, summaries, ledger."""

from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user, require_writable_academic_year
from app.auth.rbac import check_permission
from app.auth.schemas import CurrentUser
from app.core.exceptions import ServiceError
from app.db.session import get_db

from .schemas import (
    AllocationPreview,
    BlockedPaymentsReport,
    BulkDiscountCreate,
    BulkDiscountResponse,
    DiscountCreate,
    DiscountHistoryResponse,
    DiscountReport,
    FeeChangeHistoryResponse,
    FeeRecordResponse,
    FeeStructureCreate,
    FeeStructureResponse,
    FifoPaymentRequest,
    GenerateFeeRecordsRequest,
    GenerateFeeRecordsResponse,
    PaymentBlockRequest,
    PaymentCreate,
    PaymentResponse,
    PaymentReversalCreate,
    PaymentReversalResponse,
    PreviousYearDuesSummary,
    ReconciliationReport,
    StudentFeesResponse,
    StudentLedgerResponse,
    YearSummaryResponse,
)
from . import ledger, service

router = APIRouter(prefix="/api/v1/fees", tags=["fees"])


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


# --- Fee Structure ---
@router.post(
    "/structures",
    response_model=FeeStructureResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[
        Depends(check_permission("fees", "create")),
        Depends(require_writable_academic_year),
    ],
)
async def create_fee_structure(
    payload: FeeStructureCreate,
    db: AsyncSession = Depends(get_db),
) -> FeeStructureResponse:
    try:
        return await service.create_fee_structure(db, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/structures",
    response_model=List[FeeStructureResponse],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def list_fee_structures(
    academic_year_id: UUID,
    class_id: Optional[UUID] = Query(None),
    active_only: bool = Query(True),
    db: AsyncSession = Depends(get_db),
) -> List[FeeStructureResponse]:
    return await service.list_fee_structures(db, academic_year_id, class_id=class_id, active_only=active_only)


# --- Student Fee Records ---
@router.post(
    "/records/generate",
    response_model=GenerateFeeRecordsResponse,
    dependencies=[
        Depends(check_permission("fees", "create")),
        Depends(require_writable_academic_year),
    ],
)
async def generate_fee_records(
    payload: GenerateFeeRecordsRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> GenerateFeeRecordsResponse:
    """Create missing fee records for enrolled students from the year's fee structures. Safe to re-run."""
    try:
        return await service.generate_fee_records(db, payload, changed_by=current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/records",
    response_model=List[FeeRecordResponse],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def list_fee_records(
    academic_year_id: UUID,
    class_id: Optional[UUID] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status", description="Pending, Partial, Paid or Overdue"),
    student_id: Optional[UUID] = Query(None),
    include_archived: bool = Query(False, description="Include records of archived students"),
    db: AsyncSession = Depends(get_db),
) -> List[FeeRecordResponse]:
    return await service.list_fee_records(
        db,
        academic_year_id,
        class_id=class_id,
        status_filter=status_filter,
        student_id=student_id,
        include_archived=include_archived,
    )


@router.get(
    "/records/{fee_record_id}/history",
    response_model=List[FeeChangeHistoryResponse],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_change_history(
    fee_record_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> List[FeeChangeHistoryResponse]:
    try:
        return await service.get_change_history(db, fee_record_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/records/{fee_record_id}/discounts",
    response_model=List[DiscountHistoryResponse],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def list_discount_history(
    fee_record_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> List[DiscountHistoryResponse]:
    try:
        return await service.list_discount_history(db, fee_record_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# --- Discount ---
@router.post(
    "/records/{fee_record_id}/discount",
    response_model=FeeRecordResponse,
    dependencies=[
        Depends(check_permission("fees", "update")),
        Depends(require_writable_academic_year),
    ],
)
async def apply_discount(
    fee_record_id: UUID,
    payload: DiscountCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> FeeRecordResponse:
    """Replace the discount of a fee record. Percentages above the approval threshold need Admin."""
    try:
        return await service.apply_discount(
            db,
            fee_record_id,
            payload,
            applied_by=current_user.id,
            current_user_role=current_user.role,
            ip_address=_client_ip(request),
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/records/bulk-discount",
    response_model=BulkDiscountResponse,
    dependencies=[
        Depends(check_permission("fees", "update")),
        Depends(require_writable_academic_year),
    ],
)
async def bulk_apply_discount(
    payload: BulkDiscountCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> BulkDiscountResponse:
    """Apply the same discount to several fee records. Refused records are listed under failed."""
    try:
        return await service.bulk_apply_discount(
            db,
            payload,
            applied_by=current_user.id,
            current_user_role=current_user.role,
            ip_address=_client_ip(request),
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# --- Payment ---
@router.post(
    "/records/{fee_record_id}/payments",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[
        Depends(check_permission("fees", "create")),
        Depends(require_writable_academic_year),
    ],
)
async def record_payment(
    fee_record_id: UUID,
    payload: PaymentCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> PaymentResponse:
    try:
        return await service.record_payment(
            db, fee_record_id, payload, created_by=current_user.id, ip_address=_client_ip(request)
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/records/{fee_record_id}/block",
    response_model=FeeRecordResponse,
    dependencies=[
        Depends(check_permission("fees", "update")),
        Depends(require_writable_academic_year),
    ],
)
async def block_payments(
    fee_record_id: UUID,
    payload: PaymentBlockRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> FeeRecordResponse:
    try:
        return await service.set_payment_block(db, fee_record_id, True, current_user.id, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/records/{fee_record_id}/unblock",
    response_model=FeeRecordResponse,
    dependencies=[
        Depends(check_permission("fees", "update")),
        Depends(require_writable_academic_year),
    ],
)
async def unblock_payments(
    fee_record_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> FeeRecordResponse:
    try:
        return await service.set_payment_block(db, fee_record_id, False, current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/payments/{payment_id}/reversals",
    response_model=PaymentReversalResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[
        Depends(check_permission("fees", "update")),
        Depends(require_writable_academic_year),
    ],
)
async def reverse_payment(
    payment_id: UUID,
    payload: PaymentReversalCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> PaymentReversalResponse:
    """Reverse or refund part or all of a payment."""
    try:
        return await service.reverse_payment(
            db, payment_id, payload, authorized_by=current_user.id, ip_address=_client_ip(request)
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# --- Per student ---
@router.get(
    "/students/{student_id}",
    response_model=StudentFeesResponse,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_student_fees(
    student_id: UUID,
    academic_year_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> StudentFeesResponse:
    try:
        return await service.get_student_fees(db, student_id, academic_year_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/students/{student_id}/payments",
    response_model=List[PaymentResponse],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_payment_history(
    student_id: UUID,
    academic_year_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> List[PaymentResponse]:
    return await service.get_payment_history(db, student_id, academic_year_id)


@router.get(
    "/students/{student_id}/allocation-preview",
    response_model=AllocationPreview,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def preview_fifo_allocation(
    student_id: UUID,
    amount: Decimal = Query(..., gt=0),
    academic_year_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> AllocationPreview:
    """Show how a lump payment would be spread over outstanding fees. Nothing is saved."""
    try:
        return await service.simulate_fifo_allocation(db, student_id, amount, academic_year_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/students/{student_id}/payments",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[
        Depends(check_permission("fees", "create")),
        Depends(require_writable_academic_year),
    ],
)
async def process_fifo_payment(
    student_id: UUID,
    payload: FifoPaymentRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> PaymentResponse:
    """Record a lump payment allocated oldest obligation first (priority, then due date)."""
    try:
        return await service.process_fifo_payment(
            db, student_id, payload, created_by=current_user.id, ip_address=_client_ip(request)
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/students/{student_id}/ledger",
    response_model=StudentLedgerResponse,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_student_ledger(
    student_id: UUID,
    academic_year_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> StudentLedgerResponse:
    """Ledger entries of a student and the balance derived from them."""
    return await ledger.get_student_ledger(db, student_id, academic_year_id)


# --- Year level ---
@router.get(
    "/summary",
    response_model=YearSummaryResponse,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_year_summary(
    academic_year_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> YearSummaryResponse:
    try:
        return await service.get_year_summary(db, academic_year_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/previous-year-dues",
    response_model=PreviousYearDuesSummary,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_previous_year_dues(
    academic_year_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> PreviousYearDuesSummary:
    try:
        return await service.get_previous_year_dues(db, academic_year_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/reports/discounts",
    response_model=DiscountReport,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_discount_report(
    academic_year_id: Optional[UUID] = Query(None),
    student_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> DiscountReport:
    return await service.get_discount_report(db, academic_year_id=academic_year_id, student_id=student_id)


@router.get(
    "/reports/blocked-payments",
    response_model=BlockedPaymentsReport,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_blocked_payments_report(
    academic_year_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> BlockedPaymentsReport:
    try:
        return await service.get_blocked_payments_report(db, academic_year_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/reconciliation",
    response_model=ReconciliationReport,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def reconcile_year(
    academic_year_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> ReconciliationReport:
    """Check that every fee record's balance matches the ledger entries posted against it."""
    return await ledger.reconcile_year(db, academic_year_id)
