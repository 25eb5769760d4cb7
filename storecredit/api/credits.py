# /storecredit/api/credits.py
"""Store credit API endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query

from storecredit.api.deps import get_current_user, get_ledger, get_reclamation, require_admin
from storecredit.core.errors import StoreCreditError
from storecredit.schemas.credits import (
    AbandonedCleanupResult,
    AddCreditsRequest,
    AddCreditsResult,
    BalanceResult,
    BulkAddCreditsRequest,
    BulkCreditResult,
    CancellationResult,
    CancelReservationRequest,
    CleanupRequest,
    ConfirmationResult,
    ConfirmReservationRequest,
    CreditHistoryResult,
    CreditValidationResult,
    DeductCreditsRequest,
    DeductionResult,
    EarnCreditsRequest,
    EarnResult,
    ExpiredReservationCleanupResult,
    ReservationResult,
    ReserveCreditsRequest,
    ReversalResult,
    TransactionActionRequest,
    TransactionPageResult,
    ValidateCreditsRequest,
)
from storecredit.services.credit_ledger import CreditLedger
from storecredit.services.reclamation import ReclamationJobs

router = APIRouter(prefix="/api/credits", tags=["credits"])
admin_router = APIRouter(prefix="/api/admin/credits", tags=["admin-credits"])


async def _own_transaction(ledger: CreditLedger, transaction_id: str, user_id: str):
    try:
        tx = await ledger.store.get(transaction_id)
    except StoreCreditError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    if tx is None or tx.user_id != user_id:
        raise HTTPException(status_code=404, detail="Reservation not found")
    return tx


# ─────────────────────────────────────────────
# CUSTOMER ENDPOINTS
# ─────────────────────────────────────────────

@router.get("/balance", response_model=BalanceResult)
async def get_credit_balance(user=Depends(get_current_user), ledger: CreditLedger = Depends(get_ledger)):
    """Current store credit balance for the authenticated user."""
    return await ledger.get_balance(user["id"])


@router.get("/history", response_model=CreditHistoryResult)
async def get_credit_history(
        limit: int = 50,
        user=Depends(get_current_user),
        ledger: CreditLedger = Depends(get_ledger),
):
    return await ledger.get_history(user["id"], limit=limit)


@router.post("/validate", response_model=CreditValidationResult)
async def validate_credits(
        req: ValidateCreditsRequest,
        user=Depends(get_current_user),
        ledger: CreditLedger = Depends(get_ledger),
):
    return await ledger.validate(user["id"], req.order_subtotal, req.requested_amount)


@router.post("/reservations", response_model=ReservationResult)
async def reserve_credits(
        req: ReserveCreditsRequest,
        user=Depends(get_current_user),
        ledger: CreditLedger = Depends(get_ledger),
):
    """Hold credits for a checkout that has not been paid yet."""
    return await ledger.reserve(user["id"], req.amount, req.reason, req.session_id)


@router.post("/reservations/{reservation_id}/confirm", response_model=ConfirmationResult)
async def confirm_reservation(
        reservation_id: str,
        req: ConfirmReservationRequest,
        user=Depends(get_current_user),
        ledger: CreditLedger = Depends(get_ledger),
):
    await _own_transaction(ledger, reservation_id, user["id"])
    return await ledger.confirm_reservation(reservation_id, req.order_id)


@router.post("/reservations/{reservation_id}/cancel", response_model=CancellationResult)
async def cancel_reservation(
        reservation_id: str,
        req: CancelReservationRequest,
        user=Depends(get_current_user),
        ledger: CreditLedger = Depends(get_ledger),
):
    try:
        tx = await ledger.store.get(reservation_id)
    except StoreCreditError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    if tx is not None and tx.user_id != user["id"]:
        raise HTTPException(status_code=404, detail="Reservation not found")
    return await ledger.cancel_reservation(reservation_id, req.reason)


# ─────────────────────────────────────────────
# ADMIN ENDPOINTS
# ─────────────────────────────────────────────

@admin_router.get("/users/{user_id}/balance", response_model=BalanceResult)
async def admin_get_balance(user_id: str, admin=Depends(require_admin), ledger: CreditLedger = Depends(get_ledger)):
    return await ledger.get_balance(user_id)


@admin_router.get("/users/{user_id}/history", response_model=CreditHistoryResult)
async def admin_get_history(
        user_id: str,
        limit: int = 100,
        admin=Depends(require_admin),
        ledger: CreditLedger = Depends(get_ledger),
):
    return await ledger.get_history(user_id, limit=limit)


@admin_router.post("/add", response_model=AddCreditsResult)
async def admin_add_credits(
        req: AddCreditsRequest,
        admin=Depends(require_admin),
        ledger: CreditLedger = Depends(get_ledger),
):
    return await ledger.add_credits(
        req.user_id, req.amount, req.reason, created_by=admin["id"], expires_at=req.expires_at
    )


@admin_router.post("/add-all", response_model=BulkCreditResult)
async def admin_add_credits_to_all(
        req: BulkAddCreditsRequest,
        admin=Depends(require_admin),
        ledger: CreditLedger = Depends(get_ledger),
):
    """Promotional credit for every customer, or for the listed user_ids."""
    return await ledger.add_credits_to_all_users(
        req.amount, req.reason, created_by=admin["id"], campaign=req.campaign, user_ids=req.user_ids
    )


@admin_router.get("/transactions", response_model=TransactionPageResult)
async def admin_list_transactions(
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        admin=Depends(require_admin),
        ledger: CreditLedger = Depends(get_ledger),
):
    return await ledger.list_transactions(limit=limit, offset=offset)


@admin_router.post("/deduct", response_model=DeductionResult)
async def admin_deduct_credits(
        req: DeductCreditsRequest,
        admin=Depends(require_admin),
        ledger: CreditLedger = Depends(get_ledger),
):
    return await ledger.deduct(req.user_id, req.amount, req.reason, req.transaction_type, req.order_id)


@admin_router.post("/earn", response_model=EarnResult)
async def admin_earn_credits(
        req: EarnCreditsRequest,
        admin=Depends(require_admin),
        ledger: CreditLedger = Depends(get_ledger),
):
    return await ledger.earn(req.user_id, req.order_total, req.order_id)


@admin_router.post("/transactions/{transaction_id}/reverse", response_model=ReversalResult)
async def admin_reverse_transaction(
        transaction_id: str,
        req: TransactionActionRequest,
        admin=Depends(require_admin),
        ledger: CreditLedger = Depends(get_ledger),
):
    result = await ledger.reverse_transaction(transaction_id, req.reason, created_by=admin["id"])
    if result.not_found:
        raise HTTPException(status_code=404, detail=result.error)
    return result


@admin_router.post("/transactions/{transaction_id}/confirm", response_model=ConfirmationResult)
async def admin_confirm_transaction(
        transaction_id: str,
        req: TransactionActionRequest,
        admin=Depends(require_admin),
        ledger: CreditLedger = Depends(get_ledger),
):
    if not req.order_id:
        raise HTTPException(status_code=422, detail="order_id is required")
    result = await ledger.confirm_transaction(transaction_id, req.order_id, req.reason)
    if result.not_found:
        raise HTTPException(status_code=404, detail=result.error)
    return result


@admin_router.post("/cleanup/abandoned-checkouts", response_model=AbandonedCleanupResult)
async def admin_cleanup_abandoned(
        req: CleanupRequest,
        admin=Depends(require_admin),
        jobs: ReclamationJobs = Depends(get_reclamation),
):
    return await jobs.cleanup_abandoned_checkouts(req.max_age_hours)


@admin_router.post("/cleanup/expired-reservations", response_model=ExpiredReservationCleanupResult)
async def admin_cleanup_reservations(
        req: CleanupRequest,
        admin=Depends(require_admin),
        jobs: ReclamationJobs = Depends(get_reclamation),
):
    return await jobs.cleanup_expired_reservations(req.max_age_hours)
