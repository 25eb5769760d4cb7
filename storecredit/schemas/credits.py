# FILE: storecredit/schemas/credits.py
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────
# LEDGER RESULTS
# ─────────────────────────────────────────────

class LedgerResult(BaseModel):
    success: bool = True
    error: Optional[str] = None


class BalanceResult(LedgerResult):
    balance: Decimal = Decimal("0.00")
    transaction_count: int = 0
    last_transaction_date: Optional[datetime] = None


class CreditValidationResult(BaseModel):
    valid: bool
    message: str
    max_applicable: Decimal = Decimal("0.00")


class ReservationResult(LedgerResult):
    reservation_id: Optional[str] = None
    reserved_amount: Decimal = Decimal("0.00")
    available_balance: Decimal = Decimal("0.00")
    already_reserved: bool = False


class ConfirmationResult(LedgerResult):
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    deducted_amount: Decimal = Decimal("0.00")
    new_balance: Decimal = Decimal("0.00")
    already_confirmed: bool = False
    not_found: bool = False


class CancellationResult(LedgerResult):
    reservation_id: Optional[str] = None
    already_cancelled: bool = False


class DeductionResult(LedgerResult):
    transaction_id: Optional[str] = None
    new_balance: Decimal = Decimal("0.00")
    already_deducted: bool = False


class EarnResult(LedgerResult):
    points_earned: Decimal = Decimal("0.00")
    total_balance: Decimal = Decimal("0.00")
    limit_reached: bool = False
    already_awarded: bool = False
    transaction_id: Optional[str] = None
    message: str = ""


class ReversalResult(LedgerResult):
    transaction_id: Optional[str] = None
    reversal_id: Optional[str] = None
    restored_amount: Decimal = Decimal("0.00")
    new_balance: Decimal = Decimal("0.00")
    already_reversed: bool = False
    not_found: bool = False


class AddCreditsResult(LedgerResult):
    transaction_id: Optional[str] = None
    amount: Decimal = Decimal("0.00")
    new_balance: Decimal = Decimal("0.00")
    already_applied: bool = False


class CreditTransactionItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    user_id: str
    amount: Decimal
    balance: Optional[Decimal] = None
    reason: Optional[str] = None
    transaction_type: str
    order_id: Optional[str] = None
    created_at: datetime
    expires_at: Optional[datetime] = None
    created_by: Optional[str] = None


class CreditHistoryResult(LedgerResult):
    transactions: List[CreditTransactionItem] = Field(default_factory=list)
    current_balance: Decimal = Decimal("0.00")


class TransactionPageResult(LedgerResult):
    transactions: List[CreditTransactionItem] = Field(default_factory=list)
    total: int = 0
    limit: int = 50
    offset: int = 0


class BulkCreditResult(LedgerResult):
    users_updated: int = 0
    already_granted: int = 0
    failed_users: List[str] = Field(default_factory=list)
    amount: Decimal = Decimal("0.00")


# ─────────────────────────────────────────────
# RECLAMATION RESULTS
# ─────────────────────────────────────────────

class AbandonedCleanupResult(LedgerResult):
    total_restored: Decimal = Decimal("0.00")
    restored_sessions: int = 0
    failed_sessions: List[str] = Field(default_factory=list)
    skipped: bool = False
    message: str = ""


class ExpiredReservationCleanupResult(LedgerResult):
    deleted_count: int = 0
    released_amount: Decimal = Decimal("0.00")
    skipped: bool = False
    message: str = ""


# ─────────────────────────────────────────────
# REQUESTS
# ─────────────────────────────────────────────

class ValidateCreditsRequest(BaseModel):
    order_subtotal: Decimal
    requested_amount: Decimal


class ReserveCreditsRequest(BaseModel):
    amount: Decimal
    reason: str = "Credits reserved at checkout"
    session_id: Optional[str] = None


class ConfirmReservationRequest(BaseModel):
    order_id: str


class CancelReservationRequest(BaseModel):
    reason: str = "Checkout cancelled"


class DeductCreditsRequest(BaseModel):
    user_id: str
    amount: Decimal
    reason: str
    order_id: Optional[str] = None
    transaction_type: str = "used"


class EarnCreditsRequest(BaseModel):
    user_id: str
    order_total: Decimal
    order_id: str


class AddCreditsRequest(BaseModel):
    user_id: str
    amount: Decimal
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None


class BulkAddCreditsRequest(BaseModel):
    amount: Decimal
    reason: str = "Promotional credit"
    # Re-sending the same campaign never grants twice
    campaign: Optional[str] = None
    user_ids: Optional[List[str]] = None


class TransactionActionRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    order_id: Optional[str] = None


class CleanupRequest(BaseModel):
    max_age_hours: int = Field(24, gt=0)
