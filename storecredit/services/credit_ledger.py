# FILE: storecredit/services/credit_ledger.py
from __future__ import annotations

import functools
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from storecredit.core.errors import (
    DuplicateTransactionError,
    IdempotentNoOp,
    StoreCreditError,
    TransactionNotFoundError,
)
from storecredit.core.money import ZERO, display, money
from storecredit.models.credit_transaction import (
    CreditTransaction,
    TransactionType,
    earned_key,
    promotion_key,
    reservation_key,
    spend_key,
)
from storecredit.schemas.credits import (
    AddCreditsResult,
    BalanceResult,
    BulkCreditResult,
    CancellationResult,
    ConfirmationResult,
    CreditHistoryResult,
    CreditTransactionItem,
    CreditValidationResult,
    DeductionResult,
    EarnResult,
    ReservationResult,
    ReversalResult,
    TransactionPageResult,
)
from storecredit.services.ledger_store import LedgerStore, new_id

logger = logging.getLogger("storecredit.ledger")

STORE_ERRORS = (StoreCreditError, SQLAlchemyError, OSError)


def is_guest(user_id: Optional[str]) -> bool:
    return not user_id or str(user_id).strip().lower() == "guest"


def ledger_operation(result_cls):
    """Turn store failures into a {success: False, error} result instead of raising."""

    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self, *args, **kwargs):
            try:
                return await fn(self, *args, **kwargs)
            except STORE_ERRORS as exc:
                logger.error(f"{fn.__name__} failed: {exc}")
                return result_cls(success=False, error=str(exc))

        return wrapper

    return decorator


class CreditLedger:
    """
    All balance-affecting operations for store credit.

    Balances are recomputed from the ledger rows on every read; the row's
    `balance` column is written for auditing and never consulted.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        earn_rate: Decimal = Decimal("0.05"),
        balance_cap: Decimal = Decimal("100"),
        reservation_ttl_hours: int = 24,
    ) -> None:
        self.store = store
        self.earn_rate = Decimal(earn_rate)
        self.balance_cap = money(balance_cap)
        self.reservation_ttl_hours = reservation_ttl_hours

    # -------- Balance

    async def get_balance(self, user_id: str) -> BalanceResult:
        """Never raises: checkout-blocking callers get a zeroed balance on store failure."""
        try:
            rows = await self.store.list_for_user(user_id)
        except STORE_ERRORS as exc:
            logger.error(f"Error getting credit balance for {user_id}: {exc}")
            return BalanceResult(success=False, error=str(exc))

        total = sum((money(r.amount) for r in rows), ZERO)
        return BalanceResult(
            balance=money(total),
            transaction_count=len(rows),
            last_transaction_date=rows[0].created_at if rows else None,
        )

    async def validate(self, user_id: str, order_subtotal, requested_amount) -> CreditValidationResult:
        if is_guest(user_id):
            return CreditValidationResult(valid=False, message="Store credits are only available to signed-in customers")

        requested = money(requested_amount)
        subtotal = money(order_subtotal)
        if requested <= 0:
            return CreditValidationResult(valid=False, message="Credit amount must be greater than zero")

        current = await self.get_balance(user_id)
        if not current.success:
            return CreditValidationResult(valid=False, message="Credits are temporarily unavailable")

        max_applicable = max(min(current.balance, subtotal), ZERO)
        if requested > current.balance:
            return CreditValidationResult(
                valid=False,
                message=f"Insufficient credit balance. Available: {display(current.balance)}",
                max_applicable=max_applicable,
            )
        if requested > subtotal:
            return CreditValidationResult(
                valid=False,
                message=f"Credits cannot exceed the order subtotal of {display(subtotal)}",
                max_applicable=max_applicable,
            )
        return CreditValidationResult(
            valid=True,
            message=f"{display(requested)} in credits can be applied",
            max_applicable=max_applicable,
        )

    # -------- Reservations

    @ledger_operation(ReservationResult)
    async def reserve(
        self,
        user_id: str,
        amount,
        reason: str = "Credits reserved at checkout",
        session_id: Optional[str] = None,
    ) -> ReservationResult:
        if is_guest(user_id):
            return ReservationResult(success=False, error="Guests cannot reserve store credit")
        amount = money(amount)
        if amount <= 0:
            return ReservationResult(success=False, error="Reservation amount must be greater than zero")

        key = reservation_key(user_id, session_id) if session_id else None
        if key:
            existing = await self.store.find_by_key(key)
            if existing is not None:
                return await self._existing_reservation(existing)

        current = await self.get_balance(user_id)
        if not current.success:
            return ReservationResult(success=False, error=current.error)
        if current.balance < amount:
            return ReservationResult(
                success=False,
                error=f"Insufficient credit balance. Available: {display(current.balance)}",
                available_balance=current.balance,
            )

        now = datetime.utcnow()
        tx = CreditTransaction(
            id=new_id(),
            user_id=user_id,
            amount=-amount,
            transaction_type=TransactionType.RESERVATION,
            order_id=None,
            reason=reason,
            balance=current.balance,
            idempotency_key=key,
            payment_session_id=session_id,
            created_at=now,
            expires_at=now + timedelta(hours=self.reservation_ttl_hours),
        )
        try:
            await self.store.insert(tx)
        except DuplicateTransactionError:
            existing = await self.store.find_by_key(key) if key else None
            if existing is None:
                raise
            return await self._existing_reservation(existing)

        logger.info(f"Reserved {display(amount)} for user {user_id} (session={session_id}, reservation={tx.id})")
        return ReservationResult(
            reservation_id=tx.id,
            reserved_amount=amount,
            available_balance=current.balance - amount,
        )

    async def _existing_reservation(self, existing: CreditTransaction) -> ReservationResult:
        current = await self.get_balance(existing.user_id)
        return ReservationResult(
            reservation_id=existing.id,
            reserved_amount=-money(existing.amount),
            available_balance=current.balance,
            already_reserved=True,
        )

    @ledger_operation(ConfirmationResult)
    async def confirm_reservation(self, reservation_id: str, order_id: str) -> ConfirmationResult:
        tx = await self.store.get(reservation_id)
        if tx is None:
            return ConfirmationResult(success=False, not_found=True, error="Reservation not found")
        if tx.transaction_type == TransactionType.USED:
            current = await self.get_balance(tx.user_id)
            return ConfirmationResult(
                transaction_id=tx.id,
                order_id=tx.order_id,
                deducted_amount=-money(tx.amount),
                new_balance=current.balance,
                already_confirmed=True,
            )
        if tx.transaction_type != TransactionType.RESERVATION:
            return ConfirmationResult(success=False, error=f"Transaction {reservation_id} is not a reservation")

        return await self.confirm_transaction(reservation_id, order_id, f"Credits applied to order {order_id}")

    @ledger_operation(CancellationResult)
    async def cancel_reservation(self, reservation_id: str, reason: str = "Checkout cancelled") -> CancellationResult:
        deleted = await self.store.delete_reservation(reservation_id)
        if not deleted:
            return CancellationResult(reservation_id=reservation_id, already_cancelled=True)
        logger.info(f"Cancelled reservation {reservation_id}: {reason}")
        return CancellationResult(reservation_id=reservation_id)

    # -------- Spending

    @ledger_operation(DeductionResult)
    async def deduct(
        self,
        user_id: str,
        amount,
        reason: str,
        transaction_type: str = TransactionType.USED,
        order_id: Optional[str] = None,
    ) -> DeductionResult:
        if is_guest(user_id):
            return DeductionResult(success=False, error="Guests cannot spend store credit")

        if order_id:
            existing = await self.store.find_for_order(user_id, order_id, transaction_type, negative_only=True)
            if existing is not None:
                logger.info(f"Credits already deducted for order {order_id}: {existing.id}")
                return await self._already_deducted(existing)

        amount = money(amount)
        if amount <= 0:
            return DeductionResult(success=False, error="Deduction amount must be greater than zero")

        current = await self.get_balance(user_id)
        if not current.success:
            return DeductionResult(success=False, error=current.error)
        if current.balance < amount:
            return DeductionResult(
                success=False,
                error=f"Insufficient credit balance. Available: {display(current.balance)}",
                new_balance=current.balance,
            )

        key = spend_key(user_id, order_id, transaction_type) if order_id else None
        tx = CreditTransaction(
            id=new_id(),
            user_id=user_id,
            amount=-amount,
            transaction_type=transaction_type,
            order_id=order_id,
            reason=reason,
            balance=current.balance - amount,
            idempotency_key=key,
            created_at=datetime.utcnow(),
        )
        try:
            await self.store.insert(tx)
        except DuplicateTransactionError:
            # Concurrent duplicate: the other writer won, which is the outcome we wanted
            existing = await self.store.find_by_key(key) if key else None
            if existing is None:
                raise
            return await self._already_deducted(existing)

        new_balance = await self.store.balance(user_id)
        logger.info(f"Deducted {display(amount)} from user {user_id} (order={order_id}, tx={tx.id})")
        return DeductionResult(transaction_id=tx.id, new_balance=new_balance)

    async def _already_deducted(self, existing: CreditTransaction) -> DeductionResult:
        current = await self.get_balance(existing.user_id)
        return DeductionResult(transaction_id=existing.id, new_balance=current.balance, already_deducted=True)

    # -------- Earning

    @ledger_operation(EarnResult)
    async def earn(self, user_id: str, order_total, order_id: str) -> EarnResult:
        if is_guest(user_id):
            logger.info("Skipping points earning for guest user")
            return EarnResult(success=False, message="Guest user - no points earned")

        existing = await self.store.find_for_order(user_id, order_id, TransactionType.EARNED)
        if existing is not None:
            return await self._already_awarded(existing)

        points = money(money(order_total) * self.earn_rate)
        if points <= 0:
            return EarnResult(success=False, message="No points to earn")

        current = await self.get_balance(user_id)
        if not current.success:
            return EarnResult(success=False, error=current.error, message="Credits are temporarily unavailable")

        if current.balance >= self.balance_cap:
            return EarnResult(
                total_balance=current.balance,
                limit_reached=True,
                message=f"Credit limit of {display(self.balance_cap)} reached - no points earned",
            )

        limit_reached = False
        if current.balance + points > self.balance_cap:
            points = self.balance_cap - current.balance
            limit_reached = True

        # Second, tighter check right before the write
        existing = await self.store.find_for_order(user_id, order_id, TransactionType.EARNED)
        if existing is not None:
            return await self._already_awarded(existing)

        message = f"{display(points)} earned from your recent order"
        tx = CreditTransaction(
            id=new_id(),
            user_id=user_id,
            amount=points,
            transaction_type=TransactionType.EARNED,
            order_id=order_id,
            reason=message,
            balance=current.balance + points,
            idempotency_key=earned_key(user_id, order_id),
            created_at=datetime.utcnow(),
        )
        try:
            await self.store.insert(tx)
        except DuplicateTransactionError:
            existing = await self.store.find_by_key(earned_key(user_id, order_id))
            if existing is None:
                raise
            return await self._already_awarded(existing)

        logger.info(f"Earned {display(points)} for user {user_id}, order {order_id} (limit_reached={limit_reached})")
        return EarnResult(
            points_earned=points,
            total_balance=current.balance + points,
            limit_reached=limit_reached,
            transaction_id=tx.id,
            message=message,
        )

    async def _already_awarded(self, existing: CreditTransaction) -> EarnResult:
        current = await self.get_balance(existing.user_id)
        return EarnResult(
            points_earned=ZERO,
            total_balance=current.balance,
            already_awarded=True,
            transaction_id=existing.id,
            message=f"Points already awarded for order {existing.order_id}",
        )

    # -------- Atomic store-side operations

    @ledger_operation(ReversalResult)
    async def reverse_transaction(
        self,
        transaction_id: str,
        reason: str,
        created_by: Optional[str] = None,
    ) -> ReversalResult:
        try:
            outcome = await self.store.reverse(transaction_id, reason, created_by=created_by)
        except TransactionNotFoundError as exc:
            return ReversalResult(success=False, not_found=True, transaction_id=transaction_id, error=str(exc))
        except IdempotentNoOp as noop:
            logger.info(f"Transaction {transaction_id} already reversed ({noop.transaction_id})")
            tx = await self.store.get(transaction_id)
            current = await self.get_balance(tx.user_id) if tx is not None else BalanceResult()
            return ReversalResult(
                transaction_id=transaction_id,
                reversal_id=noop.transaction_id,
                new_balance=current.balance,
                already_reversed=True,
            )

        logger.info(
            f"Reversed transaction {transaction_id} for user {outcome.original.user_id}: "
            f"restored {display(outcome.restored_amount)} ({reason})"
        )
        return ReversalResult(
            transaction_id=transaction_id,
            reversal_id=outcome.reversal.id if outcome.reversal is not None else None,
            restored_amount=outcome.restored_amount,
            new_balance=outcome.new_balance,
        )

    @ledger_operation(ConfirmationResult)
    async def confirm_transaction(self, transaction_id: str, order_id: str, reason: Optional[str] = None) -> ConfirmationResult:
        try:
            outcome = await self.store.confirm(transaction_id, order_id, reason)
        except TransactionNotFoundError as exc:
            return ConfirmationResult(success=False, not_found=True, error=str(exc))

        tx = outcome.transaction
        if not outcome.already_confirmed:
            logger.info(f"Confirmed {tx.id} as {display(-money(tx.amount))} spent on order {order_id}")
        return ConfirmationResult(
            transaction_id=tx.id,
            order_id=tx.order_id,
            deducted_amount=-money(tx.amount),
            new_balance=outcome.new_balance,
            already_confirmed=outcome.already_confirmed,
        )

    # -------- Admin / history

    @ledger_operation(AddCreditsResult)
    async def add_credits(
        self,
        user_id: str,
        amount,
        reason: Optional[str] = None,
        created_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        order_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> AddCreditsResult:
        amount = money(amount)
        if is_guest(user_id):
            return AddCreditsResult(success=False, error="Cannot add credits to a guest")
        if amount <= 0:
            return AddCreditsResult(success=False, error="Credit amount must be greater than zero")

        if idempotency_key:
            existing = await self.store.find_by_key(idempotency_key)
            if existing is not None:
                return AddCreditsResult(
                    transaction_id=existing.id,
                    amount=money(existing.amount),
                    new_balance=await self.store.balance(user_id),
                    already_applied=True,
                )

        current = await self.store.balance(user_id)
        tx = CreditTransaction(
            id=new_id(),
            user_id=user_id,
            amount=amount,
            transaction_type=TransactionType.ADJUSTMENT,
            order_id=order_id,
            reason=reason or "Store credit added by admin",
            balance=current + amount,
            idempotency_key=idempotency_key,
            created_by=created_by,
            created_at=datetime.utcnow(),
            expires_at=expires_at,
        )
        try:
            await self.store.insert(tx)
        except DuplicateTransactionError:
            existing = await self.store.find_by_key(idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return AddCreditsResult(
                transaction_id=existing.id,
                amount=money(existing.amount),
                new_balance=await self.store.balance(user_id),
                already_applied=True,
            )

        return AddCreditsResult(transaction_id=tx.id, amount=amount, new_balance=current + amount)

    @ledger_operation(BulkCreditResult)
    async def add_credits_to_all_users(
        self,
        amount,
        reason: str = "Promotional credit",
        created_by: Optional[str] = None,
        campaign: Optional[str] = None,
        user_ids: Optional[List[str]] = None,
    ) -> BulkCreditResult:
        """
        Promotional grant to every customer with a ledger (or to `user_ids`).

        With a campaign name each user's grant is keyed by it, so re-running a
        partially failed campaign only tops up the users it missed.
        """
        amount = money(amount)
        if amount <= 0:
            return BulkCreditResult(success=False, error="Credit amount must be greater than zero")

        targets = user_ids if user_ids is not None else await self.store.list_user_ids()
        result = BulkCreditResult(amount=amount)
        for user_id in dict.fromkeys(targets):
            if is_guest(user_id):
                continue
            granted = await self.add_credits(
                user_id,
                amount,
                reason,
                created_by=created_by,
                idempotency_key=promotion_key(campaign, user_id) if campaign else None,
            )
            if not granted.success:
                result.failed_users.append(user_id)
            elif granted.already_applied:
                result.already_granted += 1
            else:
                result.users_updated += 1

        logger.info(
            f"Promotional credit {display(amount)} ({campaign or 'no campaign'}): "
            f"{result.users_updated} granted, {result.already_granted} already had it, "
            f"{len(result.failed_users)} failed"
        )
        return result

    @ledger_operation(TransactionPageResult)
    async def list_transactions(self, limit: int = 50, offset: int = 0) -> TransactionPageResult:
        limit = max(1, min(int(limit), 500))
        offset = max(0, int(offset))
        rows, total = await self.store.list_all(limit=limit, offset=offset)
        return TransactionPageResult(
            transactions=[CreditTransactionItem.model_validate(r) for r in rows],
            total=total,
            limit=limit,
            offset=offset,
        )

    @ledger_operation(CreditHistoryResult)
    async def get_history(self, user_id: str, limit: Optional[int] = None) -> CreditHistoryResult:
        rows = await self.store.list_for_user(user_id, limit=limit)
        current = await self.store.balance(user_id)
        return CreditHistoryResult(
            transactions=[CreditTransactionItem.model_validate(r) for r in rows],
            current_balance=current,
        )
