# FILE: storecredit/services/ledger_store.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storecredit.core.errors import (
    DuplicateTransactionError,
    IdempotentNoOp,
    StoreCreditError,
    TransactionNotFoundError,
)
from storecredit.core.money import money
from storecredit.core.retry import with_store_retry
from storecredit.models.credit_transaction import (
    CreditTransaction,
    TransactionType,
    reversal_key,
    spend_key,
)

logger = logging.getLogger("storecredit.ledger_store")

T = TypeVar("T")


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class ConfirmOutcome:
    transaction: CreditTransaction
    new_balance: Decimal
    already_confirmed: bool = False


@dataclass
class ReversalOutcome:
    original: CreditTransaction
    restored_amount: Decimal
    new_balance: Decimal
    reversal: Optional[CreditTransaction] = None
    deleted: bool = False


class LedgerStore:
    """
    Persistence for credit_transactions.

    Every method opens its own session; confirm/reverse run inside a single
    DB transaction so concurrent balance reads never see half an operation.
    Unique violations surface as DuplicateTransactionError / IdempotentNoOp.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker,
        *,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds

    async def _run(self, label: str, op: Callable[[], Awaitable[T]]) -> T:
        return await with_store_retry(
            op,
            label=label,
            attempts=self.retry_attempts,
            backoff_seconds=self.retry_backoff_seconds,
        )

    @staticmethod
    async def _sum_balance(session: AsyncSession, user_id: str) -> Decimal:
        total = (
            await session.execute(
                select(func.coalesce(func.sum(CreditTransaction.amount), 0))
                .where(CreditTransaction.user_id == user_id)
            )
        ).scalar()
        return money(total)

    # -------- Reads

    async def list_for_user(self, user_id: str, limit: Optional[int] = None) -> List[CreditTransaction]:
        async def op():
            async with self.sessionmaker() as session:
                stmt = (
                    select(CreditTransaction)
                    .where(CreditTransaction.user_id == user_id)
                    .order_by(CreditTransaction.created_at.desc())
                )
                if limit:
                    stmt = stmt.limit(limit)
                return list((await session.execute(stmt)).scalars().all())

        return await self._run("list_for_user", op)

    async def list_all(self, limit: int = 50, offset: int = 0) -> Tuple[List[CreditTransaction], int]:
        """One page across every user, newest first, plus the total row count."""
        async def op():
            async with self.sessionmaker() as session:
                total = (await session.execute(select(func.count(CreditTransaction.id)))).scalar() or 0
                rows = await session.execute(
                    select(CreditTransaction)
                    .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id)
                    .offset(offset)
                    .limit(limit)
                )
                return list(rows.scalars().all()), int(total)

        return await self._run("list_all", op)

    async def list_user_ids(self) -> List[str]:
        async def op():
            async with self.sessionmaker() as session:
                rows = await session.execute(
                    select(CreditTransaction.user_id).distinct().order_by(CreditTransaction.user_id)
                )
                return list(rows.scalars().all())

        return await self._run("list_user_ids", op)

    async def get(self, transaction_id: str) -> Optional[CreditTransaction]:
        async def op():
            async with self.sessionmaker() as session:
                return await session.get(CreditTransaction, transaction_id)

        return await self._run("get", op)

    async def find_by_key(self, idempotency_key: str) -> Optional[CreditTransaction]:
        async def op():
            async with self.sessionmaker() as session:
                return (
                    await session.execute(
                        select(CreditTransaction).where(CreditTransaction.idempotency_key == idempotency_key)
                    )
                ).scalar_one_or_none()

        return await self._run("find_by_key", op)

    async def find_for_order(
        self,
        user_id: str,
        order_id: str,
        transaction_type: str,
        negative_only: bool = False,
    ) -> Optional[CreditTransaction]:
        async def op():
            async with self.sessionmaker() as session:
                stmt = select(CreditTransaction).where(
                    CreditTransaction.user_id == user_id,
                    CreditTransaction.order_id == order_id,
                    CreditTransaction.transaction_type == transaction_type,
                )
                if negative_only:
                    stmt = stmt.where(CreditTransaction.amount < 0)
                return (await session.execute(stmt.order_by(CreditTransaction.created_at).limit(1))).scalar_one_or_none()

        return await self._run("find_for_order", op)

    async def balance(self, user_id: str) -> Decimal:
        async def op():
            async with self.sessionmaker() as session:
                return await self._sum_balance(session, user_id)

        return await self._run("balance", op)

    # -------- Writes

    async def insert(self, tx: CreditTransaction) -> CreditTransaction:
        if not tx.id:
            tx.id = new_id()
        if tx.created_at is None:
            tx.created_at = datetime.utcnow()

        async def op():
            async with self.sessionmaker() as session:
                try:
                    async with session.begin():
                        session.add(tx)
                except IntegrityError as exc:
                    raise DuplicateTransactionError(tx.idempotency_key) from exc
                return tx

        return await self._run("insert", op)

    async def delete_reservation(self, transaction_id: str) -> bool:
        """Delete a pending reservation. False when it no longer exists."""
        async def op():
            async with self.sessionmaker() as session:
                async with session.begin():
                    tx = await session.get(CreditTransaction, transaction_id, with_for_update=True)
                    if tx is None:
                        return False
                    if tx.transaction_type != TransactionType.RESERVATION:
                        raise StoreCreditError(
                            f"Transaction {transaction_id} is {tx.transaction_type}, not a pending reservation"
                        )
                    await session.delete(tx)
                    return True

        return await self._run("delete_reservation", op)

    async def delete_reservations_before(self, cutoff: datetime) -> List[CreditTransaction]:
        async def op():
            async with self.sessionmaker() as session:
                async with session.begin():
                    rows = list(
                        (
                            await session.execute(
                                select(CreditTransaction).where(
                                    CreditTransaction.transaction_type == TransactionType.RESERVATION,
                                    CreditTransaction.created_at < cutoff,
                                )
                            )
                        ).scalars().all()
                    )
                    for row in rows:
                        await session.delete(row)
                    return rows

        return await self._run("delete_reservations_before", op)

    async def confirm(self, transaction_id: str, order_id: str, reason: Optional[str] = None) -> ConfirmOutcome:
        """Realize a reservation as a `used` deduction linked to order_id."""

        async def op():
            async with self.sessionmaker() as session:
                try:
                    async with session.begin():
                        tx = await session.get(CreditTransaction, transaction_id, with_for_update=True)
                        if tx is None:
                            raise TransactionNotFoundError(transaction_id)

                        if tx.transaction_type == TransactionType.USED:
                            if tx.order_id is None:
                                tx.order_id = order_id
                                tx.idempotency_key = spend_key(tx.user_id, order_id)
                            return ConfirmOutcome(tx, await self._sum_balance(session, tx.user_id), True)

                        if tx.transaction_type != TransactionType.RESERVATION:
                            raise StoreCreditError(
                                f"Transaction {transaction_id} is {tx.transaction_type} and cannot be confirmed"
                            )

                        tx.transaction_type = TransactionType.USED
                        tx.order_id = order_id
                        tx.idempotency_key = spend_key(tx.user_id, order_id)
                        tx.expires_at = None
                        if reason:
                            tx.reason = reason
                        await session.flush()
                        tx.balance = await self._sum_balance(session, tx.user_id)
                        return ConfirmOutcome(tx, tx.balance)
                except IntegrityError:
                    pass

            # A `used` row already exists for this order; the hold is redundant.
            return await self._drop_redundant_hold(transaction_id, order_id)

        return await self._run("confirm", op)

    async def _drop_redundant_hold(self, transaction_id: str, order_id: str) -> ConfirmOutcome:
        async with self.sessionmaker() as session:
            async with session.begin():
                hold = await session.get(CreditTransaction, transaction_id, with_for_update=True)
                if hold is None:
                    raise TransactionNotFoundError(transaction_id)
                existing = (
                    await session.execute(
                        select(CreditTransaction).where(
                            CreditTransaction.idempotency_key == spend_key(hold.user_id, order_id)
                        )
                    )
                ).scalar_one_or_none()
                if existing is None:
                    raise StoreCreditError(f"Confirm of {transaction_id} conflicted but no deduction found")
                if hold.transaction_type == TransactionType.RESERVATION:
                    logger.warning(
                        f"Order {order_id} already has deduction {existing.id}; dropping redundant hold {hold.id}"
                    )
                    await session.delete(hold)
                    await session.flush()
                return ConfirmOutcome(existing, await self._sum_balance(session, hold.user_id), True)

    async def reverse(
        self,
        transaction_id: str,
        reason: str,
        created_by: Optional[str] = None,
    ) -> ReversalOutcome:
        """
        Compensate a transaction atomically.

        Pending reservations are deleted (they were only a hold); anything
        else gets an inverse `adjustment` row keyed by reversal:<id>.
        Raises IdempotentNoOp when the reversal already exists.
        """

        async def op():
            async with self.sessionmaker() as session:
                try:
                    async with session.begin():
                        tx = await session.get(CreditTransaction, transaction_id, with_for_update=True)
                        if tx is None:
                            raise TransactionNotFoundError(transaction_id)

                        if tx.transaction_type == TransactionType.RESERVATION:
                            restored = -money(tx.amount)
                            await session.delete(tx)
                            await session.flush()
                            return ReversalOutcome(
                                original=tx,
                                restored_amount=restored,
                                new_balance=await self._sum_balance(session, tx.user_id),
                                deleted=True,
                            )

                        existing = (
                            await session.execute(
                                select(CreditTransaction).where(
                                    CreditTransaction.idempotency_key == reversal_key(tx.id)
                                )
                            )
                        ).scalar_one_or_none()
                        if existing is not None:
                            raise IdempotentNoOp("reverse", existing.id)

                        reversal = CreditTransaction(
                            id=new_id(),
                            user_id=tx.user_id,
                            amount=-money(tx.amount),
                            transaction_type=TransactionType.ADJUSTMENT,
                            order_id=tx.order_id,
                            reason=reason,
                            idempotency_key=reversal_key(tx.id),
                            reversal_of_id=tx.id,
                            created_by=created_by,
                            created_at=datetime.utcnow(),
                        )
                        session.add(reversal)
                        await session.flush()
                        reversal.balance = await self._sum_balance(session, tx.user_id)
                        return ReversalOutcome(
                            original=tx,
                            restored_amount=money(reversal.amount),
                            new_balance=reversal.balance,
                            reversal=reversal,
                        )
                except IntegrityError as exc:
                    # Lost the race to a concurrent reversal of the same row
                    winner = (
                        await session.execute(
                            select(CreditTransaction.id).where(
                                CreditTransaction.idempotency_key == reversal_key(transaction_id)
                            )
                        )
                    ).scalar_one_or_none()
                    raise IdempotentNoOp("reverse", winner) from exc

        return await self._run("reverse", op)
