# FILE: storecredit/services/order_store.py
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field, fields
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storecredit.core.errors import AtomicUpdateUnavailable, StoreCreditError
from storecredit.core.money import CENT, ZERO, money
from storecredit.core.retry import with_store_retry
from storecredit.models.order import FinancialStatus, Order, OrderStatus
from storecredit.services.ledger_store import new_id

logger = logging.getLogger("storecredit.orders")

ORDER_NUMBER_PREFIX = "SS-"
FIRST_ORDER_NUMBER = 1000
ORDER_NUMBER_ATTEMPTS = 3

_ORDER_NUMBER_RE = re.compile(r"^SS-(\d+)$")


@dataclass
class PaymentUpdate:
    """
    Fields written when a checkout session is paid.

    None means "keep what the order already has", so a sparse session never
    blanks out customer details captured earlier.
    """
    order_status: str
    proof_status: Optional[str] = None
    payment_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    subtotal_price: Optional[Decimal] = None
    total_tax: Optional[Decimal] = None
    total_price: Optional[Decimal] = None
    customer_first_name: Optional[str] = None
    customer_last_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    shipping_method: Optional[str] = None
    is_express_shipping: Optional[bool] = None
    is_rush_order: Optional[bool] = None
    order_note: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def values(self) -> Dict[str, Any]:
        out = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in ("extra", "payment_intent_id") and getattr(self, f.name) is not None
        }
        # proof_status is cleared explicitly when the order goes to proofing
        out["proof_status"] = self.proof_status
        out.update(self.extra)
        return out


@dataclass
class PaymentUpdateOutcome:
    order: Order
    applied: bool = True


def parse_order_number(value: Optional[str]) -> Optional[int]:
    m = _ORDER_NUMBER_RE.match(value or "")
    return int(m.group(1)) if m else None


class OrderStore:
    """Persistence for the orders the payment flow reads and writes."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker,
        *,
        atomic_updates: bool = True,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.atomic_updates = atomic_updates
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds

    async def _run(self, label, op):
        return await with_store_retry(
            op,
            label=f"orders.{label}",
            attempts=self.retry_attempts,
            backoff_seconds=self.retry_backoff_seconds,
        )

    # -------- Reads

    async def get(self, order_id: str) -> Optional[Order]:
        async def op():
            async with self.sessionmaker() as session:
                return await session.get(Order, order_id)

        return await self._run("get", op)

    async def _first(self, label: str, stmt) -> Optional[Order]:
        async def op():
            async with self.sessionmaker() as session:
                return (await session.execute(stmt.limit(1))).scalars().first()

        return await self._run(label, op)

    async def find_by_session(self, session_id: str) -> Optional[Order]:
        return await self._first(
            "find_by_session",
            select(Order).where(Order.payment_session_id == session_id).order_by(Order.created_at.desc()),
        )

    async def find_by_intent(self, payment_intent_id: str) -> Optional[Order]:
        return await self._first(
            "find_by_intent",
            select(Order).where(Order.payment_intent_id == payment_intent_id),
        )

    async def find_recoverable(
        self,
        *,
        user_id: Optional[str],
        guest_email: Optional[str],
        total,
        since: datetime,
    ) -> Optional[Order]:
        """
        Newest unpaid order that lost its session id: same owner, recent, and
        the same total to the cent.
        """
        if user_id:
            owner = Order.user_id == user_id
        elif guest_email:
            owner = Order.guest_email == guest_email
        else:
            return None

        stmt = (
            select(Order)
            .where(
                owner,
                Order.order_status == OrderStatus.AWAITING_PAYMENT,
                Order.payment_session_id.is_(None),
                Order.created_at >= since,
            )
            .order_by(Order.created_at.desc())
        )

        async def op():
            async with self.sessionmaker() as session:
                return list((await session.execute(stmt)).scalars().all())

        target = money(total)
        for order in await self._run("find_recoverable", op):
            if abs(money(order.total_price) - target) < CENT:
                return order
        return None

    async def list_abandoned(self, cutoff: datetime) -> List[Order]:
        stmt = (
            select(Order)
            .where(
                Order.order_status == OrderStatus.AWAITING_PAYMENT,
                Order.payment_session_id.is_not(None),
                Order.credits_applied > 0,
                Order.created_at < cutoff,
            )
            .order_by(Order.created_at)
        )

        async def op():
            async with self.sessionmaker() as session:
                return list((await session.execute(stmt)).scalars().all())

        return await self._run("list_abandoned", op)

    async def list_awaiting_for_session(self, session_id: str) -> List[Order]:
        """Every unpaid order under one checkout session, regardless of age."""
        stmt = (
            select(Order)
            .where(
                Order.payment_session_id == session_id,
                Order.order_status == OrderStatus.AWAITING_PAYMENT,
            )
            .order_by(Order.created_at)
        )

        async def op():
            async with self.sessionmaker() as session:
                return list((await session.execute(stmt)).scalars().all())

        return await self._run("list_awaiting_for_session", op)

    # -------- Writes

    async def set_session_id(self, order_id: str, session_id: str) -> bool:
        """Backfill a missing session id. False when another writer got there first."""
        async def op():
            async with self.sessionmaker() as session:
                async with session.begin():
                    result = await session.execute(
                        update(Order)
                        .where(Order.id == order_id, Order.payment_session_id.is_(None))
                        .values(payment_session_id=session_id, updated_at=datetime.utcnow())
                    )
                    return result.rowcount > 0

        return await self._run("set_session_id", op)

    async def link_credit_transaction(self, order_id: str, transaction_id: str) -> None:
        await self._update("link_credit_transaction", order_id, credit_transaction_id=transaction_id)

    async def mark_paid_effects_sent(self, order_id: str) -> bool:
        async def op():
            async with self.sessionmaker() as session:
                async with session.begin():
                    result = await session.execute(
                        update(Order)
                        .where(Order.id == order_id, Order.paid_effects_at.is_(None))
                        .values(paid_effects_at=datetime.utcnow())
                    )
                    return result.rowcount > 0

        return await self._run("mark_paid_effects_sent", op)

    async def clear_credit_link(self, order_id: str) -> None:
        await self._update("clear_credit_link", order_id, credits_applied=ZERO, credit_transaction_id=None)

    async def update_status(self, order_id: str, *, order_status: str, financial_status: str) -> None:
        await self._update("update_status", order_id, order_status=order_status, financial_status=financial_status)

    async def _update(self, label: str, order_id: str, **values) -> None:
        values["updated_at"] = datetime.utcnow()

        async def op():
            async with self.sessionmaker() as session:
                async with session.begin():
                    await session.execute(update(Order).where(Order.id == order_id).values(**values))

        await self._run(label, op)

    @staticmethod
    async def next_order_number(session: AsyncSession) -> str:
        rows = (
            await session.execute(select(Order.order_number).where(Order.order_number.like(f"{ORDER_NUMBER_PREFIX}%")))
        ).scalars().all()
        numbers = [n for n in (parse_order_number(r) for r in rows) if n is not None]
        next_number = max(numbers) + 1 if numbers else FIRST_ORDER_NUMBER
        return f"{ORDER_NUMBER_PREFIX}{max(next_number, FIRST_ORDER_NUMBER)}"

    async def create_order(self, order: Order) -> Order:
        """Insert a new order, assigning an SS-<n> number. Number collisions are retried."""
        if not order.id:
            order.id = new_id()
        if order.created_at is None:
            order.created_at = datetime.utcnow()

        async def op():
            for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
                async with self.sessionmaker() as session:
                    try:
                        async with session.begin():
                            if attempt == ORDER_NUMBER_ATTEMPTS:
                                order.order_number = f"{ORDER_NUMBER_PREFIX}{int(time.time() * 1000)}"
                            else:
                                order.order_number = await self.next_order_number(session)
                            session.add(order)
                        return order
                    except IntegrityError as exc:
                        logger.warning(f"Order number collision on {order.order_number} (attempt {attempt}): {exc}")
                        session.expunge_all()
            raise StoreCreditError(f"Could not allocate an order number for {order.id}")

        created = await self._run("create_order", op)
        logger.info(f"Created order {created.id} ({created.order_number})")
        return created

    async def apply_payment_update(self, order_id: str, upd: PaymentUpdate) -> PaymentUpdateOutcome:
        """All payment fields, status and order number in one DB transaction."""
        if not self.atomic_updates:
            raise AtomicUpdateUnavailable("atomic order updates are disabled")

        async def op():
            async with self.sessionmaker() as session:
                async with session.begin():
                    order = await session.get(Order, order_id, with_for_update=True)
                    if order is None:
                        raise StoreCreditError(f"Order not found: {order_id}")
                    if order.financial_status == FinancialStatus.PAID:
                        return PaymentUpdateOutcome(order, applied=False)

                    for key, value in upd.values().items():
                        setattr(order, key, value)
                    if upd.payment_intent_id:
                        order.payment_intent_id = upd.payment_intent_id
                    order.financial_status = FinancialStatus.PAID
                    order.updated_at = datetime.utcnow()
                    if not order.order_number:
                        order.order_number = await self.next_order_number(session)
                    return PaymentUpdateOutcome(order)

        return await self._run("apply_payment_update", op)

    async def apply_payment_update_stepwise(self, order_id: str, upd: PaymentUpdate) -> PaymentUpdateOutcome:
        """
        Fallback when the atomic path is unavailable. The status guard makes
        the paid transition happen once; the unique payment_intent_id and
        order_number columns stop any duplicate from landing.
        """
        now = datetime.utcnow()

        async def claim():
            async with self.sessionmaker() as session:
                async with session.begin():
                    result = await session.execute(
                        update(Order)
                        .where(Order.id == order_id, Order.financial_status != FinancialStatus.PAID)
                        .values(financial_status=FinancialStatus.PAID, updated_at=now, **upd.values())
                    )
                    return result.rowcount > 0

        if not await self._run("stepwise.claim", claim):
            return PaymentUpdateOutcome(await self.get(order_id), applied=False)

        if upd.payment_intent_id:
            async def set_intent():
                async with self.sessionmaker() as session:
                    try:
                        async with session.begin():
                            await session.execute(
                                update(Order).where(Order.id == order_id).values(payment_intent_id=upd.payment_intent_id)
                            )
                    except IntegrityError:
                        logger.warning(
                            f"Payment intent {upd.payment_intent_id} already linked to another order; "
                            f"left unset on {order_id}"
                        )

            await self._run("stepwise.intent", set_intent)

        async def assign_number():
            for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
                async with self.sessionmaker() as session:
                    try:
                        async with session.begin():
                            order = await session.get(Order, order_id)
                            if order.order_number:
                                return
                            order.order_number = await self.next_order_number(session)
                        return
                    except IntegrityError:
                        logger.warning(f"Order number collision for {order_id} (attempt {attempt})")
            raise StoreCreditError(f"Could not allocate an order number for {order_id}")

        await self._run("stepwise.order_number", assign_number)
        return PaymentUpdateOutcome(await self.get(order_id))
