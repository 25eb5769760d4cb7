# FILE: storecredit/services/reclamation.py
from __future__ import annotations

import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncContextManager, Dict, List, Optional, Protocol

from storecredit.core.errors import StoreCreditError
from storecredit.core.money import ZERO, display, money
from storecredit.models.order import Order
from storecredit.schemas.credits import AbandonedCleanupResult, ExpiredReservationCleanupResult
from storecredit.services.credit_ledger import STORE_ERRORS, CreditLedger
from storecredit.services.order_store import OrderStore

logger = logging.getLogger("storecredit.reclamation")

ABANDONED_JOB = "cleanup_abandoned_checkouts"
EXPIRED_JOB = "cleanup_expired_reservations"


class JobLock(Protocol):
    def hold(self, name: str) -> AsyncContextManager[bool]:
        """Yields True when this runner owns the job."""
        ...


class LocalJobLock:
    """In-process advisory lock. Enough for one scheduler per deployment."""

    def __init__(self) -> None:
        self._held = set()

    @asynccontextmanager
    async def hold(self, name: str):
        if name in self._held:
            yield False
            return
        self._held.add(name)
        try:
            yield True
        finally:
            self._held.discard(name)


class ReclamationJobs:
    def __init__(self, ledger: CreditLedger, orders: OrderStore, lock: Optional[JobLock] = None) -> None:
        self.ledger = ledger
        self.orders = orders
        self.lock = lock or LocalJobLock()

    async def cleanup_abandoned_checkouts(self, max_age_hours: int = 24) -> AbandonedCleanupResult:
        """
        Give back credits held by checkouts that never completed.

        Orders still Awaiting Payment with credits applied and older than the
        cutoff are grouped by checkout session. Every Awaiting Payment order
        under a matched session (newer siblings included) has its linked
        transaction reversed, then its credit linkage cleared so the next run
        finds nothing. A session that fails keeps its linkage and is retried
        next time.
        """
        async with self.lock.hold(ABANDONED_JOB) as acquired:
            if not acquired:
                logger.info("Abandoned checkout cleanup already running; skipped")
                return AbandonedCleanupResult(skipped=True, message="Cleanup already in progress")

            cutoff = datetime.utcnow() - timedelta(hours=max_age_hours)
            try:
                abandoned = await self.orders.list_abandoned(cutoff)
            except STORE_ERRORS as exc:
                logger.error(f"Could not list abandoned checkouts: {exc}")
                return AbandonedCleanupResult(success=False, error=str(exc), message="Cleanup failed")

            sessions: Dict[str, List[Order]] = OrderedDict()
            for order in abandoned:
                sessions.setdefault(order.payment_session_id, []).append(order)

            total = ZERO
            restored_sessions = 0
            failed: List[str] = []
            for session_id, stale in sessions.items():
                logger.info(f"Session {session_id}: {len(stale)} stale order(s) with credits applied")
                try:
                    restored = await self._restore_session(session_id)
                except STORE_ERRORS as exc:
                    logger.error(f"Failed to restore credits for session {session_id}: {exc}")
                    failed.append(session_id)
                    continue
                total += restored
                restored_sessions += 1

            if not sessions:
                message = f"No abandoned checkouts older than {max_age_hours}h with credits applied"
            else:
                message = f"Restored {display(total)} from {restored_sessions} abandoned checkout session(s)"
                if failed:
                    message += f"; {len(failed)} session(s) failed and will be retried"
            logger.info(message)
            return AbandonedCleanupResult(
                total_restored=money(total),
                restored_sessions=restored_sessions,
                failed_sessions=failed,
                message=message,
            )

    async def _restore_session(self, session_id: str) -> Decimal:
        """Reverse credits on every unpaid order under the session, not just the stale ones."""
        restored = ZERO
        for order in await self.orders.list_awaiting_for_session(session_id):
            if not order.credit_transaction_id and money(order.credits_applied) <= 0:
                continue
            if order.credit_transaction_id:
                result = await self.ledger.reverse_transaction(
                    order.credit_transaction_id,
                    f"Abandoned checkout {session_id} (order {order.id})",
                )
                if result.success:
                    restored += result.restored_amount
                elif result.not_found:
                    # Hold already released (expired-reservation sweep or manual cancel)
                    logger.info(f"Credit transaction {order.credit_transaction_id} for order {order.id} is gone")
                else:
                    raise StoreCreditError(result.error or "reversal failed")
            else:
                logger.warning(f"Order {order.id} has credits applied but no linked transaction; clearing")
            await self.orders.clear_credit_link(order.id)
        return restored

    async def cleanup_expired_reservations(self, max_age_hours: int = 24) -> ExpiredReservationCleanupResult:
        """Delete pending reservations older than the cutoff. No reversal rows are written."""
        async with self.lock.hold(EXPIRED_JOB) as acquired:
            if not acquired:
                return ExpiredReservationCleanupResult(skipped=True, message="Cleanup already in progress")

            cutoff = datetime.utcnow() - timedelta(hours=max_age_hours)
            try:
                deleted = await self.ledger.store.delete_reservations_before(cutoff)
            except STORE_ERRORS as exc:
                logger.error(f"Expired reservation cleanup failed: {exc}")
                return ExpiredReservationCleanupResult(success=False, error=str(exc), message="Cleanup failed")

            released = sum((-money(r.amount) for r in deleted), ZERO)
            message = f"Released {display(released)} from {len(deleted)} expired reservation(s)"
            logger.info(message)
            return ExpiredReservationCleanupResult(
                deleted_count=len(deleted),
                released_amount=money(released),
                message=message,
            )
