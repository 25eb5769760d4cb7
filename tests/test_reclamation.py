from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update

from conftest import grant, insert_order
from storecredit.models.credit_transaction import CreditTransaction
from storecredit.models.order import Order, OrderStatus
from storecredit.schemas.credits import ReversalResult
from storecredit.services.credit_ledger import CreditLedger
from storecredit.services.reclamation import LocalJobLock, ReclamationJobs


async def abandoned_checkout(ledger, sessionmaker, user_id, amount, session_id, hours_old=30):
    hold = await ledger.reserve(user_id, Decimal(amount), session_id=session_id)
    assert hold.success, hold.error
    return await insert_order(
        sessionmaker,
        user_id=user_id,
        payment_session_id=session_id,
        credits_applied=Decimal(amount),
        credit_transaction_id=hold.reservation_id,
        total_price=Decimal("40"),
        created_at=datetime.utcnow() - timedelta(hours=hours_old),
    )


async def test_abandoned_checkout_credits_are_restored_once(ledger, sessionmaker, order_store, reclamation):
    await grant(ledger, "u1", "20")
    await grant(ledger, "u2", "10")
    order_a = await abandoned_checkout(ledger, sessionmaker, "u1", "15", "cs_a")
    await abandoned_checkout(ledger, sessionmaker, "u2", "10", "cs_b")
    assert (await ledger.get_balance("u1")).balance == Decimal("5.00")

    result = await reclamation.cleanup_abandoned_checkouts(24)

    assert result.success
    assert result.total_restored == Decimal("25.00")
    assert result.restored_sessions == 2
    assert (await ledger.get_balance("u1")).balance == Decimal("20.00")
    assert (await ledger.get_balance("u2")).balance == Decimal("10.00")

    order = await order_store.get(order_a.id)
    assert order.credits_applied == Decimal("0")
    assert order.credit_transaction_id is None

    second = await reclamation.cleanup_abandoned_checkouts(24)
    assert second.success
    assert second.total_restored == Decimal("0.00")
    assert second.restored_sessions == 0
    assert (await ledger.get_balance("u1")).balance == Decimal("20.00")


async def test_recent_and_paid_checkouts_are_left_alone(ledger, sessionmaker, reclamation):
    await grant(ledger, "u1", "30")
    await abandoned_checkout(ledger, sessionmaker, "u1", "10", "cs_recent", hours_old=2)
    paid = await abandoned_checkout(ledger, sessionmaker, "u1", "10", "cs_paid")
    async with sessionmaker() as session:
        async with session.begin():
            await session.execute(update(Order).where(Order.id == paid.id).values(order_status=OrderStatus.PRINTING))

    result = await reclamation.cleanup_abandoned_checkouts(24)

    assert result.total_restored == Decimal("0.00")
    assert (await ledger.get_balance("u1")).balance == Decimal("10.00")


class FlakyLedger(CreditLedger):
    def __init__(self, store, broken_id):
        super().__init__(store)
        self.broken_id = broken_id

    async def reverse_transaction(self, transaction_id, reason, created_by=None):
        if transaction_id == self.broken_id:
            return ReversalResult(success=False, error="connection reset by peer")
        return await super().reverse_transaction(transaction_id, reason, created_by)


async def test_failed_session_does_not_stop_others(ledger, ledger_store, sessionmaker, order_store):
    await grant(ledger, "u1", "20")
    await grant(ledger, "u2", "20")
    await abandoned_checkout(ledger, sessionmaker, "u1", "5", "cs_ok")
    broken = await abandoned_checkout(ledger, sessionmaker, "u2", "5", "cs_broken")
    jobs = ReclamationJobs(FlakyLedger(ledger_store, broken.credit_transaction_id), order_store)

    result = await jobs.cleanup_abandoned_checkouts(24)

    assert result.success
    assert result.restored_sessions == 1
    assert result.failed_sessions == ["cs_broken"]
    assert (await ledger.get_balance("u1")).balance == Decimal("20.00")
    # Linkage is kept so the next run retries it
    assert (await order_store.get(broken.id)).credit_transaction_id == broken.credit_transaction_id
    assert (await ledger.get_balance("u2")).balance == Decimal("15.00")


async def test_vanished_reservation_just_clears_linkage(ledger, sessionmaker, order_store, reclamation):
    await grant(ledger, "u1", "20")
    order = await abandoned_checkout(ledger, sessionmaker, "u1", "15", "cs_gone")
    await ledger.cancel_reservation(order.credit_transaction_id)

    result = await reclamation.cleanup_abandoned_checkouts(24)

    assert result.success and result.restored_sessions == 1
    assert result.total_restored == Decimal("0.00")
    assert (await order_store.get(order.id)).credit_transaction_id is None
    assert (await ledger.get_balance("u1")).balance == Decimal("20.00")


async def test_expired_reservations_are_deleted(ledger, sessionmaker, reclamation):
    await grant(ledger, "u1", "20")
    old = await ledger.reserve("u1", Decimal("8"), session_id="cs_old")
    await ledger.reserve("u1", Decimal("2"), session_id="cs_new")
    async with sessionmaker() as session:
        async with session.begin():
            await session.execute(
                update(CreditTransaction)
                .where(CreditTransaction.id == old.reservation_id)
                .values(created_at=datetime.utcnow() - timedelta(hours=48))
            )

    result = await reclamation.cleanup_expired_reservations(24)

    assert result.success
    assert result.deleted_count == 1
    assert result.released_amount == Decimal("8.00")
    assert (await ledger.get_balance("u1")).balance == Decimal("18.00")


async def test_run_is_skipped_while_lock_is_held(ledger, order_store):
    lock = LocalJobLock()
    jobs = ReclamationJobs(ledger, order_store, lock)
    async with lock.hold("cleanup_abandoned_checkouts"):
        result = await jobs.cleanup_abandoned_checkouts(24)
    assert result.skipped
    assert result.restored_sessions == 0


async def spent_checkout(ledger, sessionmaker, user_id, amount, session_id, order_id, hours_old=30):
    spent = await ledger.deduct(user_id, Decimal(amount), "Credits applied at checkout", order_id=order_id)
    assert spent.success, spent.error
    return await insert_order(
        sessionmaker,
        id=order_id,
        user_id=user_id,
        payment_session_id=session_id,
        credits_applied=Decimal(amount),
        credit_transaction_id=spent.transaction_id,
        total_price=Decimal("40"),
        created_at=datetime.utcnow() - timedelta(hours=hours_old),
    )


async def reversals_of(sessionmaker, transaction_id):
    async with sessionmaker() as session:
        rows = await session.execute(
            select(CreditTransaction).where(CreditTransaction.reversal_of_id == transaction_id)
        )
        return list(rows.scalars().all())


async def test_confirmed_credit_gets_one_compensating_row(ledger, sessionmaker, order_store, reclamation):
    await grant(ledger, "u1", "20")
    order = await spent_checkout(ledger, sessionmaker, "u1", "12", "cs_used", "order-used")
    assert (await ledger.get_balance("u1")).balance == Decimal("8.00")

    first = await reclamation.cleanup_abandoned_checkouts(24)
    second = await reclamation.cleanup_abandoned_checkouts(24)

    assert first.total_restored == Decimal("12.00")
    assert second.total_restored == Decimal("0.00")
    assert (await ledger.get_balance("u1")).balance == Decimal("20.00")
    reversals = await reversals_of(sessionmaker, order.credit_transaction_id)
    assert len(reversals) == 1
    assert reversals[0].amount == Decimal("12.00")
    assert (await order_store.get(order.id)).credit_transaction_id is None


async def test_every_unpaid_order_under_a_session_is_restored(ledger, sessionmaker, order_store, reclamation):
    await grant(ledger, "u1", "20")
    stale = await abandoned_checkout(ledger, sessionmaker, "u1", "10", "cs_multi")
    sibling = await spent_checkout(ledger, sessionmaker, "u1", "5", "cs_multi", "order-sibling", hours_old=1)
    assert (await ledger.get_balance("u1")).balance == Decimal("5.00")

    result = await reclamation.cleanup_abandoned_checkouts(24)

    assert result.restored_sessions == 1
    assert result.total_restored == Decimal("15.00")
    assert (await ledger.get_balance("u1")).balance == Decimal("20.00")
    for order_id in (stale.id, sibling.id):
        order = await order_store.get(order_id)
        assert order.credit_transaction_id is None
        assert order.credits_applied == Decimal("0")
