# /storecredit/models/credit_transaction.py
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from storecredit.core.database import Base


class TransactionType:
    EARNED = "earned"
    USED = "used"
    RESERVATION = "reservation_pending_payment"
    ADJUSTMENT = "adjustment"

    ALL = (EARNED, USED, RESERVATION, ADJUSTMENT)


def earned_key(user_id: str, order_id: str) -> str:
    return f"earned:{user_id}:{order_id}"


def spend_key(user_id: str, order_id: str, transaction_type: str = TransactionType.USED) -> str:
    return f"{transaction_type}:{user_id}:{order_id}"


def reservation_key(user_id: str, session_id: str) -> str:
    return f"reservation:{user_id}:{session_id}"


def reversal_key(transaction_id: str) -> str:
    return f"reversal:{transaction_id}"


def compensation_key(user_id: str, order_id: str) -> str:
    return f"compensation:{user_id}:{order_id}"


def promotion_key(campaign: str, user_id: str) -> str:
    return f"promotion:{campaign}:{user_id}"


class CreditTransaction(Base):
    """Append-only store-credit ledger. Balance is always the sum of amount."""
    __tablename__ = "credit_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), index=True)

    # Signed: positive increases the balance, negative spends or holds it
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))

    # earned, used, reservation_pending_payment, adjustment
    transaction_type: Mapped[str] = mapped_column(String(40), index=True)

    order_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Audit snapshot only. Never read for decisions.
    balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    # One row per financial effect: earned:<user>:<order>, used:<user>:<order>, reversal:<tx>, ...
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(190), unique=True, nullable=True)
    reversal_of_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    payment_session_id: Mapped[Optional[str]] = mapped_column(String(190), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
