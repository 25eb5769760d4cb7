# /storecredit/models/order.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, JSON, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from storecredit.core.database import Base


class OrderStatus:
    AWAITING_PAYMENT = "Awaiting Payment"
    BUILDING_PROOF = "Building Proof"
    PRINTING = "Printing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    PAYMENT_FAILED = "Payment Failed"
    REFUNDED = "Refunded"


class FinancialStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class ProofStatus:
    APPROVED = "approved"


class Order(Base):
    """Order record, trimmed to the fields payment reconciliation touches."""
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    guest_email: Mapped[Optional[str]] = mapped_column(String(190), nullable=True, index=True)

    # Provider linkage: checkout session id and payment intent id
    payment_session_id: Mapped[Optional[str]] = mapped_column(String(190), nullable=True, index=True)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(190), nullable=True, unique=True)

    order_number: Mapped[Optional[str]] = mapped_column(String(40), nullable=True, unique=True)
    order_status: Mapped[str] = mapped_column(String(40), default=OrderStatus.AWAITING_PAYMENT, index=True)
    financial_status: Mapped[str] = mapped_column(String(20), default=FinancialStatus.PENDING)
    proof_status: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    subtotal_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    total_tax: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    # Store credit applied at checkout and the reservation/deduction row backing it
    credits_applied: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    credit_transaction_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    customer_first_name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    customer_last_name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(190), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    shipping_address: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    billing_address: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    shipping_method: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    is_express_shipping: Mapped[bool] = mapped_column(Boolean, default=False)
    is_rush_order: Mapped[bool] = mapped_column(Boolean, default=False)
    order_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Set once the paid notification / analytics / discount effects have been dispatched
    paid_effects_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def is_guest(self) -> bool:
        return not self.user_id or self.user_id == "guest"
