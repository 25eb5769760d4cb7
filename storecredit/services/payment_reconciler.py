# FILE: storecredit/services/payment_reconciler.py
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from storecredit.core.errors import (
    AtomicUpdateUnavailable,
    CriticalReversalFailure,
    StoreCreditError,
    TransientStoreError,
)
from storecredit.core.logging_config import CRITICAL_LOGGER, STRIPE_LOGGER
from storecredit.core.money import cents_to_money, display, money
from storecredit.models.credit_transaction import TransactionType, compensation_key
from storecredit.models.order import FinancialStatus, Order, OrderStatus, ProofStatus
from storecredit.services.collaborators import (
    AnalyticsSink,
    DiscountRecorder,
    LoggingAnalyticsSink,
    LoggingDiscountRecorder,
    LoggingNotificationSender,
    NotificationSender,
    best_effort,
)
from storecredit.services.credit_ledger import STORE_ERRORS, CreditLedger, is_guest
from storecredit.services.ledger_store import new_id
from storecredit.services.order_store import OrderStore, PaymentUpdate, PaymentUpdateOutcome
from storecredit.services.payment_gateway import PaymentGateway

logger = logging.getLogger("storecredit.webhooks")
stripe_logger = logging.getLogger(STRIPE_LOGGER)
critical_logger = logging.getLogger(CRITICAL_LOGGER)

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
CHARGE_REFUNDED = "charge.refunded"


# ─────────────────────────────────────────────
# SESSION PARSING
# ─────────────────────────────────────────────

_NOTE_PATTERNS = {
    "cut": re.compile(r"✂️ Cut: (.+?)(?:\n|$)"),
    "material": re.compile(r"✨ Material: (.+?)(?:\n|$)"),
    "size": re.compile(r"📏 Size: (.+?)(?:\n|$)"),
    "kiss_cut": re.compile(r"✨ Kiss Cut: (.+?)(?:\n|$)"),
}
_RUSH_RE = re.compile(r"✨ Rush: (.+?)(?:\n|$)")
_PROOF_RE = re.compile(r"📋 Proof: (.+?)(?:\n|$)")
_NO_PROOF = "❌ No Proof"

# Shipping rates by amount in cents: (method, express)
SHIPPING_BY_CENTS = {
    4000: ("UPS Next Day Air", True),
    2000: ("UPS 2nd Day Air", True),
    800: ("UPS Ground (Tracking Included)", False),
    400: ("USPS First-Class (Tracking Included)", False),
}


def parse_order_note_selections(note: Optional[str]) -> Dict[str, Dict[str, Any]]:
    """
    Pull the calculator selections the storefront writes into the order note.

    The proof selection is always present: "❌ No Proof" opts out, anything
    else (an explicit "📋 Proof:" line or nothing at all) means send a proof.
    """
    if not note or not isinstance(note, str):
        return {}

    selections: Dict[str, Dict[str, Any]] = {}
    for name, pattern in _NOTE_PATTERNS.items():
        m = pattern.search(note)
        if m:
            value = m.group(1).strip()
            selections[name] = {"value": value, "display_value": value}

    rush = _RUSH_RE.search(note)
    if rush and rush.group(1).strip() == "Rush Order":
        selections["rush"] = {"value": True, "display_value": "Rush Order"}

    proof = _PROOF_RE.search(note)
    if _NO_PROOF in note:
        selections["proof"] = {"value": False, "display_value": "No Proof"}
    elif proof:
        selections["proof"] = {"value": True, "display_value": proof.group(1).strip()}
    else:
        selections["proof"] = {"value": True, "display_value": "Send Proof"}
    return selections


def is_rush_order(note: Optional[str]) -> bool:
    return parse_order_note_selections(note).get("rush", {}).get("value") is True


def line_items(session: Dict[str, Any]) -> List[Dict[str, Any]]:
    return ((session.get("line_items") or {}).get("data")) or []


def _product_metadata(item: Dict[str, Any]) -> Dict[str, Any]:
    product = (item.get("price") or {}).get("product")
    if isinstance(product, dict):
        return product.get("metadata") or {}
    return {}


def is_reorder(session: Dict[str, Any]) -> bool:
    return any(_product_metadata(item).get("isReorder") == "true" for item in line_items(session))


def _wants_proof(item_metadata: Dict[str, Any], note_selections: Dict[str, Dict[str, Any]]) -> bool:
    proof = note_selections.get("proof")
    raw = item_metadata.get("proof")
    if raw is not None:
        proof = {"value": str(raw).lower() not in ("false", "no proof"), "display_value": str(raw)}
    if not proof:
        return True
    return not (proof["value"] is False or proof["display_value"] == "No Proof")


def determine_order_status(session: Dict[str, Any], order_note: Optional[str]) -> Tuple[str, Optional[str]]:
    """(order_status, proof_status) for a freshly paid order."""
    if is_reorder(session):
        return OrderStatus.PRINTING, ProofStatus.APPROVED

    selections = parse_order_note_selections(order_note)
    wants = [_wants_proof(_product_metadata(item), selections) for item in line_items(session)]
    if wants and not any(wants):
        return OrderStatus.PRINTING, ProofStatus.APPROVED
    # Mixed, all-proof and unspecified all go through proofing
    return OrderStatus.BUILDING_PROOF, None


def detect_shipping_method(session: Dict[str, Any]) -> Tuple[Optional[str], bool]:
    shipping_cost = session.get("shipping_cost") or {}
    rate = shipping_cost.get("shipping_rate")
    display_name = rate.get("display_name") if isinstance(rate, dict) else None
    if not shipping_cost and not display_name:
        return None, False

    cents = int(shipping_cost.get("amount_total") or 0)
    if cents in SHIPPING_BY_CENTS:
        return SHIPPING_BY_CENTS[cents]

    if cents == 0:
        name = (display_name or "").lower()
        if "pickup" in name or "local" in name:
            return "Local Pickup (Denver, CO)", False
        if "stamp" in name or "no tracking" in name:
            return "USPS Stamp (No Tracking)", False
        if "first-class" in name or "first class" in name or "usps" in name:
            return "USPS First-Class (Recommended for 10+ Items or Tracking Included)", False
        return "UPS Ground", False

    if display_name:
        return display_name, "Next Day Air" in display_name or "2nd Day Air" in display_name
    logger.warning(f"Unknown shipping cost {cents} cents; defaulting to UPS Ground")
    return f"UPS Ground (Unknown cost: {display(cents_to_money(cents))})", False


def _split_name(name: Optional[str]) -> Tuple[str, str]:
    parts = (name or "").split(" ")
    return parts[0], " ".join(parts[1:])


def extract_customer(session: Dict[str, Any], existing: Optional[Order] = None) -> Dict[str, Any]:
    """Contact and address fields, preferring the shipping recipient, then the payer, then the order."""
    customer = session.get("customer_details") or {}
    shipping = session.get("shipping_details") or {}
    address = shipping.get("address") or {}

    first, last = _split_name(shipping.get("name"))
    c_first, c_last = _split_name(customer.get("name"))
    out = {
        "customer_first_name": first or c_first or (existing.customer_first_name if existing else None) or "",
        "customer_last_name": last or c_last or (existing.customer_last_name if existing else None) or "",
        "customer_email": customer.get("email") or (existing.customer_email if existing else None),
        "customer_phone": shipping.get("phone") or customer.get("phone") or (existing.customer_phone if existing else None),
        "shipping_address": None,
        "billing_address": None,
    }
    if address.get("line1"):
        out["shipping_address"] = {
            k: address.get(k) for k in ("line1", "line2", "city", "state", "postal_code", "country")
        }
    elif existing is not None:
        out["shipping_address"] = existing.shipping_address

    billing = customer.get("address") or {}
    if billing.get("line1"):
        out["billing_address"] = {
            k: billing.get(k) for k in ("line1", "line2", "city", "state", "postal_code", "country")
        }
    return out


def parse_cart_data(metadata: Dict[str, Any]) -> Dict[str, Any]:
    raw = metadata.get("cartData")
    if isinstance(raw, dict):
        return raw
    try:
        data = json.loads(raw) if raw else {}
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed cartData metadata")
        return {}
    return data if isinstance(data, dict) else {}


def _intent_id(obj: Dict[str, Any]) -> Optional[str]:
    intent = obj.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return intent or None


# ─────────────────────────────────────────────
# RECONCILER
# ─────────────────────────────────────────────

Deferred = Tuple[str, Callable[..., Awaitable[Any]], tuple]


@dataclass
class WebhookOutcome:
    event_type: str
    action: str = "ignored"
    order_id: Optional[str] = None
    error: Optional[str] = None
    deferred: List[Deferred] = field(default_factory=list)

    def response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"received": True}
        if self.error:
            body["error"] = self.error
        return body


class PaymentWebhookReconciler:
    """
    Applies verified Stripe events to orders and the credit ledger.

    Everything that must hold before the provider gets its 2xx (order status,
    credit confirmation or reversal, earning) happens inside handle_event.
    Notifications, analytics and discount bookkeeping come back as
    `outcome.deferred` for the caller to run after responding.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        orders: OrderStore,
        gateway: PaymentGateway,
        *,
        notifications: Optional[NotificationSender] = None,
        analytics: Optional[AnalyticsSink] = None,
        discounts: Optional[DiscountRecorder] = None,
        recovery_window_minutes: int = 60,
        session_retry_delay_seconds: float = 2.0,
    ) -> None:
        self.ledger = ledger
        self.orders = orders
        self.gateway = gateway
        self.notifications = notifications or LoggingNotificationSender()
        self.analytics = analytics or LoggingAnalyticsSink()
        self.discounts = discounts or LoggingDiscountRecorder()
        self.recovery_window = timedelta(minutes=recovery_window_minutes)
        self.session_retry_delay_seconds = session_retry_delay_seconds

    async def handle_event(self, event: Dict[str, Any]) -> WebhookOutcome:
        event_type = event.get("type") or ""
        obj = (event.get("data") or {}).get("object") or {}
        handlers = {
            CHECKOUT_COMPLETED: self.handle_checkout_completed,
            PAYMENT_SUCCEEDED: self.handle_payment_succeeded,
            PAYMENT_FAILED: self.handle_payment_failed,
            CHARGE_REFUNDED: self.handle_charge_refunded,
        }
        handler = handlers.get(event_type)
        if handler is None:
            stripe_logger.info(f"Unhandled event type {event_type}; acknowledged")
            return WebhookOutcome(event_type=event_type)
        return await handler(obj)

    @staticmethod
    async def run_deferred(outcome: WebhookOutcome) -> None:
        for label, fn, args in outcome.deferred:
            await best_effort(label, fn, *args)

    # -------- checkout.session.completed

    async def handle_checkout_completed(self, session: Dict[str, Any]) -> WebhookOutcome:
        session_id = session.get("id")
        outcome = WebhookOutcome(event_type=CHECKOUT_COMPLETED)
        if not session_id:
            outcome.error = "checkout session without id"
            return outcome

        full = await self._fetch_session(session)
        metadata = full.get("metadata") or {}

        order = await self.orders.find_by_session(session_id)
        outcome.action = "updated"
        if order is None:
            order = await self._recover_order(full)
            outcome.action = "recovered"
        if order is None:
            order = await self._create_order(full)
            outcome.action = "created"

        applied = await self._apply_payment(order, full)
        order = applied.order
        outcome.order_id = order.id
        if not applied.applied:
            outcome.action = "already_paid"
            logger.info(f"Order {order.id} already paid; re-checking credits only")

        await self._settle_credits(order, full)

        if not order.is_guest:
            earned = await self.ledger.earn(order.user_id, order.total_price, order.id)
            if earned.success:
                logger.info(f"Earn for order {order.id}: {earned.message}")
            else:
                logger.info(f"No points for order {order.id}: {earned.error or earned.message}")

        # A delivery that failed after marking the order paid (503) never ran these
        if applied.applied or order.paid_effects_at is None:
            cart = parse_cart_data(metadata)
            if cart.get("discountCode"):
                outcome.deferred.append((
                    "discount usage",
                    self.discounts.record_usage,
                    (str(cart["discountCode"]).upper(), money(cart.get("discountAmount")), order.id, order.user_id),
                ))
            outcome.deferred.append(("analytics", self.analytics.track_purchase, (order, full)))
            outcome.deferred.append(("order notification", self.notifications.order_paid, (order,)))
            outcome.deferred.append(("post-payment marker", self.orders.mark_paid_effects_sent, (order.id,)))

        stripe_logger.info(f"checkout {session_id} -> order {order.id} ({outcome.action}, {order.order_status})")
        return outcome

    async def _fetch_session(self, session: Dict[str, Any]) -> Dict[str, Any]:
        """Full session with line items; Stripe sometimes needs a moment to populate them."""
        session_id = session["id"]
        for attempt in (1, 2):
            try:
                full = await self.gateway.retrieve_checkout_session(session_id)
            except Exception as exc:
                stripe_logger.error(f"Could not retrieve session {session_id}: {exc}")
                return session
            if line_items(full) and full.get("shipping_cost") is not None:
                return full
            if attempt == 1:
                logger.info(f"Session {session_id} not fully populated; retrying in {self.session_retry_delay_seconds}s")
                await asyncio.sleep(self.session_retry_delay_seconds)
        return full

    async def _recover_order(self, session: Dict[str, Any]) -> Optional[Order]:
        """Find the unpaid order whose session id was never stored, and backfill it."""
        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId")
        email = (session.get("customer_details") or {}).get("email")
        guest = is_guest(user_id)

        candidate = await self.orders.find_recoverable(
            user_id=None if guest else user_id,
            guest_email=email if guest else None,
            total=cents_to_money(session.get("amount_total")),
            since=datetime.utcnow() - self.recovery_window,
        )
        if candidate is None:
            return None

        if await self.orders.set_session_id(candidate.id, session["id"]):
            logger.warning(f"Recovered order {candidate.id} for session {session['id']} (session id was missing)")
            return await self.orders.get(candidate.id)
        # A concurrent delivery claimed it first
        return await self.orders.find_by_session(session["id"])

    async def _create_order(self, session: Dict[str, Any]) -> Order:
        metadata = session.get("metadata") or {}
        cart = parse_cart_data(metadata)
        user_id = metadata.get("userId")
        customer = extract_customer(session)
        order = Order(
            id=new_id(),
            user_id=None if is_guest(user_id) else user_id,
            guest_email=customer["customer_email"] if is_guest(user_id) else None,
            payment_session_id=session["id"],
            currency=(session.get("currency") or "usd").upper(),
            credits_applied=money(metadata.get("creditsApplied") or cart.get("creditsApplied")),
            order_note=metadata.get("orderNote"),
            created_at=datetime.utcnow(),
            **customer,
        )
        logger.warning(f"No order for session {session['id']}; creating one from the session")
        try:
            return await self.orders.create_order(order)
        except TransientStoreError:
            raise
        except StoreCreditError:
            existing = await self.orders.find_by_session(session["id"])
            if existing is None:
                raise
            return existing

    def _payment_update(self, order: Order, session: Dict[str, Any]) -> PaymentUpdate:
        metadata = session.get("metadata") or {}
        note = metadata.get("orderNote") or order.order_note
        order_status, proof_status = determine_order_status(session, note)
        shipping_method, express = detect_shipping_method(session)

        subtotal = cents_to_money(session.get("amount_subtotal"))
        total = cents_to_money(session.get("amount_total"))
        return PaymentUpdate(
            order_status=order_status,
            proof_status=proof_status,
            payment_session_id=session.get("id"),
            payment_intent_id=_intent_id(session),
            subtotal_price=subtotal,
            total_tax=total - subtotal,
            total_price=total,
            shipping_method=shipping_method or order.shipping_method,
            is_express_shipping=express,
            is_rush_order=is_rush_order(note),
            order_note=note,
            **extract_customer(session, order),
        )

    async def _apply_payment(self, order: Order, session: Dict[str, Any]) -> PaymentUpdateOutcome:
        if order.financial_status == FinancialStatus.PAID:
            return PaymentUpdateOutcome(order, applied=False)
        upd = self._payment_update(order, session)
        try:
            return await self.orders.apply_payment_update(order.id, upd)
        except AtomicUpdateUnavailable:
            logger.warning(f"Atomic order update unavailable; updating order {order.id} step by step")
            return await self.orders.apply_payment_update_stepwise(order.id, upd)

    async def _settle_credits(self, order: Order, session: Dict[str, Any]) -> None:
        """Turn the checkout's credit hold into a real deduction, or deduct directly when there is none."""
        metadata = session.get("metadata") or {}
        credits = money(order.credits_applied)
        if credits <= 0:
            credits = money(metadata.get("creditsApplied") or parse_cart_data(metadata).get("creditsApplied"))
        if credits <= 0:
            return
        if order.is_guest:
            logger.warning(f"Guest order {order.id} carries {display(credits)} in credits; ignored")
            return

        reason = f"Credits applied to order {order.order_number or order.id}"
        if order.credit_transaction_id:
            confirmed = await self.ledger.confirm_transaction(order.credit_transaction_id, order.id, reason)
            if confirmed.success:
                if confirmed.transaction_id != order.credit_transaction_id:
                    await self.orders.link_credit_transaction(order.id, confirmed.transaction_id)
                return
            if not confirmed.not_found:
                # Retryable: the provider redelivers and every step above is idempotent
                raise TransientStoreError(f"Credit confirmation failed for order {order.id}: {confirmed.error}")
            logger.warning(f"Reservation {order.credit_transaction_id} for order {order.id} is gone; deducting directly")

        deducted = await self.ledger.deduct(order.user_id, credits, reason, TransactionType.USED, order.id)
        if not deducted.success:
            logger.error(f"Could not deduct {display(credits)} for paid order {order.id}: {deducted.error}")
            return
        await self.orders.link_credit_transaction(order.id, deducted.transaction_id)

    # -------- payment_intent.succeeded

    async def handle_payment_succeeded(self, intent: Dict[str, Any]) -> WebhookOutcome:
        stripe_logger.info(f"Payment intent succeeded: {intent.get('id')}")
        return WebhookOutcome(event_type=PAYMENT_SUCCEEDED, action="acknowledged")

    # -------- payment_intent.payment_failed

    async def handle_payment_failed(self, intent: Dict[str, Any]) -> WebhookOutcome:
        outcome = WebhookOutcome(event_type=PAYMENT_FAILED)
        order_id = (intent.get("metadata") or {}).get("customerOrderId")
        if not order_id:
            stripe_logger.info(f"Payment intent {intent.get('id')} failed without customerOrderId")
            return outcome

        order = await self.orders.get(order_id)
        if order is None:
            logger.warning(f"Payment failed for unknown order {order_id}")
            return outcome
        outcome.order_id = order.id
        if order.financial_status == FinancialStatus.PAID:
            logger.warning(f"Ignoring payment failure for already paid order {order.id}")
            return outcome

        if money(order.credits_applied) > 0 and not order.is_guest:
            try:
                await self._restore_failed_payment_credits(order)
            except CriticalReversalFailure as failure:
                critical_logger.critical(str(failure))
                logger.critical(str(failure))
                await best_effort("critical alert", self.notifications.critical_alert, failure.to_alert())
                outcome.error = str(failure)

        await self.orders.update_status(
            order.id,
            order_status=OrderStatus.PAYMENT_FAILED,
            financial_status=FinancialStatus.FAILED,
        )
        outcome.action = "failed"
        outcome.deferred.append(("payment failed notification", self.notifications.payment_failed, (order,)))
        return outcome

    async def _restore_failed_payment_credits(self, order: Order) -> None:
        reason = f"Payment failed for order {order.order_number or order.id}"

        def critical(cause: str, tx_id: Optional[str]) -> CriticalReversalFailure:
            return CriticalReversalFailure(
                order_id=order.id,
                user_id=order.user_id,
                amount=money(order.credits_applied),
                transaction_id=tx_id,
                cause=cause,
            )

        if order.credit_transaction_id:
            reversed_ = await self.ledger.reverse_transaction(order.credit_transaction_id, reason)
            if not reversed_.success and not reversed_.not_found:
                raise critical(reversed_.error or "reversal failed", order.credit_transaction_id)
            logger.info(f"Restored {display(reversed_.restored_amount)} for failed order {order.id}")
        else:
            # No link: compensate only a deduction that actually happened
            try:
                used = await self.ledger.store.find_for_order(
                    order.user_id, order.id, TransactionType.USED, negative_only=True
                )
            except STORE_ERRORS as exc:
                raise critical(str(exc), None) from exc
            if used is not None:
                credited = await self.ledger.add_credits(
                    order.user_id,
                    -money(used.amount),
                    reason,
                    order_id=order.id,
                    idempotency_key=compensation_key(order.user_id, order.id),
                )
                if not credited.success:
                    raise critical(credited.error or "compensation failed", used.id)
                logger.info(f"Compensated {display(credited.amount)} for failed order {order.id}")

        await self.orders.link_credit_transaction(order.id, None)

    # -------- charge.refunded

    async def handle_charge_refunded(self, charge: Dict[str, Any]) -> WebhookOutcome:
        outcome = WebhookOutcome(event_type=CHARGE_REFUNDED)
        intent_id = _intent_id(charge)
        if not intent_id:
            return outcome
        order = await self.orders.find_by_intent(intent_id)
        if order is None:
            logger.warning(f"Refund for unknown payment intent {intent_id}")
            return outcome
        # Credits spent on a refunded order are left as they are
        await self.orders.update_status(
            order.id,
            order_status=OrderStatus.REFUNDED,
            financial_status=FinancialStatus.REFUNDED,
        )
        outcome.order_id = order.id
        outcome.action = "refunded"
        return outcome
