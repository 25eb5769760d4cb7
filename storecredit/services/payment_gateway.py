# FILE: storecredit/services/payment_gateway.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Protocol, Union

import stripe

from storecredit.core.errors import SignatureError
from storecredit.core.logging_config import STRIPE_LOGGER

stripe_logger = logging.getLogger(STRIPE_LOGGER)

SESSION_EXPAND = ["line_items.data.price.product", "shipping_cost.shipping_rate", "customer_details"]


class PaymentGateway(Protocol):
    def verify_event(self, payload: Union[bytes, str], signature: str) -> Dict[str, Any]:
        ...

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        ...


def to_plain(value: Any) -> Any:
    """StripeObject -> plain dict/list tree so handlers can use .get() freely."""
    if isinstance(value, stripe.StripeObject):
        value = value.to_dict()
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_plain(v) for v in value]
    return value


class StripeGateway:
    def __init__(self, secret_key: str, webhook_secret: str) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        if secret_key:
            stripe.api_key = secret_key

    def verify_event(self, payload: Union[bytes, str], signature: str) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise SignatureError("Stripe webhook not configured")
        if not signature:
            raise SignatureError("Missing stripe-signature header")
        try:
            event = stripe.Webhook.construct_event(
                payload=payload, sig_header=signature, secret=self.webhook_secret
            )
        except Exception as exc:
            stripe_logger.warning(f"Rejected webhook: {exc}")
            raise SignatureError(f"Invalid webhook: {exc}") from exc
        # Newer stripe releases return a StripeObject that is not a dict
        event = to_plain(event)
        stripe_logger.info(f"Webhook {event.get('type')} ({event.get('id')})")
        return event

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        session = await asyncio.to_thread(
            stripe.checkout.Session.retrieve, session_id, expand=SESSION_EXPAND
        )
        return to_plain(session)
