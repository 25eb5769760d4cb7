# FILE: storecredit/services/collaborators.py
"""
Side-effect collaborators of the payment flow.

None of these may break payment processing: callers always go through
best_effort(), which logs and swallows whatever they raise.
"""

import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx

from storecredit.models.order import Order

logger = logging.getLogger("storecredit.collaborators")


class NotificationSender(Protocol):
    async def order_paid(self, order: Order) -> None: ...

    async def payment_failed(self, order: Order) -> None: ...

    async def critical_alert(self, alert: Dict[str, Any]) -> None: ...


class AnalyticsSink(Protocol):
    async def track_purchase(self, order: Order, session: Dict[str, Any]) -> None: ...


class DiscountRecorder(Protocol):
    async def record_usage(
        self, code: str, amount: Decimal, order_id: str, user_id: Optional[str]
    ) -> None: ...


async def best_effort(label: str, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> bool:
    try:
        await fn(*args, **kwargs)
        return True
    except Exception as exc:
        logger.warning(f"{label} failed (ignored): {exc}")
        return False


class LoggingNotificationSender:
    async def order_paid(self, order: Order) -> None:
        logger.info(f"Order {order.order_number or order.id} paid; confirmation queued for {order.customer_email}")

    async def payment_failed(self, order: Order) -> None:
        logger.info(f"Payment failed for order {order.order_number or order.id}")

    async def critical_alert(self, alert: Dict[str, Any]) -> None:
        logger.critical(f"ALERT {alert}")


class HttpNotificationSender:
    """Posts notifications as JSON to a single webhook URL (Slack-style relay)."""

    def __init__(self, url: str, timeout: float = 10) -> None:
        self.url = url
        self.timeout = timeout

    async def _post(self, payload: Dict[str, Any]) -> None:
        async with httpx.AsyncClient() as client:
            resp = await client.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()

    async def order_paid(self, order: Order) -> None:
        await self._post({
            "event": "order_paid",
            "order_id": order.id,
            "order_number": order.order_number,
            "email": order.customer_email,
            "total": str(order.total_price),
        })

    async def payment_failed(self, order: Order) -> None:
        await self._post({"event": "payment_failed", "order_id": order.id, "order_number": order.order_number})

    async def critical_alert(self, alert: Dict[str, Any]) -> None:
        await self._post({"event": "critical_alert", **alert})


class LoggingAnalyticsSink:
    async def track_purchase(self, order: Order, session: Dict[str, Any]) -> None:
        logger.info(f"Purchase tracked: order={order.id} total={order.total_price} session={session.get('id')}")


class LoggingDiscountRecorder:
    async def record_usage(self, code: str, amount: Decimal, order_id: str, user_id: Optional[str]) -> None:
        logger.info(f"Discount {code} used on order {order_id}: {amount}")
