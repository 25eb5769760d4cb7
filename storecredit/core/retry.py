# storecredit/core/retry.py
import asyncio
import logging
import socket
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError

from storecredit.core.errors import TransientStoreError

logger = logging.getLogger("storecredit.store")

T = TypeVar("T")

_TRANSIENT_MARKERS = (
    "enotfound",
    "name or service not known",
    "temporary failure in name resolution",
    "connection reset",
    "connection refused",
    "server has gone away",
    "lost connection",
    "database is locked",
    "timed out",
)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, (OperationalError, InterfaceError, socket.gaierror, ConnectionError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    msg = str(exc).lower()
    return any(marker in msg for marker in _TRANSIENT_MARKERS)


async def with_store_retry(
    op: Callable[[], Awaitable[T]],
    *,
    label: str,
    attempts: int = 3,
    backoff_seconds: float = 0.5,
) -> T:
    """Run op, retrying transient store failures with linear backoff."""
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await op()
        except Exception as exc:
            if not is_transient(exc):
                raise
            if attempt >= attempts:
                logger.error(f"{label}: store unavailable after {attempts} attempts: {exc}")
                raise TransientStoreError(f"{label}: {exc}") from exc
            delay = backoff_seconds * attempt
            logger.warning(f"{label}: transient store error (attempt {attempt}/{attempts}), retrying in {delay:.2f}s: {exc}")
            await asyncio.sleep(delay)
    raise TransientStoreError(label)  # pragma: no cover
