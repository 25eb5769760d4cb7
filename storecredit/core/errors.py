# FILE: storecredit/core/errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class StoreCreditError(Exception):
    pass


class CreditValidationError(StoreCreditError):
    """Bad amount, insufficient balance or guest ineligibility. Never retried."""


@dataclass
class IdempotentNoOp(StoreCreditError):
    # Duplicate earn/deduct/confirm. Callers report it as success with a flag.
    operation: str
    transaction_id: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.operation} already applied ({self.transaction_id})"


class TransientStoreError(StoreCreditError):
    """Network / name-resolution / lock blips against the backing store."""


class DuplicateTransactionError(StoreCreditError):
    def __init__(self, idempotency_key: Optional[str], message: str = "duplicate credit transaction"):
        super().__init__(f"{message}: {idempotency_key}")
        self.idempotency_key = idempotency_key


class TransactionNotFoundError(StoreCreditError):
    def __init__(self, transaction_id: str):
        super().__init__(f"Credit transaction not found: {transaction_id}")
        self.transaction_id = transaction_id


class AtomicUpdateUnavailable(StoreCreditError):
    pass


class SignatureError(StoreCreditError):
    """Inbound payment event failed authenticity checks."""


@dataclass
class CriticalReversalFailure(StoreCreditError):
    # Payment failed but the customer's credits could not be restored:
    # real financial exposure, alerted separately from ordinary errors.
    order_id: str
    user_id: Optional[str]
    amount: Any
    transaction_id: Optional[str]
    cause: str
    context: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return (
            f"CRITICAL: credit reversal failed for order {self.order_id} "
            f"(user={self.user_id}, amount={self.amount}, tx={self.transaction_id}): {self.cause}"
        )

    def to_alert(self) -> Dict[str, Any]:
        return {
            "code": "CRITICAL_REVERSAL_FAILURE",
            "order_id": self.order_id,
            "user_id": self.user_id,
            "amount": str(self.amount),
            "transaction_id": self.transaction_id,
            "cause": self.cause,
            **self.context,
        }
