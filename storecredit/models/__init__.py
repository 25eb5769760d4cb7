from storecredit.models.credit_transaction import CreditTransaction, TransactionType
from storecredit.models.order import FinancialStatus, Order, OrderStatus, ProofStatus

__all__ = [
    "CreditTransaction", "TransactionType",
    "Order", "OrderStatus", "FinancialStatus", "ProofStatus",
]
