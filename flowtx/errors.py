"""
FlowTX Errors - Transaction Failure Kinds
=========================================

All transaction errors derive from ``TransactionError`` so callers can catch the
whole family at once. Errors raised by a transaction body are never wrapped:
they propagate unchanged after the rollback.
"""

from typing import Optional


class TransactionError(Exception):
    """Base class for transaction lifecycle errors."""

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        super().__init__(message)
        self.transaction_id = transaction_id


class TransactionNotFound(TransactionError):
    """Raised when commit/rollback references an id that is not active."""

    pass


class InvalidTransactionState(TransactionError):
    """Raised when commit/rollback targets a context that already terminated."""

    pass


class TransactionTimeout(TransactionError):
    """
    Recorded by the watchdog when a transaction outlives its timeout.

    The watchdog runs on its own timer thread, so this error is attached to the
    context and published on ``TransactionManager.timeouts`` instead of being
    raised there. ``execute_transaction`` re-raises it on the caller's side when
    the body returns after the deadline.
    """

    def __init__(self, transaction_id: str, timeout: float):
        super().__init__(
            f"Transaction {transaction_id} timed out after {timeout}ms",
            transaction_id,
        )
        self.timeout = timeout


__all__ = [
    "TransactionError",
    "TransactionNotFound",
    "InvalidTransactionState",
    "TransactionTimeout",
]
