"""
FlowTX - Transactional Reactive Store

An in-process state container whose mutations run in atomic transactions
(commit or rollback) and whose observers are notified only at transaction
boundaries, with last-value replay for late subscribers.
"""

# Notification primitive
from .broadcast import Broadcaster, CallbackObserver, Observer, Subscription

# Change records
from .changes import StateChange, copy_state, diff_states, values_equal

# Collaborators
from .crud import CrudRepository

# Exceptions
from .errors import (
    InvalidTransactionState,
    TransactionError,
    TransactionNotFound,
    TransactionTimeout,
)

# Store
from .store import TransactionalStore, new_store

# Transaction lifecycle
from .transaction_manager import TransactionManager
from .transactional import transactional_methods, wrap_transactional
from .types import (
    DEFAULT_TRANSACTION_OPTIONS,
    IsolationLevel,
    OperationType,
    TransactionContext,
    TransactionLog,
    TransactionOperation,
    TransactionOptions,
    TransactionStatus,
)

__all__ = [
    # Store
    "TransactionalStore",
    "new_store",
    # Transactions
    "TransactionManager",
    "TransactionContext",
    "TransactionOptions",
    "DEFAULT_TRANSACTION_OPTIONS",
    "TransactionStatus",
    "IsolationLevel",
    "TransactionOperation",
    "OperationType",
    "TransactionLog",
    # Notification
    "Broadcaster",
    "Observer",
    "CallbackObserver",
    "Subscription",
    # Change records
    "StateChange",
    "copy_state",
    "diff_states",
    "values_equal",
    # Collaborators
    "wrap_transactional",
    "transactional_methods",
    "CrudRepository",
    # Exceptions
    "TransactionError",
    "TransactionNotFound",
    "InvalidTransactionState",
    "TransactionTimeout",
]
