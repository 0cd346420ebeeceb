"""
FlowTX Types - Shared Transaction Data Model
============================================

This module holds the value types shared by the transaction manager, the store
and the collaborators built on them:

- **TransactionStatus** / **IsolationLevel**: lifecycle and isolation enums
- **TransactionOptions**: per-transaction configuration with defaults
- **TransactionContext**: identity, status and timing of one atomic unit
- **TransactionOperation** / **TransactionLog**: the per-transaction audit trail

Durations in ``TransactionOptions`` are milliseconds. Timestamps are
``time.time()`` seconds.
"""

import time
import uuid
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, List, Optional

# ============================================================================
# ENUMS
# ============================================================================


class TransactionStatus(Enum):
    """Lifecycle status of a transaction. PENDING is the only non-terminal one."""

    PENDING = "PENDING"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class IsolationLevel(Enum):
    """
    Intended visibility semantics between concurrent transactions.

    Stored on the options and exposed for callers, but not enforced: there is
    no serialization or conflict detection behind any of these levels.
    """

    READ_UNCOMMITTED = "READ_UNCOMMITTED"
    READ_COMMITTED = "READ_COMMITTED"
    REPEATABLE_READ = "REPEATABLE_READ"
    SERIALIZABLE = "SERIALIZABLE"


class OperationType(Enum):
    """Kind of logical operation recorded in a transaction log."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


# ============================================================================
# OPTIONS
# ============================================================================


@dataclass(frozen=True)
class TransactionOptions:
    """
    Configuration for one transaction.

    Attributes:
        timeout: Watchdog deadline in ms. ``0`` or ``None`` disables it.
        auto_retry: Retry the body after a failure.
        max_retries: Additional attempts allowed when ``auto_retry`` is set.
        retry_delay: Fixed pause in ms before each retry.
        optimistic_locking: Policy hook only, not enforced.
        isolation_level: Policy hook only, not enforced.
    """

    timeout: Optional[float] = 30000
    auto_retry: bool = False
    max_retries: int = 3
    retry_delay: float = 1000
    optimistic_locking: bool = False
    isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED

    def merged(self, **overrides: Any) -> "TransactionOptions":
        """Return a copy with the explicit overrides applied."""
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(
                f"Unknown transaction option(s): {', '.join(sorted(unknown))}"
            )
        return replace(self, **overrides)

    @property
    def should_retry(self) -> bool:
        return bool(self.auto_retry) and self.max_retries > 0


DEFAULT_TRANSACTION_OPTIONS = TransactionOptions()


# ============================================================================
# CONTEXT
# ============================================================================


def _new_transaction_id() -> str:
    return str(uuid.uuid4())


@dataclass(eq=False)
class TransactionContext:
    """
    Identity and status record for one atomic unit of work.

    Contexts are created by ``TransactionManager.begin_transaction`` and reach a
    terminal status exactly once. ``data`` is free for owners to attach
    metadata; the store keeps its rollback snapshot under ``"snapshot"``.
    """

    options: TransactionOptions = DEFAULT_TRANSACTION_OPTIONS
    id: str = field(default_factory=_new_transaction_id)
    status: TransactionStatus = TransactionStatus.PENDING
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    data: Dict[str, Any] = field(default_factory=dict)
    parent_id: Optional[str] = None
    timeout_error: Optional[Exception] = None
    _timer: Any = field(default=None, repr=False)

    @property
    def is_pending(self) -> bool:
        return self.status is TransactionStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def timed_out(self) -> bool:
        return self.timeout_error is not None

    @property
    def duration(self) -> Optional[float]:
        """Seconds between start and terminal transition, None while pending."""
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    def _finish(self, status: TransactionStatus) -> None:
        # Caller holds the manager lock and has checked is_pending.
        self.status = status
        self.end_time = time.time()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


# ============================================================================
# OPERATION LOG
# ============================================================================


@dataclass(frozen=True)
class TransactionOperation:
    """One logical operation performed inside a transaction."""

    type: OperationType
    target: str
    data: Any = None
    timestamp: float = field(default_factory=time.time)

    def __repr__(self) -> str:
        return f"TransactionOperation({self.type.value} {self.target!r})"


@dataclass
class TransactionLog:
    """Ordered, append-only operations of one transaction."""

    transaction_id: str
    operations: List[TransactionOperation] = field(default_factory=list)

    def append(self, operation: TransactionOperation) -> None:
        self.operations.append(operation)

    def copy(self) -> "TransactionLog":
        return TransactionLog(self.transaction_id, list(self.operations))

    def __len__(self) -> int:
        return len(self.operations)


__all__ = [
    "TransactionStatus",
    "IsolationLevel",
    "OperationType",
    "TransactionOptions",
    "DEFAULT_TRANSACTION_OPTIONS",
    "TransactionContext",
    "TransactionOperation",
    "TransactionLog",
]
