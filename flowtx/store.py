"""
FlowTX Store - Transactional Reactive State Container
=====================================================

``TransactionalStore`` wraps one mutable state value (a dict of fields) with
commit/rollback semantics and change notification. It composes two parts:

- a ``TransactionManager`` (injected) that bounds mutations atomically
- a ``Broadcaster`` that publishes the state to observers

Basic Usage
-----------

```python
from flowtx import new_store

store = new_store({"count": 0})
store.subscribe_callbacks(lambda state: print("state:", state))
# state: {'count': 0}

store.set_state({"count": 1})
# state: {'count': 1}

def increment(ctx):
    store.set_state({"count": store.get_state()["count"] + 1})
    return store.get_state()["count"]

store.execute_transaction(increment)
# state: {'count': 2}
```

Visibility
----------

Observers only see the state at a boundary: after a commit, a rollback, a
watchdog timeout, or a bare ``set_state``/``reset_state`` made while none of
this store's transactions is open. A ``set_state`` inside an open transaction
changes ``get_state()`` right away, but is published only when the transaction
ends, and is discarded if it rolls back.

This is a visibility guarantee, not concurrency control. Two interleaved
transactions on the same store are not serialized: the later snapshot-based
rollback or publish can overwrite the other's committed change.
``isolation_level`` and ``optimistic_locking`` do not change that.

History
-------

Every publish records the fields that changed since the previous publish as
``StateChange`` entries, available through ``history()``.
"""

import threading
from collections import deque
from contextlib import contextmanager
from types import MappingProxyType
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Set,
    TypeVar,
)

from .broadcast import Broadcaster, CallbackObserver, Observer, Subscription
from .changes import StateChange, copy_state, diff_states
from .errors import TransactionTimeout
from .transaction_manager import TransactionManager
from .types import (
    OperationType,
    TransactionContext,
    TransactionLog,
    TransactionOperation,
    TransactionOptions,
    TransactionStatus,
)

R = TypeVar("R")

State = Dict[str, Any]


class TransactionalStore:
    """
    Snapshot-isolated state container with transactional mutation.

    Args:
        initial_state: Fields of the starting state. A copy is kept as the
            immutable snapshot used by ``reset_state()``.
        manager: Transaction manager bounding this store's transactions.
    """

    _MAX_HISTORY = 10000

    def __init__(self, initial_state: Mapping[str, Any], manager: TransactionManager):
        self._initial = MappingProxyType(copy_state(initial_state))
        self._state: State = copy_state(initial_state)
        self._manager = manager

        self._broadcaster: Broadcaster[State] = Broadcaster(clone=copy_state)
        self._lock = threading.RLock()

        # Contexts opened through this store, and those whose body is running.
        self._open: Dict[str, TransactionContext] = {}
        self._running: Set[str] = set()

        self._history: Deque[StateChange] = deque(maxlen=self._MAX_HISTORY)
        self._published: State = copy_state(self._state)
        self._broadcaster.next(self._published)

        self._timeout_subscription = manager.on_timeout(self._on_timeout)

    # ========================================================================
    # STATE ACCESS
    # ========================================================================

    def get_state(self) -> State:
        """Return a copy of the current state."""
        with self._lock:
            return copy_state(self._state)

    def set_state(self, partial: Mapping[str, Any]) -> None:
        """Shallow-merge ``partial`` into the state and publish it."""
        with self._lock:
            self._state = {**self._state, **copy_state(partial)}
            self._publish("set")

    def reset_state(self) -> None:
        """Replace the state with a fresh copy of the initial snapshot."""
        with self._lock:
            self._state = copy_state(self._initial)
            self._publish("reset")

    @property
    def initial_state(self) -> State:
        return copy_state(self._initial)

    @property
    def manager(self) -> TransactionManager:
        return self._manager

    # ========================================================================
    # SUBSCRIPTION
    # ========================================================================

    def subscribe(self, observer: Observer[State]) -> Subscription:
        """Register an observer. It receives the current state immediately."""
        return self._broadcaster.subscribe(observer)

    def subscribe_callbacks(
        self,
        on_next: Optional[Callable[[State], Any]] = None,
        on_error: Optional[Callable[[BaseException], Any]] = None,
        on_complete: Optional[Callable[[], Any]] = None,
    ) -> Subscription:
        return self.subscribe(CallbackObserver(on_next, on_error, on_complete))

    # ========================================================================
    # EXPLICIT TRANSACTIONS
    # ========================================================================

    def begin_transaction(
        self, options: Optional[TransactionOptions] = None, **overrides: Any
    ) -> TransactionContext:
        """Open a transaction and capture the current state as its snapshot."""
        with self._lock:
            context = self._manager.begin_transaction(options, **overrides)
            self._track(context)
            return context

    def commit_transaction(self, context: TransactionContext) -> None:
        with self._lock:
            self._manager.commit_transaction(context)
            self._open.pop(context.id, None)
            self._publish("commit")

    def rollback_transaction(self, context: TransactionContext) -> None:
        """Restore the snapshot, roll back, then publish the restored state."""
        with self._lock:
            if context.is_pending and context.id in self._open:
                self._restore(context)
            self._manager.rollback_transaction(context)
            self._open.pop(context.id, None)
            self._publish("rollback")

    @contextmanager
    def transaction(
        self, options: Optional[TransactionOptions] = None, **overrides: Any
    ) -> Iterator[TransactionContext]:
        """
        Run a ``with`` block as one transaction.

        Commits on normal exit. On an exception, or when the watchdog rolled
        the transaction back while the block was running, the snapshot is
        restored and the error is raised. If the block itself committed or
        rolled back the context, that outcome stands and exiting raises
        ``InvalidTransactionState``.
        """
        context = self.begin_transaction(options, **overrides)
        with self._lock:
            self._running.add(context.id)
        try:
            yield context
        except BaseException:
            with self._lock:
                self._running.discard(context.id)
                self._abandon(context)
            raise

        with self._lock:
            self._running.discard(context.id)
            try:
                self._manager.commit_unless_timed_out(context)
            except BaseException:
                self._abandon(context)
                raise
            self._open.pop(context.id, None)
            self._publish("commit")

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def execute_transaction(
        self,
        fn: Callable[[TransactionContext], R],
        options: Optional[TransactionOptions] = None,
        **overrides: Any,
    ) -> R:
        """
        Run ``fn(context)`` through the manager with snapshot rollback.

        Each attempt snapshots the state first. A failing attempt restores it
        before the manager rolls back; a successful one logs an ``update``
        operation carrying the resulting state. Observers are notified once,
        when the call finishes.
        """
        attempts: List[TransactionContext] = []

        def body(context: TransactionContext) -> R:
            self._start_attempt(context, attempts)
            try:
                result = fn(context)
            except BaseException:
                self._fail_attempt(context)
                raise
            self._finish_attempt(context)
            return result

        try:
            result = self._manager.execute_transaction(body, options, **overrides)
        except BaseException:
            self._settle(attempts, "rollback")
            raise
        self._settle(attempts, "commit")
        return result

    async def execute_transaction_async(
        self,
        fn: Callable[[TransactionContext], Awaitable[R]],
        options: Optional[TransactionOptions] = None,
        **overrides: Any,
    ) -> R:
        """Coroutine counterpart of ``execute_transaction``."""
        attempts: List[TransactionContext] = []

        async def body(context: TransactionContext) -> R:
            self._start_attempt(context, attempts)
            try:
                result = await fn(context)
            except BaseException:
                self._fail_attempt(context)
                raise
            self._finish_attempt(context)
            return result

        try:
            result = await self._manager.execute_transaction_async(
                body, options, **overrides
            )
        except BaseException:
            self._settle(attempts, "rollback")
            raise
        self._settle(attempts, "commit")
        return result

    def _start_attempt(
        self, context: TransactionContext, attempts: List[TransactionContext]
    ) -> None:
        with self._lock:
            self._track(context)
            self._running.add(context.id)
            attempts.append(context)

    def _fail_attempt(self, context: TransactionContext) -> None:
        with self._lock:
            self._running.discard(context.id)
            self._restore(context)

    def _finish_attempt(self, context: TransactionContext) -> None:
        with self._lock:
            self._running.discard(context.id)
            if context.timed_out:
                # Drop whatever the body wrote after the deadline.
                self._restore(context)
                raise context.timeout_error
            self._manager.log_operation(
                context.id,
                TransactionOperation(
                    OperationType.UPDATE, "store", copy_state(self._state)
                ),
            )

    def _settle(self, attempts: List[TransactionContext], reason: str) -> None:
        if not attempts:
            # Rejected before any attempt began; nothing changed.
            return
        with self._lock:
            for context in attempts:
                self._open.pop(context.id, None)
            self._publish(reason)

    # ========================================================================
    # INTERNAL
    # ========================================================================

    def _track(self, context: TransactionContext) -> None:
        context.data["snapshot"] = copy_state(self._state)
        self._open[context.id] = context

    def _restore(self, context: TransactionContext) -> None:
        snapshot = context.data.get("snapshot")
        if snapshot is not None:
            self._state = copy_state(snapshot)

    def _abandon(self, context: TransactionContext) -> None:
        if context.timed_out:
            reason = "timeout"
            self._restore(context)
        elif context.is_pending:
            reason = "rollback"
            self._restore(context)
            self._manager.rollback_transaction(context)
        else:
            # Ended explicitly inside the block. Keep what that decided.
            reason = (
                "commit" if context.status is TransactionStatus.COMMITTED else "rollback"
            )
        self._open.pop(context.id, None)
        self._publish(reason)

    def _in_transaction(self) -> bool:
        if self._running:
            return True
        return any(context.is_pending for context in self._open.values())

    def _publish(self, reason: str) -> None:
        # Caller holds the lock.
        if self._in_transaction():
            return
        value = copy_state(self._state)
        self._history.extend(diff_states(self._published, value, reason))
        self._published = value
        self._broadcaster.next(value)

    def _on_timeout(self, error: TransactionTimeout) -> None:
        with self._lock:
            context = self._open.pop(error.transaction_id, None)
            if context is None:
                return
            self._restore(context)
            self._publish("timeout")

    # ========================================================================
    # INTROSPECTION
    # ========================================================================

    def get_transaction_logs(self) -> List[TransactionLog]:
        return self._manager.get_transaction_logs()

    def history(self, limit: int = 100) -> List[StateChange]:
        with self._lock:
            return list(self._history)[-limit:]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "fields": len(self._state),
                "observers": self._broadcaster.get_observer_count(),
                "open_transactions": sum(
                    1 for context in self._open.values() if context.is_pending
                ),
                "history_size": len(self._history),
                "transaction_logs": len(self._manager.get_transaction_logs()),
            }

    def close(self) -> None:
        """Complete the broadcaster and stop listening for timeouts."""
        self._timeout_subscription.unsubscribe()
        self._broadcaster.complete()

    def __repr__(self) -> str:
        return f"TransactionalStore(fields={list(self._state)})"


def new_store(
    initial_state: Mapping[str, Any], manager: Optional[TransactionManager] = None
) -> TransactionalStore:
    """Build a store, creating a dedicated ``TransactionManager`` if none is given."""
    return TransactionalStore(initial_state, manager or TransactionManager())


__all__ = ["TransactionalStore", "new_store"]
