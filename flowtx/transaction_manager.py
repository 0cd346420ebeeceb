"""
FlowTX Transaction Manager - Lifecycle, Nesting, Timeout and Retry
==================================================================

``TransactionManager`` owns every transaction context it hands out. It knows
nothing about the data being protected; owners such as ``TransactionalStore``
attach whatever they need to ``context.data``.

Lifecycle
---------

``begin_transaction`` creates a PENDING context and registers it as active.
``commit_transaction`` and ``rollback_transaction`` move it to a terminal status
exactly once and remove it from the active set. Misuse (unknown id, context
already terminal) raises synchronously.

Nesting
-------

Beginning a transaction while another one is current pushes the outer context
on a stack. When the inner context terminates, the outer one becomes current
again, so nested atomic sections keep the enclosing transaction's identity.

Timeout watchdog
----------------

Each context with a truthy ``timeout`` gets a daemon timer. When it fires and
the context is still PENDING, the manager rolls it back, records a
``TransactionTimeout`` on ``context.timeout_error`` and publishes it on
``manager.timeouts``. The timer thread never raises.

Retry
-----

``execute_transaction`` rolls back a failed body before anything else. With
``auto_retry`` it then runs up to ``max_retries`` fresh transactions, sleeping
``retry_delay`` ms before each, and re-raises the last error when exhausted.
"""

import asyncio
import logging
import threading
import time
from contextlib import contextmanager
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    TypeVar,
)

from .broadcast import Broadcaster, Subscription
from .errors import InvalidTransactionState, TransactionNotFound, TransactionTimeout
from .types import (
    DEFAULT_TRANSACTION_OPTIONS,
    TransactionContext,
    TransactionLog,
    TransactionOperation,
    TransactionOptions,
    TransactionStatus,
)

R = TypeVar("R")

TimerFactory = Callable[[float, Callable[[], None]], Any]


class TransactionManager:
    """
    Manages the lifecycle of atomic units of work.

    Args:
        default_options: Options applied when a call passes none.
        timer_factory: Builds watchdog timers as ``factory(seconds, callback)``.
            The result needs ``start()``, ``cancel()`` and a ``daemon`` attribute.

    Example:
        >>> manager = TransactionManager()
        >>> manager.execute_transaction(lambda ctx: 42)
        42
    """

    def __init__(
        self,
        default_options: Optional[TransactionOptions] = None,
        timer_factory: TimerFactory = threading.Timer,
    ):
        self.default_options = default_options or DEFAULT_TRANSACTION_OPTIONS
        self._timer_factory = timer_factory

        self._active: Dict[str, TransactionContext] = {}
        self._current: Optional[TransactionContext] = None
        self._stack: List[TransactionContext] = []
        self._logs: Dict[str, TransactionLog] = {}

        self._lock = threading.RLock()
        self.timeouts: Broadcaster[TransactionTimeout] = Broadcaster(replay=False)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def resolve_options(
        self, options: Optional[TransactionOptions] = None, **overrides: Any
    ) -> TransactionOptions:
        return (options or self.default_options).merged(**overrides)

    def begin_transaction(
        self, options: Optional[TransactionOptions] = None, **overrides: Any
    ) -> TransactionContext:
        """Open a new PENDING transaction and make it current."""
        resolved = self.resolve_options(options, **overrides)

        with self._lock:
            context = TransactionContext(options=resolved)
            if self._current is not None:
                self._stack.append(self._current)
                context.parent_id = self._current.id
            self._current = context
            self._active[context.id] = context

            if resolved.timeout:
                self._start_watchdog(context)

        logging.debug(f"Transaction {context.id} started")
        return context

    def commit_transaction(self, context: TransactionContext) -> None:
        self._terminate(context, TransactionStatus.COMMITTED)
        logging.debug(f"Transaction {context.id} committed")

    def rollback_transaction(self, context: TransactionContext) -> None:
        self._terminate(context, TransactionStatus.ROLLED_BACK)
        logging.debug(f"Transaction {context.id} rolled back")

    def _terminate(self, context: TransactionContext, status: TransactionStatus) -> None:
        with self._lock:
            active = self._active.get(context.id)
            if active is None:
                if context.is_terminal:
                    raise InvalidTransactionState(
                        f"Transaction {context.id} is not in PENDING state "
                        f"({context.status.value})",
                        context.id,
                    )
                raise TransactionNotFound(
                    f"Transaction {context.id} not found", context.id
                )
            if not active.is_pending:
                raise InvalidTransactionState(
                    f"Transaction {context.id} is not in PENDING state "
                    f"({active.status.value})",
                    context.id,
                )

            active._finish(status)
            del self._active[active.id]
            self._restore_outer(active)

    def _restore_outer(self, context: TransactionContext) -> None:
        # Caller holds the lock.
        if self._current is not context:
            # An outer context ended before its inner one.
            if context in self._stack:
                self._stack.remove(context)
            return

        self._current = None
        while self._stack:
            outer = self._stack.pop()
            if outer.is_pending:
                self._current = outer
                break

    @property
    def current_transaction(self) -> Optional[TransactionContext]:
        return self._current

    # ========================================================================
    # WATCHDOG
    # ========================================================================

    def _start_watchdog(self, context: TransactionContext) -> None:
        seconds = context.options.timeout / 1000.0
        timer = self._timer_factory(seconds, lambda: self._on_timeout(context))
        timer.daemon = True
        context._timer = timer
        timer.start()

    def _on_timeout(self, context: TransactionContext) -> None:
        with self._lock:
            if self._active.get(context.id) is not context or not context.is_pending:
                return

            error = TransactionTimeout(context.id, context.options.timeout)
            context.timeout_error = error
            context._timer = None
            context._finish(TransactionStatus.ROLLED_BACK)
            del self._active[context.id]
            self._restore_outer(context)

        logging.warning(str(error))
        self.timeouts.next(error)

    def on_timeout(self, callback: Callable[[TransactionTimeout], Any]) -> Subscription:
        """Call ``callback`` with every ``TransactionTimeout`` the watchdog records."""
        return self.timeouts.subscribe_callbacks(callback)

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
        Run ``fn(context)`` in a transaction: commit on return, roll back on error.

        With ``auto_retry`` and ``max_retries > 0`` a failed attempt is followed
        by up to ``max_retries`` fresh attempts. Otherwise the body's exception
        propagates unchanged. ``TransactionNotFound`` and
        ``InvalidTransactionState`` are usage errors and are never retried.
        """
        resolved = self.resolve_options(options, **overrides)

        try:
            return self._attempt(fn, resolved)
        except (TransactionNotFound, InvalidTransactionState):
            raise
        except Exception as error:
            if not resolved.should_retry:
                raise
            last_error = error

        for attempt in range(1, resolved.max_retries + 1):
            logging.debug(
                f"Retrying transaction ({attempt}/{resolved.max_retries}) "
                f"after: {last_error!r}"
            )
            if resolved.retry_delay:
                time.sleep(resolved.retry_delay / 1000.0)
            try:
                return self._attempt(fn, resolved)
            except (TransactionNotFound, InvalidTransactionState):
                raise
            except Exception as error:
                last_error = error

        raise last_error

    async def execute_transaction_async(
        self,
        fn: Callable[[TransactionContext], Awaitable[R]],
        options: Optional[TransactionOptions] = None,
        **overrides: Any,
    ) -> R:
        """Coroutine counterpart of ``execute_transaction`` for async bodies."""
        resolved = self.resolve_options(options, **overrides)

        try:
            return await self._attempt_async(fn, resolved)
        except (TransactionNotFound, InvalidTransactionState):
            raise
        except Exception as error:
            if not resolved.should_retry:
                raise
            last_error = error

        for attempt in range(1, resolved.max_retries + 1):
            logging.debug(
                f"Retrying transaction ({attempt}/{resolved.max_retries}) "
                f"after: {last_error!r}"
            )
            if resolved.retry_delay:
                await asyncio.sleep(resolved.retry_delay / 1000.0)
            try:
                return await self._attempt_async(fn, resolved)
            except (TransactionNotFound, InvalidTransactionState):
                raise
            except Exception as error:
                last_error = error

        raise last_error

    def _attempt(
        self, fn: Callable[[TransactionContext], R], options: TransactionOptions
    ) -> R:
        context = self.begin_transaction(options)
        try:
            result = fn(context)
        except BaseException:
            self._rollback_if_pending(context)
            raise
        self.commit_unless_timed_out(context)
        return result

    async def _attempt_async(
        self,
        fn: Callable[[TransactionContext], Awaitable[R]],
        options: TransactionOptions,
    ) -> R:
        context = self.begin_transaction(options)
        try:
            result = await fn(context)
        except BaseException:
            self._rollback_if_pending(context)
            raise
        self.commit_unless_timed_out(context)
        return result

    def _rollback_if_pending(self, context: TransactionContext) -> None:
        with self._lock:
            if context.id in self._active:
                self.rollback_transaction(context)

    def commit_unless_timed_out(self, context: TransactionContext) -> None:
        """Commit, or raise the recorded ``TransactionTimeout`` if the watchdog won."""
        with self._lock:
            if context.timed_out:
                raise context.timeout_error
            self.commit_transaction(context)

    @contextmanager
    def transaction(
        self, options: Optional[TransactionOptions] = None, **overrides: Any
    ) -> Iterator[TransactionContext]:
        """
        Context manager form: commit on normal exit, roll back on exception.

        Raises the recorded ``TransactionTimeout`` on exit if the watchdog
        already rolled the transaction back.
        """
        context = self.begin_transaction(options, **overrides)
        try:
            yield context
        except BaseException:
            self._rollback_if_pending(context)
            raise
        self.commit_unless_timed_out(context)

    # ========================================================================
    # OPERATION LOGS
    # ========================================================================

    def log_operation(self, transaction_id: str, operation: TransactionOperation) -> None:
        with self._lock:
            log = self._logs.get(transaction_id)
            if log is None:
                log = self._logs[transaction_id] = TransactionLog(transaction_id)
            log.append(operation)

    def get_transaction_logs(self) -> List[TransactionLog]:
        with self._lock:
            return [log.copy() for log in self._logs.values()]

    def get_transaction_log(self, transaction_id: str) -> Optional[TransactionLog]:
        with self._lock:
            log = self._logs.get(transaction_id)
            return log.copy() if log is not None else None

    def clear_transaction_logs(self) -> None:
        with self._lock:
            self._logs.clear()

    # ========================================================================
    # INTROSPECTION
    # ========================================================================

    def get_active_transactions(self) -> List[TransactionContext]:
        with self._lock:
            return list(self._active.values())

    def is_transaction_active(self, transaction_id: str) -> bool:
        with self._lock:
            return transaction_id in self._active

    def close(self) -> None:
        """Cancel pending watchdogs and complete the timeout channel."""
        with self._lock:
            for context in self._active.values():
                if context._timer is not None:
                    context._timer.cancel()
                    context._timer = None
        self.timeouts.complete()

    def __repr__(self) -> str:
        return f"TransactionManager(active={len(self._active)}, logs={len(self._logs)})"


__all__ = ["TransactionManager"]
