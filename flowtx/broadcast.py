"""
FlowTX Broadcast - Multicast Notification with Last-Value Replay
================================================================

``Broadcaster`` lets many observers follow a sequence of values produced by one
producer:

- Observers are notified in registration order.
- A late subscriber immediately receives the latest value, if there is one.
  Anything emitted while that replay is being delivered reaches it afterwards,
  so the replay is never newer than what follows it.
- ``error()`` or ``complete()`` terminates the broadcaster exactly once. After
  that, ``next()`` is inert and no observer is retained.
- A failing observer callback is logged and skipped. It never stops delivery
  to the others and never reaches the producer.

Observers implement the ``Observer`` protocol (``next``, ``error``,
``complete``). ``CallbackObserver`` builds one from plain callables.
"""

import logging
import threading
from typing import (
    Any,
    Callable,
    Generic,
    List,
    Optional,
    Protocol,
    Tuple,
    TypeVar,
    runtime_checkable,
)

T = TypeVar("T")
T_contra = TypeVar("T_contra", contravariant=True)


@runtime_checkable
class Observer(Protocol[T_contra]):
    """Consumer of a broadcast sequence."""

    def next(self, value: T_contra) -> None: ...

    def error(self, err: BaseException) -> None: ...

    def complete(self) -> None: ...


class CallbackObserver(Generic[T]):
    """Observer assembled from up to three callbacks. Missing ones are no-ops."""

    __slots__ = ("_on_next", "_on_error", "_on_complete")

    def __init__(
        self,
        on_next: Optional[Callable[[T], Any]] = None,
        on_error: Optional[Callable[[BaseException], Any]] = None,
        on_complete: Optional[Callable[[], Any]] = None,
    ):
        self._on_next = on_next
        self._on_error = on_error
        self._on_complete = on_complete

    def next(self, value: T) -> None:
        if self._on_next is not None:
            self._on_next(value)

    def error(self, err: BaseException) -> None:
        if self._on_error is not None:
            self._on_error(err)

    def complete(self) -> None:
        if self._on_complete is not None:
            self._on_complete()


class Subscription:
    """Handle for one observer registration. ``unsubscribe()`` is idempotent."""

    __slots__ = ("_on_unsubscribe", "_closed")

    def __init__(self, on_unsubscribe: Callable[[], None], closed: bool = False):
        self._on_unsubscribe = on_unsubscribe
        self._closed = closed

    @property
    def closed(self) -> bool:
        return self._closed

    def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._on_unsubscribe()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.unsubscribe()
        return False

    def __repr__(self) -> str:
        return f"Subscription(closed={self._closed})"


class _Registration:
    # Wraps the observer so the same observer object can be registered twice
    # and each Subscription removes only its own entry. While the replay for a
    # new registration is in flight, later notifications queue in ``pending``.
    __slots__ = ("observer", "pending", "active")

    def __init__(self, observer: Observer):
        self.observer = observer
        self.pending: Optional[List[Tuple[str, tuple]]] = None
        self.active = True


class Broadcaster(Generic[T]):
    """
    Multicast channel with last-value replay and one-shot termination.

    Args:
        replay: Send the latest value to new subscribers. Event channels such
            as ``TransactionManager.timeouts`` turn this off.
        clone: Applied to a value each time it is handed to an observer or
            returned by ``get_value()``, so observers cannot alter what
            others (or later subscribers) receive.

    Example:
        >>> b = Broadcaster()
        >>> b.next(1)
        >>> seen = []
        >>> sub = b.subscribe_callbacks(seen.append)
        >>> b.next(2)
        >>> seen
        [1, 2]
    """

    def __init__(
        self, replay: bool = True, clone: Optional[Callable[[T], T]] = None
    ) -> None:
        self._replay = replay
        self._clone = clone
        self._registrations: List[_Registration] = []
        self._lock = threading.RLock()
        self._value: Optional[T] = None
        self._has_value = False
        self._closed = False
        self._error: Optional[BaseException] = None

    # ========================================================================
    # SUBSCRIPTION
    # ========================================================================

    def subscribe(self, observer: Observer[T]) -> Subscription:
        """Register an observer, replaying the latest value or terminal signal."""
        with self._lock:
            if self._closed:
                error = self._error
                terminated = True
            else:
                terminated = False
                registration = _Registration(observer)
                self._registrations.append(registration)
                replaying = self._has_value and self._replay
                if replaying:
                    registration.pending = []
                    value = self._value

        if terminated:
            if error is not None:
                self._deliver(observer, "error", error)
            else:
                self._deliver(observer, "complete")
            return Subscription(lambda: None, closed=True)

        if replaying:
            self._deliver(observer, "next", self._outgoing(value))
            self._drain(registration)

        return Subscription(lambda: self._remove(registration))

    def subscribe_callbacks(
        self,
        on_next: Optional[Callable[[T], Any]] = None,
        on_error: Optional[Callable[[BaseException], Any]] = None,
        on_complete: Optional[Callable[[], Any]] = None,
    ) -> Subscription:
        """Shortcut for ``subscribe(CallbackObserver(on_next, on_error, on_complete))``."""
        return self.subscribe(CallbackObserver(on_next, on_error, on_complete))

    def _remove(self, registration: _Registration) -> None:
        with self._lock:
            registration.active = False
            try:
                self._registrations.remove(registration)
            except ValueError:
                pass  # already cleared by termination

    def _drain(self, registration: _Registration) -> None:
        # Deliver what arrived during the replay, in arrival order.
        while True:
            with self._lock:
                queued = registration.pending
                if not queued or not registration.active:
                    registration.pending = None
                    return
                registration.pending = []
            for method, args in queued:
                self._deliver(registration.observer, method, *args)

    # ========================================================================
    # PRODUCER SIDE
    # ========================================================================

    def next(self, value: T) -> None:
        with self._lock:
            if self._closed:
                return
            self._value = value
            self._has_value = True
            registrations = self._ready(self._registrations, "next", value)

        for registration in registrations:
            self._deliver(registration.observer, "next", self._outgoing(value))

    def error(self, err: BaseException) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._error = err
            registrations = self._ready(self._registrations, "error", err)
            self._registrations = []

        for registration in registrations:
            self._deliver(registration.observer, "error", err)

    def complete(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            registrations = self._ready(self._registrations, "complete")
            self._registrations = []

        for registration in registrations:
            self._deliver(registration.observer, "complete")

    def _ready(
        self, registrations: List[_Registration], method: str, *args: Any
    ) -> List[_Registration]:
        # Caller holds the lock. Queues for registrations still replaying.
        ready = []
        for registration in registrations:
            if registration.pending is not None:
                queued = (self._outgoing(args[0]),) if method == "next" else args
                registration.pending.append((method, queued))
            else:
                ready.append(registration)
        return ready

    def _outgoing(self, value: T) -> T:
        return self._clone(value) if self._clone is not None else value

    @staticmethod
    def _deliver(observer: Observer, method: str, *args: Any) -> None:
        try:
            getattr(observer, method)(*args)
        except Exception as e:
            logging.error(f"Error in observer.{method}: {e!r}")

    # ========================================================================
    # INTROSPECTION
    # ========================================================================

    def get_value(self) -> Optional[T]:
        with self._lock:
            if not self._has_value:
                return None
            return self._outgoing(self._value)

    def has_value(self) -> bool:
        return self._has_value

    def is_closed(self) -> bool:
        return self._closed

    def get_observer_count(self) -> int:
        with self._lock:
            return len(self._registrations)

    def __repr__(self) -> str:
        state = "closed" if self._closed else f"observers={self.get_observer_count()}"
        return f"Broadcaster({state})"


__all__ = [
    "Broadcaster",
    "CallbackObserver",
    "Observer",
    "Subscription",
]
