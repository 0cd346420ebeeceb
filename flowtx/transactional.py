"""
FlowTX Transactional - Explicit Method Wrapping
===============================================

Wrap callables so every call runs inside ``TransactionManager.execute_transaction``.
Arguments and return values pass through unchanged. The manager is always
passed in; nothing here reaches for a global instance.

```python
manager = TransactionManager()

def transfer(source, target, amount):
    ...

safe_transfer = wrap_transactional(transfer, manager, auto_retry=True)
safe_transfer("a", "b", 10)
```

To wrap several methods of one object, name them explicitly:

```python
transactional_methods(service, ["create_order", "cancel_order"], manager)
```
"""

import functools
import inspect
from typing import Any, Callable, Iterable, Optional, TypeVar

from .transaction_manager import TransactionManager
from .types import TransactionOptions

F = TypeVar("F", bound=Callable[..., Any])


def wrap_transactional(
    fn: F,
    manager: TransactionManager,
    options: Optional[TransactionOptions] = None,
    **overrides: Any,
) -> F:
    """
    Return ``fn`` wrapped so each call is one transaction on ``manager``.

    Coroutine functions get an async wrapper that uses
    ``execute_transaction_async``.
    """
    # Fail early on bad option names rather than on the first call.
    manager.resolve_options(options, **overrides)

    if inspect.iscoroutinefunction(fn):

        @functools.wraps(fn)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            return await manager.execute_transaction_async(
                lambda ctx: fn(*args, **kwargs), options, **overrides
            )

        return async_wrapper  # type: ignore[return-value]

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return manager.execute_transaction(
            lambda ctx: fn(*args, **kwargs), options, **overrides
        )

    return wrapper  # type: ignore[return-value]


def transactional_methods(
    obj: Any,
    names: Iterable[str],
    manager: TransactionManager,
    options: Optional[TransactionOptions] = None,
    **overrides: Any,
) -> Any:
    """
    Replace the named bound methods of ``obj`` with transactional wrappers.

    Only the listed names are touched. Returns ``obj`` for chaining.

    Raises:
        AttributeError: If ``obj`` has no attribute with one of the names.
        TypeError: If one of the named attributes is not callable.
    """
    wrapped = {}
    for name in names:
        method = getattr(obj, name)
        if not callable(method):
            raise TypeError(f"{type(obj).__name__}.{name} is not callable")
        wrapped[name] = wrap_transactional(method, manager, options, **overrides)

    for name, wrapper in wrapped.items():
        setattr(obj, name, wrapper)
    return obj


__all__ = ["wrap_transactional", "transactional_methods"]
