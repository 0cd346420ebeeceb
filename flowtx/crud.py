"""
FlowTX CRUD - Transactional Repository Keyed by Id
==================================================

``CrudRepository`` keeps items in a map keyed by their id field. Every
create/update/delete runs as one transaction on the injected manager and
records a ``TransactionOperation`` in that transaction's log. Observers of the
repository receive the full item list after each successful mutation.
"""

from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional

from .broadcast import Broadcaster, CallbackObserver, Observer, Subscription
from .changes import copy_value
from .transaction_manager import TransactionManager
from .types import OperationType, TransactionContext, TransactionOperation

Item = Dict[str, Any]


class CrudRepository:
    """
    Map of items keyed by id with transactional mutations.

    Args:
        manager: Transaction manager that runs each mutation.
        target: Name recorded as the operation target in transaction logs.
        id_field: Key holding each item's id.
    """

    def __init__(
        self,
        manager: TransactionManager,
        target: str = "item",
        id_field: str = "id",
    ):
        self._manager = manager
        self.target = target
        self.id_field = id_field
        self._items: Dict[Hashable, Item] = {}
        self._changes: Broadcaster[List[Item]] = Broadcaster()

    # ========================================================================
    # READS
    # ========================================================================

    def read(self, item_id: Hashable) -> Optional[Item]:
        item = self._items.get(item_id)
        return copy_value(item) if item is not None else None

    def read_all(self) -> List[Item]:
        return [copy_value(item) for item in self._items.values()]

    def __contains__(self, item_id: Hashable) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def create(self, item: Mapping[str, Any]) -> Item:
        """
        Add a new item.

        Raises:
            ValueError: If the item has no id.
            KeyError: If an item with the same id exists.
        """

        def body(ctx: TransactionContext) -> Item:
            item_id = item.get(self.id_field)
            if item_id is None:
                raise ValueError(f"{self.target} must have an '{self.id_field}'")
            if item_id in self._items:
                raise KeyError(f"{self.target} with id {item_id!r} already exists")

            created = copy_value(dict(item))
            self._log(ctx, OperationType.CREATE, created)
            self._items = {**self._items, item_id: created}
            return copy_value(created)

        return self._mutate(body)

    def update(self, item_id: Hashable, changes: Mapping[str, Any]) -> Optional[Item]:
        """Merge ``changes`` into an item. Returns None if the id is unknown."""

        def body(ctx: TransactionContext) -> Optional[Item]:
            existing = self._items.get(item_id)
            if existing is None:
                return None

            updated = {**existing, **copy_value(dict(changes))}
            self._log(ctx, OperationType.UPDATE, updated)
            self._items = {**self._items, item_id: updated}
            return copy_value(updated)

        return self._mutate(body)

    def delete(self, item_id: Hashable) -> bool:
        """Remove an item. Returns False if the id is unknown."""

        def body(ctx: TransactionContext) -> bool:
            if item_id not in self._items:
                return False

            self._log(ctx, OperationType.DELETE, {self.id_field: item_id})
            items = dict(self._items)
            del items[item_id]
            self._items = items
            return True

        return self._mutate(body)

    def _mutate(self, body: Callable[[TransactionContext], Any]) -> Any:
        before = self._items
        try:
            result = self._manager.execute_transaction(body)
        except BaseException:
            self._items = before
            raise
        if self._items is not before:
            self._changes.next(self.read_all())
        return result

    def _log(self, ctx: TransactionContext, kind: OperationType, data: Any) -> None:
        self._manager.log_operation(
            ctx.id, TransactionOperation(kind, self.target, copy_value(data))
        )

    # ========================================================================
    # SUBSCRIPTION
    # ========================================================================

    def subscribe(self, observer: Observer[List[Item]]) -> Subscription:
        return self._changes.subscribe(observer)

    def subscribe_callbacks(
        self,
        on_next: Optional[Callable[[List[Item]], Any]] = None,
        on_error: Optional[Callable[[BaseException], Any]] = None,
        on_complete: Optional[Callable[[], Any]] = None,
    ) -> Subscription:
        return self.subscribe(CallbackObserver(on_next, on_error, on_complete))

    def __repr__(self) -> str:
        return f"CrudRepository(target={self.target!r}, items={len(self._items)})"


__all__ = ["CrudRepository"]
