"""Unit tests for TransactionalStore state access, transactions and visibility."""

import numpy as np
import pytest

from flowtx import (
    InvalidTransactionState,
    OperationType,
    TransactionalStore,
    TransactionManager,
    TransactionStatus,
    TransactionTimeout,
    new_store,
)


@pytest.mark.unit
@pytest.mark.store
def test_new_store_creates_its_own_manager():
    store = new_store({"a": 1})

    assert isinstance(store.manager, TransactionManager)
    assert store.get_state() == {"a": 1}


@pytest.mark.unit
@pytest.mark.store
def test_new_store_uses_injected_manager(manager):
    store = new_store({}, manager)

    assert store.manager is manager


@pytest.mark.unit
@pytest.mark.store
def test_get_state_returns_defensive_copy(manager):
    """Mutating the returned state does not affect the store"""
    store = TransactionalStore({"items": [1]}, manager)

    state = store.get_state()
    state["items"].append(2)
    state["extra"] = True

    assert store.get_state() == {"items": [1]}


@pytest.mark.unit
@pytest.mark.store
def test_initial_state_is_copied_at_construction(manager):
    initial = {"items": [1]}
    store = TransactionalStore(initial, manager)

    initial["items"].append(2)

    assert store.get_state() == {"items": [1]}


@pytest.mark.unit
@pytest.mark.store
def test_set_state_shallow_merges_partials_in_order(store):
    store.set_state({"count": 1, "name": "a"})
    store.set_state({"name": "b"})
    store.set_state({"flag": True})

    assert store.get_state() == {"count": 1, "name": "b", "flag": True}


@pytest.mark.unit
@pytest.mark.store
def test_reset_state_restores_initial_value(manager):
    store = TransactionalStore({"count": 0, "tags": ["x"]}, manager)
    store.set_state({"count": 5, "tags": ["y"], "other": 1})

    store.reset_state()

    assert store.get_state() == {"count": 0, "tags": ["x"]}


@pytest.mark.unit
@pytest.mark.store
def test_subscribe_replays_current_state_synchronously(store, recorder):
    store.set_state({"count": 1})
    store.set_state({"count": 2})

    store.subscribe(recorder)

    assert recorder.values == [{"count": 2}]


@pytest.mark.unit
@pytest.mark.store
def test_subscribe_before_any_change_sees_initial_state(store, recorder):
    store.subscribe(recorder)

    assert recorder.values == [{"count": 0}]


@pytest.mark.unit
@pytest.mark.store
def test_bare_set_state_publishes_immediately(store, recorder):
    store.subscribe(recorder)

    store.set_state({"count": 3})

    assert recorder.values[-1] == {"count": 3}


@pytest.mark.unit
@pytest.mark.store
def test_set_state_inside_transaction_is_not_published_until_commit(store, recorder):
    """Observers never see a value mid-transaction"""
    store.subscribe(recorder)
    ctx = store.begin_transaction()

    store.set_state({"count": 10})
    store.set_state({"count": 11})
    assert recorder.values == [{"count": 0}]
    assert store.get_state() == {"count": 11}

    store.commit_transaction(ctx)

    assert recorder.values == [{"count": 0}, {"count": 11}]


@pytest.mark.unit
@pytest.mark.store
def test_begin_captures_snapshot_in_context_data(store):
    store.set_state({"count": 4})

    ctx = store.begin_transaction()

    assert ctx.data["snapshot"] == {"count": 4}


@pytest.mark.unit
@pytest.mark.store
def test_rollback_restores_snapshot_and_publishes_it(store, recorder):
    store.set_state({"count": 2})
    store.subscribe(recorder)
    ctx = store.begin_transaction()
    store.set_state({"count": 99})

    store.rollback_transaction(ctx)

    assert store.get_state() == {"count": 2}
    assert recorder.values == [{"count": 2}, {"count": 2}]
    assert ctx.status is TransactionStatus.ROLLED_BACK


@pytest.mark.unit
@pytest.mark.store
@pytest.mark.edge_case
def test_rollback_of_finished_transaction_leaves_state_alone(store):
    ctx = store.begin_transaction()
    store.set_state({"count": 1})
    store.commit_transaction(ctx)

    with pytest.raises(InvalidTransactionState):
        store.rollback_transaction(ctx)

    assert store.get_state() == {"count": 1}


@pytest.mark.unit
@pytest.mark.store
def test_nested_transactions_publish_when_outermost_ends(store, recorder):
    store.subscribe(recorder)
    outer = store.begin_transaction()
    store.set_state({"count": 1})
    inner = store.begin_transaction()
    store.set_state({"count": 2})

    store.rollback_transaction(inner)
    assert store.get_state() == {"count": 1}
    assert recorder.values == [{"count": 0}]

    store.commit_transaction(outer)
    assert recorder.values == [{"count": 0}, {"count": 1}]


@pytest.mark.unit
@pytest.mark.store
def test_context_manager_commits(store, recorder):
    store.subscribe(recorder)

    with store.transaction():
        store.set_state({"count": 7})

    assert store.get_state() == {"count": 7}
    assert recorder.values == [{"count": 0}, {"count": 7}]


@pytest.mark.unit
@pytest.mark.store
def test_context_manager_rolls_back_on_error(store, recorder):
    store.subscribe(recorder)

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.set_state({"count": 7})
            raise RuntimeError("abort")

    assert store.get_state() == {"count": 0}
    assert recorder.values == [{"count": 0}, {"count": 0}]


@pytest.mark.unit
@pytest.mark.store
def test_execute_transaction_commits_and_logs_update(store, recorder):
    store.subscribe(recorder)

    def body(ctx):
        store.set_state({"count": store.get_state()["count"] + 1})
        return "done"

    result = store.execute_transaction(body)

    assert result == "done"
    assert recorder.values == [{"count": 0}, {"count": 1}]
    logs = store.get_transaction_logs()
    assert len(logs) == 1
    (operation,) = logs[0].operations
    assert operation.type is OperationType.UPDATE
    assert operation.target == "store"
    assert operation.data == {"count": 1}


@pytest.mark.unit
@pytest.mark.store
def test_execute_transaction_failure_restores_state(store, recorder):
    store.subscribe(recorder)

    def body(ctx):
        store.set_state({"count": 50})
        raise ValueError("invalid")

    with pytest.raises(ValueError, match="invalid"):
        store.execute_transaction(body)

    assert store.get_state() == {"count": 0}
    assert {"count": 50} not in recorder.values
    assert store.get_transaction_logs() == []


@pytest.mark.unit
@pytest.mark.store
def test_execute_transaction_retry_starts_each_attempt_from_snapshot(store):
    seen = []

    def body(ctx):
        seen.append(store.get_state()["count"])
        store.set_state({"count": store.get_state()["count"] + 1})
        if len(seen) < 3:
            raise RuntimeError("flaky")
        return store.get_state()["count"]

    result = store.execute_transaction(body, auto_retry=True, retry_delay=0)

    assert seen == [0, 0, 0]
    assert result == 1
    assert len(store.get_transaction_logs()) == 1


@pytest.mark.unit
@pytest.mark.store
def test_timeout_restores_snapshot_and_publishes(store, recorder, timers):
    """A watchdog rollback restores the store and notifies observers"""
    store.subscribe(recorder)
    ctx = store.begin_transaction()
    store.set_state({"count": 9})

    timers[-1].fire()

    assert ctx.timed_out
    assert store.get_state() == {"count": 0}
    assert recorder.values == [{"count": 0}, {"count": 0}]
    assert store.stats()["open_transactions"] == 0


@pytest.mark.unit
@pytest.mark.store
@pytest.mark.edge_case
def test_execute_discards_writes_made_after_timeout(store, recorder, timers):
    store.subscribe(recorder)

    def body(ctx):
        store.set_state({"count": 1})
        timers[-1].fire()
        store.set_state({"count": 2})
        return "late"

    with pytest.raises(TransactionTimeout):
        store.execute_transaction(body)

    assert store.get_state() == {"count": 0}
    assert all(value == {"count": 0} for value in recorder.values)


@pytest.mark.unit
@pytest.mark.store
def test_history_records_published_field_changes(store):
    store.set_state({"count": 1})
    ctx = store.begin_transaction()
    store.set_state({"count": 5, "label": "x"})
    store.rollback_transaction(ctx)
    store.reset_state()

    history = store.history()

    assert [(c.key, c.new_value, c.reason) for c in history] == [
        ("count", 1, "set"),
        ("count", 0, "reset"),
    ]


@pytest.mark.unit
@pytest.mark.store
def test_numpy_fields_are_copied_and_compared_by_content(manager):
    store = TransactionalStore({"grid": np.zeros(3)}, manager)

    state = store.get_state()
    state["grid"][0] = 1
    store.set_state({"grid": np.zeros(3)})

    assert store.get_state()["grid"][0] == 0
    assert store.history() == []


@pytest.mark.unit
@pytest.mark.store
def test_close_completes_observers(store, recorder):
    store.subscribe(recorder)

    store.close()

    assert recorder.completed == 1
    assert store.stats()["observers"] == 0


@pytest.mark.unit
@pytest.mark.store
@pytest.mark.edge_case
def test_commit_inside_transaction_block_keeps_its_writes(store, recorder):
    """An explicit commit in the block stands; leaving the block reports misuse"""
    store.subscribe(recorder)

    with pytest.raises(InvalidTransactionState):
        with store.transaction() as ctx:
            store.set_state({"count": 5})
            store.commit_transaction(ctx)

    assert ctx.status is TransactionStatus.COMMITTED
    assert store.get_state() == {"count": 5}
    assert recorder.values == [{"count": 0}, {"count": 5}]


@pytest.mark.unit
@pytest.mark.store
@pytest.mark.edge_case
def test_rollback_inside_transaction_block_restores_once(store, recorder):
    store.subscribe(recorder)

    with pytest.raises(InvalidTransactionState):
        with store.transaction() as ctx:
            store.set_state({"count": 5})
            store.rollback_transaction(ctx)

    assert ctx.status is TransactionStatus.ROLLED_BACK
    assert store.get_state() == {"count": 0}
    assert {"count": 5} not in recorder.values


@pytest.mark.unit
@pytest.mark.store
@pytest.mark.edge_case
def test_observer_mutating_its_value_does_not_leak(store):
    """Each observer and each late subscriber gets its own copy of the state"""

    def vandal(state):
        state["count"] = 999

    store.subscribe_callbacks(vandal)
    others = []
    store.subscribe_callbacks(others.append)

    store.set_state({"count": 1})
    late = []
    store.subscribe_callbacks(late.append)

    assert others == [{"count": 0}, {"count": 1}]
    assert late == [{"count": 1}]
    assert store.get_state() == {"count": 1}


@pytest.mark.unit
@pytest.mark.store
@pytest.mark.edge_case
def test_execute_with_unknown_option_publishes_nothing(store, recorder):
    store.subscribe(recorder)
    calls = []

    with pytest.raises(TypeError):
        store.execute_transaction(calls.append, bogus=1)

    assert calls == []
    assert recorder.values == [{"count": 0}]
    assert store.history() == []
