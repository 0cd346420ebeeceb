"""Unit tests for the transaction timeout watchdog."""

import pytest

from flowtx import (
    InvalidTransactionState,
    TransactionStatus,
    TransactionTimeout,
)


@pytest.mark.unit
@pytest.mark.transaction
def test_begin_starts_daemon_timer_with_timeout_in_seconds(manager, timers):
    manager.begin_transaction(timeout=1500)

    assert len(timers) == 1
    assert timers[0].interval == 1.5
    assert timers[0].daemon is True
    assert timers[0].started


@pytest.mark.unit
@pytest.mark.transaction
def test_zero_timeout_disables_watchdog(manager, timers):
    manager.begin_transaction(timeout=0)
    manager.begin_transaction(timeout=None)

    assert timers == []


@pytest.mark.unit
@pytest.mark.transaction
def test_commit_cancels_watchdog(manager, timers):
    ctx = manager.begin_transaction()

    manager.commit_transaction(ctx)

    assert timers[0].cancelled


@pytest.mark.unit
@pytest.mark.transaction
def test_expired_watchdog_rolls_back_and_records_timeout(manager, timers):
    """A still-pending transaction is rolled back when its timer fires"""
    ctx = manager.begin_transaction(timeout=100)

    timers[0].fire()

    assert ctx.status is TransactionStatus.ROLLED_BACK
    assert ctx.timed_out
    assert isinstance(ctx.timeout_error, TransactionTimeout)
    assert ctx.timeout_error.transaction_id == ctx.id
    assert ctx.timeout_error.timeout == 100
    assert not manager.is_transaction_active(ctx.id)


@pytest.mark.unit
@pytest.mark.transaction
def test_timeout_is_published_to_listeners(manager, timers):
    """on_timeout callbacks receive the TransactionTimeout instead of a raise"""
    received = []
    manager.on_timeout(received.append)
    ctx = manager.begin_transaction()

    timers[0].fire()

    assert [e.transaction_id for e in received] == [ctx.id]


@pytest.mark.unit
@pytest.mark.transaction
@pytest.mark.edge_case
def test_watchdog_after_natural_commit_is_noop(manager, timers):
    """A timer racing a completed transaction does nothing"""
    received = []
    manager.on_timeout(received.append)
    ctx = manager.begin_transaction()
    manager.commit_transaction(ctx)

    # Bypass the cancel flag to simulate a timer that already started firing.
    timers[0].function()

    assert ctx.status is TransactionStatus.COMMITTED
    assert not ctx.timed_out
    assert received == []


@pytest.mark.unit
@pytest.mark.transaction
@pytest.mark.edge_case
def test_commit_after_timeout_raises_invalid_state(manager, timers):
    ctx = manager.begin_transaction()
    timers[0].fire()

    with pytest.raises(InvalidTransactionState):
        manager.commit_transaction(ctx)


@pytest.mark.unit
@pytest.mark.transaction
def test_execute_raises_timeout_when_body_outlives_deadline(manager, timers):
    """The caller sees the recorded timeout once the body returns"""

    def slow_body(ctx):
        timers[-1].fire()
        return "too late"

    with pytest.raises(TransactionTimeout):
        manager.execute_transaction(slow_body)


@pytest.mark.unit
@pytest.mark.transaction
def test_timed_out_attempt_is_retried(manager, timers):
    attempts = []

    def body(ctx):
        attempts.append(ctx)
        if len(attempts) == 1:
            timers[-1].fire()
        return "ok"

    result = manager.execute_transaction(body, auto_retry=True, retry_delay=0)

    assert result == "ok"
    assert attempts[0].timed_out
    assert attempts[1].status is TransactionStatus.COMMITTED


@pytest.mark.unit
@pytest.mark.transaction
def test_timeout_restores_outer_transaction(manager, timers):
    outer = manager.begin_transaction()
    manager.begin_transaction()

    timers[1].fire()

    assert manager.current_transaction is outer


@pytest.mark.unit
@pytest.mark.transaction
def test_close_cancels_pending_watchdogs(manager, timers):
    manager.begin_transaction()

    manager.close()

    assert timers[0].cancelled
    assert manager.timeouts.is_closed()
