"""
Shared pytest fixtures and configuration for FlowTX tests.
"""

import pytest

from flowtx import TransactionalStore, TransactionManager


class ManualTimer:
    """Stand-in for threading.Timer that only fires when a test says so."""

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.started and not self.cancelled:
            self.function()


class RecordingObserver:
    """Observer that records every notification it receives."""

    def __init__(self):
        self.values = []
        self.errors = []
        self.completed = 0

    def next(self, value):
        self.values.append(value)

    def error(self, err):
        self.errors.append(err)

    def complete(self):
        self.completed += 1


@pytest.fixture
def timers():
    """Watchdog timers created by the ``manager`` fixture, in creation order."""
    return []


@pytest.fixture
def manager(timers):
    """TransactionManager whose watchdog timers are fired manually."""

    def factory(interval, function):
        timer = ManualTimer(interval, function)
        timers.append(timer)
        return timer

    manager = TransactionManager(timer_factory=factory)
    yield manager
    manager.close()


@pytest.fixture
def store(manager):
    """Store holding ``{"count": 0}`` on the manually timed manager."""
    store = TransactionalStore({"count": 0}, manager)
    yield store
    store.close()


@pytest.fixture
def recorder():
    return RecordingObserver()
