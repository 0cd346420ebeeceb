"""
FlowTX Changes - Field-Level Change Records
===========================================

Helpers for comparing and copying store values, plus the ``StateChange`` record
that the store keeps in its history each time it publishes a new value.

Stored values may hold numpy arrays, whose ``==`` is elementwise and whose
truth value is ambiguous, so equality and copying dispatch on ``np.ndarray``.
"""

import copy
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import numpy as np

_MISSING = object()


def values_equal(a: Any, b: Any) -> bool:
    """Compare two field values, treating numpy arrays by content."""
    try:
        if isinstance(a, np.ndarray) or isinstance(b, np.ndarray):
            if type(a) != type(b):
                return False
            return np.array_equal(a, b)
        return bool(a == b)
    except (ValueError, TypeError):
        return False


def copy_value(value: Any) -> Any:
    """Deep copy a value so the copy shares no mutable state with the source."""
    if isinstance(value, np.ndarray):
        return value.copy()
    if isinstance(value, dict):
        return {k: copy_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [copy_value(v) for v in value]
    return copy.deepcopy(value)


def copy_state(state: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: copy_value(value) for key, value in state.items()}


@dataclass(frozen=True)
class StateChange:
    """Immutable record of one field changing between two published values."""

    key: str
    old_value: Any
    new_value: Any
    reason: str
    timestamp: float

    @property
    def is_creation(self) -> bool:
        return self.old_value is _MISSING

    @property
    def is_deletion(self) -> bool:
        return self.new_value is _MISSING

    def __repr__(self) -> str:
        if self.is_creation:
            return f"StateChange({self.key}: created = {self.new_value!r})"
        elif self.is_deletion:
            return f"StateChange({self.key}: deleted)"
        else:
            return f"StateChange({self.key}: {self.old_value!r} → {self.new_value!r})"


def diff_states(
    old: Mapping[str, Any],
    new: Mapping[str, Any],
    reason: str,
    timestamp: Optional[float] = None,
) -> List[StateChange]:
    """
    List the fields that differ between two state values.

    Keys only in ``new`` become creations and keys only in ``old`` deletions.
    Order follows ``old`` and then the keys new to ``new``.
    """
    ts = time.time() if timestamp is None else timestamp
    changes = []
    for key, old_value in old.items():
        new_value = new.get(key, _MISSING)
        if new_value is _MISSING or not values_equal(old_value, new_value):
            changes.append(StateChange(key, old_value, new_value, reason, ts))
    for key, new_value in new.items():
        if key not in old:
            changes.append(StateChange(key, _MISSING, new_value, reason, ts))
    return changes


__all__ = [
    "StateChange",
    "copy_state",
    "copy_value",
    "diff_states",
    "values_equal",
]
