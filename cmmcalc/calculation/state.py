"""Calculation run status lattice.

PENDING -> RUNNING -> {SUCCESS, PARTIAL, FAILED}; PENDING -> FAILED for runs
cancelled or timed out before they were claimed. Terminal states never change.
"""

from __future__ import annotations

from cmmcalc.errors import InvalidTransition
from cmmcalc.models import FailureReason, RunStatus

_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.FAILED}),
    RunStatus.RUNNING: frozenset({RunStatus.SUCCESS, RunStatus.PARTIAL, RunStatus.FAILED}),
    RunStatus.SUCCESS: frozenset(),
    RunStatus.PARTIAL: frozenset(),
    RunStatus.FAILED: frozenset(),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in _TRANSITIONS[current]


def ensure_transition(current: RunStatus, target: RunStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)


def sources_for(target: RunStatus) -> tuple[RunStatus, ...]:
    """States from which ``target`` may be entered (for compare-and-swap updates)."""
    return tuple(status for status, allowed in _TRANSITIONS.items() if target in allowed)


def final_status(resolved: int, failed: int) -> tuple[RunStatus, FailureReason | None]:
    """Terminal status from per-item outcomes."""
    if resolved == 0:
        return RunStatus.FAILED, FailureReason.NO_ITEMS_RESOLVED
    if failed == 0:
        return RunStatus.SUCCESS, None
    return RunStatus.PARTIAL, None
