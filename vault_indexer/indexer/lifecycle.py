"""
Withdrawal request lifecycle.

    Pending ──► Approved ──► Withdrawn
       │
       ├──► Rejected
       └──► Cancelled

Withdrawn, Rejected and Cancelled are terminal. Validation is pure; the
store calls it while holding the row lock.

A Withdrawed event is consumption, not a review: the funds have already left
the vault on chain, so a Pending request moves straight to Withdrawn when its
approval has not been indexed yet. The late approval then reads as a replay.
"""

from __future__ import annotations

from ..core.errors import IllegalTransitionError
from .models import WithdrawalStatus

ALLOWED_TRANSITIONS: dict[WithdrawalStatus, frozenset[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: frozenset(
        {WithdrawalStatus.APPROVED, WithdrawalStatus.REJECTED, WithdrawalStatus.CANCELLED}
    ),
    WithdrawalStatus.APPROVED: frozenset({WithdrawalStatus.WITHDRAWN}),
    WithdrawalStatus.REJECTED: frozenset(),
    WithdrawalStatus.CANCELLED: frozenset(),
    WithdrawalStatus.WITHDRAWN: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def is_terminal(status: WithdrawalStatus) -> bool:
    return status in TERMINAL_STATES


def reachable_from(status: WithdrawalStatus) -> frozenset[WithdrawalStatus]:
    """Every status reachable from ``status`` in one or more steps."""
    seen: set[WithdrawalStatus] = set()
    frontier = list(ALLOWED_TRANSITIONS[status])
    while frontier:
        nxt = frontier.pop()
        if nxt not in seen:
            seen.add(nxt)
            frontier.extend(ALLOWED_TRANSITIONS[nxt])
    return frozenset(seen)


def can_transition(current: WithdrawalStatus, target: WithdrawalStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def validate_transition(
    request_id: str,
    current: WithdrawalStatus,
    target: WithdrawalStatus,
) -> bool:
    """
    Decide whether a lifecycle event should change a stored status.

    Returns True for a legal forward edge (the row must be updated) and False
    when the event is already reflected in the row: either the same status,
    or a status the row has already moved past (a per-kind cursor replaying
    an older event after a newer one was applied).

    Raises:
        IllegalTransitionError: for anything else, e.g. Approved after Rejected.
    """
    if can_transition(current, target):
        return True
    if target == current or current in reachable_from(target):
        return False
    raise IllegalTransitionError(request_id, current, target)


def validate_consumption(request_id: str, current: WithdrawalStatus) -> bool:
    """
    Decide whether a withdrawal should mark its request Withdrawn.

    Returns True for Pending or Approved, False when the request is already
    Withdrawn.

    Raises:
        IllegalTransitionError: when the request was Rejected or Cancelled.
    """
    if current == WithdrawalStatus.WITHDRAWN:
        return False
    if current in (WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED):
        return True
    raise IllegalTransitionError(request_id, current, WithdrawalStatus.WITHDRAWN)
