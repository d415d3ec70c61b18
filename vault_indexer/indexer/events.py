"""
Closed set of ledger event kinds the indexer understands.

Each kind is tracked on its own cursor keyed by the fully qualified type
``<package>::<module>::<StructName>``. Type tags coming off the wire are
resolved to a kind by struct name; anything else is not ours and is skipped.
"""

from __future__ import annotations

from enum import Enum


class EventKind(str, Enum):
    """Value is the ledger struct name."""

    VAULT_CREATED = "BuckyBankCreated"
    DEPOSIT_MADE = "DepositMade"
    WITHDRAWAL_REQUESTED = "WithdrawalRequested"
    WITHDRAWAL_APPROVED = "WithdrawalApproved"
    WITHDRAWAL_REJECTED = "WithdrawalRejected"
    WITHDRAWAL_CANCELLED = "WithdrawalCancelled"
    WITHDRAWED = "Withdrawed"


# Poll order within one cycle: parents before the events that reference them
POLL_ORDER: tuple[EventKind, ...] = (
    EventKind.VAULT_CREATED,
    EventKind.DEPOSIT_MADE,
    EventKind.WITHDRAWAL_REQUESTED,
    EventKind.WITHDRAWAL_APPROVED,
    EventKind.WITHDRAWAL_REJECTED,
    EventKind.WITHDRAWAL_CANCELLED,
    EventKind.WITHDRAWED,
)

_BY_STRUCT_NAME = {kind.value: kind for kind in EventKind}


def struct_name(type_tag: str) -> str:
    """
    Struct name of a Move type tag.

    >>> struct_name("0xabc::bucky_bank::DepositMade")
    'DepositMade'
    >>> struct_name("0xabc::bucky_bank::Wrapped<0x2::sui::SUI>")
    'Wrapped'
    """
    base = type_tag.split("<", 1)[0]
    return base.rsplit("::", 1)[-1].strip()


def kind_for_type_tag(type_tag: str) -> EventKind | None:
    """Resolve a wire type tag to a known kind, or None for foreign events."""
    return _BY_STRUCT_NAME.get(struct_name(type_tag))


def event_type_key(package_id: str, module_name: str, kind: EventKind) -> str:
    return f"{package_id}::{module_name}::{kind.value}"
