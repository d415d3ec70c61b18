"""
Typed records for the event synchronization engine.

RawEvent is what the ledger source hands over; the decoded records are what
the materialization store persists.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class Position:
    """Opaque pointer into an event stream: (transaction digest, event sequence)."""

    tx_digest: str
    event_seq: int

    def to_rpc(self) -> dict[str, str]:
        return {"txDigest": self.tx_digest, "eventSeq": str(self.event_seq)}

    def __str__(self) -> str:
        return f"{self.tx_digest}:{self.event_seq}"


@dataclass(frozen=True)
class RawEvent:
    """One undecoded ledger event."""

    type_tag: str
    position: Position
    payload: Any
    timestamp_ms: int | None = None


@dataclass(frozen=True)
class EventPage:
    events: list[RawEvent]
    has_next_page: bool
    next_cursor: Position | None = None


@dataclass(frozen=True)
class Provenance:
    """Where in the ledger a record came from."""

    tx_digest: str
    event_seq: int
    timestamp_ms: int | None = None

    @classmethod
    def of(cls, event: RawEvent) -> "Provenance":
        return cls(event.position.tx_digest, event.position.event_seq, event.timestamp_ms)


class WithdrawalStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"
    WITHDRAWN = "Withdrawn"


# =============================================================================
# Domain Records
# =============================================================================


@dataclass(frozen=True)
class VaultCreated:
    vault_id: str
    parent_address: str
    child_address: str
    target_amount: int
    deadline_ms: int
    name: str | None = None
    created_at_ms: int | None = None
    duration_days: int | None = None
    current_balance: int = 0
    provenance: Provenance | None = None


@dataclass(frozen=True)
class Deposit:
    vault_id: str
    amount: int
    depositor: str
    created_at_ms: int
    provenance: Provenance | None = None


@dataclass(frozen=True)
class WithdrawalRequest:
    request_id: str
    vault_id: str
    amount: int
    requester: str
    reason: str
    status: WithdrawalStatus
    created_at_ms: int
    provenance: Provenance | None = None


@dataclass(frozen=True)
class WithdrawalReview:
    """An Approved, Rejected or Cancelled decision on a withdrawal request."""

    request_id: str
    vault_id: str
    status: WithdrawalStatus
    auditor: str | None = None
    audit_at_ms: int | None = None
    provenance: Provenance | None = None


@dataclass(frozen=True)
class Withdrawal:
    request_id: str
    vault_id: str
    amount: int
    left_balance: int
    withdrawer: str
    created_at_ms: int
    provenance: Provenance | None = None


@dataclass(frozen=True)
class CursorRecord:
    event_type: str
    position: Position
    created_at: Any = None
    updated_at: Any = None


@dataclass(frozen=True)
class DeadLetter:
    id: int
    event_type: str
    stage: str
    error_type: str
    error_message: str
    event: RawEvent
    attempts: int = 0
    created_at: Any = None
    resolved_at: Any = None
