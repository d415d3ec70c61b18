"""
Event decoders: untyped ledger payloads to typed domain records.

One pure function per event kind. Decoders never touch storage; they fail
closed with a DecodeError naming the offending field. Integer fields arrive
as decimal-digit strings (u64 on the ledger side) and native JSON integers
are accepted as well.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping

from ..core.errors import DecodeError
from .events import EventKind
from .models import (
    Deposit,
    Provenance,
    RawEvent,
    VaultCreated,
    Withdrawal,
    WithdrawalRequest,
    WithdrawalReview,
    WithdrawalStatus,
)

_MISSING = object()

U64_MAX = 2**64 - 1


# =============================================================================
# Field Helpers
# =============================================================================


def _payload(event_name: str, payload: Any) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise DecodeError(event_name, "<payload>", f"expected an object, got {type(payload).__name__}")
    return payload


def _string(event_name: str, payload: Mapping[str, Any], name: str, default: Any = _MISSING) -> Any:
    value = payload.get(name)
    if value is None:
        if default is _MISSING:
            raise DecodeError(event_name, name, "is missing")
        return default
    if not isinstance(value, str):
        raise DecodeError(event_name, name, f"expected a string, got {type(value).__name__}")
    return value


def _integer(event_name: str, payload: Mapping[str, Any], name: str, default: Any = _MISSING) -> Any:
    value = payload.get(name)
    if value is None:
        if default is _MISSING:
            raise DecodeError(event_name, name, "is missing")
        return default
    if isinstance(value, bool):
        raise DecodeError(event_name, name, "expected an unsigned integer, got bool")
    if isinstance(value, str):
        if not (value.isascii() and value.isdigit()):
            raise DecodeError(event_name, name, f"expected decimal digits, got {value!r}")
        value = int(value)
    elif not isinstance(value, int):
        raise DecodeError(
            event_name, name, f"expected an unsigned integer, got {type(value).__name__}"
        )
    if not 0 <= value <= U64_MAX:
        raise DecodeError(event_name, name, f"{value} is outside the u64 range")
    return value


def _timestamp(
    event_name: str,
    payload: Mapping[str, Any],
    name: str,
    provenance: Provenance | None,
    required: bool = True,
) -> int | None:
    """Read a millisecond timestamp, falling back to the ledger event timestamp."""
    value = _integer(event_name, payload, name, default=None)
    if value is None and provenance is not None:
        value = provenance.timestamp_ms
    if value is None and required:
        raise DecodeError(event_name, name, "is missing and the event carries no timestamp")
    return value


def parse_status(event_name: str, value: Any, name: str = "status") -> WithdrawalStatus:
    """
    Accept a plain string or a tagged variant object.

    >>> parse_status("WithdrawalRequested", {"variant": "Pending", "fields": {}})
    <WithdrawalStatus.PENDING: 'Pending'>
    """
    if isinstance(value, Mapping):
        variant = value.get("variant")
        if not isinstance(variant, str):
            raise DecodeError(event_name, name, "tagged variant is missing 'variant'")
        value = variant
    if not isinstance(value, str):
        raise DecodeError(event_name, name, f"expected a status, got {type(value).__name__}")
    try:
        return WithdrawalStatus(value)
    except ValueError:
        raise DecodeError(event_name, name, f"unknown status variant {value!r}") from None


# =============================================================================
# Decoders
# =============================================================================


def decode_vault_created(payload: Any, provenance: Provenance | None = None) -> VaultCreated:
    event = EventKind.VAULT_CREATED.value
    data = _payload(event, payload)
    return VaultCreated(
        vault_id=_string(event, data, "bucky_bank_id"),
        parent_address=_string(event, data, "parent"),
        child_address=_string(event, data, "child"),
        target_amount=_integer(event, data, "target_amount"),
        deadline_ms=_integer(event, data, "deadline_ms"),
        name=_string(event, data, "name", default=None),
        created_at_ms=_timestamp(event, data, "created_at_ms", provenance, required=False),
        duration_days=_integer(event, data, "duration_days", default=None),
        current_balance=_integer(event, data, "current_balance_value", default=0),
        provenance=provenance,
    )


def decode_deposit(payload: Any, provenance: Provenance | None = None) -> Deposit:
    event = EventKind.DEPOSIT_MADE.value
    data = _payload(event, payload)
    return Deposit(
        vault_id=_string(event, data, "bucky_bank_id"),
        amount=_integer(event, data, "amount"),
        depositor=_string(event, data, "depositor"),
        created_at_ms=_timestamp(event, data, "created_at_ms", provenance),  # type: ignore[arg-type]
        provenance=provenance,
    )


def decode_withdrawal_request(
    payload: Any, provenance: Provenance | None = None
) -> WithdrawalRequest:
    event = EventKind.WITHDRAWAL_REQUESTED.value
    data = _payload(event, payload)
    if data.get("status") is None:
        raise DecodeError(event, "status", "is missing")
    return WithdrawalRequest(
        request_id=_string(event, data, "request_id"),
        vault_id=_string(event, data, "bucky_bank_id"),
        amount=_integer(event, data, "amount"),
        requester=_string(event, data, "requester"),
        reason=_string(event, data, "reason", default=""),
        status=parse_status(event, data["status"]),
        created_at_ms=_timestamp(event, data, "created_at_ms", provenance),  # type: ignore[arg-type]
        provenance=provenance,
    )


def _decode_review(
    kind: EventKind,
    status: WithdrawalStatus,
    payload: Any,
    provenance: Provenance | None,
    auditor_required: bool,
) -> WithdrawalReview:
    event = kind.value
    data = _payload(event, payload)
    auditor = _string(event, data, "approved_by", default=_MISSING if auditor_required else None)
    return WithdrawalReview(
        request_id=_string(event, data, "request_id"),
        vault_id=_string(event, data, "bucky_bank_id"),
        status=status,
        auditor=auditor,
        audit_at_ms=_timestamp(event, data, "audit_at_ms", provenance, required=False),
        provenance=provenance,
    )


def decode_withdrawal_approved(
    payload: Any, provenance: Provenance | None = None
) -> WithdrawalReview:
    return _decode_review(
        EventKind.WITHDRAWAL_APPROVED, WithdrawalStatus.APPROVED, payload, provenance, True
    )


def decode_withdrawal_rejected(
    payload: Any, provenance: Provenance | None = None
) -> WithdrawalReview:
    return _decode_review(
        EventKind.WITHDRAWAL_REJECTED, WithdrawalStatus.REJECTED, payload, provenance, True
    )


def decode_withdrawal_cancelled(
    payload: Any, provenance: Provenance | None = None
) -> WithdrawalReview:
    return _decode_review(
        EventKind.WITHDRAWAL_CANCELLED, WithdrawalStatus.CANCELLED, payload, provenance, False
    )


def decode_withdrawal(payload: Any, provenance: Provenance | None = None) -> Withdrawal:
    event = EventKind.WITHDRAWED.value
    data = _payload(event, payload)
    return Withdrawal(
        request_id=_string(event, data, "request_id"),
        vault_id=_string(event, data, "bucky_bank_id"),
        amount=_integer(event, data, "amount"),
        left_balance=_integer(event, data, "left_balance"),
        withdrawer=_string(event, data, "withdrawer"),
        created_at_ms=_timestamp(event, data, "created_at_ms", provenance),  # type: ignore[arg-type]
        provenance=provenance,
    )


Decoder = Callable[[Any, Provenance | None], Any]

DECODERS: dict[EventKind, Decoder] = {
    EventKind.VAULT_CREATED: decode_vault_created,
    EventKind.DEPOSIT_MADE: decode_deposit,
    EventKind.WITHDRAWAL_REQUESTED: decode_withdrawal_request,
    EventKind.WITHDRAWAL_APPROVED: decode_withdrawal_approved,
    EventKind.WITHDRAWAL_REJECTED: decode_withdrawal_rejected,
    EventKind.WITHDRAWAL_CANCELLED: decode_withdrawal_cancelled,
    EventKind.WITHDRAWED: decode_withdrawal,
}


def decode_event(kind: EventKind, event: RawEvent) -> Any:
    """Decode a raw event of a known kind, attaching its ledger provenance."""
    return DECODERS[kind](event.payload, Provenance.of(event))
