"""
Tests for the per-kind event decoders.

Decoders are pure: every case here is payload in, record or DecodeError out.
"""

from __future__ import annotations

import pytest

from tests.fakes import (
    BASE_TS,
    deposit_payload,
    make_event,
    request_payload,
    review_payload,
    vault_payload,
    withdrawal_payload,
)
from vault_indexer.core.errors import DecodeError
from vault_indexer.indexer.decoder import (
    decode_deposit,
    decode_event,
    decode_vault_created,
    decode_withdrawal,
    decode_withdrawal_approved,
    decode_withdrawal_cancelled,
    decode_withdrawal_rejected,
    decode_withdrawal_request,
    parse_status,
)
from vault_indexer.indexer.events import EventKind
from vault_indexer.indexer.models import Provenance, VaultCreated, WithdrawalStatus

PROV = Provenance("tx9", 3, BASE_TS + 5)


class TestDecodeVaultCreated:
    def test_parses_digit_strings(self):
        """u64 fields transmitted as strings become native ints."""
        record = decode_vault_created(vault_payload(), PROV)
        assert isinstance(record, VaultCreated)
        assert record.vault_id == "V1"
        assert record.target_amount == 1_000_000
        assert record.deadline_ms == BASE_TS + 86_400_000
        assert record.duration_days == 1
        assert record.provenance == PROV

    def test_accepts_native_integers(self):
        record = decode_vault_created(vault_payload(target_amount=42, deadline_ms=7))
        assert record.target_amount == 42
        assert record.deadline_ms == 7

    def test_missing_target_amount_names_field(self):
        """A payload without target_amount is rejected naming the field."""
        payload = vault_payload()
        del payload["target_amount"]
        with pytest.raises(DecodeError) as exc_info:
            decode_vault_created(payload)
        assert exc_info.value.field == "target_amount"
        assert "target_amount" in str(exc_info.value)

    def test_non_numeric_deadline_rejected(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_vault_created(vault_payload(deadline_ms="tomorrow"))
        assert exc_info.value.field == "deadline_ms"

    @pytest.mark.parametrize(
        "bad", [True, -1, "12.5", "-3", 1.5, "١٢", " 12", "12\n", "", str(2**64), 2**64]
    )
    def test_rejects_non_unsigned_integers(self, bad):
        with pytest.raises(DecodeError):
            decode_vault_created(vault_payload(target_amount=bad))

    def test_accepts_u64_max(self):
        record = decode_vault_created(vault_payload(target_amount="18446744073709551615"), PROV)
        assert record.target_amount == 2**64 - 1

    def test_out_of_range_names_field(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_vault_created(vault_payload(deadline_ms=str(2**64)))
        assert exc_info.value.field == "deadline_ms"
        assert "u64" in str(exc_info.value)

    def test_optional_fields_default(self):
        payload = vault_payload()
        for key in ("name", "duration_days", "current_balance_value", "created_at_ms"):
            del payload[key]
        record = decode_vault_created(payload, PROV)
        assert record.name is None
        assert record.duration_days is None
        assert record.current_balance == 0
        assert record.created_at_ms == PROV.timestamp_ms

    def test_wrong_type_for_address(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_vault_created(vault_payload(parent=123))
        assert exc_info.value.field == "parent"

    def test_non_object_payload(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_vault_created(["not", "an", "object"])
        assert exc_info.value.field == "<payload>"


class TestDecodeDeposit:
    def test_parses_deposit(self):
        record = decode_deposit(deposit_payload(amount="500000"), PROV)
        assert record.vault_id == "V1"
        assert record.amount == 500_000
        assert record.depositor == "0xparent"

    def test_falls_back_to_event_timestamp(self):
        payload = deposit_payload()
        del payload["created_at_ms"]
        assert decode_deposit(payload, PROV).created_at_ms == PROV.timestamp_ms

    def test_no_timestamp_anywhere_is_error(self):
        payload = deposit_payload()
        del payload["created_at_ms"]
        with pytest.raises(DecodeError) as exc_info:
            decode_deposit(payload, None)
        assert exc_info.value.field == "created_at_ms"


class TestStatusVariants:
    """The status field may be a plain string or a tagged variant object."""

    def test_plain_and_tagged_forms_agree(self):
        plain = decode_withdrawal_request(request_payload(status="Approved"))
        tagged = decode_withdrawal_request(
            request_payload(status={"variant": "Approved", "fields": {}})
        )
        assert plain.status == tagged.status == WithdrawalStatus.APPROVED

    def test_unknown_variant_is_decode_error(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_withdrawal_request(request_payload(status={"variant": "Frozen", "fields": {}}))
        assert exc_info.value.field == "status"

    def test_variant_object_without_name(self):
        with pytest.raises(DecodeError):
            parse_status("WithdrawalRequested", {"fields": {}})

    def test_missing_status(self):
        payload = request_payload()
        del payload["status"]
        with pytest.raises(DecodeError) as exc_info:
            decode_withdrawal_request(payload)
        assert exc_info.value.field == "status"

    def test_reason_defaults_to_empty(self):
        payload = request_payload()
        del payload["reason"]
        assert decode_withdrawal_request(payload).reason == ""


class TestDecodeReviews:
    def test_approved_carries_auditor(self):
        record = decode_withdrawal_approved(review_payload(auditor="0xaudit"), PROV)
        assert record.status == WithdrawalStatus.APPROVED
        assert record.auditor == "0xaudit"
        assert record.audit_at_ms == BASE_TS + 3000

    def test_rejected_requires_auditor(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_withdrawal_rejected(review_payload(auditor=None))
        assert exc_info.value.field == "approved_by"

    def test_cancelled_without_auditor(self):
        record = decode_withdrawal_cancelled(review_payload(auditor=None))
        assert record.status == WithdrawalStatus.CANCELLED
        assert record.auditor is None


class TestDecodeWithdrawal:
    def test_parses_left_balance(self):
        record = decode_withdrawal(withdrawal_payload(), PROV)
        assert record.amount == 200_000
        assert record.left_balance == 300_000
        assert record.withdrawer == "0xchild"


class TestDecodeEvent:
    def test_attaches_provenance_from_raw_event(self):
        event = make_event(EventKind.DEPOSIT_MADE, deposit_payload(), seq=4, tx="txA")
        record = decode_event(EventKind.DEPOSIT_MADE, event)
        assert record.provenance == Provenance("txA", 4, BASE_TS)

    def test_every_kind_has_a_decoder(self):
        from vault_indexer.indexer.decoder import DECODERS

        assert set(DECODERS) == set(EventKind)
