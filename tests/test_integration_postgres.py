"""
Integration tests against a live Postgres database.

Run with:
    VAULT_INDEXER_TEST_DATABASE_URL=postgresql://... pytest -m integration

The ledger is still the in-memory FakeSource; cursors, materialized tables
and the read queries all hit the real database.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from tests.fakes import (
    MODULE_NAME,
    PACKAGE_ID,
    FakeSource,
    deposit_payload,
    make_event,
    request_payload,
    review_payload,
    vault_payload,
    withdrawal_payload,
)
from vault_indexer.core.errors import IllegalTransitionError
from vault_indexer.indexer.coordinator import PollCoordinator
from vault_indexer.indexer.cursor_store import CursorStore
from vault_indexer.indexer.events import EventKind as K
from vault_indexer.indexer.models import Position, WithdrawalStatus
from vault_indexer.indexer.store import MaterializationStore
from vault_indexer.schema import apply_schema
from vault_indexer.services import vault_queries

pytestmark = pytest.mark.integration


def build(pool, events=(), page_size: int = 50):
    source = FakeSource(list(events), page_size=page_size)
    coordinator = PollCoordinator(
        source,
        CursorStore(pool),
        MaterializationStore(pool),
        PACKAGE_ID,
        MODULE_NAME,
        page_size=page_size,
    )
    return coordinator, source


async def drain(coordinator: PollCoordinator) -> int:
    applied = 0
    while True:
        cycle = await coordinator.poll_all()
        applied += cycle.applied
        if not cycle.has_more:
            return applied


async def request_status(pool, request_id: str) -> tuple[str, str | None]:
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                "SELECT status, approved_by FROM withdrawal_requests WHERE request_id = %s",
                (request_id,),
            )
            return await cur.fetchone()


async def count(pool, table: str) -> int:
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(f"SELECT COUNT(*) FROM {table}")
            return (await cur.fetchone())[0]


class TestSchema:
    @pytest.mark.asyncio
    async def test_apply_schema_is_idempotent(self, pg_pool):
        first = await apply_schema(pg_pool)
        second = await apply_schema(pg_pool)
        assert first == second > 0


class TestCursorStore:
    @pytest.mark.asyncio
    async def test_upsert_then_get(self, pg_pool):
        store = CursorStore(pg_pool)
        key = f"{PACKAGE_ID}::{MODULE_NAME}::DepositMade"

        assert await store.get(key) is None
        await store.upsert(key, Position("txA", 1))
        await store.upsert(key, Position("txB", 0))

        assert await store.get(key) == Position("txB", 0)
        assert len(await store.list()) == 1
        assert await store.delete(key) is True
        assert await store.get(key) is None


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_full_lifecycle_and_read_api(self, pg_pool):
        events = [
            make_event(K.VAULT_CREATED, vault_payload("V1"), seq=0, tx="t1"),
            make_event(K.DEPOSIT_MADE, deposit_payload("V1", amount="500000"), seq=0, tx="t2"),
            make_event(K.WITHDRAWAL_REQUESTED, request_payload("R1", "V1"), seq=0, tx="t3"),
            make_event(K.WITHDRAWAL_APPROVED, review_payload("R1", "V1", auditor="0xA"), seq=0, tx="t4"),
            make_event(K.WITHDRAWED, withdrawal_payload("R1", "V1"), seq=0, tx="t5"),
        ]
        coordinator, _ = build(pg_pool, events)

        assert await drain(coordinator) == 5
        assert await request_status(pg_pool, "R1") == ("Withdrawn", "0xA")

        with patch.object(vault_queries, "get_pool", new=AsyncMock(return_value=pg_pool)):
            vaults, total = await vault_queries.list_vaults(parent_address="0xparent")
            deposits, _ = await vault_queries.list_deposits("V1")
            requests, _ = await vault_queries.list_withdrawal_requests(
                status=WithdrawalStatus.WITHDRAWN, requester="0xchild"
            )
            withdrawals, _ = await vault_queries.list_withdrawals("V1")

        assert total == 1
        assert vaults[0].target_amount == 1_000_000
        assert [d.amount for d in deposits] == [500_000]
        assert [r.request_id for r in requests] == ["R1"]
        assert withdrawals[0].left_balance == 300_000

    @pytest.mark.asyncio
    async def test_replaying_pages_changes_nothing(self, pg_pool):
        events = [
            make_event(K.VAULT_CREATED, vault_payload("V1"), seq=0, tx="t1"),
            make_event(K.DEPOSIT_MADE, deposit_payload("V1"), seq=0, tx="t2"),
            make_event(K.DEPOSIT_MADE, deposit_payload("V1"), seq=1, tx="t2"),
        ]
        coordinator, _ = build(pg_pool, events)
        await drain(coordinator)

        async with pg_pool.connection() as conn:
            await conn.execute("TRUNCATE cursors")
        await drain(coordinator)

        assert await count(pg_pool, "vaults") == 1
        assert await count(pg_pool, "deposits") == 2

    @pytest.mark.asyncio
    async def test_u64_max_amount_round_trips(self, pg_pool):
        coordinator, _ = build(
            pg_pool,
            [
                make_event(
                    K.VAULT_CREATED,
                    vault_payload("V1", target_amount="18446744073709551615"),
                    seq=0,
                    tx="t1",
                )
            ],
        )
        await drain(coordinator)

        with patch.object(vault_queries, "get_pool", new=AsyncMock(return_value=pg_pool)):
            vault = await vault_queries.get_vault("V1")
        assert vault.target_amount == 2**64 - 1


class TestLifecycleRules:
    @pytest.mark.asyncio
    async def test_illegal_transition_keeps_row(self, pg_pool):
        store = MaterializationStore(pg_pool)
        coordinator, _ = build(
            pg_pool, [make_event(K.WITHDRAWAL_REQUESTED, request_payload("R1"), seq=0, tx="t1")]
        )
        await drain(coordinator)
        await store.transition_withdrawal_request("R1", WithdrawalStatus.REJECTED, "0xA", 1)

        with pytest.raises(IllegalTransitionError):
            await store.transition_withdrawal_request("R1", WithdrawalStatus.APPROVED, "0xA", 2)

        assert await request_status(pg_pool, "R1") == ("Rejected", "0xA")

    @pytest.mark.asyncio
    async def test_orphan_review_is_dead_lettered_then_replayed(self, pg_pool):
        coordinator, source = build(
            pg_pool, [make_event(K.WITHDRAWAL_APPROVED, review_payload("R1"), seq=0, tx="t2")]
        )
        await drain(coordinator)
        store = MaterializationStore(pg_pool)
        (letter,) = await store.list_dead_letters()
        assert letter.stage == "apply"
        assert letter.error_type == "UnknownRequestError"

        source.add(make_event(K.WITHDRAWAL_REQUESTED, request_payload("R1"), seq=0, tx="t1"))
        await drain(coordinator)

        assert await coordinator.replay_dead_letters() == 1
        assert await request_status(pg_pool, "R1") == ("Approved", "0xparent")
        assert await store.list_dead_letters() == []
        (resolved,) = await store.list_dead_letters(include_resolved=True)
        assert resolved.attempts == 1

    @pytest.mark.asyncio
    async def test_withdrawal_ahead_of_approval_marks_withdrawn(self, pg_pool):
        coordinator, source = build(
            pg_pool, [make_event(K.WITHDRAWAL_REQUESTED, request_payload("R1"), seq=0, tx="t1")]
        )
        await drain(coordinator)
        source.add(
            make_event(K.WITHDRAWAL_APPROVED, review_payload("R1"), seq=0, tx="t2"),
            make_event(K.WITHDRAWED, withdrawal_payload("R1", "V1"), seq=0, tx="t3"),
        )

        await coordinator.poll_event_type(K.WITHDRAWED)
        assert await request_status(pg_pool, "R1") == ("Withdrawn", None)

        await coordinator.poll_event_type(K.WITHDRAWAL_APPROVED)
        assert await request_status(pg_pool, "R1") == ("Withdrawn", "0xparent")
        assert await count(pg_pool, "withdrawals") == 1

    @pytest.mark.asyncio
    async def test_resolved_dead_letter_is_not_reopened(self, pg_pool):
        coordinator, source = build(
            pg_pool, [make_event(K.WITHDRAWAL_APPROVED, review_payload("R1"), seq=0, tx="t2")]
        )
        await drain(coordinator)
        source.add(make_event(K.WITHDRAWAL_REQUESTED, request_payload("R1"), seq=0, tx="t1"))
        await drain(coordinator)
        assert await coordinator.replay_dead_letters() == 1

        store = MaterializationStore(pg_pool)
        (letter,) = await store.list_dead_letters(include_resolved=True)
        await store.record_dead_letter(
            letter.event_type, letter.event, "apply", RuntimeError("redelivered")
        )

        assert await store.list_dead_letters() == []
        (again,) = await store.list_dead_letters(include_resolved=True)
        assert again.resolved_at is not None
        assert again.error_type == letter.error_type

    @pytest.mark.asyncio
    async def test_concurrent_transitions_serialize(self, pg_pool):
        """Row locks make concurrent approve/reject land on exactly one terminal state."""
        store = MaterializationStore(pg_pool)
        coordinator, _ = build(
            pg_pool, [make_event(K.WITHDRAWAL_REQUESTED, request_payload("R1"), seq=0, tx="t1")]
        )
        await drain(coordinator)

        results = await asyncio.gather(
            store.transition_withdrawal_request("R1", WithdrawalStatus.APPROVED, "0xA", 1),
            store.transition_withdrawal_request("R1", WithdrawalStatus.REJECTED, "0xB", 1),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], IllegalTransitionError)
        status, _ = await request_status(pg_pool, "R1")
        assert status in {"Approved", "Rejected"}
