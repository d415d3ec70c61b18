"""
Tests for CursorStore against mock async cursors.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tests.fakes import MockPool
from vault_indexer.indexer.cursor_store import CursorStore
from vault_indexer.indexer.models import Position

KEY = "0xpkg::bucky_bank::DepositMade"


class TestCursorStore:
    @pytest.mark.asyncio
    async def test_get_absent(self):
        pool = MockPool()
        assert await CursorStore(pool).get(KEY) is None
        assert pool.cur.execute.call_args.args[1] == (KEY,)

    @pytest.mark.asyncio
    async def test_get_present(self):
        pool = MockPool()
        pool.cur.fetchone.return_value = {"tx_digest": "txA", "event_seq": 4}
        assert await CursorStore(pool).get(KEY) == Position("txA", 4)

    @pytest.mark.asyncio
    async def test_upsert_is_single_atomic_statement(self):
        pool = MockPool()
        pool.cur.fetchone.return_value = {"tx_digest": "txB", "event_seq": 9}

        result = await CursorStore(pool).upsert(KEY, Position("txB", 9))

        assert result == Position("txB", 9)
        (sql,) = pool.cur.statements()
        assert "INSERT INTO cursors" in sql
        assert "ON CONFLICT (id) DO UPDATE" in sql
        assert pool.cur.execute.call_args.args[1] == (KEY, "txB", 9)

    @pytest.mark.asyncio
    async def test_list_maps_rows(self):
        pool = MockPool()
        now = datetime.now(timezone.utc)
        pool.cur.fetchall.return_value = [
            {"id": KEY, "tx_digest": "txA", "event_seq": 1, "created_at": now, "updated_at": now}
        ]

        (record,) = await CursorStore(pool).list(limit=5)

        assert record.event_type == KEY
        assert record.position == Position("txA", 1)
        assert "ORDER BY updated_at DESC" in pool.cur.statements()[0]

    @pytest.mark.asyncio
    async def test_delete_reports_whether_row_existed(self):
        pool = MockPool()
        pool.cur.rowcount = 0
        assert await CursorStore(pool).delete(KEY) is False

        pool.cur.rowcount = 1
        assert await CursorStore(pool).delete(KEY) is True
