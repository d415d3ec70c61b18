"""
Vault Indexer - Read-side queries

Filtered, paginated reads over the materialized tables. Each list function
returns ``(rows, total)`` where ``total`` counts every matching row, not just
the page. Lists are newest first.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, TypeVar

from psycopg.rows import dict_row
from pydantic import BaseModel

from ..db import get_pool
from ..indexer.models import WithdrawalStatus

logger = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
MAX_LIMIT = 100

M = TypeVar("M", bound=BaseModel)


# =============================================================================
# Row models
# =============================================================================


class VaultOut(BaseModel):
    vault_id: str
    name: str | None = None
    parent_address: str
    child_address: str
    target_amount: int
    created_at_ms: int | None = None
    deadline_ms: int
    duration_days: int | None = None
    current_balance: int
    tx_digest: str | None = None
    event_seq: int | None = None
    created_at: datetime


class DepositOut(BaseModel):
    id: int
    vault_id: str
    amount: int
    depositor: str
    created_at_ms: int
    tx_digest: str
    event_seq: int
    created_at: datetime


class WithdrawalRequestOut(BaseModel):
    request_id: str
    vault_id: str
    amount: int
    requester: str
    reason: str
    status: WithdrawalStatus
    approved_by: str | None = None
    created_at_ms: int
    audit_at_ms: int | None = None
    tx_digest: str | None = None
    event_seq: int | None = None
    indexed_at: datetime
    updated_at: datetime


class WithdrawalOut(BaseModel):
    id: int
    request_id: str
    vault_id: str
    amount: int
    left_balance: int
    withdrawer: str
    created_at_ms: int
    tx_digest: str
    event_seq: int
    created_at: datetime


_VAULT_COLUMNS = """
    vault_id, name, parent_address, child_address, target_amount, created_at_ms,
    deadline_ms, duration_days, current_balance, tx_digest, event_seq, created_at
"""
_DEPOSIT_COLUMNS = """
    id, vault_id, amount, depositor, created_at_ms, tx_digest, event_seq, created_at
"""
_REQUEST_COLUMNS = """
    request_id, vault_id, amount, requester, reason, status, approved_by,
    created_at_ms, audit_at_ms, tx_digest, event_seq, indexed_at, updated_at
"""
_WITHDRAWAL_COLUMNS = """
    id, request_id, vault_id, amount, left_balance, withdrawer, created_at_ms,
    tx_digest, event_seq, created_at
"""


def page_offset(page: int, limit: int) -> int:
    return (max(page, 1) - 1) * limit


async def _paginate(
    model: type[M],
    table: str,
    columns: str,
    conditions: list[str],
    params: list[Any],
    order_by: str,
    page: int,
    limit: int,
) -> tuple[list[M], int]:
    """COUNT(*) then one LIMIT/OFFSET page. Table and column names are internal constants."""
    where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    pool = await get_pool()
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(f"SELECT COUNT(*) FROM {table} {where_clause}", params or None)
            row = await cur.fetchone()
            total = int(row[0]) if row else 0

        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                f"""
                SELECT {columns}
                FROM {table}
                {where_clause}
                ORDER BY {order_by}
                LIMIT %s OFFSET %s
                """,
                params + [limit, page_offset(page, limit)],
            )
            rows = await cur.fetchall()

    return [model.model_validate(r) for r in rows], total


# =============================================================================
# Vaults
# =============================================================================


async def list_vaults(
    parent_address: str | None = None,
    child_address: str | None = None,
    page: int = DEFAULT_PAGE,
    limit: int = DEFAULT_LIMIT,
) -> tuple[list[VaultOut], int]:
    conditions: list[str] = []
    params: list[Any] = []
    if parent_address:
        conditions.append("parent_address = %s")
        params.append(parent_address)
    if child_address:
        conditions.append("child_address = %s")
        params.append(child_address)
    return await _paginate(
        VaultOut, "vaults", _VAULT_COLUMNS, conditions, params,
        "created_at DESC, id DESC", page, limit,
    )


async def get_vault(vault_id: str) -> VaultOut | None:
    pool = await get_pool()
    async with pool.connection() as conn:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                f"SELECT {_VAULT_COLUMNS} FROM vaults WHERE vault_id = %s",
                (vault_id,),
            )
            row = await cur.fetchone()
    return VaultOut.model_validate(row) if row else None


# =============================================================================
# Vault activity
# =============================================================================


async def list_deposits(
    vault_id: str, page: int = DEFAULT_PAGE, limit: int = DEFAULT_LIMIT
) -> tuple[list[DepositOut], int]:
    return await _paginate(
        DepositOut, "deposits", _DEPOSIT_COLUMNS, ["vault_id = %s"], [vault_id],
        "created_at_ms DESC, id DESC", page, limit,
    )


async def list_withdrawals(
    vault_id: str, page: int = DEFAULT_PAGE, limit: int = DEFAULT_LIMIT
) -> tuple[list[WithdrawalOut], int]:
    return await _paginate(
        WithdrawalOut, "withdrawals", _WITHDRAWAL_COLUMNS, ["vault_id = %s"], [vault_id],
        "created_at_ms DESC, id DESC", page, limit,
    )


async def list_withdrawal_requests(
    vault_id: str | None = None,
    status: WithdrawalStatus | None = None,
    requester: str | None = None,
    page: int = DEFAULT_PAGE,
    limit: int = DEFAULT_LIMIT,
) -> tuple[list[WithdrawalRequestOut], int]:
    """Requests filtered by any combination of vault, status and requester."""
    conditions: list[str] = []
    params: list[Any] = []
    if vault_id:
        conditions.append("vault_id = %s")
        params.append(vault_id)
    if status is not None:
        conditions.append("status = %s")
        params.append(WithdrawalStatus(status).value)
    if requester:
        conditions.append("requester = %s")
        params.append(requester)
    return await _paginate(
        WithdrawalRequestOut, "withdrawal_requests", _REQUEST_COLUMNS, conditions, params,
        "created_at_ms DESC, id DESC", page, limit,
    )
