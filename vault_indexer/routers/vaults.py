"""
Vault Indexer - Vaults Router

Read-only views of indexed vaults and their activity. Query failures come
back as ``success: false`` envelopes with HTTP 200; bad pagination or an
unknown status value is a 422.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query

from ..api import ApiResponse, failure_response, item_response, list_response
from ..indexer.models import WithdrawalStatus
from ..services import vault_queries
from ..services.vault_queries import DEFAULT_LIMIT, MAX_LIMIT

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/vaults", tags=["Vaults"])

PageParam = Query(1, ge=1, description="1-based page number")
LimitParam = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT, description="Page size")


@router.get(
    "",
    response_model=ApiResponse[list[vault_queries.VaultOut]],
    response_model_exclude_none=True,
    summary="List vaults",
)
async def list_vaults(
    parent_address: str | None = Query(None, description="Filter by owner address"),
    child_address: str | None = Query(None, description="Filter by beneficiary address"),
    page: int = PageParam,
    limit: int = LimitParam,
) -> ApiResponse[Any]:
    try:
        rows, total = await vault_queries.list_vaults(parent_address, child_address, page, limit)
    except Exception as e:
        logger.error(f"Failed to list vaults: {e}", exc_info=True)
        return failure_response("Failed to fetch vaults", empty_list=True)
    return list_response(rows, total)


@router.get(
    "/{vault_id}",
    response_model=ApiResponse[vault_queries.VaultOut],
    response_model_exclude_none=True,
    summary="Get one vault",
)
async def get_vault(vault_id: str) -> ApiResponse[Any]:
    try:
        vault = await vault_queries.get_vault(vault_id)
    except Exception as e:
        logger.error(f"Failed to fetch vault {vault_id}: {e}", exc_info=True)
        return failure_response("Failed to fetch vault")
    if vault is None:
        return failure_response("Vault not found")
    return item_response(vault)


@router.get(
    "/{vault_id}/deposits",
    response_model=ApiResponse[list[vault_queries.DepositOut]],
    response_model_exclude_none=True,
    summary="List deposits for a vault",
)
async def list_vault_deposits(
    vault_id: str, page: int = PageParam, limit: int = LimitParam
) -> ApiResponse[Any]:
    try:
        rows, total = await vault_queries.list_deposits(vault_id, page, limit)
    except Exception as e:
        logger.error(f"Failed to list deposits for {vault_id}: {e}", exc_info=True)
        return failure_response("Failed to fetch deposits", empty_list=True)
    return list_response(rows, total)


@router.get(
    "/{vault_id}/withdrawals",
    response_model=ApiResponse[list[vault_queries.WithdrawalOut]],
    response_model_exclude_none=True,
    summary="List withdrawals for a vault",
)
async def list_vault_withdrawals(
    vault_id: str, page: int = PageParam, limit: int = LimitParam
) -> ApiResponse[Any]:
    try:
        rows, total = await vault_queries.list_withdrawals(vault_id, page, limit)
    except Exception as e:
        logger.error(f"Failed to list withdrawals for {vault_id}: {e}", exc_info=True)
        return failure_response("Failed to fetch withdrawals", empty_list=True)
    return list_response(rows, total)


@router.get(
    "/{vault_id}/withdrawal-requests",
    response_model=ApiResponse[list[vault_queries.WithdrawalRequestOut]],
    response_model_exclude_none=True,
    summary="List withdrawal requests for a vault",
)
async def list_vault_withdrawal_requests(
    vault_id: str,
    status: WithdrawalStatus | None = Query(None, description="Filter by request status"),
    requester: str | None = Query(None, description="Filter by requester address"),
    page: int = PageParam,
    limit: int = LimitParam,
) -> ApiResponse[Any]:
    try:
        rows, total = await vault_queries.list_withdrawal_requests(
            vault_id=vault_id, status=status, requester=requester, page=page, limit=limit
        )
    except Exception as e:
        logger.error(f"Failed to list withdrawal requests for {vault_id}: {e}", exc_info=True)
        return failure_response("Failed to fetch withdrawal requests", empty_list=True)
    return list_response(rows, total)
