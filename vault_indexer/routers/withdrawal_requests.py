"""
Vault Indexer - Withdrawal Requests Router
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query

from ..api import ApiResponse, failure_response, list_response
from ..indexer.models import WithdrawalStatus
from ..services import vault_queries
from ..services.vault_queries import DEFAULT_LIMIT, MAX_LIMIT

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/withdrawal-requests", tags=["Withdrawal Requests"])


@router.get(
    "/requester/{requester}",
    response_model=ApiResponse[list[vault_queries.WithdrawalRequestOut]],
    response_model_exclude_none=True,
    summary="List withdrawal requests made by one address",
)
async def list_requests_by_requester(
    requester: str,
    status: WithdrawalStatus | None = Query(None, description="Filter by request status"),
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
) -> ApiResponse[Any]:
    """Requests across every vault for ``requester``, newest first."""
    try:
        rows, total = await vault_queries.list_withdrawal_requests(
            status=status, requester=requester, page=page, limit=limit
        )
    except Exception as e:
        logger.error(f"Failed to list withdrawal requests for {requester}: {e}", exc_info=True)
        return failure_response("Failed to fetch withdrawal requests", empty_list=True)
    return list_response(rows, total)
