"""
Vault Indexer - Read API Response Envelope

Every read endpoint answers with the same envelope so clients can handle
success and failure uniformly:

    {"success": true,  "data": [...], "total": 42}     # list
    {"success": true,  "data": {...}}                  # lookup
    {"success": false, "error": "...", "data": [], "total": 0}

Query failures are reported in the body with HTTP 200. Routes set
``response_model_exclude_none=True`` so lookups carry no ``total``.

Usage:
    from vault_indexer.api import list_response, failure_response

    return list_response(rows, total)
    return failure_response("Failed to fetch vaults", empty_list=True)
"""

from __future__ import annotations

from typing import Any, Generic, Sequence, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """
    Standardized read API envelope.

    Attributes:
        success: True if the query succeeded
        data: Page of records, a single record, or empty on failure
        total: Total matching rows for list endpoints
        error: Error message when success is False
    """

    success: bool = Field(..., description="True if the query succeeded")
    data: T | None = Field(None, description="Response payload")
    total: int | None = Field(None, description="Total matching rows (lists only)")
    error: str | None = Field(None, description="Error message if failed")

    model_config = {
        "json_schema_extra": {
            "example": {"success": True, "data": [], "total": 0},
        }
    }


def list_response(data: Sequence[Any], total: int) -> ApiResponse[Any]:
    return ApiResponse(success=True, data=list(data), total=total)


def item_response(data: Any) -> ApiResponse[Any]:
    return ApiResponse(success=True, data=data)


def failure_response(error: str, *, empty_list: bool = False) -> ApiResponse[Any]:
    """
    Failure envelope (still HTTP 200).

    List endpoints pass ``empty_list=True`` so ``data`` is ``[]`` and
    ``total`` is 0; lookups leave ``data`` out.
    """
    if empty_list:
        return ApiResponse(success=False, data=[], total=0, error=error[:500])
    return ApiResponse(success=False, error=error[:500])
