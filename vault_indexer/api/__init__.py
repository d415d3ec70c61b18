"""
Vault Indexer - API Module

Response envelope shared by the read-side routers.
"""

from .response import ApiResponse, failure_response, item_response, list_response

__all__ = [
    "ApiResponse",
    "failure_response",
    "item_response",
    "list_response",
]
