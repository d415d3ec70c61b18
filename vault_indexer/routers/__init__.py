"""
Vault Indexer - HTTP routers
"""

from .health import router as health_router
from .vaults import router as vaults_router
from .withdrawal_requests import router as withdrawal_requests_router

__all__ = ["health_router", "vaults_router", "withdrawal_requests_router"]
