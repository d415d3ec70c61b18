"""
Vault Indexer - Ledger Event Indexer

Polls savings-vault events from a Sui full node, materializes them into
PostgreSQL, and serves the materialized state over a read-only HTTP API.
"""

__version__ = "0.1.0"
