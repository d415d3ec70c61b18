"""
Vault Indexer - Event synchronization engine

Ledger event source, per-kind decoders, withdrawal lifecycle, idempotent
materialization store, durable cursors, the poll coordinator and its runner.
"""
