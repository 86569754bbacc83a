"""
Paygate Indexer

Multi-chain event indexing service for the cross-chain payment gateway:
- Per-chain watchers over gateway contract events (live subscription + backfill)
- Idempotent recording of payments, withdrawals and fee collections
- Invoice settlement tracking
- Status and control API for the indexer fleet
"""

__version__ = "0.1.0"
__author__ = "Paygate Team"
