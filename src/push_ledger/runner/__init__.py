"""
CLI runner module.

Provides commands:
- ingest: Store a notification batch and its transactions
- notifications / transactions: Windowed listings
- add / update / delete: Manual transaction maintenance
- invoice-status / settle-invoices: Invoice lifecycle
- profile / status / init-config: Housekeeping
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
