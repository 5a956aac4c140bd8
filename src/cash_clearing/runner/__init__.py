"""
CLI runner module.

Provides commands:
- process: Batch-resolve unresolved transactions
- pending / approve / reject / batch-approve / batch-reject: Human review
- export: Write a run's suggestions to CSV
- status: Statistics and recent runs
- import-transactions: Load unresolved transactions from CSV
- init-config: Write a default config file
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
