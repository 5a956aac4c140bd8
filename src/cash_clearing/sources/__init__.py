"""
Transaction sources.

Readers that page through transactions left unresolved upstream:
- SqliteTransactionSource: the local state database
- HttpTransactionSource: a remote transactions API
"""

from .base import TransactionSource
from .csv_file import read_transactions_csv
from .http_source import HttpTransactionSource
from .sqlite_source import SqliteTransactionSource

__all__ = [
    "TransactionSource",
    "HttpTransactionSource",
    "SqliteTransactionSource",
    "read_transactions_csv",
]
