"""
Transaction source backed by the local state database.

Keyset pagination over cash_transactions ordered by id; the cursor is the
last id of the previous page.
"""

import logging
from typing import Optional

from ..schemas.transaction import TransactionPage
from ..state_store.sqlite_store import SqliteStateStore
from .base import TransactionSource

logger = logging.getLogger(__name__)


class SqliteTransactionSource(TransactionSource):
    """Reads unresolved transactions from a SqliteStateStore."""

    def __init__(self, store: SqliteStateStore):
        self.store = store

    def fetch_unmatched(self, cursor: Optional[str], page_size: int) -> TransactionPage:
        # One extra row tells us whether another page exists
        rows = self.store.fetch_unresolved_transactions(after_id=cursor, limit=page_size + 1)
        transactions = rows[:page_size]
        has_more = len(rows) > page_size
        next_cursor = transactions[-1].id if transactions else cursor

        logger.debug(
            "Fetched %d transactions after cursor %r (has_more=%s)", len(transactions), cursor, has_more
        )
        return TransactionPage(transactions=transactions, next_cursor=next_cursor, has_more=has_more)

    def count(self) -> int:
        return self.store.count_unresolved_transactions()
