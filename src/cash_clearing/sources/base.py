"""
Transaction source interface.

A source pages through transactions that still carry the T_NOTFOUND
sentinel. Cursors are opaque strings owned by the source.
"""

from abc import ABC, abstractmethod
from typing import Optional

from ..schemas.transaction import TransactionPage


class TransactionSource(ABC):
    """Reader of unresolved transactions.

    Implementations raise TransientIOError for failures worth retrying and
    FatalError for authentication/credential failures.
    """

    @abstractmethod
    def fetch_unmatched(self, cursor: Optional[str], page_size: int) -> TransactionPage:
        """Fetch the page after ``cursor`` (None for the first page)."""

    @abstractmethod
    def count(self) -> int:
        """Number of unresolved transactions currently available."""

    def close(self) -> None:
        """Release held resources. No-op by default."""

    def __enter__(self) -> "TransactionSource":
        return self

    def __exit__(self, *args) -> None:
        self.close()
