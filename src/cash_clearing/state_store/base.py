"""
Persistence sink interface.

The orchestrator only talks to this interface. SqliteStateStore is the
bundled implementation.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from ..schemas.run import BatchError, BatchRun, BatchStatus, RunCounts
from ..schemas.suggestion import Suggestion


class PersistenceSink(ABC):
    """Where suggestions, checkpoints and run state are written."""

    @abstractmethod
    def persist_suggestions(self, suggestions: list[Suggestion], batch_id: Optional[str] = None) -> int:
        """Persist a page of suggestions atomically.

        Any earlier active (PENDING, not superseded) suggestion of the same
        transaction is superseded in the same transaction. Returns the
        number of suggestions written.
        """

    @abstractmethod
    def persist_checkpoint(
        self,
        batch_id: str,
        cursor: Optional[str],
        counts: RunCounts,
        errors: Optional[list[BatchError]] = None,
    ) -> None:
        """Commit the run's cursor and cumulative counters."""

    @abstractmethod
    def export_results(self, batch_id: str, path: Path) -> Path:
        """Write the run's suggestions as CSV. Returns the written path."""

    # Run lifecycle

    @abstractmethod
    def create_run(self, batch_id: str, total: int, options: Optional[dict] = None) -> BatchRun:
        """Register a new RUNNING run."""

    @abstractmethod
    def get_run(self, batch_id: str) -> Optional[BatchRun]:
        """Load a run, or None if unknown."""

    @abstractmethod
    def resume_run(self, batch_id: str) -> BatchRun:
        """Mark an existing run RUNNING again and return it."""

    @abstractmethod
    def finish_run(self, batch_id: str, status: BatchStatus, errors: Optional[list[BatchError]] = None) -> None:
        """Set the final status of a run."""

    @abstractmethod
    def record_failed_items(self, batch_id: str, failures: list[tuple[str, str]]) -> None:
        """Record (transaction_id, error) pairs that failed in a run."""

    @abstractmethod
    def get_processed_ids(self, batch_id: str) -> set[str]:
        """Transaction ids already accounted for in a run."""
