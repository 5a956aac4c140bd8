"""
Batch run schemas.

A run is one orchestrator execution identified by its batch_id. Its
checkpoint (cursor + counters) is what makes the run resumable.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class BatchStatus(str, Enum):
    """Status of a batch run."""

    RUNNING = "RUNNING"
    PAUSED = "PAUSED"  # Cancelled or interrupted, resumable
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class BatchError:
    """A page-level failure, recorded without aborting the run."""

    batch_index: int
    error: str

    def to_dict(self) -> dict:
        return {"batch_index": self.batch_index, "error": self.error}

    @classmethod
    def from_dict(cls, data: dict) -> "BatchError":
        return cls(batch_index=int(data["batch_index"]), error=str(data["error"]))


@dataclass
class RunCounts:
    """Counters committed with every checkpoint."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0

    def add(self, other: "RunCounts") -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed

    def to_dict(self) -> dict:
        return {"processed": self.processed, "succeeded": self.succeeded, "failed": self.failed}


@dataclass
class BatchRun:
    """Persisted state of a run."""

    batch_id: str
    status: BatchStatus
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    cursor: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    errors: list[BatchError] = field(default_factory=list)
    options: dict = field(default_factory=dict)

    @property
    def counts(self) -> RunCounts:
        return RunCounts(self.processed, self.succeeded, self.failed)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cursor": self.cursor,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "errors": [e.to_dict() for e in self.errors],
            "options": self.options,
        }


@dataclass
class RunSummary:
    """Result of BatchOrchestrator.run(); always produced, even on failure."""

    batch_id: str
    status: BatchStatus
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    duration_ms: int = 0
    throughput: float = 0.0  # Transactions per second
    errors: list[BatchError] = field(default_factory=list)
    unmatched: int = 0
    auto_approved: int = 0
    batches: int = 0
    dry_run: bool = False
    would_process: Optional[int] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "duration_ms": self.duration_ms,
            "throughput": round(self.throughput, 2),
            "errors": [e.to_dict() for e in self.errors],
            "unmatched": self.unmatched,
            "auto_approved": self.auto_approved,
            "batches": self.batches,
            "dry_run": self.dry_run,
            "would_process": self.would_process,
        }
