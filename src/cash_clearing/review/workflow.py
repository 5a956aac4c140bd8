"""
Approval workflow (human-in-the-loop state machine).

States:
- PENDING: initial, the only non-terminal state
- APPROVED / REJECTED: terminal, reached via approve / reject
- AUTO_APPROVED: terminal, entry-only (set by the builder at creation)

Transitions on one suggestion are serialized by a per-id lock in this
process and by a version-checked conditional UPDATE in the store, so a
racing approve/reject can never both succeed.
"""

import logging
import threading
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..errors import (
    CashClearingError,
    InvalidStateTransition,
    SuggestionNotFoundError,
    ValidationError,
)
from ..schemas.suggestion import ApprovalStatus, Suggestion
from ..state_store.sqlite_store import SqliteStateStore

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    """Audit log action types."""

    APPROVE = "APPROVE"
    REJECT = "REJECT"
    BATCH_APPROVE = "BATCH_APPROVE"
    BATCH_REJECT = "BATCH_REJECT"


class ItemOutcome(str, Enum):
    """Per-item result of a batch action."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class BatchItemResult:
    """Outcome of one suggestion in a batch action."""

    suggestion_id: str
    outcome: ItemOutcome
    error: Optional[str] = None
    new_status: Optional[ApprovalStatus] = None

    def to_dict(self) -> dict:
        return {
            "suggestion_id": self.suggestion_id,
            "outcome": self.outcome.value,
            "error": self.error,
            "new_status": self.new_status.value if self.new_status else None,
        }


@dataclass
class BatchActionResult:
    """Per-item outcomes plus aggregate counts."""

    action: AuditAction
    results: list[BatchItemResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.outcome == ItemOutcome.SUCCESS)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


class _SuggestionLock:
    """Weak-referenceable wrapper around a lock for one suggestion id."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def __enter__(self) -> "_SuggestionLock":
        self._lock.acquire()
        return self

    def __exit__(self, *args) -> None:
        self._lock.release()


class ApprovalWorkflow:
    """
    Manages suggestion approval.

    Responsibilities:
    - Validate and apply approve / reject transitions
    - Batch variants with independent per-item outcomes
    - Review queue ordered by business priority, then risk
    """

    def __init__(self, store: SqliteStateStore):
        """Initialize with state store."""
        self.store = store
        # Entries vanish once no transition holds the lock
        self._locks: "weakref.WeakValueDictionary[str, _SuggestionLock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, suggestion_id: str) -> "_SuggestionLock":
        with self._locks_guard:
            lock = self._locks.get(suggestion_id)
            if lock is None:
                lock = self._locks[suggestion_id] = _SuggestionLock()
            return lock

    def get_pending_queue(self, limit: Optional[int] = None) -> list[Suggestion]:
        """Active PENDING suggestions, most urgent first."""
        return self.store.get_pending_suggestions(limit=limit)

    def get_suggestion(self, suggestion_id: str) -> Suggestion:
        """Load a suggestion or raise SuggestionNotFoundError."""
        suggestion = self.store.get_suggestion(suggestion_id)
        if suggestion is None:
            raise SuggestionNotFoundError(suggestion_id)
        return suggestion

    def approve(self, suggestion_id: str, actor: str, reason: Optional[str] = None) -> Suggestion:
        """PENDING → APPROVED. Writes the transaction's pattern."""
        return self._transition(
            suggestion_id, ApprovalStatus.APPROVED, actor, reason, AuditAction.APPROVE
        )

    def reject(self, suggestion_id: str, actor: str, reason: str) -> Suggestion:
        """PENDING → REJECTED. A non-blank reason is mandatory."""
        reason = _require_reason(reason)
        return self._transition(
            suggestion_id, ApprovalStatus.REJECTED, actor, reason, AuditAction.REJECT
        )

    def batch_approve(
        self, suggestion_ids: list[str], actor: str, reason: Optional[str] = None
    ) -> BatchActionResult:
        """Approve each id independently; one bad id never blocks the rest."""
        return self._batch(
            suggestion_ids, ApprovalStatus.APPROVED, actor, reason, AuditAction.BATCH_APPROVE
        )

    def batch_reject(self, suggestion_ids: list[str], actor: str, reason: str) -> BatchActionResult:
        """Reject each id independently.

        A blank reason fails the whole request before any item is touched.
        """
        reason = _require_reason(reason)
        return self._batch(
            suggestion_ids, ApprovalStatus.REJECTED, actor, reason, AuditAction.BATCH_REJECT
        )

    def _batch(
        self,
        suggestion_ids: list[str],
        new_status: ApprovalStatus,
        actor: str,
        reason: Optional[str],
        action: AuditAction,
    ) -> BatchActionResult:
        _require_actor(actor)
        result = BatchActionResult(action=action)

        # Duplicate ids are reported once
        for suggestion_id in dict.fromkeys(suggestion_ids):
            try:
                updated = self._transition(suggestion_id, new_status, actor, reason, action)
            except CashClearingError as e:
                logger.warning("%s of %s failed: %s", action.value, suggestion_id, e)
                result.results.append(
                    BatchItemResult(suggestion_id=suggestion_id, outcome=ItemOutcome.FAILED, error=str(e))
                )
                continue
            result.results.append(
                BatchItemResult(
                    suggestion_id=suggestion_id,
                    outcome=ItemOutcome.SUCCESS,
                    new_status=updated.approval_status,
                )
            )

        logger.info(
            "%s by %s: %d succeeded, %d failed", action.value, actor, result.succeeded, result.failed
        )
        return result

    def _transition(
        self,
        suggestion_id: str,
        new_status: ApprovalStatus,
        actor: str,
        reason: Optional[str],
        action: AuditAction,
    ) -> Suggestion:
        _require_actor(actor)
        action_name = "approve" if new_status == ApprovalStatus.APPROVED else "reject"

        with self._lock_for(suggestion_id):
            suggestion = self.get_suggestion(suggestion_id)
            if suggestion.approval_status.is_terminal:
                raise InvalidStateTransition(
                    suggestion_id, suggestion.approval_status.value, action_name
                )
            if suggestion.superseded_by is not None:
                raise InvalidStateTransition(suggestion_id, "SUPERSEDED", action_name)

            applied = self.store.transition_suggestion(
                suggestion_id,
                expected_version=suggestion.version,
                new_status=new_status,
                actor=actor,
                reason=reason,
                audit_action=action.value,
            )
            if not applied:
                # Another writer got there first; report the state it left behind
                current = self.get_suggestion(suggestion_id)
                status = "SUPERSEDED" if current.superseded_by else current.approval_status.value
                raise InvalidStateTransition(suggestion_id, status, action_name)

        logger.info("Suggestion %s %s by %s", suggestion_id, new_status.value, actor)
        return self.get_suggestion(suggestion_id)


def _require_reason(reason: Optional[str]) -> str:
    if reason is None or not reason.strip():
        raise ValidationError("A rejection reason is required")
    return reason.strip()


def _require_actor(actor: str) -> None:
    if not actor or not actor.strip():
        raise ValidationError("An actor is required")
