"""
Match, resolution and suggestion schemas (SSOT).

A Suggestion is the unit of human review. Suggestions are append-only:
they are never deleted, only transitioned or superseded.
"""

import json
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from ..errors import ValidationError

UNKNOWN_PATTERN = "UNKNOWN"
UNMAPPED_CATEGORY = "UNMAPPED"


class ApprovalStatus(str, Enum):
    """Lifecycle state of a suggestion."""

    PENDING = "PENDING"  # Initial, awaiting review
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    AUTO_APPROVED = "AUTO_APPROVED"  # Entry-only, set at creation

    @property
    def is_terminal(self) -> bool:
        return self != ApprovalStatus.PENDING


class BusinessPriority(str, Enum):
    """Business-impact priority derived from the transaction amount."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


@dataclass(frozen=True)
class MatchSignal:
    """One test's contribution to a candidate score."""

    signal: str  # e.g. "description", "amount", "day_of_month"
    score: float
    detail: str

    def to_dict(self) -> dict:
        return {"signal": self.signal, "score": round(self.score, 4), "detail": self.detail}


@dataclass(frozen=True)
class MatchCandidate:
    """A scored pattern hypothesis for one transaction."""

    pattern_id: Optional[str]  # None for UNKNOWN
    pattern_name: str
    score: float
    raw_score: float = 0.0
    priority_order: int = 0
    signals: tuple[MatchSignal, ...] = ()
    reasons: tuple[str, ...] = ()
    matcher: str = "rules"

    @property
    def is_unknown(self) -> bool:
        return self.pattern_id is None

    @classmethod
    def unknown(cls, reason: str = "no pattern matched", matcher: str = "rules") -> "MatchCandidate":
        """The sentinel candidate emitted when nothing matches."""
        return cls(
            pattern_id=None,
            pattern_name=UNKNOWN_PATTERN,
            score=0.0,
            raw_score=0.0,
            priority_order=0,
            reasons=(reason,),
            matcher=matcher,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "pattern_id": self.pattern_id,
            "pattern_name": self.pattern_name,
            "score": round(self.score, 4),
            "raw_score": round(self.raw_score, 4),
            "priority_order": self.priority_order,
            "signals": [s.to_dict() for s in self.signals],
            "reasons": list(self.reasons),
            "matcher": self.matcher,
        }


@dataclass(frozen=True)
class GLResolution:
    """GL account proposal for a match candidate."""

    gl_account_code: Optional[str]
    gl_account_name: Optional[str]
    debit_credit: Optional[str]
    account_category: str
    confidence_score: float
    auto_approvable: bool
    gl_pattern_id: Optional[str] = None
    auto_approve_threshold: Optional[float] = None
    requires_approval: bool = False
    ft_id: Optional[str] = None

    @property
    def has_gl_account(self) -> bool:
        return bool(self.gl_account_code)

    @classmethod
    def unmapped(cls) -> "GLResolution":
        """Resolution used when no GL pattern applies; always needs review."""
        return cls(
            gl_account_code=None,
            gl_account_name=None,
            debit_credit=None,
            account_category=UNMAPPED_CATEGORY,
            confidence_score=0.0,
            auto_approvable=False,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "gl_account_code": self.gl_account_code,
            "gl_account_name": self.gl_account_name,
            "debit_credit": self.debit_credit,
            "account_category": self.account_category,
            "confidence_score": round(self.confidence_score, 4),
            "auto_approvable": self.auto_approvable,
            "gl_pattern_id": self.gl_pattern_id,
            "auto_approve_threshold": self.auto_approve_threshold,
            "requires_approval": self.requires_approval,
            "ft_id": self.ft_id,
        }


@dataclass
class Suggestion:
    """A proposed pattern + GL account for one transaction."""

    id: str
    transaction_id: str
    pattern_matched: Optional[str]
    gl_account_code: Optional[str]
    debit_credit: Optional[str]
    confidence_score: float
    approval_status: ApprovalStatus
    reasoning: dict = field(default_factory=dict)
    batch_id: Optional[str] = None
    created_at: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None

    # Review metadata
    risk_score: float = 0.0
    business_priority: BusinessPriority = BusinessPriority.LOW
    gl_account_name: Optional[str] = None
    account_category: str = UNMAPPED_CATEGORY
    rejection_reason: Optional[str] = None

    # Denormalized transaction fields for export and review queues
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    description: Optional[str] = None

    superseded_by: Optional[str] = None
    superseded_at: Optional[str] = None
    version: int = 1

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence_score <= 1.0:
            raise ValidationError(
                f"confidence_score must be within [0, 1], got {self.confidence_score}"
            )
        if not isinstance(self.approval_status, ApprovalStatus):
            self.approval_status = ApprovalStatus(self.approval_status)
        if not isinstance(self.business_priority, BusinessPriority):
            self.business_priority = BusinessPriority(self.business_priority)

    @property
    def is_active(self) -> bool:
        """PENDING and not superseded by a later suggestion."""
        return self.approval_status == ApprovalStatus.PENDING and self.superseded_by is None

    @property
    def pattern_label(self) -> str:
        """Matched pattern id, or UNKNOWN when nothing matched."""
        return self.pattern_matched or UNKNOWN_PATTERN

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "pattern_matched": self.pattern_matched,
            "gl_account_code": self.gl_account_code,
            "gl_account_name": self.gl_account_name,
            "debit_credit": self.debit_credit,
            "account_category": self.account_category,
            "confidence_score": self.confidence_score,
            "approval_status": self.approval_status.value,
            "reasoning": self.reasoning,
            "batch_id": self.batch_id,
            "created_at": self.created_at,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at,
            "risk_score": self.risk_score,
            "business_priority": self.business_priority.value,
            "rejection_reason": self.rejection_reason,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "description": self.description,
            "superseded_by": self.superseded_by,
            "superseded_at": self.superseded_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Suggestion":
        """Create from dictionary or a database row mapping."""
        reasoning = data.get("reasoning") or {}
        if isinstance(reasoning, str):
            try:
                reasoning = json.loads(reasoning)
            except json.JSONDecodeError as e:
                raise ValidationError(f"Invalid reasoning JSON for suggestion {data.get('id')}") from e

        amount = data.get("amount")
        try:
            status = ApprovalStatus(data["approval_status"])
            priority = BusinessPriority(data.get("business_priority") or "LOW")
        except (KeyError, ValueError) as e:
            raise ValidationError(f"Invalid suggestion record: {e}") from e

        return cls(
            id=str(data["id"]),
            transaction_id=str(data["transaction_id"]),
            pattern_matched=data.get("pattern_matched"),
            gl_account_code=data.get("gl_account_code"),
            debit_credit=data.get("debit_credit"),
            confidence_score=float(data.get("confidence_score") or 0.0),
            approval_status=status,
            reasoning=reasoning,
            batch_id=data.get("batch_id"),
            created_at=data.get("created_at"),
            approved_by=data.get("approved_by"),
            approved_at=data.get("approved_at"),
            risk_score=float(data.get("risk_score") or 0.0),
            business_priority=priority,
            gl_account_name=data.get("gl_account_name"),
            account_category=data.get("account_category") or UNMAPPED_CATEGORY,
            rejection_reason=data.get("rejection_reason"),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=data.get("currency"),
            description=data.get("description"),
            superseded_by=data.get("superseded_by"),
            superseded_at=data.get("superseded_at"),
            version=int(data.get("version") or 1),
        )
