"""
Suggestion builder.

Combines a transaction, its best match candidate and the GL resolution
into a Suggestion with initial status, risk score and business priority.

Rules:
- Initial status: AUTO_APPROVED iff the resolution is auto-approvable,
  otherwise PENDING. No transition ever produces AUTO_APPROVED.
- Risk score (review ordering), clipped to 1.0:
    +0.4 if confidence < 0.5, else +0.2 if confidence < 0.7
    +0.3 if |amount| > 50,000, else +0.1 if |amount| > 10,000
    +0.3 if no GL account was resolved
- Business priority: CRITICAL > 100,000; HIGH > 50,000; MEDIUM > 10,000;
  LOW otherwise.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from ..schemas.suggestion import (
    ApprovalStatus,
    BusinessPriority,
    GLResolution,
    MatchCandidate,
    Suggestion,
)
from ..schemas.transaction import Transaction

# Number of ranked candidates kept in the reasoning trace
MAX_TRACE_CANDIDATES = 3


@dataclass
class RiskThresholds:
    """Thresholds for risk scoring and business priority."""

    low_confidence: float = 0.5
    medium_confidence: float = 0.7
    large_amount: Decimal = Decimal("50000")
    medium_amount: Decimal = Decimal("10000")
    critical_amount: Decimal = Decimal("100000")


def compute_risk_score(
    confidence: float,
    amount: Decimal,
    has_gl_account: bool,
    thresholds: Optional[RiskThresholds] = None,
) -> tuple[float, list[str]]:
    """Compute the review risk score and the factors that contributed."""
    t = thresholds or RiskThresholds()
    magnitude = abs(amount)
    risk = 0.0
    factors: list[str] = []

    if confidence < t.low_confidence:
        risk += 0.4
        factors.append("low_confidence")
    elif confidence < t.medium_confidence:
        risk += 0.2
        factors.append("medium_confidence")

    if magnitude > t.large_amount:
        risk += 0.3
        factors.append("large_amount")
    elif magnitude > t.medium_amount:
        risk += 0.1
        factors.append("medium_amount")

    if not has_gl_account:
        risk += 0.3
        factors.append("no_gl_account")

    return round(min(risk, 1.0), 4), factors


def compute_business_priority(
    amount: Decimal, thresholds: Optional[RiskThresholds] = None
) -> BusinessPriority:
    """Business-impact priority from |amount|."""
    t = thresholds or RiskThresholds()
    magnitude = abs(amount)
    if magnitude > t.critical_amount:
        return BusinessPriority.CRITICAL
    if magnitude > t.large_amount:
        return BusinessPriority.HIGH
    if magnitude > t.medium_amount:
        return BusinessPriority.MEDIUM
    return BusinessPriority.LOW


class SuggestionBuilder:
    """Builds Suggestions from pipeline results."""

    def __init__(self, thresholds: Optional[RiskThresholds] = None, catalog_version: str | None = None):
        self.thresholds = thresholds or RiskThresholds()
        self.catalog_version = catalog_version

    def build(
        self,
        transaction: Transaction,
        candidate: MatchCandidate,
        resolution: GLResolution,
        batch_id: Optional[str] = None,
        candidates: Optional[list[MatchCandidate]] = None,
    ) -> Suggestion:
        """
        Build a suggestion for one transaction.

        Args:
            transaction: The unresolved transaction
            candidate: Best match candidate
            resolution: GL resolution of that candidate
            batch_id: Run that produced the suggestion
            candidates: Full ranked candidate list, for the reasoning trace

        Returns:
            New Suggestion (not yet persisted)
        """
        confidence = resolution.confidence_score
        risk_score, risk_factors = compute_risk_score(
            confidence, transaction.amount, resolution.has_gl_account, self.thresholds
        )
        priority = compute_business_priority(transaction.amount, self.thresholds)

        status = ApprovalStatus.AUTO_APPROVED if resolution.auto_approvable else ApprovalStatus.PENDING
        now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

        ranked = candidates or [candidate]
        reasoning = {
            "matcher": candidate.matcher,
            "catalog_version": self.catalog_version,
            "selected": candidate.to_dict(),
            "candidates": [c.to_dict() for c in ranked[:MAX_TRACE_CANDIDATES]],
            "gl_resolution": resolution.to_dict(),
            "risk_factors": risk_factors,
            "decision": "auto_approved" if resolution.auto_approvable else "needs_review",
        }

        return Suggestion(
            id=uuid.uuid4().hex,
            transaction_id=transaction.id,
            pattern_matched=candidate.pattern_id,
            gl_account_code=resolution.gl_account_code,
            debit_credit=resolution.debit_credit,
            confidence_score=confidence,
            approval_status=status,
            reasoning=reasoning,
            batch_id=batch_id,
            created_at=now,
            approved_by="system" if status == ApprovalStatus.AUTO_APPROVED else None,
            approved_at=now if status == ApprovalStatus.AUTO_APPROVED else None,
            risk_score=risk_score,
            business_priority=priority,
            gl_account_name=resolution.gl_account_name,
            account_category=resolution.account_category,
            amount=transaction.amount,
            currency=transaction.currency,
            description=transaction.description,
        )
