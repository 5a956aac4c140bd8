"""
Human-in-the-loop review module.

Provides:
- Suggestion building (status, risk score, business priority)
- Approval workflow (single and batch transitions)
- Review queue ordering
"""

from .builder import (
    RiskThresholds,
    SuggestionBuilder,
    compute_business_priority,
    compute_risk_score,
)
from .workflow import (
    ApprovalWorkflow,
    AuditAction,
    BatchActionResult,
    BatchItemResult,
    ItemOutcome,
)

__all__ = [
    "ApprovalWorkflow",
    "AuditAction",
    "BatchActionResult",
    "BatchItemResult",
    "ItemOutcome",
    "RiskThresholds",
    "SuggestionBuilder",
    "compute_business_priority",
    "compute_risk_score",
]
