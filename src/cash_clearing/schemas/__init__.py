"""
SSOT (Single Source of Truth) schemas for the engine.

These canonical schemas are the ONLY models used across all modules.
No duplicated "near-same" models allowed.
"""

from .catalog import (
    AccountCategory,
    DebitCredit,
    GLPattern,
    PatternCatalog,
    PatternCondition,
    PatternType,
    ProcessorPattern,
    compile_search,
    load_catalog,
)
from .run import BatchError, BatchRun, BatchStatus, RunCounts, RunSummary
from .suggestion import (
    UNKNOWN_PATTERN,
    UNMAPPED_CATEGORY,
    ApprovalStatus,
    BusinessPriority,
    GLResolution,
    MatchCandidate,
    MatchSignal,
    Suggestion,
)
from .transaction import (
    UNRESOLVED_PATTERN,
    Transaction,
    TransactionPage,
    parse_amount,
    parse_date,
)

__all__ = [
    # Catalog
    "AccountCategory",
    "DebitCredit",
    "GLPattern",
    "PatternCatalog",
    "PatternCondition",
    "PatternType",
    "ProcessorPattern",
    "compile_search",
    "load_catalog",
    # Runs
    "BatchError",
    "BatchRun",
    "BatchStatus",
    "RunCounts",
    "RunSummary",
    # Suggestions
    "UNKNOWN_PATTERN",
    "UNMAPPED_CATEGORY",
    "ApprovalStatus",
    "BusinessPriority",
    "GLResolution",
    "MatchCandidate",
    "MatchSignal",
    "Suggestion",
    # Transactions
    "UNRESOLVED_PATTERN",
    "Transaction",
    "TransactionPage",
    "parse_amount",
    "parse_date",
]
