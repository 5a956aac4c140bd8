"""Pattern matching engine for unresolved cash transactions."""

from cash_clearing.matching.engine import RuleBasedMatcher, TransactionMatcher, rank_candidates

__all__ = ["RuleBasedMatcher", "TransactionMatcher", "rank_candidates"]
