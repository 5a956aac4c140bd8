"""
Cash clearing → Pattern Matching → GL Resolution → Human-in-the-loop approval

A deterministic, resumable engine that classifies bank transactions left
unresolved by upstream rules (pattern ``T_NOTFOUND``), proposes a GL account
with a confidence score, and routes each proposal to auto-approval or
human review.
"""

__version__ = "0.1.0"
