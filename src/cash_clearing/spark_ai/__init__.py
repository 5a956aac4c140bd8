"""Spark AI module for LLM-assisted pattern matching.

Provides an LLM-backed alternative to the rule engine behind the same
matcher interface. Disabled unless llm.enabled is set or --use-ai is passed.
"""

from cash_clearing.spark_ai.prompts import PROMPT_VERSION, PatternMatchPrompt
from cash_clearing.spark_ai.service import LLMConcurrencyLimiter, LLMMatcher, parse_model_json

__all__ = [
    "LLMMatcher",
    "LLMConcurrencyLimiter",
    "PatternMatchPrompt",
    "PROMPT_VERSION",
    "parse_model_json",
]
