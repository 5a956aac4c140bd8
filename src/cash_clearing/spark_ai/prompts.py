"""Prompt templates for LLM-assisted pattern matching.

Prompts are versioned; the version is recorded in every reasoning trace
so suggestions can be traced back to the prompt that produced them.
"""

from __future__ import annotations

from dataclasses import dataclass

from cash_clearing.schemas.catalog import ProcessorPattern
from cash_clearing.schemas.transaction import Transaction

# v1.0: Single-transaction classification against catalog pattern ids
PROMPT_VERSION = "v1.0"


@dataclass
class PatternMatchPrompt:
    """Prompt template for classifying one transaction.

    Attributes:
        version: Prompt version recorded in the reasoning trace.
        system_template: System message; {patterns} lists the catalog.
        user_template: Transaction details.
    """

    version: str = PROMPT_VERSION

    system_template: str = """You are a finance-ops analyst helping clear bank-cash suspense items.
Each transaction below failed the existing rule-based matching. Pick the processor
pattern that best explains it.

Available patterns (id | name | type | search expression):
{patterns}

Search expressions containing % are SQL LIKE expressions (% matches any text).

SCORING
1.0 exact full match
0.6-0.9 strong partial match
0.3-0.5 weak/fuzzy match
0 unknown

Rules:
1. Only answer with a pattern id from the list above
2. If no pattern reasonably applies, answer "UNKNOWN" with confidence 0
3. Keep the reason under 150 characters

Respond in JSON format:
{{
    "pattern_id": "PATTERN_ID",
    "confidence": 0.85,
    "reason": "Brief explanation"
}}"""

    user_template: str = """Classify this transaction:

- Transaction ID: {transaction_id}
- Text: {description}
- Reference: {reference}
- Amount: {amount} {currency}
- Date: {transaction_date}
- Account: {account_id}
- Type code: {type_code}

Provide your answer in JSON format."""

    def format_system_prompt(self, patterns: list[ProcessorPattern]) -> str:
        """Render the system message for a set of patterns."""
        lines = [
            f"- {p.id} | {p.name} | {p.type.value} | {p.search or _describe_conditions(p)}"
            for p in patterns
        ]
        return self.system_template.format(patterns="\n".join(lines) or "- (none)")

    def format_user_message(self, transaction: Transaction) -> str:
        """Format the user message with transaction details."""
        return self.user_template.format(
            transaction_id=transaction.id,
            description=transaction.description or "No description",
            reference=transaction.reference or "-",
            amount=transaction.amount,
            currency=transaction.currency,
            transaction_date=transaction.transaction_date.isoformat(),
            account_id=transaction.account_id or "-",
            type_code=transaction.type_code or "-",
        )


def _describe_conditions(pattern: ProcessorPattern) -> str:
    if pattern.expected_amount is not None and not pattern.conditions:
        return f"amount ~ {pattern.expected_amount} (±{pattern.amount_tolerance:.0%})"
    parts = []
    for condition in pattern.conditions:
        if condition.search:
            parts.append(f"{condition.type.value.lower()} ~ {condition.search}")
        elif condition.expected_amount is not None:
            parts.append(f"amount ~ {condition.expected_amount}")
    return " AND ".join(parts) or "-"
