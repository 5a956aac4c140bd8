"""Pattern matching engine for unresolved cash transactions.

Scores a transaction against every active pattern of the catalog snapshot
and returns the ranked candidates. The rule engine is deterministic: the
same (transaction, catalog) pair always yields the same ordered list.
"""

from __future__ import annotations

import calendar
import logging
import re
from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import Optional

from ..errors import ConfigurationError
from ..schemas.catalog import (
    PatternCatalog,
    PatternCondition,
    PatternType,
    ProcessorPattern,
    compile_search,
    is_plain_keyword,
)
from ..schemas.suggestion import MatchCandidate, MatchSignal
from ..schemas.transaction import Transaction

logger = logging.getLogger(__name__)

# A keyword phrase counts as a partial match when at least this share of
# its words appear in the text.
MIN_KEYWORD_FRACTION = 0.5

_WORD_RE = re.compile(r"\w+")


class TransactionMatcher(ABC):
    """Interface shared by the rule engine and the LLM-backed matcher.

    Matchers are context managers so that implementations holding network
    sessions can release them on every exit path of a run.
    """

    name: str = "matcher"

    @abstractmethod
    def match(self, transaction: Transaction, catalog: PatternCatalog) -> list[MatchCandidate]:
        """Return candidates ordered best first; never empty."""

    def close(self) -> None:
        """Release held resources. No-op by default."""

    def __enter__(self) -> TransactionMatcher:
        return self

    def __exit__(self, *args) -> None:
        self.close()


def rank_candidates(candidates: list[MatchCandidate]) -> list[MatchCandidate]:
    """Order by score desc, then priority_order asc, then pattern id."""
    return sorted(candidates, key=lambda c: (-c.score, c.priority_order, c.pattern_id or ""))


class RuleBasedMatcher(TransactionMatcher):
    """Deterministic matcher over the catalog's processor patterns.

    Per pattern type:
    - REFERENCE: search on the payment reference (description as fallback)
    - DESCRIPTION: search on the description text
    - AMOUNT: |amount| against expected_amount within amount_tolerance
    - COMPOSITE: AND of its conditions, scored as their mean

    An optional expected_day adds a day-of-month signal to any type.
    """

    name = "rules"

    def match(self, transaction: Transaction, catalog: PatternCatalog) -> list[MatchCandidate]:
        candidates: list[MatchCandidate] = []

        for pattern in catalog.active_patterns():
            if not pattern.applies_to(transaction.account_id, transaction.type_code):
                continue

            try:
                signals = self._evaluate(pattern, transaction)
            except ConfigurationError as e:
                logger.warning("Skipping pattern %s: %s", pattern.id, e)
                continue

            if signals is None:
                continue

            raw_score = sum(s.score for s in signals) / len(signals)
            score = _clip(raw_score) * pattern.confidence_weight
            candidates.append(
                MatchCandidate(
                    pattern_id=pattern.id,
                    pattern_name=pattern.name,
                    score=score,
                    raw_score=raw_score,
                    priority_order=pattern.priority_order,
                    signals=tuple(signals),
                    reasons=tuple(f"{s.signal}_match ({s.detail})" for s in signals),
                    matcher=self.name,
                )
            )

        if not candidates:
            logger.debug("No pattern matched transaction %s", transaction.id)
            return [MatchCandidate.unknown(matcher=self.name)]

        ranked = rank_candidates(candidates)
        logger.debug(
            "Transaction %s: best pattern %s (score %.3f) of %d candidates",
            transaction.id,
            ranked[0].pattern_id,
            ranked[0].score,
            len(ranked),
        )
        return ranked

    def _evaluate(
        self, pattern: ProcessorPattern, transaction: Transaction
    ) -> Optional[list[MatchSignal]]:
        """Run all tests of a pattern. None means the pattern does not match."""
        signals: list[MatchSignal] = []

        if pattern.type == PatternType.COMPOSITE:
            if not pattern.conditions:
                raise ConfigurationError("COMPOSITE pattern without conditions", pattern.id)
            for condition in pattern.conditions:
                signal = self._evaluate_condition(condition, transaction)
                if signal is None:
                    return None
                signals.append(signal)
        else:
            signal = self._evaluate_condition(
                PatternCondition(
                    type=pattern.type,
                    search=pattern.search,
                    expected_amount=pattern.expected_amount,
                    amount_tolerance=pattern.amount_tolerance,
                ),
                transaction,
            )
            if signal is None:
                return None
            signals.append(signal)

        if pattern.expected_day is not None:
            day_signal = _score_day_of_month(
                transaction.transaction_date, pattern.expected_day, pattern.date_tolerance_days
            )
            if day_signal is None:
                return None
            signals.append(day_signal)

        return signals

    def _evaluate_condition(
        self, condition: PatternCondition, transaction: Transaction
    ) -> Optional[MatchSignal]:
        if condition.type == PatternType.DESCRIPTION:
            return _score_text("description", transaction.description, condition.search)
        if condition.type == PatternType.REFERENCE:
            text = transaction.reference or transaction.description
            return _score_text("reference", text, condition.search)
        if condition.type == PatternType.AMOUNT:
            return _score_amount(
                transaction.amount, condition.expected_amount, condition.amount_tolerance
            )
        raise ConfigurationError(f"unsupported condition type {condition.type.value}")


def _clip(value: float) -> float:
    return max(0.0, min(1.0, value))


def _score_text(signal: str, text: str, search: Optional[str]) -> Optional[MatchSignal]:
    """Score a search expression against a text field.

    Full containment scores 1.0. A plain keyword phrase that is not
    contained verbatim scores the fraction of its words present, if at
    least MIN_KEYWORD_FRACTION of them are.
    """
    if not search:
        raise ConfigurationError(f"{signal} test needs a search expression")
    if not text:
        return None

    regex = compile_search(search)
    if regex.search(text):
        return MatchSignal(signal=signal, score=1.0, detail=f"contains '{search}'")

    if is_plain_keyword(search):
        keywords = [w.lower() for w in _WORD_RE.findall(search)]
        if len(keywords) > 1:
            words = {w.lower() for w in _WORD_RE.findall(text)}
            present = sum(1 for k in keywords if k in words)
            fraction = present / len(keywords)
            if fraction >= MIN_KEYWORD_FRACTION:
                return MatchSignal(
                    signal=signal,
                    score=fraction,
                    detail=f"{present}/{len(keywords)} keywords",
                )

    return None


def _score_amount(
    amount: Decimal, expected: Optional[Decimal], tolerance: float
) -> Optional[MatchSignal]:
    """Score |amount| against the expected value.

    Exact → 1.0; relative distance d below tolerance → 1 - d / tolerance.
    At or beyond the tolerance bound the score would be 0, which is no match.
    """
    if expected is None:
        raise ConfigurationError("AMOUNT test needs expected_amount")

    actual = abs(amount)
    target = abs(expected)

    if actual == target:
        return MatchSignal(signal="amount", score=1.0, detail=f"exact: {actual}")
    if target == 0 or tolerance <= 0:
        return None

    distance = float(abs(actual - target) / target)
    if distance < tolerance:
        return MatchSignal(
            signal="amount",
            score=_clip(1.0 - distance / tolerance),
            detail=f"{distance:.2%} from {target}",
        )
    return None


def _score_day_of_month(
    tx_date: date, expected_day: int, tolerance_days: int
) -> Optional[MatchSignal]:
    """Score day-of-month proximity, wrapping around month ends.

    Normalized like amounts: 1 - diff / tolerance_days, no match at the bound.
    """
    days_in_month = calendar.monthrange(tx_date.year, tx_date.month)[1]
    target = min(expected_day, days_in_month)
    diff = abs(tx_date.day - target)
    diff = min(diff, days_in_month - diff)

    if diff == 0:
        return MatchSignal(signal="day_of_month", score=1.0, detail=f"day {tx_date.day}")
    if diff < tolerance_days:
        return MatchSignal(
            signal="day_of_month",
            score=1.0 - diff / tolerance_days,
            detail=f"{diff} days from day {target}",
        )
    return None
