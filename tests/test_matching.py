"""Tests for the rule-based matching engine."""

from __future__ import annotations

from datetime import date

import pytest

from cash_clearing.matching.engine import RuleBasedMatcher, rank_candidates
from cash_clearing.schemas.catalog import PatternCatalog
from cash_clearing.schemas.suggestion import MatchCandidate

from conftest import make_transaction


@pytest.fixture
def matcher() -> RuleBasedMatcher:
    return RuleBasedMatcher()


class TestDescriptionPatterns:
    """Tests for DESCRIPTION matching."""

    def test_interest_payment_matches_income(self, matcher, catalog) -> None:
        """Keyword contained in the text: raw 1.0, weighted by 0.9."""
        tx = make_transaction(description="WIRE INTEREST PAYMENT", amount="500")
        best = matcher.match(tx, catalog)[0]

        assert best.pattern_id == "INCOME"
        assert best.raw_score == 1.0
        assert best.score == pytest.approx(0.9)
        assert best.reasons == ("description_match (contains 'INTEREST')",)

    def test_partial_keyword_phrase(self, matcher, catalog) -> None:
        """Two of three keywords present scores 2/3."""
        tx = make_transaction(description="VISA CARD BATCH 0412", amount="812.40")
        best = matcher.match(tx, catalog)[0]

        assert best.pattern_id == "CARD"
        assert best.score == pytest.approx(2 / 3)
        assert "2/3 keywords" in best.reasons[0]

    def test_below_keyword_fraction_is_no_match(self, matcher, catalog) -> None:
        tx = make_transaction(description="VISA PAYMENT", amount="812.40")
        candidates = matcher.match(tx, catalog)
        assert all(c.pattern_id != "CARD" for c in candidates)


class TestNoMatch:
    """Tests for the UNKNOWN sentinel."""

    def test_unknown_vendor(self, matcher, catalog) -> None:
        tx = make_transaction(description="UNKNOWN VENDOR XYZ", amount="120.00")
        candidates = matcher.match(tx, catalog)

        assert len(candidates) == 1
        assert candidates[0].is_unknown
        assert candidates[0].score == 0.0
        assert candidates[0].matcher == "rules"

    def test_empty_catalog(self, matcher) -> None:
        tx = make_transaction()
        candidates = matcher.match(tx, PatternCatalog())
        assert candidates[0].is_unknown


class TestAmountPatterns:
    """Tests for AMOUNT matching and day-of-month proximity."""

    def test_exact_amount_on_expected_day(self, matcher, catalog) -> None:
        tx = make_transaction(description="ACH DEBIT", amount="-2500.00", transaction_date=date(2024, 4, 1))
        best = matcher.match(tx, catalog)[0]

        assert best.pattern_id == "RENT"
        assert best.raw_score == 1.0
        assert best.score == pytest.approx(0.8)
        assert [s.signal for s in best.signals] == ["amount", "day_of_month"]

    def test_amount_within_tolerance(self, matcher, catalog) -> None:
        """1% off with a 2% tolerance scores 0.5 on the amount signal."""
        tx = make_transaction(description="ACH DEBIT", amount="2525.00", transaction_date=date(2024, 4, 1))
        best = matcher.match(tx, catalog)[0]

        assert best.pattern_id == "RENT"
        assert best.signals[0].score == pytest.approx(0.5)
        assert best.raw_score == pytest.approx(0.75)

    def test_amount_outside_tolerance(self, matcher, catalog) -> None:
        tx = make_transaction(description="ACH DEBIT", amount="2600.00", transaction_date=date(2024, 4, 1))
        assert matcher.match(tx, catalog)[0].is_unknown

    def test_day_wraps_around_month_end(self, matcher, catalog) -> None:
        """March 30 is two days before April 1 of the cycle."""
        tx = make_transaction(description="ACH DEBIT", amount="2500.00", transaction_date=date(2024, 3, 30))
        best = matcher.match(tx, catalog)[0]

        assert best.pattern_id == "RENT"
        assert best.signals[1].score == pytest.approx(1 - 2 / 3)

    def test_day_outside_tolerance(self, matcher, catalog) -> None:
        tx = make_transaction(description="ACH DEBIT", amount="2500.00", transaction_date=date(2024, 3, 15))
        assert matcher.match(tx, catalog)[0].is_unknown

    def test_amount_at_tolerance_bound_is_no_match(self, matcher, catalog) -> None:
        """Exactly 2% off scores zero, so the pattern does not match at all."""
        tx = make_transaction(description="ACH DEBIT", amount="2550.00", transaction_date=date(2024, 4, 1))
        candidates = matcher.match(tx, catalog)

        assert candidates[0].is_unknown
        assert all(c.score > 0 for c in candidates if not c.is_unknown)

    def test_day_at_tolerance_bound_is_no_match(self, matcher, catalog) -> None:
        """March 29 is three days from April 1, the tolerance bound."""
        tx = make_transaction(description="ACH DEBIT", amount="2500.00", transaction_date=date(2024, 3, 29))
        assert matcher.match(tx, catalog)[0].is_unknown


class TestCompositeAndReference:
    """Tests for COMPOSITE and REFERENCE patterns."""

    def test_composite_requires_all_conditions(self, matcher, catalog) -> None:
        tx = make_transaction(description="PAYROLL FUNDING MARCH", amount="10000.00")
        best = matcher.match(tx, catalog)[0]
        assert best.pattern_id == "PAYROLL"
        assert best.score == pytest.approx(1.0)

        wrong_amount = make_transaction(description="PAYROLL FUNDING MARCH", amount="20000.00")
        assert matcher.match(wrong_amount, catalog)[0].is_unknown

    def test_reference_uses_reference_field(self, matcher, catalog) -> None:
        tx = make_transaction(description="INCOMING WIRE", amount="1234.00", reference="INV-004211")
        best = matcher.match(tx, catalog)[0]

        assert best.pattern_id == "INV_REF"
        assert best.score == pytest.approx(0.95)

    def test_reference_falls_back_to_description(self, matcher, catalog) -> None:
        tx = make_transaction(description="PMT INV-004211 THANK YOU", amount="1234.00")
        assert matcher.match(tx, catalog)[0].pattern_id == "INV_REF"


class TestRanking:
    """Tests for candidate ordering."""

    def test_ties_broken_by_priority_order(self, matcher) -> None:
        catalog = PatternCatalog.from_dict(
            {
                "patterns": [
                    {"id": "B_LATE", "name": "Late", "search": "FEE", "priority_order": 50},
                    {"id": "A_EARLY", "name": "Early", "search": "FEE", "priority_order": 10},
                ]
            }
        )
        candidates = matcher.match(make_transaction(description="MONTHLY FEE"), catalog)
        assert [c.pattern_id for c in candidates] == ["A_EARLY", "B_LATE"]

    def test_higher_score_wins_over_priority(self, matcher, catalog) -> None:
        """INCOME (0.9) beats a partial CARD match even though both apply."""
        tx = make_transaction(description="INTEREST ON CARD SETTLEMENT", amount="10")
        candidates = matcher.match(tx, catalog)
        assert candidates[0].pattern_id == "INCOME"
        assert candidates[1].pattern_id == "CARD"

    def test_inactive_patterns_ignored(self, matcher) -> None:
        catalog = PatternCatalog.from_dict(
            {"patterns": [{"id": "OFF", "name": "Off", "search": "FEE", "active": False}]}
        )
        assert matcher.match(make_transaction(description="FEE"), catalog)[0].is_unknown

    def test_deterministic(self, matcher, catalog) -> None:
        tx = make_transaction(description="INTEREST ON CARD SETTLEMENT", amount="10")
        assert matcher.match(tx, catalog) == matcher.match(tx, catalog)

    def test_rank_candidates_ordering(self) -> None:
        a = MatchCandidate("A", "A", 0.5, 0.5, 10)
        b = MatchCandidate("B", "B", 0.9, 0.9, 99)
        c = MatchCandidate("C", "C", 0.5, 0.5, 1)
        assert [x.pattern_id for x in rank_candidates([a, b, c])] == ["B", "C", "A"]
