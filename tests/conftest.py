"""Test fixtures and utilities."""

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
import yaml

from cash_clearing.matching import RuleBasedMatcher
from cash_clearing.resolution import GLResolver
from cash_clearing.review import SuggestionBuilder
from cash_clearing.schemas.catalog import PatternCatalog
from cash_clearing.schemas.suggestion import Suggestion
from cash_clearing.schemas.transaction import Transaction
from cash_clearing.state_store import SqliteStateStore

SAMPLE_CATALOG = {
    "patterns": [
        {
            "id": "INCOME",
            "name": "Interest income",
            "type": "DESCRIPTION",
            "search": "INTEREST",
            "confidence_weight": 0.9,
            "priority_order": 10,
        },
        {
            "id": "PAYROLL",
            "name": "Payroll funding",
            "type": "COMPOSITE",
            "priority_order": 5,
            "conditions": [
                {"type": "DESCRIPTION", "search": "PAYROLL%"},
                {"type": "AMOUNT", "expected_amount": "10000", "amount_tolerance": 0.1},
            ],
        },
        {
            "id": "RENT",
            "name": "Office rent",
            "type": "AMOUNT",
            "expected_amount": "2500.00",
            "amount_tolerance": 0.02,
            "expected_day": 1,
            "date_tolerance_days": 3,
            "confidence_weight": 0.8,
            "priority_order": 20,
        },
        {
            "id": "INV_REF",
            "name": "Customer invoice payment",
            "type": "REFERENCE",
            "search": r"INV-\d{6}",
            "confidence_weight": 0.95,
            "priority_order": 30,
        },
        {
            "id": "CARD",
            "name": "Card settlement",
            "type": "DESCRIPTION",
            "search": "CARD SETTLEMENT VISA",
            "priority_order": 40,
        },
    ],
    "gl_patterns": [
        {
            "id": "GL_INCOME",
            "pattern_id": "INCOME",
            "gl_account_code": "4000",
            "gl_account_name": "Interest Income",
            "debit_credit": "CR",
            "account_category": "REVENUE",
            "mapping_confidence": 0.95,
            "auto_approve_threshold": 0.8,
        },
        {
            "id": "GL_PAYROLL",
            "pattern_id": "PAYROLL",
            "gl_account_code": "6000",
            "gl_account_name": "Payroll Clearing",
            "debit_credit": "DR",
            "account_category": "LIABILITY",
            "mapping_confidence": 0.99,
            "auto_approve_threshold": 0.5,
            "requires_approval": True,
        },
        {
            "id": "GL_RENT",
            "pattern_id": "RENT",
            "gl_account_code": "6100",
            "gl_account_name": "Rent Expense",
            "debit_credit": "DR",
            "account_category": "EXPENSE",
            "mapping_confidence": 0.9,
            "auto_approve_threshold": 0.95,
        },
        {
            "id": "GL_CARD",
            "pattern_id": "CARD",
            "gl_account_code": "1200",
            "gl_account_name": "Card Receivables",
            "debit_credit": "DR",
            "account_category": "ASSET",
            "mapping_confidence": 0.8,
            "auto_approve_threshold": 0.95,
        },
    ],
}


def make_transaction(
    tx_id: str = "BT001",
    amount: str = "500.00",
    description: str = "WIRE INTEREST PAYMENT",
    transaction_date: date = date(2024, 3, 15),
    account_id: str = "ACC-1",
    currency: str = "USD",
    **kwargs,
) -> Transaction:
    """Build an unresolved transaction with sensible defaults."""
    return Transaction(
        id=tx_id,
        amount=Decimal(amount),
        currency=currency,
        description=description,
        transaction_date=transaction_date,
        account_id=account_id,
        **kwargs,
    )


@pytest.fixture
def catalog_dict() -> dict:
    """Raw catalog document."""
    return SAMPLE_CATALOG


@pytest.fixture
def catalog() -> PatternCatalog:
    """Catalog snapshot built from the sample document."""
    return PatternCatalog.from_dict(SAMPLE_CATALOG)


@pytest.fixture
def catalog_file(tmp_path) -> Path:
    """Sample catalog written as YAML."""
    path = tmp_path / "catalog.yaml"
    path.write_text(yaml.safe_dump(SAMPLE_CATALOG))
    return path


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> SqliteStateStore:
    """A fresh state store with all migrations applied."""
    return SqliteStateStore(temp_db)


def build_suggestion(catalog: PatternCatalog, tx: Transaction, batch_id: str | None = None) -> Suggestion:
    """Run the rule pipeline for one transaction."""
    candidates = RuleBasedMatcher().match(tx, catalog)
    resolution = GLResolver(catalog).resolve(candidates[0])
    return SuggestionBuilder().build(
        tx, candidates[0], resolution, batch_id=batch_id, candidates=candidates
    )
