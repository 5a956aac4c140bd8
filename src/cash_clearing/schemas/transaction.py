"""
Canonical bank transaction object (SSOT).

Transactions are read-only to the engine except for the ``pattern`` field,
which starts as the ``T_NOTFOUND`` sentinel and is written exactly once
when a suggestion for the transaction is (auto-)approved.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from ..errors import ValidationError

UNRESOLVED_PATTERN = "T_NOTFOUND"


def parse_amount(value: Any) -> Decimal:
    """Parse an amount into Decimal, rejecting anything non-numeric."""
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValidationError(f"Invalid amount: {value!r}")
    try:
        if isinstance(value, str):
            cleaned = value.replace(",", "").replace("$", "").strip()
            result = Decimal(cleaned)
        else:
            result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount: {value!r}") from e
    if not result.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return result


def parse_date(value: Any) -> date:
    """Parse a YYYY-MM-DD string (or datetime/date) into a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Invalid transaction date: {value!r}")
    try:
        return date.fromisoformat(value[:10])
    except ValueError as e:
        raise ValidationError(f"Invalid transaction date: {value!r}") from e


@dataclass(frozen=True)
class Transaction:
    """A bank cash transaction awaiting classification."""

    id: str
    amount: Decimal
    currency: str
    description: str
    transaction_date: date
    account_id: str
    pattern: Optional[str] = UNRESOLVED_PATTERN
    source_system: Optional[str] = None
    type_code: Optional[str] = None  # Bank type code, e.g. "CREDIT"
    reference: Optional[str] = None  # Payment reference for REFERENCE patterns
    created_at: Optional[str] = None

    @property
    def is_unresolved(self) -> bool:
        """True while the upstream sentinel is still in place."""
        return self.pattern is None or self.pattern == UNRESOLVED_PATTERN

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "amount": str(self.amount),
            "currency": self.currency,
            "description": self.description,
            "transaction_date": self.transaction_date.isoformat(),
            "account_id": self.account_id,
            "pattern": self.pattern,
            "source_system": self.source_system,
            "type_code": self.type_code,
            "reference": self.reference,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Transaction":
        """Create from dictionary, validating required fields.

        Accepts the upstream upper-case column names (BT_ID, TEXT,
        TRANSACTION_AMOUNT, ...) as aliases.
        """
        tx_id = data.get("id") or data.get("bt_id") or data.get("BT_ID")
        if not tx_id:
            raise ValidationError("Transaction is missing an id")

        amount = data.get("amount", data.get("TRANSACTION_AMOUNT"))
        description = data.get("description", data.get("text", data.get("TEXT")))
        tx_date = data.get("transaction_date", data.get("TRANSACTION_DATE"))
        account_id = (
            data.get("account_id")
            or data.get("customer_account_number")
            or data.get("CUSTOMER_ACCOUNT_NUMBER")
            or ""
        )
        currency = (
            data.get("currency")
            or data.get("currency_code")
            or data.get("TRANSACTION_CURRENCY")
            or "USD"
        )

        return cls(
            id=str(tx_id),
            amount=parse_amount(amount),
            currency=str(currency).upper(),
            description=str(description or ""),
            transaction_date=parse_date(tx_date),
            account_id=str(account_id),
            pattern=data.get("pattern", UNRESOLVED_PATTERN),
            source_system=data.get("source_system"),
            type_code=data.get("type_code", data.get("TYPE_CODE")),
            reference=data.get("reference"),
            created_at=data.get("created_at"),
        )


@dataclass
class TransactionPage:
    """One page of unresolved transactions returned by a source."""

    transactions: list[Transaction] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False
    # (record id, error) for records that failed validation at the boundary
    rejected: list[tuple[str, str]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.transactions)
