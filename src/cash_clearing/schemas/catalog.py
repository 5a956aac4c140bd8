"""
Pattern catalog schema (SSOT).

The catalog holds two tables:
- processor patterns: how a transaction is recognised
- GL patterns: which GL account a recognised pattern posts to

A catalog is loaded once per run into an immutable PatternCatalog snapshot
that every worker shares without locking. Malformed entries are skipped
(ConfigurationError, logged); a catalog that cannot be read at all is a
FatalError.
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml

from ..errors import ConfigurationError, FatalError, ValidationError
from .transaction import parse_amount

logger = logging.getLogger(__name__)


class PatternType(str, Enum):
    """How a processor pattern tests a transaction."""

    REFERENCE = "REFERENCE"
    AMOUNT = "AMOUNT"
    DESCRIPTION = "DESCRIPTION"
    COMPOSITE = "COMPOSITE"


class DebitCredit(str, Enum):
    """Posting side of a GL entry."""

    DR = "DR"
    CR = "CR"


class AccountCategory(str, Enum):
    """GL account category. UNMAPPED marks a missing GL pattern."""

    ASSET = "ASSET"
    LIABILITY = "LIABILITY"
    REVENUE = "REVENUE"
    EXPENSE = "EXPENSE"
    EQUITY = "EQUITY"
    UNMAPPED = "UNMAPPED"


_REGEX_METACHARS = set(".^$*+?{}[]\\|()")


def is_plain_keyword(search: str) -> bool:
    """True if the search expression has no regex or LIKE syntax."""
    return not any(ch in _REGEX_METACHARS or ch in "%_" for ch in search)


@lru_cache(maxsize=1024)
def compile_search(search: str) -> re.Pattern:
    """Compile a search expression into a case-insensitive regex.

    Expressions containing ``%`` use SQL LIKE syntax (``%`` any run,
    ``_`` one character) as in the upstream pattern tables; everything
    else is a regular expression.

    Raises:
        ConfigurationError: If the expression does not compile.
    """
    if not search or not search.strip():
        raise ConfigurationError("empty search expression")

    if "%" in search:
        parts = []
        for ch in search.strip():
            if ch == "%":
                parts.append(".*")
            elif ch == "_":
                parts.append(".")
            else:
                parts.append(re.escape(ch))
        expression = "".join(parts)
    else:
        expression = search.strip()

    try:
        return re.compile(expression, re.IGNORECASE)
    except re.error as e:
        raise ConfigurationError(f"invalid search expression {search!r}: {e}") from e


def _unit_interval(value: Any, name: str, entry_id: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be a number, got {value!r}", entry_id) from e
    if not 0.0 <= number <= 1.0:
        raise ConfigurationError(f"{name} must be within [0, 1], got {number}", entry_id)
    return number


def _optional_amount(value: Any, name: str, entry_id: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return parse_amount(value)
    except ValidationError as e:
        raise ConfigurationError(f"{name}: {e}", entry_id) from e


@dataclass(frozen=True)
class PatternCondition:
    """One sub-test of a COMPOSITE pattern."""

    type: PatternType
    search: Optional[str] = None
    expected_amount: Optional[Decimal] = None
    amount_tolerance: float = 0.0

    def validate(self, entry_id: str) -> None:
        """Raise ConfigurationError if the condition cannot be evaluated."""
        if self.type == PatternType.COMPOSITE:
            raise ConfigurationError("nested COMPOSITE conditions are not supported", entry_id)
        if self.type in (PatternType.REFERENCE, PatternType.DESCRIPTION):
            if not self.search:
                raise ConfigurationError(f"{self.type.value} condition needs a search", entry_id)
            compile_search(self.search)
        if self.type == PatternType.AMOUNT and self.expected_amount is None:
            raise ConfigurationError("AMOUNT condition needs expected_amount", entry_id)
        if self.amount_tolerance < 0:
            raise ConfigurationError("amount_tolerance must be >= 0", entry_id)

    @classmethod
    def from_dict(cls, data: dict, entry_id: str, default_tolerance: float) -> "PatternCondition":
        """Create from dictionary."""
        if not isinstance(data, dict):
            raise ConfigurationError(f"condition must be a mapping, got {data!r}", entry_id)
        try:
            condition_type = PatternType(str(data.get("type", "")).upper())
        except ValueError as e:
            raise ConfigurationError(f"unknown condition type {data.get('type')!r}", entry_id) from e

        try:
            tolerance = float(data.get("amount_tolerance", default_tolerance))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid amount_tolerance: {e}", entry_id) from e

        condition = cls(
            type=condition_type,
            search=data.get("search"),
            expected_amount=_optional_amount(data.get("expected_amount"), "expected_amount", entry_id),
            amount_tolerance=tolerance,
        )
        condition.validate(entry_id)
        return condition

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "type": self.type.value,
            "search": self.search,
            "expected_amount": str(self.expected_amount) if self.expected_amount is not None else None,
            "amount_tolerance": self.amount_tolerance,
        }


@dataclass(frozen=True)
class ProcessorPattern:
    """A prioritized rule that recognises a class of transactions."""

    id: str
    name: str
    type: PatternType
    search: Optional[str] = None
    amount_tolerance: float = 0.0  # Fraction of expected_amount
    date_tolerance_days: int = 0
    confidence_weight: float = 1.0
    priority_order: int = 100  # Lower wins ties
    active: bool = True

    expected_amount: Optional[Decimal] = None
    expected_day: Optional[int] = None  # Day of month, checked within date_tolerance_days
    conditions: tuple[PatternCondition, ...] = ()

    # Optional scoping (pattern only applies to these transactions)
    account_id: Optional[str] = None
    type_code: Optional[str] = None

    def validate(self) -> None:
        """Raise ConfigurationError if the pattern cannot be evaluated."""
        if not self.id:
            raise ConfigurationError("pattern is missing an id")
        if not self.name:
            raise ConfigurationError("pattern is missing a name", self.id)
        if not 0.0 <= self.confidence_weight <= 1.0:
            raise ConfigurationError("confidence_weight must be within [0, 1]", self.id)
        if self.amount_tolerance < 0:
            raise ConfigurationError("amount_tolerance must be >= 0", self.id)
        if self.date_tolerance_days < 0:
            raise ConfigurationError("date_tolerance_days must be >= 0", self.id)
        if self.expected_day is not None and not 1 <= self.expected_day <= 31:
            raise ConfigurationError("expected_day must be within 1..31", self.id)

        if self.type in (PatternType.REFERENCE, PatternType.DESCRIPTION):
            if not self.search:
                raise ConfigurationError(f"{self.type.value} pattern needs a search", self.id)
            try:
                compile_search(self.search)
            except ConfigurationError as e:
                raise ConfigurationError(str(e), self.id) from e
        elif self.type == PatternType.AMOUNT:
            if self.expected_amount is None:
                raise ConfigurationError("AMOUNT pattern needs expected_amount", self.id)
        elif self.type == PatternType.COMPOSITE:
            if not self.conditions:
                raise ConfigurationError("COMPOSITE pattern needs at least one condition", self.id)
            for condition in self.conditions:
                condition.validate(self.id)

    def applies_to(self, account_id: str, type_code: Optional[str]) -> bool:
        """Check the optional account / type-code scope."""
        if self.account_id and self.account_id != account_id:
            return False
        if self.type_code and (type_code or "").upper() != self.type_code.upper():
            return False
        return True

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessorPattern":
        """Create from a catalog entry.

        Raises:
            ConfigurationError: If the entry is malformed.
        """
        if not isinstance(data, dict):
            raise ConfigurationError(f"pattern entry must be a mapping, got {data!r}")

        entry_id = str(data.get("id") or data.get("pattern_id") or "")
        if not entry_id:
            raise ConfigurationError("pattern is missing an id")

        raw_type = str(data.get("type", data.get("pattern_type", "DESCRIPTION"))).upper()
        try:
            pattern_type = PatternType(raw_type)
        except ValueError as e:
            raise ConfigurationError(f"unknown pattern type {raw_type!r}", entry_id) from e

        try:
            amount_tolerance = float(data.get("amount_tolerance", 0.0))
            date_tolerance_days = int(data.get("date_tolerance_days", 0))
            priority_order = int(data.get("priority_order", 100))
            expected_day = data.get("expected_day")
            expected_day = int(expected_day) if expected_day is not None else None
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid numeric field: {e}", entry_id) from e

        conditions = tuple(
            PatternCondition.from_dict(c, entry_id, amount_tolerance)
            for c in data.get("conditions") or []
        )

        pattern = cls(
            id=entry_id,
            name=str(data.get("name") or data.get("pattern_op") or ""),
            type=pattern_type,
            search=data.get("search", data.get("pattern_search")),
            amount_tolerance=amount_tolerance,
            date_tolerance_days=date_tolerance_days,
            confidence_weight=_unit_interval(
                data.get("confidence_weight", 1.0), "confidence_weight", entry_id
            ),
            priority_order=priority_order,
            active=bool(data.get("active", data.get("is_active", True))),
            expected_amount=_optional_amount(data.get("expected_amount"), "expected_amount", entry_id),
            expected_day=expected_day,
            conditions=conditions,
            account_id=data.get("account_id"),
            type_code=data.get("type_code"),
        )
        pattern.validate()
        return pattern

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "search": self.search,
            "amount_tolerance": self.amount_tolerance,
            "date_tolerance_days": self.date_tolerance_days,
            "confidence_weight": self.confidence_weight,
            "priority_order": self.priority_order,
            "active": self.active,
            "expected_amount": str(self.expected_amount) if self.expected_amount is not None else None,
            "expected_day": self.expected_day,
            "conditions": [c.to_dict() for c in self.conditions],
            "account_id": self.account_id,
            "type_code": self.type_code,
        }


@dataclass(frozen=True)
class GLPattern:
    """Mapping from a processor pattern to a GL account."""

    id: str
    pattern_id: str
    gl_account_code: str
    gl_account_name: Optional[str] = None
    debit_credit: DebitCredit = DebitCredit.DR
    account_category: AccountCategory = AccountCategory.ASSET
    mapping_confidence: float = 0.8
    auto_approve_threshold: float = 0.95
    requires_approval: bool = False
    ft_id: Optional[str] = None  # Posting template id
    active: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "GLPattern":
        """Create from a catalog entry.

        Raises:
            ConfigurationError: If the entry is malformed.
        """
        if not isinstance(data, dict):
            raise ConfigurationError(f"GL pattern entry must be a mapping, got {data!r}")

        entry_id = str(data.get("id") or data.get("gl_pattern_id") or "")
        if not entry_id:
            raise ConfigurationError("GL pattern is missing an id")

        pattern_id = data.get("pattern_id") or data.get("pattern")
        if not pattern_id:
            raise ConfigurationError("GL pattern is missing pattern_id", entry_id)

        gl_account = data.get("gl_account_code") or data.get("GL_ACCOUNT")
        if not gl_account:
            raise ConfigurationError("GL pattern is missing gl_account_code", entry_id)

        try:
            debit_credit = DebitCredit(str(data.get("debit_credit", "DR")).upper())
        except ValueError as e:
            raise ConfigurationError(
                f"debit_credit must be DR or CR, got {data.get('debit_credit')!r}", entry_id
            ) from e

        try:
            category = AccountCategory(str(data.get("account_category", "ASSET")).upper())
        except ValueError as e:
            raise ConfigurationError(
                f"unknown account_category {data.get('account_category')!r}", entry_id
            ) from e
        if category == AccountCategory.UNMAPPED:
            raise ConfigurationError("UNMAPPED is not a valid GL category", entry_id)

        return cls(
            id=entry_id,
            pattern_id=str(pattern_id),
            gl_account_code=str(gl_account),
            gl_account_name=data.get("gl_account_name"),
            debit_credit=debit_credit,
            account_category=category,
            mapping_confidence=_unit_interval(
                data.get("mapping_confidence", 0.8), "mapping_confidence", entry_id
            ),
            auto_approve_threshold=_unit_interval(
                data.get("auto_approve_threshold", 0.95), "auto_approve_threshold", entry_id
            ),
            requires_approval=bool(data.get("requires_approval", False)),
            ft_id=data.get("ft_id") or data.get("FT_ID"),
            active=bool(data.get("active", data.get("is_active", True))),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "pattern_id": self.pattern_id,
            "gl_account_code": self.gl_account_code,
            "gl_account_name": self.gl_account_name,
            "debit_credit": self.debit_credit.value,
            "account_category": self.account_category.value,
            "mapping_confidence": self.mapping_confidence,
            "auto_approve_threshold": self.auto_approve_threshold,
            "requires_approval": self.requires_approval,
            "ft_id": self.ft_id,
            "active": self.active,
        }


@dataclass(frozen=True)
class PatternCatalog:
    """Immutable snapshot of processor and GL patterns for one run."""

    patterns: tuple[ProcessorPattern, ...] = ()
    gl_patterns: tuple[GLPattern, ...] = ()
    skipped: tuple[str, ...] = ()  # Messages for entries dropped at load time
    _gl_index: dict = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.patterns, key=lambda p: (p.priority_order, p.id)))
        object.__setattr__(self, "patterns", ordered)

        index: dict[str, list[GLPattern]] = {}
        for gl in self.gl_patterns:
            if gl.active:
                index.setdefault(gl.pattern_id, []).append(gl)
        for mappings in index.values():
            mappings.sort(key=lambda g: (-g.mapping_confidence, g.id))
        object.__setattr__(self, "_gl_index", {k: tuple(v) for k, v in index.items()})

    @property
    def version(self) -> str:
        """Short content hash, changes whenever the catalog changes."""
        parts = [repr(p.to_dict()) for p in self.patterns]
        parts += [repr(g.to_dict()) for g in self.gl_patterns]
        return hashlib.sha256("|".join(parts).encode()).hexdigest()[:16]

    def active_patterns(self) -> tuple[ProcessorPattern, ...]:
        """Active patterns in ascending priority_order (then id)."""
        return tuple(p for p in self.patterns if p.active)

    def get_pattern(self, pattern_id: str) -> Optional[ProcessorPattern]:
        """Look up a processor pattern by id."""
        for pattern in self.patterns:
            if pattern.id == pattern_id:
                return pattern
        return None

    def gl_patterns_for(self, pattern_id: str) -> tuple[GLPattern, ...]:
        """Active GL patterns for a processor pattern, best mapping first."""
        return self._gl_index.get(pattern_id, ())

    @classmethod
    def from_dict(cls, data: Any) -> "PatternCatalog":
        """Build a catalog from parsed YAML/JSON.

        Malformed entries are skipped and logged. A document that is not a
        catalog at all raises FatalError.
        """
        if not isinstance(data, dict):
            raise FatalError("Corrupted catalog: expected a mapping at the top level")

        raw_patterns = data.get("patterns") or []
        raw_gl = data.get("gl_patterns") or []
        if not isinstance(raw_patterns, list) or not isinstance(raw_gl, list):
            raise FatalError("Corrupted catalog: 'patterns' and 'gl_patterns' must be lists")

        skipped: list[str] = []
        patterns: list[ProcessorPattern] = []
        seen_ids: set[str] = set()

        for entry in raw_patterns:
            try:
                pattern = ProcessorPattern.from_dict(entry)
                if pattern.id in seen_ids:
                    raise ConfigurationError("duplicate pattern id", pattern.id)
            except ConfigurationError as e:
                logger.warning("Skipping malformed catalog pattern: %s", e)
                skipped.append(str(e))
                continue
            seen_ids.add(pattern.id)
            patterns.append(pattern)

        gl_patterns: list[GLPattern] = []
        for entry in raw_gl:
            try:
                gl = GLPattern.from_dict(entry)
                if gl.pattern_id not in seen_ids:
                    raise ConfigurationError(f"unknown pattern_id '{gl.pattern_id}'", gl.id)
            except ConfigurationError as e:
                logger.warning("Skipping malformed GL pattern: %s", e)
                skipped.append(str(e))
                continue
            gl_patterns.append(gl)

        logger.info(
            "Loaded catalog: %d patterns, %d GL patterns, %d skipped",
            len(patterns),
            len(gl_patterns),
            len(skipped),
        )
        return cls(patterns=tuple(patterns), gl_patterns=tuple(gl_patterns), skipped=tuple(skipped))

    def to_dict(self) -> dict:
        """Convert to dictionary (round-trips through from_dict)."""
        return {
            "patterns": [p.to_dict() for p in self.patterns],
            "gl_patterns": [g.to_dict() for g in self.gl_patterns],
        }


def load_catalog(catalog_path: Path) -> PatternCatalog:
    """Load the pattern catalog snapshot from a YAML file.

    Raises:
        FatalError: If the file is missing or is not valid YAML.
    """
    if not catalog_path.exists():
        raise FatalError(f"Catalog file not found: {catalog_path}")

    try:
        with open(catalog_path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise FatalError(f"Corrupted catalog {catalog_path}: {e}") from e

    return PatternCatalog.from_dict(data)
