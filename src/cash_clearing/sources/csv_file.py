"""
CSV import of unresolved transactions.

Accepts either the engine's own column names (id, amount, description, ...)
or the upstream export names (BT_ID, TEXT, TRANSACTION_AMOUNT, ...).
"""

import csv
import logging
from pathlib import Path

from ..errors import ValidationError
from ..schemas.transaction import Transaction

logger = logging.getLogger(__name__)


def read_transactions_csv(path: Path, source_system: str | None = None) -> tuple[list[Transaction], list[tuple[int, str]]]:
    """
    Read transactions from a CSV file.

    Args:
        path: CSV file with a header row
        source_system: Stamped on rows that do not name their source

    Returns:
        (transactions, errors) where errors are (line number, message)
    """
    transactions: list[Transaction] = []
    errors: list[tuple[int, str]] = []

    with open(path, newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        for line_no, row in enumerate(reader, start=2):
            record = {k.strip(): (v.strip() if isinstance(v, str) else v) for k, v in row.items() if k}
            record = {k: v for k, v in record.items() if v != ""}
            if source_system and "source_system" not in record:
                record["source_system"] = source_system
            try:
                transactions.append(Transaction.from_dict(record))
            except ValidationError as e:
                logger.warning("Skipping line %d of %s: %s", line_no, path, e)
                errors.append((line_no, str(e)))

    return transactions, errors
