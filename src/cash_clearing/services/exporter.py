"""
Results export.

Writes suggestions as CSV with a fixed column layout that downstream
posting jobs consume.
"""

import csv
import logging
from pathlib import Path

from ..schemas.suggestion import Suggestion

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "BT_ID",
    "TEXT",
    "TRANSACTION_AMOUNT",
    "TRANSACTION_CURRENCY",
    "AI_SUGGEST_TEXT",
    "AI_CONFIDENCE_SCORE",
    "AI_REASON",
    "AI_GL_ACCOUNT",
    "APPROVAL_STATUS",
    "UPDATED_AT",
]


def summarize_reasoning(suggestion: Suggestion) -> str:
    """One-line reasoning for the export column."""
    reasoning = suggestion.reasoning or {}
    selected = reasoning.get("selected") or {}
    parts = list(selected.get("reasons") or [])
    risk_factors = reasoning.get("risk_factors") or []
    if risk_factors:
        parts.append("risk: " + ", ".join(risk_factors))
    matcher = reasoning.get("matcher")
    if matcher:
        parts.insert(0, f"[{matcher}]")
    return "; ".join(parts)


def suggestion_to_row(suggestion: Suggestion) -> dict[str, str]:
    """Map a suggestion onto the export columns."""
    return {
        "BT_ID": suggestion.transaction_id,
        "TEXT": suggestion.description or "",
        "TRANSACTION_AMOUNT": str(suggestion.amount) if suggestion.amount is not None else "",
        "TRANSACTION_CURRENCY": suggestion.currency or "",
        "AI_SUGGEST_TEXT": suggestion.pattern_label,
        "AI_CONFIDENCE_SCORE": f"{suggestion.confidence_score:.4f}",
        "AI_REASON": summarize_reasoning(suggestion),
        "AI_GL_ACCOUNT": suggestion.gl_account_code or "",
        "APPROVAL_STATUS": suggestion.approval_status.value,
        "UPDATED_AT": suggestion.approved_at or suggestion.created_at or "",
    }


def export_suggestions_csv(suggestions: list[Suggestion], path: Path) -> Path:
    """
    Write suggestions to a CSV file.

    Args:
        suggestions: Suggestions in export order
        path: Target file; parent directories are created

    Returns:
        The written path
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        for suggestion in suggestions:
            writer.writerow(suggestion_to_row(suggestion))

    logger.info("Exported %d suggestions to %s", len(suggestions), path)
    return path
