"""
Services module.

Provides:
- BatchOrchestrator: paged, concurrent, checkpointed resolution runs
- CSV export of suggestions
"""

from .batch_processor import BatchOptions, BatchOrchestrator, CheckpointWriter, PageResult
from .exporter import EXPORT_COLUMNS, export_suggestions_csv, suggestion_to_row

__all__ = [
    "BatchOptions",
    "BatchOrchestrator",
    "CheckpointWriter",
    "PageResult",
    "EXPORT_COLUMNS",
    "export_suggestions_csv",
    "suggestion_to_row",
]
