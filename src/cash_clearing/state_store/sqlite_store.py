"""
SQLite-based state store implementation.

Tables:
- cash_transactions: Bank transactions (pattern T_NOTFOUND until resolved)
- suggestions: Append-only suggestion audit trail
- batch_runs / batch_items: Run checkpoints and per-transaction accounting
- audit_log: Approval transitions

Every public method opens its own connection, so one store instance can be
shared by the orchestrator's worker threads.
"""

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..errors import TransientIOError
from ..schemas.run import BatchError, BatchRun, BatchStatus, RunCounts
from ..schemas.suggestion import ApprovalStatus, Suggestion
from ..schemas.transaction import UNRESOLVED_PATTERN, Transaction
from .base import PersistenceSink

logger = logging.getLogger(__name__)

# SQL ordering of business priority, most urgent first
_PRIORITY_ORDER_SQL = """
    CASE business_priority
        WHEN 'CRITICAL' THEN 0
        WHEN 'HIGH' THEN 1
        WHEN 'MEDIUM' THEN 2
        ELSE 3
    END
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class SqliteStateStore(PersistenceSink):
    """
    SQLite-based state store for the engine.

    Provides persistent tracking of:
    - Unresolved cash transactions (also the bundled transaction source)
    - Suggestions, including superseded ones
    - Batch runs with their checkpoints
    - Approval audit log
    """

    def __init__(self, db_path: Path | str, run_migrations: bool = True, timeout: float = 30.0):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
            timeout: Seconds to wait on a locked database before failing
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions.

        A locked/busy database surfaces as TransientIOError so callers can
        retry at page granularity.
        """
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise TransientIOError(f"State store busy: {e}") from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cash_transactions (
                    id TEXT PRIMARY KEY,
                    amount TEXT NOT NULL,  -- Decimal as string
                    currency TEXT NOT NULL,
                    description TEXT,
                    transaction_date TEXT NOT NULL,
                    account_id TEXT,
                    pattern TEXT DEFAULT 'T_NOTFOUND',
                    source_system TEXT,
                    type_code TEXT,
                    reference TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS suggestions (
                    id TEXT PRIMARY KEY,
                    transaction_id TEXT NOT NULL,
                    pattern_matched TEXT,
                    gl_account_code TEXT,
                    gl_account_name TEXT,
                    debit_credit TEXT,
                    account_category TEXT,
                    confidence_score REAL NOT NULL
                        CHECK (confidence_score >= 0 AND confidence_score <= 1),
                    approval_status TEXT NOT NULL,
                    reasoning TEXT,  -- JSON trace
                    risk_score REAL,
                    business_priority TEXT,
                    amount TEXT,
                    currency TEXT,
                    description TEXT,
                    rejection_reason TEXT,
                    batch_id TEXT,
                    created_at TEXT NOT NULL,
                    approved_by TEXT,
                    approved_at TEXT,
                    version INTEGER NOT NULL DEFAULT 1
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_cash_transactions_pattern ON cash_transactions(pattern)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_suggestions_transaction ON suggestions(transaction_id)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_suggestions_batch ON suggestions(batch_id)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_suggestions_status ON suggestions(approval_status)"
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            MigrationRunner(conn).upgrade()
        finally:
            conn.close()

    # === Transaction Methods ===

    def upsert_transactions(self, transactions: Iterable[Transaction]) -> int:
        """Insert transactions; existing ids are left untouched. Returns inserted count."""
        now = _utc_now()
        inserted = 0
        with self._transaction() as conn:
            for tx in transactions:
                cursor = conn.execute(
                    """
                    INSERT INTO cash_transactions
                    (id, amount, currency, description, transaction_date, account_id,
                     pattern, source_system, type_code, reference, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO NOTHING
                """,
                    (
                        tx.id,
                        str(tx.amount),
                        tx.currency,
                        tx.description,
                        tx.transaction_date.isoformat(),
                        tx.account_id,
                        tx.pattern or UNRESOLVED_PATTERN,
                        tx.source_system,
                        tx.type_code,
                        tx.reference,
                        tx.created_at or now,
                    ),
                )
                inserted += cursor.rowcount
        return inserted

    def get_transaction(self, transaction_id: str) -> Transaction | None:
        """Get a transaction by ID."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM cash_transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            return Transaction.from_dict(dict(row)) if row else None

    def fetch_unresolved_transactions(self, after_id: Optional[str], limit: int) -> list[Transaction]:
        """Keyset page of unresolved transactions ordered by id."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM cash_transactions
                WHERE (pattern = ? OR pattern IS NULL) AND id > ?
                ORDER BY id
                LIMIT ?
            """,
                (UNRESOLVED_PATTERN, after_id or "", limit),
            ).fetchall()
            return [Transaction.from_dict(dict(row)) for row in rows]

    def count_unresolved_transactions(self) -> int:
        """Count transactions still carrying the unresolved sentinel."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) as count FROM cash_transactions WHERE pattern = ? OR pattern IS NULL",
                (UNRESOLVED_PATTERN,),
            ).fetchone()
            return row["count"] if row else 0

    def _resolve_transaction(
        self, conn: sqlite3.Connection, transaction_id: str, pattern: str, suggestion_id: str, now: str
    ) -> bool:
        """Write the transaction's pattern; only ever replaces the sentinel."""
        cursor = conn.execute(
            """
            UPDATE cash_transactions
            SET pattern = ?, resolved_at = ?, resolved_by_suggestion = ?
            WHERE id = ? AND (pattern = ? OR pattern IS NULL)
        """,
            (pattern, now, suggestion_id, transaction_id, UNRESOLVED_PATTERN),
        )
        return cursor.rowcount == 1

    # === Suggestion Methods ===

    def persist_suggestions(self, suggestions: list[Suggestion], batch_id: Optional[str] = None) -> int:
        """Persist a page of suggestions in one database transaction."""
        if not suggestions:
            return 0

        now = _utc_now()
        with self._transaction() as conn:
            for suggestion in suggestions:
                superseded = conn.execute(
                    """
                    UPDATE suggestions
                    SET superseded_by = ?, superseded_at = ?, version = version + 1
                    WHERE transaction_id = ? AND id != ?
                      AND approval_status = ? AND superseded_by IS NULL
                """,
                    (
                        suggestion.id,
                        now,
                        suggestion.transaction_id,
                        suggestion.id,
                        ApprovalStatus.PENDING.value,
                    ),
                ).rowcount
                if superseded:
                    logger.info(
                        "Suggestion %s supersedes %d pending suggestion(s) for transaction %s",
                        suggestion.id,
                        superseded,
                        suggestion.transaction_id,
                    )

                conn.execute(
                    """
                    INSERT INTO suggestions
                    (id, transaction_id, pattern_matched, gl_account_code, gl_account_name,
                     debit_credit, account_category, confidence_score, approval_status,
                     reasoning, risk_score, business_priority, amount, currency, description,
                     rejection_reason, batch_id, created_at, approved_by, approved_at, version)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        suggestion.id,
                        suggestion.transaction_id,
                        suggestion.pattern_matched,
                        suggestion.gl_account_code,
                        suggestion.gl_account_name,
                        suggestion.debit_credit,
                        suggestion.account_category,
                        suggestion.confidence_score,
                        suggestion.approval_status.value,
                        json.dumps(suggestion.reasoning),
                        suggestion.risk_score,
                        suggestion.business_priority.value,
                        str(suggestion.amount) if suggestion.amount is not None else None,
                        suggestion.currency,
                        suggestion.description,
                        suggestion.rejection_reason,
                        suggestion.batch_id or batch_id,
                        suggestion.created_at or now,
                        suggestion.approved_by,
                        suggestion.approved_at,
                        suggestion.version,
                    ),
                )

                if (
                    suggestion.approval_status == ApprovalStatus.AUTO_APPROVED
                    and suggestion.pattern_matched
                ):
                    self._resolve_transaction(
                        conn, suggestion.transaction_id, suggestion.pattern_matched, suggestion.id, now
                    )

                if batch_id:
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO batch_items
                        (batch_id, transaction_id, suggestion_id, status, error, created_at)
                        VALUES (?, ?, ?, 'SUCCEEDED', NULL, ?)
                    """,
                        (batch_id, suggestion.transaction_id, suggestion.id, now),
                    )

        return len(suggestions)

    def get_suggestion(self, suggestion_id: str) -> Suggestion | None:
        """Get a suggestion by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM suggestions WHERE id = ?", (suggestion_id,)).fetchone()
            return Suggestion.from_dict(dict(row)) if row else None

    def get_suggestions_for_transaction(self, transaction_id: str) -> list[Suggestion]:
        """All suggestions of a transaction, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM suggestions WHERE transaction_id = ? ORDER BY created_at, rowid",
                (transaction_id,),
            ).fetchall()
            return [Suggestion.from_dict(dict(row)) for row in rows]

    def get_active_suggestion(self, transaction_id: str) -> Suggestion | None:
        """The PENDING, non-superseded suggestion of a transaction, if any."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM suggestions
                WHERE transaction_id = ? AND approval_status = ? AND superseded_by IS NULL
            """,
                (transaction_id, ApprovalStatus.PENDING.value),
            ).fetchone()
            return Suggestion.from_dict(dict(row)) if row else None

    def get_pending_suggestions(self, limit: Optional[int] = None) -> list[Suggestion]:
        """Active PENDING suggestions, by business priority then risk."""
        query = f"""
            SELECT * FROM suggestions
            WHERE approval_status = ? AND superseded_by IS NULL
            ORDER BY {_PRIORITY_ORDER_SQL}, risk_score DESC, created_at, id
        """
        params: list[Any] = [ApprovalStatus.PENDING.value]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [Suggestion.from_dict(dict(row)) for row in rows]

    def get_suggestions_for_batch(self, batch_id: str) -> list[Suggestion]:
        """Suggestions created by a run, in creation order."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM suggestions WHERE batch_id = ? ORDER BY created_at, rowid",
                (batch_id,),
            ).fetchall()
            return [Suggestion.from_dict(dict(row)) for row in rows]

    def transition_suggestion(
        self,
        suggestion_id: str,
        expected_version: int,
        new_status: ApprovalStatus,
        actor: str,
        reason: Optional[str] = None,
        audit_action: Optional[str] = None,
    ) -> bool:
        """
        Move a PENDING suggestion to a terminal status.

        The UPDATE is conditional on the version read by the caller, so a
        concurrent transition makes this return False without mutating.
        Approval also writes the transaction's pattern. The audit entry is
        written in the same database transaction.
        """
        now = _utc_now()
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT transaction_id, pattern_matched, approval_status FROM suggestions WHERE id = ?",
                (suggestion_id,),
            ).fetchone()
            if row is None:
                return False

            cursor = conn.execute(
                """
                UPDATE suggestions
                SET approval_status = ?, approved_by = ?, approved_at = ?,
                    rejection_reason = ?, version = version + 1
                WHERE id = ? AND version = ? AND approval_status = ? AND superseded_by IS NULL
            """,
                (
                    new_status.value,
                    actor,
                    now,
                    reason if new_status == ApprovalStatus.REJECTED else None,
                    suggestion_id,
                    expected_version,
                    ApprovalStatus.PENDING.value,
                ),
            )
            if cursor.rowcount != 1:
                return False

            if new_status == ApprovalStatus.APPROVED and row["pattern_matched"]:
                self._resolve_transaction(
                    conn, row["transaction_id"], row["pattern_matched"], suggestion_id, now
                )

            conn.execute(
                """
                INSERT INTO audit_log
                (suggestion_id, action, actor, reason, previous_status, new_status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    suggestion_id,
                    audit_action or new_status.value,
                    actor,
                    reason,
                    row["approval_status"],
                    new_status.value,
                    now,
                ),
            )
            return True

    def get_audit_log(self, suggestion_id: Optional[str] = None, limit: int = 100) -> list[dict[str, Any]]:
        """Audit entries, newest first."""
        with self._transaction() as conn:
            if suggestion_id:
                rows = conn.execute(
                    "SELECT * FROM audit_log WHERE suggestion_id = ? ORDER BY id DESC LIMIT ?",
                    (suggestion_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            return [dict(row) for row in rows]

    # === Batch Run Methods ===

    def create_run(self, batch_id: str, total: int, options: Optional[dict] = None) -> BatchRun:
        """Register a new RUNNING run."""
        now = _utc_now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO batch_runs
                (batch_id, status, total, processed, succeeded, failed, cursor, errors,
                 options, started_at, updated_at)
                VALUES (?, ?, ?, 0, 0, 0, NULL, '[]', ?, ?, ?)
            """,
                (batch_id, BatchStatus.RUNNING.value, total, json.dumps(options or {}), now, now),
            )
        return BatchRun(
            batch_id=batch_id,
            status=BatchStatus.RUNNING,
            total=total,
            started_at=now,
            options=options or {},
        )

    def get_run(self, batch_id: str) -> BatchRun | None:
        """Load a run, or None if unknown."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM batch_runs WHERE batch_id = ?", (batch_id,)).fetchone()
            return self._run_from_row(row) if row else None

    def list_runs(self, limit: int = 20) -> list[BatchRun]:
        """Most recent runs first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM batch_runs ORDER BY started_at DESC LIMIT ?", (limit,)
            ).fetchall()
            return [self._run_from_row(row) for row in rows]

    def resume_run(self, batch_id: str) -> BatchRun:
        """Mark an existing run RUNNING again."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE batch_runs SET status = ?, completed_at = NULL, updated_at = ?
                WHERE batch_id = ?
            """,
                (BatchStatus.RUNNING.value, _utc_now(), batch_id),
            )
        run = self.get_run(batch_id)
        if run is None:
            raise LookupError(f"Unknown batch run '{batch_id}'")
        return run

    def persist_checkpoint(
        self,
        batch_id: str,
        cursor: Optional[str],
        counts: RunCounts,
        errors: Optional[list[BatchError]] = None,
    ) -> None:
        """Commit cursor and cumulative counters."""
        with self._transaction() as conn:
            if errors is None:
                conn.execute(
                    """
                    UPDATE batch_runs
                    SET cursor = ?, processed = ?, succeeded = ?, failed = ?, updated_at = ?
                    WHERE batch_id = ?
                """,
                    (cursor, counts.processed, counts.succeeded, counts.failed, _utc_now(), batch_id),
                )
            else:
                conn.execute(
                    """
                    UPDATE batch_runs
                    SET cursor = ?, processed = ?, succeeded = ?, failed = ?, errors = ?,
                        updated_at = ?
                    WHERE batch_id = ?
                """,
                    (
                        cursor,
                        counts.processed,
                        counts.succeeded,
                        counts.failed,
                        json.dumps([e.to_dict() for e in errors]),
                        _utc_now(),
                        batch_id,
                    ),
                )

    def finish_run(
        self, batch_id: str, status: BatchStatus, errors: Optional[list[BatchError]] = None
    ) -> None:
        """Set the final status; COMPLETED and FAILED also stamp completed_at."""
        now = _utc_now()
        completed_at = now if status in (BatchStatus.COMPLETED, BatchStatus.FAILED) else None
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE batch_runs
                SET status = ?, completed_at = ?, updated_at = ?,
                    errors = COALESCE(?, errors)
                WHERE batch_id = ?
            """,
                (
                    status.value,
                    completed_at,
                    now,
                    json.dumps([e.to_dict() for e in errors]) if errors is not None else None,
                    batch_id,
                ),
            )

    def record_failed_items(self, batch_id: str, failures: list[tuple[str, str]]) -> None:
        """Record transactions that failed within a run."""
        if not failures:
            return
        now = _utc_now()
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO batch_items
                (batch_id, transaction_id, suggestion_id, status, error, created_at)
                VALUES (?, ?, NULL, 'FAILED', ?, ?)
            """,
                [(batch_id, tx_id, error, now) for tx_id, error in failures],
            )

    def get_processed_ids(self, batch_id: str) -> set[str]:
        """Transaction ids already accounted for (succeeded or failed) in a run."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT transaction_id FROM batch_items WHERE batch_id = ?", (batch_id,)
            ).fetchall()
            return {row["transaction_id"] for row in rows}

    @staticmethod
    def _run_from_row(row: sqlite3.Row) -> BatchRun:
        errors = json.loads(row["errors"]) if row["errors"] else []
        return BatchRun(
            batch_id=row["batch_id"],
            status=BatchStatus(row["status"]),
            total=row["total"],
            processed=row["processed"],
            succeeded=row["succeeded"],
            failed=row["failed"],
            cursor=row["cursor"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            errors=[BatchError.from_dict(e) for e in errors],
            options=json.loads(row["options"]) if row["options"] else {},
        )

    # === Export ===

    def export_results(self, batch_id: str, path: Path) -> Path:
        """Write the run's suggestions to a CSV file."""
        from ..services.exporter import export_suggestions_csv

        suggestions = self.get_suggestions_for_batch(batch_id)
        return export_suggestions_csv(suggestions, path)

    # Statistics

    def get_stats(self) -> dict[str, Any]:
        """Get engine statistics."""
        with self._transaction() as conn:
            unresolved = conn.execute(
                "SELECT COUNT(*) as count FROM cash_transactions WHERE pattern = ? OR pattern IS NULL",
                (UNRESOLVED_PATTERN,),
            ).fetchone()
            transactions = conn.execute("SELECT COUNT(*) as count FROM cash_transactions").fetchone()
            by_status = conn.execute(
                """
                SELECT approval_status, COUNT(*) as count FROM suggestions
                WHERE superseded_by IS NULL
                GROUP BY approval_status
            """
            ).fetchall()
            superseded = conn.execute(
                "SELECT COUNT(*) as count FROM suggestions WHERE superseded_by IS NOT NULL"
            ).fetchone()
            runs = conn.execute("SELECT COUNT(*) as count FROM batch_runs").fetchone()

            status_counts = {row["approval_status"]: row["count"] for row in by_status}
            return {
                "transactions_total": transactions["count"] if transactions else 0,
                "transactions_unresolved": unresolved["count"] if unresolved else 0,
                "suggestions_pending": status_counts.get(ApprovalStatus.PENDING.value, 0),
                "suggestions_approved": status_counts.get(ApprovalStatus.APPROVED.value, 0),
                "suggestions_auto_approved": status_counts.get(ApprovalStatus.AUTO_APPROVED.value, 0),
                "suggestions_rejected": status_counts.get(ApprovalStatus.REJECTED.value, 0),
                "suggestions_superseded": superseded["count"] if superseded else 0,
                "batch_runs": runs["count"] if runs else 0,
            }
