"""Tests for the batch orchestrator."""

from __future__ import annotations

import sqlite3
from contextlib import closing
from typing import Optional

import pytest

from cash_clearing.errors import FatalError, TransientIOError
from cash_clearing.matching import RuleBasedMatcher
from cash_clearing.schemas.run import BatchError, BatchStatus, RunCounts
from cash_clearing.schemas.suggestion import ApprovalStatus
from cash_clearing.schemas.transaction import TransactionPage
from cash_clearing.services import BatchOptions, BatchOrchestrator, CheckpointWriter, PageResult
from cash_clearing.sources import SqliteTransactionSource, TransactionSource
from cash_clearing.state_store import SqliteStateStore

from conftest import make_transaction


class RecordingSource(SqliteTransactionSource):
    """Records the size of every page handed out."""

    def __init__(self, store):
        super().__init__(store)
        self.page_sizes: list[int] = []
        self.closed = False

    def fetch_unmatched(self, cursor, page_size):
        page = super().fetch_unmatched(cursor, page_size)
        self.page_sizes.append(len(page))
        return page

    def close(self):
        self.closed = True


class ScriptedSource(TransactionSource):
    """Returns (or raises) a fixed sequence of pages."""

    def __init__(self, pages):
        self.pages = pages
        self.calls = 0

    def fetch_unmatched(self, cursor, page_size):
        item = self.pages[min(self.calls, len(self.pages) - 1)]
        self.calls += 1
        if isinstance(item, BaseException):
            raise item
        return item

    def count(self):
        return sum(len(p) for p in self.pages if isinstance(p, TransactionPage))


class PoisonedStore(SqliteStateStore):
    """Fails persist_suggestions for any page containing a poisoned transaction."""

    def __init__(self, db_path, poison: set[str], error: Optional[Exception] = None):
        super().__init__(db_path)
        self.poison = poison
        self.error = error or TransientIOError("disk I/O error")
        self.persist_calls = 0

    def persist_suggestions(self, suggestions, batch_id=None):
        if any(s.transaction_id in self.poison for s in suggestions):
            self.persist_calls += 1
            raise self.error
        return super().persist_suggestions(suggestions, batch_id)


class UnwritableCheckpointStore(SqliteStateStore):
    """Store whose checkpoint (and optionally run finish) writes always fail."""

    def __init__(self, db_path, fail_finish: bool = False):
        super().__init__(db_path)
        self.fail_finish = fail_finish
        self.checkpoint_calls = 0

    def persist_checkpoint(self, batch_id, cursor, counts, errors=None):
        self.checkpoint_calls += 1
        raise TransientIOError("disk full")

    def finish_run(self, batch_id, status, errors=None):
        if self.fail_finish:
            raise TransientIOError("disk full")
        return super().finish_run(batch_id, status, errors)


class CheckpointLog:
    """Sink stand-in that records every checkpoint written."""

    def __init__(self):
        self.checkpoints: list[tuple[Optional[str], RunCounts]] = []

    def persist_checkpoint(self, batch_id, cursor, counts, errors=None):
        self.checkpoints.append((cursor, counts))


class TrackingMatcher(RuleBasedMatcher):
    """Rule matcher that can fail on chosen ids, cancel the run and record close()."""

    def __init__(self, fail_ids=(), cancel_after: Optional[int] = None):
        self.fail_ids = set(fail_ids)
        self.cancel_after = cancel_after
        self.orchestrator: Optional[BatchOrchestrator] = None
        self.calls = 0
        self.closed = False

    def match(self, transaction, catalog):
        self.calls += 1
        if self.cancel_after is not None and self.calls == self.cancel_after:
            self.orchestrator.cancel()
        if transaction.id in self.fail_ids:
            raise ValueError(f"cannot score {transaction.id}")
        return super().match(transaction, catalog)

    def close(self):
        self.closed = True


def seed(store, count: int, description: str = "NOTHING TO SEE") -> list[str]:
    ids = [f"BT{i:02d}" for i in range(count)]
    store.upsert_transactions([make_transaction(tx_id, description=description) for tx_id in ids])
    return ids


def orchestrate(store, catalog, source=None, matcher=None, **options) -> BatchOrchestrator:
    options.setdefault("retry_backoff_seconds", 0.0)
    return BatchOrchestrator(
        source=source or SqliteTransactionSource(store),
        sink=store,
        matcher=matcher or RuleBasedMatcher(),
        catalog=catalog,
        options=BatchOptions(**options),
        sleep=lambda _: None,
    )


class TestPaging:
    """Tests for paging and accounting."""

    def test_twelve_transactions_in_pages_of_five(self, store, catalog):
        seed(store, 12)
        source = RecordingSource(store)

        summary = orchestrate(store, catalog, source=source, batch_size=5, concurrency=2).run()

        assert summary.status == BatchStatus.COMPLETED
        assert summary.processed == 12
        assert summary.succeeded == 12
        assert summary.failed == 0
        assert summary.batches == 3
        assert source.page_sizes == [5, 5, 2]
        assert source.closed is True

        run = store.get_run(summary.batch_id)
        assert run.status == BatchStatus.COMPLETED
        assert run.processed == 12
        assert run.cursor == "BT11"
        assert run.completed_at is not None

    def test_processed_equals_succeeded_plus_failed(self, store, catalog):
        seed(store, 9)
        matcher = TrackingMatcher(fail_ids={"BT03", "BT07"})

        summary = orchestrate(store, catalog, matcher=matcher, batch_size=4, concurrency=3).run()

        assert summary.processed == 9
        assert summary.failed == 2
        assert summary.succeeded == 7
        assert summary.processed == summary.succeeded + summary.failed
        assert summary.errors == []
        assert store.get_processed_ids(summary.batch_id) == {f"BT{i:02d}" for i in range(9)}

    def test_daily_limit_caps_the_run(self, store, catalog):
        seed(store, 12)
        source = RecordingSource(store)

        summary = orchestrate(store, catalog, source=source, batch_size=5, daily_limit=7).run()

        assert summary.status == BatchStatus.COMPLETED
        assert summary.processed == 7
        assert source.page_sizes == [5, 2]

    def test_empty_source(self, store, catalog):
        summary = orchestrate(store, catalog).run()

        assert summary.status == BatchStatus.COMPLETED
        assert summary.processed == 0
        assert summary.batches == 0

    def test_auto_approved_and_unmatched_counts(self, store, catalog):
        store.upsert_transactions(
            [
                make_transaction("A1", description="WIRE INTEREST PAYMENT"),
                make_transaction("A2", description="INTEREST CREDIT"),
                make_transaction("U1", description="UNKNOWN VENDOR XYZ"),
            ]
        )

        summary = orchestrate(store, catalog, batch_size=2).run()

        assert summary.auto_approved == 2
        assert summary.unmatched == 1
        assert store.get_transaction("A1").pattern == "INCOME"
        assert store.get_active_suggestion("U1").approval_status == ApprovalStatus.PENDING

    def test_invalid_options(self, store, catalog):
        with pytest.raises(ValueError, match="batch_size"):
            orchestrate(store, catalog, batch_size=0).run()


class TestDryRun:
    """Dry runs report and change nothing."""

    def test_dry_run_mutates_nothing(self, store, catalog):
        seed(store, 12)

        summary = orchestrate(store, catalog, dry_run=True, daily_limit=10).run()

        assert summary.dry_run is True
        assert summary.would_process == 10
        assert summary.processed == 0
        assert store.list_runs() == []
        assert store.get_pending_suggestions() == []
        assert store.count_unresolved_transactions() == 12


class TestFailures:
    """Page-level isolation and fatal errors."""

    def test_failing_page_is_recorded_and_run_continues(self, temp_db, catalog):
        store = PoisonedStore(temp_db, poison={"BT06"})
        seed(store, 12)

        summary = orchestrate(store, catalog, batch_size=5, concurrency=2, max_retries=2).run()

        assert summary.status == BatchStatus.COMPLETED
        assert summary.processed == 12
        assert summary.failed == 5
        assert summary.succeeded == 7
        assert len(summary.errors) == 1
        assert summary.errors[0].batch_index == 1
        assert "disk I/O error" in summary.errors[0].error
        assert store.persist_calls == 3  # first attempt + 2 retries

        # Pages 0 and 2 were persisted, page 1 was not
        assert store.get_active_suggestion("BT00") is not None
        assert store.get_active_suggestion("BT06") is None
        assert store.get_active_suggestion("BT11") is not None
        assert store.get_run(summary.batch_id).errors == summary.errors

    def test_rejected_records_count_as_failed(self, store, catalog):
        page = TransactionPage(
            transactions=[make_transaction("OK1", description="NOTHING")],
            next_cursor="OK1",
            has_more=False,
            rejected=[("BAD1", "Invalid amount: 'abc'")],
        )

        summary = orchestrate(store, catalog, source=ScriptedSource([page])).run()

        assert summary.processed == 2
        assert summary.succeeded == 1
        assert summary.failed == 1
        assert store.get_processed_ids(summary.batch_id) == {"OK1", "BAD1"}

    def test_source_failure_after_retries_fails_run(self, store, catalog):
        first = TransactionPage(
            transactions=[make_transaction("T1", description="NOTHING")],
            next_cursor="T1",
            has_more=True,
        )
        source = ScriptedSource([first, TransientIOError("connection reset")])

        summary = orchestrate(store, catalog, source=source, batch_size=1, max_retries=2).run()

        assert summary.status == BatchStatus.FAILED
        assert summary.processed == 1
        assert source.calls == 4
        assert summary.errors[0].batch_index == 1
        assert summary.errors[0].error.startswith("source:")

        run = store.get_run(summary.batch_id)
        assert run.status == BatchStatus.FAILED
        assert run.cursor == "T1"

    def test_fatal_source_error_fails_run(self, store, catalog):
        matcher = TrackingMatcher()
        source = ScriptedSource([FatalError("Transaction source rejected credentials (401)")])

        summary = orchestrate(store, catalog, source=source, matcher=matcher).run()

        assert summary.status == BatchStatus.FAILED
        assert "401" in summary.errors[-1].error
        assert store.get_run(summary.batch_id).status == BatchStatus.FAILED
        assert matcher.closed is True

    def test_fatal_sink_error_fails_run(self, temp_db, catalog):
        store = PoisonedStore(temp_db, poison={"BT01"}, error=FatalError("credentials revoked"))
        seed(store, 4)

        summary = orchestrate(store, catalog, batch_size=2, concurrency=1).run()

        assert summary.status == BatchStatus.FAILED
        assert store.persist_calls == 1
        assert any("credentials revoked" in e.error for e in summary.errors)

    def test_unknown_resume_id(self, store, catalog):
        matcher = TrackingMatcher()

        summary = orchestrate(store, catalog, matcher=matcher, resume_batch_id="nope").run()

        assert summary.status == BatchStatus.FAILED
        assert summary.batch_id == "nope"
        assert summary.errors[0].batch_index == -1
        assert "Unknown batch run" in summary.errors[0].error
        assert matcher.closed is True

    def test_unreadable_source_row_fails_run_with_summary(self, store, catalog, temp_db):
        seed(store, 5)
        with closing(sqlite3.connect(temp_db)) as conn:
            conn.execute("UPDATE cash_transactions SET amount = 'abc' WHERE id = 'BT04'")
            conn.commit()

        summary = orchestrate(store, catalog, batch_size=2, concurrency=1).run()

        assert summary.status == BatchStatus.FAILED
        assert summary.processed == 2
        assert summary.errors[-1].batch_index == 1
        assert "Invalid amount" in summary.errors[-1].error

        run = store.get_run(summary.batch_id)
        assert run.status == BatchStatus.FAILED
        assert run.cursor == "BT01"

    def test_checkpoint_write_failure_fails_run_with_summary(self, temp_db, catalog):
        store = UnwritableCheckpointStore(temp_db)
        seed(store, 6)

        summary = orchestrate(store, catalog, batch_size=2, concurrency=1, max_retries=1).run()

        assert summary.status == BatchStatus.FAILED
        assert summary.batches == 1  # paging stops after the first failed checkpoint
        assert [e.error for e in summary.errors] == ["checkpoint: disk full"]
        assert summary.errors[0].batch_index == -1

        run = store.get_run(summary.batch_id)
        assert run.status == BatchStatus.FAILED
        assert run.errors == summary.errors

    def test_finish_write_failure_still_returns_summary(self, temp_db, catalog):
        store = UnwritableCheckpointStore(temp_db, fail_finish=True)
        seed(store, 1)

        summary = orchestrate(store, catalog, max_retries=0).run()

        assert summary.status == BatchStatus.FAILED
        assert [e.error for e in summary.errors] == ["checkpoint: disk full", "finish run: disk full"]


class TestCancelAndResume:
    """Cancellation pauses the run; resuming finishes it without duplicates."""

    def test_cancel_pauses_with_checkpoint(self, store, catalog):
        seed(store, 12)
        matcher = TrackingMatcher(cancel_after=7)
        orchestrator = orchestrate(store, catalog, matcher=matcher, batch_size=5, concurrency=1)
        matcher.orchestrator = orchestrator

        summary = orchestrator.run()

        assert summary.status == BatchStatus.PAUSED
        assert summary.processed == 7

        run = store.get_run(summary.batch_id)
        assert run.status == BatchStatus.PAUSED
        assert run.processed == 7
        # Cursor stops at the last fully processed page
        assert run.cursor == "BT04"
        assert store.get_processed_ids(summary.batch_id) == {f"BT{i:02d}" for i in range(7)}

    def test_keyboard_interrupt_pauses_with_checkpoint(self, store, catalog):
        first = TransactionPage(
            transactions=[make_transaction("T1", description="NOTHING")],
            next_cursor="T1",
            has_more=True,
        )
        source = ScriptedSource([first, KeyboardInterrupt()])

        summary = orchestrate(store, catalog, source=source, batch_size=1, concurrency=1).run()

        assert summary.status == BatchStatus.PAUSED
        assert summary.processed == 1

        run = store.get_run(summary.batch_id)
        assert run.status == BatchStatus.PAUSED
        assert run.cursor == "T1"
        assert run.completed_at is None

    def test_resume_is_idempotent(self, store, catalog):
        seed(store, 12)
        matcher = TrackingMatcher(cancel_after=7)
        first = orchestrate(store, catalog, matcher=matcher, batch_size=5, concurrency=1)
        matcher.orchestrator = first
        paused = first.run()

        resumed = orchestrate(
            store, catalog, batch_size=5, concurrency=2, resume_batch_id=paused.batch_id
        ).run()

        assert resumed.batch_id == paused.batch_id
        assert resumed.status == BatchStatus.COMPLETED
        assert resumed.processed == 12
        assert resumed.succeeded == 12

        for i in range(12):
            assert len(store.get_suggestions_for_transaction(f"BT{i:02d}")) == 1
        assert store.get_run(paused.batch_id).status == BatchStatus.COMPLETED

    def test_resume_completed_run_processes_nothing_new(self, store, catalog):
        seed(store, 3)
        done = orchestrate(store, catalog, batch_size=2).run()

        again = orchestrate(store, catalog, batch_size=2, resume_batch_id=done.batch_id).run()

        assert again.status == BatchStatus.COMPLETED
        assert again.processed == 3
        assert len(store.get_suggestions_for_batch(done.batch_id)) == 3


class TestCheckpointWriter:
    """The committed cursor only covers a contiguous prefix of finished pages."""

    @staticmethod
    def _writer(sink, start_cursor=None) -> CheckpointWriter:
        return CheckpointWriter(
            sink=sink,
            batch_id="run-1",
            start_cursor=start_cursor,
            base_counts=RunCounts(),
            base_errors=[],
            persist=lambda operation, what: operation(),
        )

    def test_out_of_order_pages_hold_the_cursor(self):
        sink = CheckpointLog()
        writer = self._writer(sink, start_cursor="C0")

        writer.commit(PageResult(index=1, end_cursor="C2", counts=RunCounts(2, 2, 0)))
        writer.commit(PageResult(index=2, end_cursor="C3", counts=RunCounts(2, 1, 1)))
        writer.commit(PageResult(index=0, end_cursor="C1", counts=RunCounts(2, 2, 0)))

        assert [cursor for cursor, _ in sink.checkpoints] == ["C0", "C0", "C3"]
        assert [counts.processed for _, counts in sink.checkpoints] == [2, 4, 6]
        assert writer.cursor == "C3"
        assert writer.counts == RunCounts(6, 5, 1)

    def test_cancelled_page_blocks_the_cursor(self):
        sink = CheckpointLog()
        writer = self._writer(sink)

        writer.commit(PageResult(index=0, end_cursor="C1", counts=RunCounts(1, 1, 0), cancelled=True))
        writer.commit(PageResult(index=1, end_cursor="C2", counts=RunCounts(2, 2, 0)))

        assert writer.cursor is None
        assert writer.counts.processed == 3

    def test_page_error_is_kept_with_the_checkpoint(self):
        writer = self._writer(CheckpointLog())
        error = BatchError(0, "disk I/O error")

        writer.commit(PageResult(index=0, end_cursor="C1", counts=RunCounts(2, 0, 2), error=error))

        assert writer.errors == [error]
        assert writer.session_errors == [error]
        assert writer.cursor == "C1"

    def test_unwritable_checkpoint_is_recorded_once(self):
        class BrokenSink:
            def persist_checkpoint(self, *args, **kwargs):
                raise TransientIOError("disk full")

        writer = self._writer(BrokenSink())

        writer.commit(PageResult(index=0, end_cursor="C1", counts=RunCounts(1, 1, 0)))
        writer.flush()

        assert writer.checkpoint_failed is True
        assert writer.errors == [BatchError(-1, "checkpoint: disk full")]
        assert writer.cursor == "C1"
