"""Batch orchestrator.

Drives Source → Matcher → Resolver → Builder → Sink over large volumes:

- Pages the source by cursor; page_size = min(batch_size, remaining limit)
- Up to ``concurrency`` pages in flight on a thread pool; each page is
  processed sequentially in source order, then persisted as one unit
- Page failures are recorded as {batch_index, error}; the run continues
- Source errors and checkpoint writes that keep failing stop paging and
  mark the run FAILED; a RunSummary is returned either way
- A single checkpoint writer commits cursor + counters after each page;
  the cursor only advances over a contiguous prefix of finished pages
- Resume restarts from the committed cursor and skips transaction ids the
  run already accounted for
- cancel() (or Ctrl-C) lets every worker finish its current transaction,
  persists partial results and the checkpoint, and marks the run PAUSED
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import ExitStack
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Callable, Optional, TypeVar

from ..errors import CashClearingError, FatalError, TransientIOError
from ..matching.engine import TransactionMatcher
from ..resolution.gl_resolver import GLResolver
from ..review.builder import SuggestionBuilder
from ..schemas.catalog import PatternCatalog
from ..schemas.run import BatchError, BatchStatus, RunCounts, RunSummary
from ..schemas.suggestion import ApprovalStatus, MatchCandidate, Suggestion
from ..schemas.transaction import Transaction
from ..sources.base import TransactionSource
from ..state_store.base import PersistenceSink

if TYPE_CHECKING:
    from ..config import BatchConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# batch_index used for errors that belong to the run rather than a page
RUN_LEVEL_INDEX = -1


@dataclass
class BatchOptions:
    """Options for one orchestrator run."""

    batch_size: int = 100
    concurrency: int = 3
    daily_limit: int = 50_000  # Per execution of run()
    resume_batch_id: Optional[str] = None
    dry_run: bool = False
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0

    def validate(self) -> list[str]:
        """Return validation errors (empty if valid)."""
        errors = []
        if self.batch_size < 1:
            errors.append("batch_size must be >= 1")
        if self.concurrency < 1:
            errors.append("concurrency must be >= 1")
        if self.daily_limit < 0:
            errors.append("daily_limit must be >= 0")
        if self.max_retries < 0:
            errors.append("max_retries must be >= 0")
        return errors

    @classmethod
    def from_config(cls, batch_config: BatchConfig, **overrides) -> BatchOptions:
        """Build options from the batch config section, applying non-None overrides."""
        options = cls(
            batch_size=batch_config.batch_size,
            concurrency=batch_config.concurrency,
            daily_limit=batch_config.daily_limit,
            max_retries=batch_config.max_retries,
            retry_backoff_seconds=batch_config.retry_backoff_seconds,
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(options, key, value)
        return options

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PageResult:
    """Outcome of one page, handed to the checkpoint writer."""

    index: int
    end_cursor: Optional[str]
    counts: RunCounts = field(default_factory=RunCounts)
    unmatched: int = 0
    auto_approved: int = 0
    error: Optional[BatchError] = None
    cancelled: bool = False  # Stopped early; cursor must not pass this page


class CheckpointWriter:
    """Single writer for the run checkpoint.

    Pages finish out of order. The committed cursor is the end cursor of
    the longest contiguous prefix of finished pages, so a resume never skips
    a page that was still in flight. Counters include every finished page.
    """

    def __init__(
        self,
        sink: PersistenceSink,
        batch_id: str,
        start_cursor: Optional[str],
        base_counts: RunCounts,
        base_errors: list[BatchError],
        persist: Callable[[Callable[[], None], str], None],
    ):
        self.sink = sink
        self.batch_id = batch_id
        self._persist = persist
        self._lock = threading.Lock()
        self._cursor = start_cursor
        self._counts = RunCounts(base_counts.processed, base_counts.succeeded, base_counts.failed)
        self._all_errors = list(base_errors)
        self._finished: dict[int, Optional[str]] = {}
        self._next_index = 0
        self.checkpoint_failed = False

        # This execution only
        self.session_counts = RunCounts()
        self.session_errors: list[BatchError] = []
        self.unmatched = 0
        self.auto_approved = 0
        self.pages = 0

    @property
    def cursor(self) -> Optional[str]:
        with self._lock:
            return self._cursor

    @property
    def counts(self) -> RunCounts:
        with self._lock:
            return RunCounts(self._counts.processed, self._counts.succeeded, self._counts.failed)

    @property
    def errors(self) -> list[BatchError]:
        with self._lock:
            return list(self._all_errors)

    def record_error(self, error: BatchError) -> None:
        with self._lock:
            self._all_errors.append(error)
            self.session_errors.append(error)

    def commit(self, result: PageResult) -> None:
        """Fold a page result in and persist the checkpoint."""
        with self._lock:
            self._counts.add(result.counts)
            self.session_counts.add(result.counts)
            self.unmatched += result.unmatched
            self.auto_approved += result.auto_approved
            self.pages += 1
            if result.error is not None:
                self._all_errors.append(result.error)
                self.session_errors.append(result.error)

            if not result.cancelled:
                self._finished[result.index] = result.end_cursor
            while self._next_index in self._finished:
                self._cursor = self._finished.pop(self._next_index)
                self._next_index += 1

            self._flush_locked()

    def flush(self) -> None:
        with self._lock:
            self._flush_locked()

    def _flush_locked(self) -> None:
        """Persist the checkpoint. A sink that keeps failing marks the writer failed."""
        cursor = self._cursor
        counts = RunCounts(self._counts.processed, self._counts.succeeded, self._counts.failed)
        errors = list(self._all_errors)
        try:
            self._persist(
                lambda: self.sink.persist_checkpoint(self.batch_id, cursor, counts, errors),
                "checkpoint",
            )
        except TransientIOError as e:
            logger.error("Checkpoint of run %s not persisted: %s", self.batch_id, e)
            if not self.checkpoint_failed:
                error = BatchError(RUN_LEVEL_INDEX, f"checkpoint: {e}")
                self._all_errors.append(error)
                self.session_errors.append(error)
            self.checkpoint_failed = True


class BatchOrchestrator:
    """Runs the resolution pipeline over every unresolved transaction."""

    def __init__(
        self,
        source: TransactionSource,
        sink: PersistenceSink,
        matcher: TransactionMatcher,
        catalog: PatternCatalog,
        options: Optional[BatchOptions] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            source: Reader of unresolved transactions.
            sink: Persistence for suggestions and checkpoints.
            matcher: Rule-based or LLM-backed matcher.
            catalog: Immutable catalog snapshot shared by all workers.
            options: Run options.
            sleep: Backoff sleep, injectable for tests.
        """
        self.source = source
        self.sink = sink
        self.matcher = matcher
        self.catalog = catalog
        self.options = options or BatchOptions()
        self._sleep = sleep

        self.resolver = GLResolver(catalog)
        self.builder = SuggestionBuilder(catalog_version=catalog.version)

        self._cancel = threading.Event()
        self.batch_id: Optional[str] = None

    def cancel(self) -> None:
        """Ask the run to stop after each worker's current transaction."""
        logger.info("Cancellation requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> RunSummary:
        """Execute the run. Always returns a summary, even on failure."""
        errors = self.options.validate()
        if errors:
            raise ValueError("Invalid batch options: " + "; ".join(errors))

        started = time.monotonic()
        with ExitStack() as stack:
            stack.enter_context(self.source)
            stack.enter_context(self.matcher)

            if self.options.dry_run:
                return self._dry_run(started)

            try:
                writer, processed_ids = self._open_run()
            except CashClearingError as e:
                logger.error("Cannot start run: %s", e)
                return RunSummary(
                    batch_id=self.batch_id or self.options.resume_batch_id or "",
                    status=BatchStatus.FAILED,
                    errors=[BatchError(RUN_LEVEL_INDEX, str(e))],
                    duration_ms=_elapsed_ms(started),
                )

            return self._execute(writer, processed_ids, started)

    def _dry_run(self, started: float) -> RunSummary:
        available = self.source.count()
        would_process = min(available, self.options.daily_limit)
        logger.info("Dry run: would process %d of %d unresolved transactions", would_process, available)
        return RunSummary(
            batch_id=self.options.resume_batch_id or "dry-run",
            status=BatchStatus.COMPLETED,
            dry_run=True,
            would_process=would_process,
            duration_ms=_elapsed_ms(started),
        )

    def _open_run(self) -> tuple[CheckpointWriter, set[str]]:
        """Create a new run or reopen the one being resumed."""
        resume_id = self.options.resume_batch_id
        if resume_id:
            existing = self.sink.get_run(resume_id)
            if existing is None:
                raise FatalError(f"Unknown batch run '{resume_id}'")
            run = self.sink.resume_run(resume_id)
            processed_ids = self.sink.get_processed_ids(resume_id)
            logger.info(
                "Resuming run %s from cursor %r (%d transactions already processed)",
                resume_id,
                run.cursor,
                run.processed,
            )
        else:
            run = self.sink.create_run(
                uuid.uuid4().hex, total=self.source.count(), options=self.options.to_dict()
            )
            processed_ids = set()
            logger.info("Started run %s (%d unresolved transactions)", run.batch_id, run.total)

        self.batch_id = run.batch_id
        writer = CheckpointWriter(
            sink=self.sink,
            batch_id=run.batch_id,
            start_cursor=run.cursor,
            base_counts=run.counts,
            base_errors=run.errors,
            persist=self._with_retries,
        )
        return writer, processed_ids

    def _execute(self, writer: CheckpointWriter, processed_ids: set[str], started: float) -> RunSummary:
        status = BatchStatus.COMPLETED
        failure: Optional[Exception] = None
        interrupted = False

        with ThreadPoolExecutor(
            max_workers=self.options.concurrency, thread_name_prefix="batch-page"
        ) as pool:
            in_flight: dict[Future, int] = {}
            try:
                status = self._produce_pages(pool, in_flight, writer, processed_ids)
            except KeyboardInterrupt:
                logger.warning("Interrupted, finishing in-flight transactions")
                interrupted = True
                self._cancel.set()
            except Exception as e:
                if not isinstance(e, FatalError):
                    logger.exception("Unexpected error in run %s", self.batch_id)
                failure = e
                self._cancel.set()

            # Drain whatever is still running
            for future in list(in_flight):
                try:
                    writer.commit(future.result())
                except Exception as e:
                    if not isinstance(e, FatalError):
                        logger.exception("Page %d of run %s crashed", in_flight[future], self.batch_id)
                    failure = failure or e
                    self._cancel.set()
                in_flight.pop(future, None)

        if failure is not None:
            logger.error("Run %s aborted: %s", self.batch_id, failure)
            writer.record_error(BatchError(RUN_LEVEL_INDEX, str(failure)))
            status = BatchStatus.FAILED
        elif writer.checkpoint_failed:
            status = BatchStatus.FAILED
        elif interrupted or (self._cancel.is_set() and status == BatchStatus.COMPLETED):
            status = BatchStatus.PAUSED

        writer.flush()
        try:
            self._with_retries(
                lambda: self.sink.finish_run(self.batch_id, status, writer.errors), "finish run"
            )
        except TransientIOError as e:
            logger.error("Could not record the end of run %s: %s", self.batch_id, e)
            writer.record_error(BatchError(RUN_LEVEL_INDEX, f"finish run: {e}"))
            status = BatchStatus.FAILED

        counts = writer.counts
        duration_ms = _elapsed_ms(started)
        session_processed = writer.session_counts.processed
        summary = RunSummary(
            batch_id=self.batch_id,
            status=status,
            processed=counts.processed,
            succeeded=counts.succeeded,
            failed=counts.failed,
            duration_ms=duration_ms,
            throughput=session_processed / (duration_ms / 1000) if duration_ms > 0 else 0.0,
            errors=writer.session_errors,
            unmatched=writer.unmatched,
            auto_approved=writer.auto_approved,
            batches=writer.pages,
        )
        logger.info(
            "Run %s %s: %d processed (%d succeeded, %d failed), %d pages, %d errors in %dms",
            summary.batch_id,
            summary.status.value,
            summary.processed,
            summary.succeeded,
            summary.failed,
            summary.batches,
            len(summary.errors),
            summary.duration_ms,
        )
        return summary

    def _produce_pages(
        self,
        pool: ThreadPoolExecutor,
        in_flight: dict[Future, int],
        writer: CheckpointWriter,
        processed_ids: set[str],
    ) -> BatchStatus:
        """Fetch pages and hand them to workers. Returns the run status so far."""
        cursor = writer.cursor
        dispatched = 0
        index = 0

        while not self._cancel.is_set():
            remaining = self.options.daily_limit - dispatched
            if remaining <= 0:
                logger.info("Daily limit of %d transactions reached", self.options.daily_limit)
                break

            # Keep at most `concurrency` pages in flight
            while len(in_flight) >= self.options.concurrency:
                self._collect(in_flight, writer, wait_for_one=True)
            self._collect(in_flight, writer, wait_for_one=False)
            if self._cancel.is_set():
                break
            if writer.checkpoint_failed:
                # Further pages could not be resumed from a checkpoint
                logger.error("Stopping run %s: checkpoint cannot be persisted", self.batch_id)
                return BatchStatus.FAILED

            page_size = min(self.options.batch_size, remaining)
            try:
                page = self._with_retries(
                    lambda: self.source.fetch_unmatched(cursor, page_size), f"fetch page {index}"
                )
            except FatalError:
                raise
            except Exception as e:
                # Without a page the cursor cannot advance
                if isinstance(e, TransientIOError):
                    logger.error("Source failed for page %d: %s", index, e)
                else:
                    logger.exception("Source returned an unreadable page %d", index)
                writer.record_error(BatchError(index, f"source: {e}"))
                return BatchStatus.FAILED

            fresh = [tx for tx in page.transactions if tx.id not in processed_ids]
            rejected = [(tx_id, err) for tx_id, err in page.rejected if tx_id not in processed_ids]
            skipped = len(page.transactions) - len(fresh)
            if skipped:
                logger.info("Page %d: skipping %d transactions already processed in this run", index, skipped)

            if not page.transactions and not page.rejected:
                break

            processed_ids.update(tx.id for tx in fresh)
            processed_ids.update(tx_id for tx_id, _ in rejected)
            dispatched += len(fresh) + len(rejected)

            future = pool.submit(self._process_page, index, page.next_cursor, fresh, rejected)
            in_flight[future] = index
            index += 1
            cursor = page.next_cursor

            if not page.has_more:
                break

        return BatchStatus.COMPLETED

    def _collect(self, in_flight: dict[Future, int], writer: CheckpointWriter, wait_for_one: bool) -> None:
        """Commit finished pages. FatalError from a worker propagates."""
        if not in_flight:
            return
        if wait_for_one:
            done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
        else:
            done = [f for f in in_flight if f.done()]
        for future in done:
            in_flight.pop(future)
            writer.commit(future.result())

    def _process_page(
        self,
        index: int,
        end_cursor: Optional[str],
        transactions: list[Transaction],
        rejected: list[tuple[str, str]],
    ) -> PageResult:
        """Worker body: process one page in source order, then persist it."""
        result = PageResult(index=index, end_cursor=end_cursor)
        suggestions: list[Suggestion] = []
        failures: list[tuple[str, str]] = list(rejected)

        for tx in transactions:
            if self._cancel.is_set():
                result.cancelled = True
                break
            try:
                suggestions.append(self._process_transaction(tx))
            except FatalError:
                raise
            except Exception as e:
                logger.warning("Transaction %s failed: %s", tx.id, e)
                failures.append((tx.id, str(e)))

        if suggestions:
            try:
                self._with_retries(
                    lambda: self.sink.persist_suggestions(suggestions, self.batch_id),
                    f"persist page {index}",
                )
            except FatalError:
                raise
            except Exception as e:
                logger.error("Page %d failed to persist: %s", index, e)
                result.error = BatchError(index, str(e))
                failures.extend((s.transaction_id, str(e)) for s in suggestions)
                suggestions = []

        if failures:
            try:
                self._with_retries(
                    lambda: self.sink.record_failed_items(self.batch_id, failures),
                    f"record failures of page {index}",
                )
            except TransientIOError as e:
                logger.error("Could not record failed items of page %d: %s", index, e)
                if result.error is None:
                    result.error = BatchError(index, f"failed items not recorded: {e}")

        result.counts = RunCounts(
            processed=len(suggestions) + len(failures),
            succeeded=len(suggestions),
            failed=len(failures),
        )
        result.unmatched = sum(1 for s in suggestions if s.pattern_matched is None)
        result.auto_approved = sum(
            1 for s in suggestions if s.approval_status == ApprovalStatus.AUTO_APPROVED
        )

        logger.info(
            "Page %d: %d processed (%d failed, %d auto-approved)%s",
            index,
            result.counts.processed,
            result.counts.failed,
            result.auto_approved,
            " [cancelled]" if result.cancelled else "",
        )
        return result

    def _process_transaction(self, transaction: Transaction) -> Suggestion:
        """Matcher → Resolver → Builder for one transaction."""
        logger.debug("Processing %s: %s", transaction.id, transaction.description)
        candidates = self.matcher.match(transaction, self.catalog)
        best = candidates[0] if candidates else MatchCandidate.unknown(matcher=self.matcher.name)
        resolution = self.resolver.resolve(best)
        return self.builder.build(
            transaction, best, resolution, batch_id=self.batch_id, candidates=candidates
        )

    def _with_retries(self, operation: Callable[[], T], what: str) -> T:
        """Retry TransientIOError with exponential backoff."""
        attempts = self.options.max_retries + 1
        for attempt in range(attempts):
            try:
                return operation()
            except TransientIOError as e:
                if attempt + 1 >= attempts:
                    raise
                delay = self.options.retry_backoff_seconds * (2**attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    what,
                    attempt + 1,
                    attempts,
                    e,
                    delay,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
