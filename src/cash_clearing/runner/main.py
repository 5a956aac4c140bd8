"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..errors import CashClearingError, FatalError, InvalidStateTransition, SuggestionNotFoundError
from ..matching import RuleBasedMatcher, TransactionMatcher
from ..review import ApprovalWorkflow, BatchActionResult
from ..schemas.catalog import load_catalog
from ..schemas.run import BatchStatus, RunSummary
from ..services import BatchOptions, BatchOrchestrator
from ..sources import HttpTransactionSource, SqliteTransactionSource, TransactionSource, read_transactions_csv
from ..state_store import SqliteStateStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="cash-clearing",
        description="Resolve unmatched bank-cash transactions to GL accounts",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # process command
    process_parser = subparsers.add_parser(
        "process", help="Match unresolved transactions and create suggestions"
    )
    process_parser.add_argument("--batch-size", type=int, help="Transactions per page")
    process_parser.add_argument("--concurrency", type=int, help="Pages processed in parallel")
    process_parser.add_argument(
        "--limit", type=int, help="Maximum transactions for this run (default: batch.daily_limit)"
    )
    process_parser.add_argument(
        "--resume", type=str, metavar="BATCH_ID", help="Resume a paused or failed run"
    )
    process_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show how many transactions would be processed without changing anything",
    )
    process_parser.add_argument(
        "--use-ai", action="store_true", help="Use the LLM matcher instead of the rule engine"
    )
    process_parser.add_argument(
        "--export", action="store_true", help="Export the run's suggestions to batch.output_dir"
    )

    # pending command
    pending_parser = subparsers.add_parser("pending", help="Show the review queue")
    pending_parser.add_argument(
        "--limit", type=int, default=50, help="Maximum suggestions to show (default: 50)"
    )
    pending_parser.add_argument("--json", action="store_true", help="Print as JSON")

    # approve / reject commands
    approve_parser = subparsers.add_parser("approve", help="Approve a pending suggestion")
    approve_parser.add_argument("suggestion_id", help="Suggestion ID")
    approve_parser.add_argument("--actor", required=True, help="Who is approving")
    approve_parser.add_argument("--reason", help="Optional note for the audit log")

    reject_parser = subparsers.add_parser("reject", help="Reject a pending suggestion")
    reject_parser.add_argument("suggestion_id", help="Suggestion ID")
    reject_parser.add_argument("--actor", required=True, help="Who is rejecting")
    reject_parser.add_argument("--reason", required=True, help="Rejection reason (required)")

    batch_approve_parser = subparsers.add_parser(
        "batch-approve", help="Approve several suggestions"
    )
    batch_approve_parser.add_argument("suggestion_ids", nargs="+", help="Suggestion IDs")
    batch_approve_parser.add_argument("--actor", required=True, help="Who is approving")
    batch_approve_parser.add_argument("--reason", help="Optional note for the audit log")

    batch_reject_parser = subparsers.add_parser("batch-reject", help="Reject several suggestions")
    batch_reject_parser.add_argument("suggestion_ids", nargs="+", help="Suggestion IDs")
    batch_reject_parser.add_argument("--actor", required=True, help="Who is rejecting")
    batch_reject_parser.add_argument("--reason", required=True, help="Rejection reason (required)")

    # export command
    export_parser = subparsers.add_parser("export", help="Export a run's suggestions to CSV")
    export_parser.add_argument("batch_id", help="Batch run ID")
    export_parser.add_argument(
        "-o", "--output", type=Path, help="Output file (default: <output_dir>/<batch_id>.csv)"
    )

    # status command
    status_parser = subparsers.add_parser("status", help="Show statistics and recent runs")
    status_parser.add_argument("--batch-id", help="Show a single run")

    # import-transactions command
    import_parser = subparsers.add_parser(
        "import-transactions", help="Load unresolved transactions from a CSV file"
    )
    import_parser.add_argument("csv_path", type=Path, help="CSV file with a header row")
    import_parser.add_argument("--source-system", help="Source system recorded on each row")

    # init-config command
    init_parser = subparsers.add_parser("init-config", help="Write a default config file")
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")

    return parser


def _validated(config: Config) -> Config:
    errors = config.validate()
    if errors:
        raise ConfigValidationError("; ".join(errors))
    return config


def _build_source(config: Config, store: SqliteStateStore) -> TransactionSource:
    if config.source.kind == "http":
        return HttpTransactionSource(
            base_url=config.source.base_url,
            token=config.source.token,
            timeout=config.source.timeout_seconds,
            max_retries=config.source.max_retries,
        )
    return SqliteTransactionSource(store)


def _build_matcher(config: Config, use_ai: bool) -> TransactionMatcher:
    if use_ai or config.llm.enabled:
        from ..spark_ai import LLMMatcher

        print(f"  → Using LLM matcher: {config.llm.model} @ {config.llm.base_url}")
        return LLMMatcher(config.llm)
    return RuleBasedMatcher()


def _print_summary(summary: RunSummary) -> None:
    print()
    print("📊 Run Results")
    print("=" * 40)
    print(f"  Batch ID:       {summary.batch_id}")
    print(f"  Status:         {summary.status.value}")
    print(f"  Processed:      {summary.processed}")
    print(f"  Succeeded:      {summary.succeeded}")
    print(f"  Failed:         {summary.failed}")
    print(f"  Auto-approved:  {summary.auto_approved}")
    print(f"  Unmatched:      {summary.unmatched}")
    print(f"  Pages:          {summary.batches}")
    print(f"  Duration:       {summary.duration_ms}ms ({summary.throughput:.1f} tx/s)")
    print()

    if summary.errors:
        print("⚠️  Errors encountered:")
        for error in summary.errors:
            where = "run" if error.batch_index < 0 else f"page {error.batch_index}"
            print(f"   - [{where}] {error.error}")


def cmd_process(
    config: Config,
    batch_size: int | None = None,
    concurrency: int | None = None,
    limit: int | None = None,
    resume: str | None = None,
    dry_run: bool = False,
    use_ai: bool = False,
    export: bool = False,
) -> int:
    """Run the batch orchestrator.

    Returns:
        Exit code (0 for a completed run, 1 for a failed or interrupted one).
    """
    print("🔄 Processing unresolved transactions...")
    if dry_run:
        print("  ℹ️  DRY RUN mode - no changes will be made")
    if resume:
        print(f"  → Resuming run {resume}")

    catalog = load_catalog(config.catalog_path)
    print(f"  ✓ Catalog {catalog.version}: {len(catalog.patterns)} patterns, {len(catalog.gl_patterns)} GL mappings")
    if catalog.skipped:
        print(f"  ⚠️  {len(catalog.skipped)} catalog entries skipped (see log)")

    options = BatchOptions.from_config(
        config.batch,
        batch_size=batch_size,
        concurrency=concurrency,
        daily_limit=limit,
        resume_batch_id=resume,
        dry_run=dry_run,
    )

    store = SqliteStateStore(config.state_db_path)
    orchestrator = BatchOrchestrator(
        source=_build_source(config, store),
        sink=store,
        matcher=_build_matcher(config, use_ai),
        catalog=catalog,
        options=options,
    )
    summary = orchestrator.run()

    if summary.dry_run:
        print(f"\n✓ Would process {summary.would_process} transaction(s)")
        return 0

    _print_summary(summary)

    if export and summary.processed:
        path = store.export_results(summary.batch_id, config.batch.output_dir / f"{summary.batch_id}.csv")
        print(f"  ✓ Exported to {path}")

    if summary.status == BatchStatus.COMPLETED:
        print("✓ Run completed")
        return 0
    if summary.status == BatchStatus.PAUSED:
        print(f"⏸️  Run paused; resume with: cash-clearing process --resume {summary.batch_id}")
        return 1
    print("❌ Run failed")
    return 1


def cmd_pending(config: Config, limit: int, as_json: bool = False) -> int:
    """Show the review queue."""
    store = SqliteStateStore(config.state_db_path)
    workflow = ApprovalWorkflow(store)
    queue = workflow.get_pending_queue(limit=limit)

    if as_json:
        print(json.dumps([s.to_dict() for s in queue], indent=2))
        return 0

    print(f"\n📋 Review queue ({len(queue)} shown)")
    print("=" * 40)
    for s in queue:
        print(
            f"  [{s.business_priority.value:<8}] {s.id}  tx={s.transaction_id}  "
            f"{s.pattern_label} → {s.gl_account_code or '-'}  "
            f"conf={s.confidence_score:.2f} risk={s.risk_score:.2f}"
        )
    print()
    return 0


def cmd_transition(config: Config, suggestion_id: str, actor: str, reason: str | None, approve: bool) -> int:
    """Approve or reject one suggestion."""
    workflow = ApprovalWorkflow(SqliteStateStore(config.state_db_path))
    try:
        if approve:
            suggestion = workflow.approve(suggestion_id, actor, reason)
        else:
            suggestion = workflow.reject(suggestion_id, actor, reason)
    except (SuggestionNotFoundError, InvalidStateTransition, ValueError) as e:
        print(f"❌ {e}")
        return 1

    print(f"✓ Suggestion {suggestion.id} is now {suggestion.approval_status.value}")
    return 0


def cmd_batch_transition(
    config: Config, suggestion_ids: list[str], actor: str, reason: str | None, approve: bool
) -> int:
    """Approve or reject several suggestions; reports every item."""
    workflow = ApprovalWorkflow(SqliteStateStore(config.state_db_path))
    try:
        if approve:
            result: BatchActionResult = workflow.batch_approve(suggestion_ids, actor, reason)
        else:
            result = workflow.batch_reject(suggestion_ids, actor, reason)
    except ValueError as e:
        print(f"❌ {e}")
        return 1

    for item in result.results:
        if item.error:
            print(f"  ❌ {item.suggestion_id}: {item.error}")
        else:
            print(f"  ✓ {item.suggestion_id}: {item.new_status.value}")
    print(f"\n{result.succeeded} succeeded, {result.failed} failed")
    return 0 if result.failed == 0 else 1


def cmd_export(config: Config, batch_id: str, output: Path | None = None) -> int:
    """Export a run's suggestions."""
    store = SqliteStateStore(config.state_db_path)
    if store.get_run(batch_id) is None:
        print(f"❌ Unknown batch run '{batch_id}'")
        return 1

    path = store.export_results(batch_id, output or config.batch.output_dir / f"{batch_id}.csv")
    print(f"✓ Exported to {path}")
    return 0


def cmd_status(config: Config, batch_id: str | None = None) -> int:
    """Show engine status."""
    store = SqliteStateStore(config.state_db_path)

    if batch_id:
        run = store.get_run(batch_id)
        if run is None:
            print(f"❌ Unknown batch run '{batch_id}'")
            return 1
        print(json.dumps(run.to_dict(), indent=2))
        return 0

    stats = store.get_stats()

    print("\n📊 Cash Clearing Status")
    print("=" * 40)
    print(f"  Transactions total:     {stats['transactions_total']}")
    print(f"  Unresolved:             {stats['transactions_unresolved']}")
    print(f"  Pending review:         {stats['suggestions_pending']}")
    print(f"  Approved:               {stats['suggestions_approved']}")
    print(f"  Auto-approved:          {stats['suggestions_auto_approved']}")
    print(f"  Rejected:               {stats['suggestions_rejected']}")
    print(f"  Superseded:             {stats['suggestions_superseded']}")
    print(f"  Batch runs:             {stats['batch_runs']}")

    runs = store.list_runs(limit=5)
    if runs:
        print("\nRecent runs:")
        for run in runs:
            print(
                f"  {run.batch_id}  {run.status.value:<9} "
                f"{run.processed}/{run.total} processed, {run.failed} failed  ({run.started_at})"
            )
    print()
    return 0


def cmd_import_transactions(config: Config, csv_path: Path, source_system: str | None = None) -> int:
    """Load unresolved transactions from a CSV file."""
    if not csv_path.exists():
        print(f"❌ File not found: {csv_path}")
        return 1

    transactions, errors = read_transactions_csv(csv_path, source_system=source_system)
    for line_no, message in errors:
        print(f"  ⚠️  line {line_no}: {message}")

    store = SqliteStateStore(config.state_db_path)
    inserted = store.upsert_transactions(transactions)
    print(
        f"✓ Imported {inserted} transaction(s) "
        f"({len(transactions) - inserted} already present, {len(errors)} invalid)"
    )
    return 0


def cmd_init_config(config_path: Path, force: bool = False) -> int:
    """Write a default configuration file."""
    if config_path.exists() and not force:
        print(f"❌ {config_path} already exists (use --force to overwrite)")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config, parsed.force)

    # Load config
    try:
        config = _validated(load_config(parsed.config))
    except ConfigValidationError as e:
        print(f"❌ Invalid config: {e}")
        return 1
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    try:
        if parsed.command == "process":
            return cmd_process(
                config,
                batch_size=parsed.batch_size,
                concurrency=parsed.concurrency,
                limit=parsed.limit,
                resume=parsed.resume,
                dry_run=parsed.dry_run,
                use_ai=parsed.use_ai,
                export=parsed.export,
            )
        elif parsed.command == "pending":
            return cmd_pending(config, parsed.limit, parsed.json)
        elif parsed.command == "approve":
            return cmd_transition(config, parsed.suggestion_id, parsed.actor, parsed.reason, approve=True)
        elif parsed.command == "reject":
            return cmd_transition(config, parsed.suggestion_id, parsed.actor, parsed.reason, approve=False)
        elif parsed.command == "batch-approve":
            return cmd_batch_transition(
                config, parsed.suggestion_ids, parsed.actor, parsed.reason, approve=True
            )
        elif parsed.command == "batch-reject":
            return cmd_batch_transition(
                config, parsed.suggestion_ids, parsed.actor, parsed.reason, approve=False
            )
        elif parsed.command == "export":
            return cmd_export(config, parsed.batch_id, parsed.output)
        elif parsed.command == "status":
            return cmd_status(config, parsed.batch_id)
        elif parsed.command == "import-transactions":
            return cmd_import_transactions(config, parsed.csv_path, parsed.source_system)
        else:
            parser.print_help()
            return 1
    except FatalError as e:
        logger.error("Fatal: %s", e)
        print(f"❌ {e}")
        return 1
    except CashClearingError as e:
        print(f"❌ {e}")
        return 1
    except KeyboardInterrupt:
        print("\n⏹️  Interrupted")
        return 1


if __name__ == "__main__":
    sys.exit(main())
