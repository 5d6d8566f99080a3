"""
Reconciliation CLI tool for access-sync.

This tool rebuilds access-sets from the grant table against a local
SQLite store, without going through the HTTP API.

Usage:
    access-sync-reconcile --data-dir <path> --dry-run
    access-sync-reconcile --data-dir <path> --confirm [--cursor <cursor>]

Invariants:
    - Without --confirm the tool never writes
    - Exactly one of --dry-run and --confirm is required
    - The printed cursor resumes the scan where this run stopped

How to change safely:
    - Keep flags and output lines stable; runbooks depend on them
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from ..config import ReconcileConfig
from ..errors import AccessSyncError
from ..reconcile import ReconcileOptions, ReconcileResult, ReconciliationJob
from ..store.sqlite import SqliteStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Rebuild shared-experience access-sets from the grant table"
    )
    parser.add_argument("--data-dir", required=True, help="Directory holding the SQLite store")
    parser.add_argument("--db-filename", default="access.db", help="SQLite database file name")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="Report changes without writing")
    mode.add_argument("--confirm", action="store_true", help="Confirm a live run that writes")
    parser.add_argument("--batch-size", type=int, default=100, help="Experiences per page")
    parser.add_argument("--max-items", type=int, default=1000, help="Experiences in this run")
    parser.add_argument("--page-delay-ms", type=int, default=100, help="Pause between pages")
    parser.add_argument("--cursor", help="Resume after this cursor")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    return parser


async def run_reconcile(args: argparse.Namespace) -> ReconcileResult:
    store = SqliteStore(data_dir=args.data_dir, db_filename=args.db_filename)
    await store.initialize()

    job = ReconciliationJob(
        items=store,
        grants=store,
        config=ReconcileConfig(page_delay_ms=args.page_delay_ms),
        chunk_size=store.max_predicate_values,
    )
    options = ReconcileOptions(
        batch_size=args.batch_size,
        max_items=args.max_items,
        dry_run=args.dry_run,
        confirm=args.confirm,
        cursor=args.cursor,
    )
    return await job.run(options)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the reconciliation tool."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.dry_run and not args.confirm:
        parser.error("a live run requires --confirm; use --dry-run to preview first")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        result = asyncio.run(run_reconcile(args))
    except AccessSyncError as e:
        print(f"Reconciliation failed: {e.message}", file=sys.stderr)
        sys.exit(1)

    print("Reconciliation dry run" if result.dry_run else "Reconciliation completed")
    print(f"  Processed: {result.processed}")
    print(f"  {'Would update' if result.dry_run else 'Updated'}: {result.updated}")
    print(f"  Failed: {result.failed}")
    print(f"  Failed pages: {', '.join(str(c) for c in result.failed_pages) or 'none'}")
    print(f"  Next cursor: {result.next_cursor or 'none'}")
    print(f"  Done: {'yes' if result.done else 'no'}")
    print(f"  Duration: {result.duration_ms}ms")

    sys.exit(1 if result.failed or result.failed_pages else 0)


if __name__ == "__main__":
    main()
