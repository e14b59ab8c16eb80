"""CLI entry point for merge runs.

Usage:
    python -m historian run ./tags.yaml --batch ./extracts/tags.csv --kind full
    python -m historian run ./tags.yaml --batch ./extracts/delta.parquet --kind partial
    python -m historian verify ./tags.yaml
    python -m historian show ./tags.yaml
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from contextlib import ExitStack
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from historian.lib.batch import read_batch
from historian.lib.config_loader import LoadedConfig, load_engine_config
from historian.lib.errors import HistorianError
from historian.lib.history import verify_history
from historian.lib.locks import file_lock
from historian.lib.logging import setup_logging
from historian.lib.runner import RunCoordinator, RunResult
from historian.lib.watermark import get_watermark_record

logger = logging.getLogger(__name__)


def _parse_run_ts(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Invalid --run-ts '{value}' (expected ISO-8601, e.g. 2025-01-15T00:00:00Z)"
        ) from None


def print_result(result: RunResult) -> None:
    """Print a run result in a readable format."""
    print()
    print("=" * 60)
    print(f"Target: {result.target}")
    print(f"Run:    {result.run_id} at {result.run_timestamp.isoformat()}")
    print("=" * 60)
    print(f"Status:    {result.status.value}")
    print(f"Inserted:  {result.inserted}")
    print(f"Updated:   {result.updated}")
    print(f"Closed:    {result.closed}")
    print(f"Deleted:   {result.deleted}")
    print(f"Unchanged: {result.unchanged}")
    if result.rejected_count:
        print(f"Rejected:  {result.rejected_count}")
        for rejection in result.rejected[:10]:
            print(f"  row {rejection['row_index']}: missing {rejection['attribute']}")
    if result.error is not None:
        print(f"Error:     {result.error}")
    print(f"Elapsed:   {result.elapsed_seconds:.2f}s")
    print("=" * 60)


def run_command(args: argparse.Namespace, loaded: LoadedConfig) -> int:
    batch = read_batch(args.batch, args.kind)

    with ExitStack() as stack:
        # File-backed stores are shared between processes on one host
        if loaded.store_type == "duckdb" and loaded.store_path:
            stack.enter_context(
                file_lock(Path(f"{loaded.store_path}.lock"), timeout=loaded.lock_timeout)
            )
        store = stack.enter_context(loaded.build_store())
        coordinator = RunCoordinator(
            loaded.engine,
            store,
            retry=loaded.retry,
            lock_timeout=loaded.lock_timeout,
        )
        result = coordinator.run_safe(batch, run_timestamp=args.run_ts, strict=args.strict or None)

    if args.json_result:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print_result(result)
    return 0 if result.success else 1


def verify_command(loaded: LoadedConfig) -> int:
    """Audit the historical relation; never repairs anything."""
    engine = loaded.engine
    with loaded.build_store() as store:
        if not store.table_exists(engine.history_table):
            print(f"History table '{engine.history_table}' does not exist yet.")
            return 0
        history = store.read_history(engine.history_table)

    issues = verify_history(history)
    if not issues:
        print(f"{engine.target}: {len(history)} historical records, no issues found.")
        return 0

    print(f"{engine.target}: {len(issues)} issue(s) found:")
    for issue in issues:
        print(f"  - {issue}")
    return 1


def show_command(loaded: LoadedConfig) -> int:
    """Print the configuration, relation sizes and watermark of a target."""
    engine = loaded.engine
    info: Dict[str, Any] = {
        "config": engine.to_dict(),
        "store": {"type": loaded.store_type, "path": loaded.store_path},
    }

    with loaded.build_store() as store:
        if store.table_exists(engine.history_table):
            history = store.read_history(engine.history_table)
            info["history"] = {
                "records": len(history),
                "current": int(history["is_current"].astype(bool).sum()) if not history.empty else 0,
            }
        if store.table_exists(engine.current_table):
            current = store.read_current_state(engine.current_table)
            info["current_state"] = {
                "rows": len(current),
                "tombstoned": int(current["is_deleted"].astype(bool).sum()) if not current.empty else 0,
            }
        info["watermark"] = get_watermark_record(engine.target, store.location)

    print(json.dumps(info, indent=2, default=str))
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="historian",
        description="Merge snapshot batches into history and current-state tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Merge a complete extract (absent entities may be closed)
    python -m historian run ./tags.yaml --batch ./extracts/tags.csv --kind full

    # Merge a windowed extract at a fixed run timestamp
    python -m historian run ./tags.yaml --batch ./delta.parquet --kind partial \\
        --run-ts 2025-01-15T00:00:00Z

    # Audit the historical table
    python -m historian verify ./tags.yaml
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs in JSON format (for log aggregation systems)",
    )
    parser.add_argument("--log-file", help="Write logs to a file in addition to console")
    parser.add_argument("--env-file", help="Load environment variables from this .env file")

    # Same logging flags after the subcommand; SUPPRESS keeps them from
    # overwriting values given before it
    logging_flags = argparse.ArgumentParser(add_help=False)
    logging_flags.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="Enable verbose logging"
    )
    logging_flags.add_argument(
        "--json-logs", action="store_true", default=argparse.SUPPRESS, help="Output logs in JSON format"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Merge one batch", parents=[logging_flags])
    run_parser.add_argument("config", help="Target YAML configuration")
    run_parser.add_argument("--batch", required=True, help="CSV or Parquet file (globs allowed)")
    run_parser.add_argument(
        "--kind",
        required=True,
        choices=["full", "partial"],
        help="full: complete extract; partial: windowed extract",
    )
    run_parser.add_argument("--run-ts", type=_parse_run_ts, help="Run timestamp (ISO-8601)")
    run_parser.add_argument(
        "--strict", action="store_true", help="Abort the batch on any rejected row"
    )
    run_parser.add_argument(
        "--json", dest="json_result", action="store_true", help="Print the result as JSON"
    )

    verify_parser = subparsers.add_parser(
        "verify", help="Audit the historical table", parents=[logging_flags]
    )
    verify_parser.add_argument("config", help="Target YAML configuration")

    show_parser = subparsers.add_parser(
        "show", help="Show target configuration and state", parents=[logging_flags]
    )
    show_parser.add_argument("config", help="Target YAML configuration")

    args = parser.parse_args(argv)

    setup_logging(
        verbose=args.verbose,
        json_format=args.json_logs,
        log_file=args.log_file,
    )

    try:
        loaded = load_engine_config(args.config, env_file=args.env_file)

        if args.command == "run":
            code = run_command(args, loaded)
        elif args.command == "verify":
            code = verify_command(loaded)
        else:
            code = show_command(loaded)

    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(130)

    except (HistorianError, FileNotFoundError) as e:
        logger.error("%s", e)
        print(f"\nError: {e}")
        sys.exit(1)

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
