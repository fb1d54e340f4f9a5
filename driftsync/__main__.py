"""CLI entry point for driftsync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .context import SyncContext, run_context
from .sync import ResolutionStrategy, SyncResult


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])


async def _open_context(config: Config) -> SyncContext:
    """Initialize a context for a one-shot command (no background tasks)."""
    config.scheduler.enabled = False
    config.connectivity.poll_interval_seconds = 0
    context = SyncContext(config)
    await context.initialize()
    return context


def _print_result(label: str, result: SyncResult) -> int:
    print(f"{label}: {result.status.value} ({result.total_synced} records)")
    for table, count in sorted(result.synced_counts.items()):
        print(f"  {table}: {count}")
    if result.conflict_ids:
        print(f"  conflicts outstanding: {len(result.conflict_ids)}")
    if result.error_message:
        print(f"  error: {result.error_message}", file=sys.stderr)
    return 0 if result.is_success else 1


async def cmd_run(args: argparse.Namespace) -> int:
    """Run the sync service with background scheduling."""
    config = load_config(args.config)

    print(f"Starting driftsync on device: {config.device.device_id}")
    print(f"Remote: {config.cloud.url or '(not configured)'}")
    print(f"Wifi-preferred sync: {config.connectivity.wifi_preferred_sync}")

    try:
        await run_context(config)
    except KeyboardInterrupt:
        print("\nShutting down...")
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run one sync pass now."""
    context = await _open_context(load_config(args.config))
    try:
        if not context.monitor.sync_eligible() and not args.force:
            print(
                f"Sync not eligible on {context.monitor.connection_type.value} "
                "(use --force to sync anyway)",
                file=sys.stderr,
            )
            return 2
        result = await context.engine.run_sync()
        return _print_result("Sync", result)
    finally:
        await context.dispose()


async def cmd_status(args: argparse.Namespace) -> int:
    """Show sync, connectivity and queue status."""
    context = await _open_context(load_config(args.config))
    try:
        status_data = {
            "timestamp": datetime.now().isoformat(),
            **context.get_status(),
            "database": context.database.get_stats(),
        }
    finally:
        await context.dispose()

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    state = status_data["state"]
    connectivity = status_data["connectivity"]
    print(f"Device: {status_data['device_id']}")
    print(f"Status: {state['status']}")
    print(f"Last sync: {state['last_sync_time'] or 'never'}")
    print(f"Pending changes: {state['pending_changes']}")
    print(f"Outstanding conflicts: {len(state['conflicts'])}")
    print(
        f"Connection: {connectivity['connection_type']} "
        f"(quality: {connectivity['network_quality']}, "
        f"sync eligible: {connectivity['sync_eligible']})"
    )
    print(
        f"Remote: {status_data['remote']['url'] or '(not configured)'} "
        f"({'available' if status_data['remote']['available'] else 'unavailable'})"
    )
    for table, count in status_data["database"]["tables"].items():
        print(f"  {table}: {count}")
    return 0


async def cmd_backup(args: argparse.Namespace) -> int:
    """Upload a backup of the local store."""
    context = await _open_context(load_config(args.config))
    try:
        result = await context.engine.create_backup()
        code = _print_result("Backup", result)
        if result.is_success:
            print(f"  backup id: {result.metadata['backup_id']}")
        return code
    finally:
        await context.dispose()


async def cmd_restore(args: argparse.Namespace) -> int:
    """Replace the local store with a remote backup."""
    context = await _open_context(load_config(args.config))
    try:
        result = await context.engine.restore_from_backup(args.backup_id)
        return _print_result("Restore", result)
    finally:
        await context.dispose()


async def cmd_conflicts_list(args: argparse.Namespace) -> int:
    """List outstanding conflicts."""
    context = await _open_context(load_config(args.config))
    try:
        conflicts = context.database.get_pending_conflicts()
    finally:
        await context.dispose()

    if args.json:
        print(json.dumps([c.to_dict() for c in conflicts], indent=2))
        return 0

    if not conflicts:
        print("No outstanding conflicts.")
        return 0

    for conflict in conflicts:
        print(f"{conflict.id}")
        print(f"  {conflict.type.value} on {conflict.table_name}/{conflict.record_id}")
        print(f"  detected: {conflict.conflict_time.isoformat()}")
        if conflict.description:
            print(f"  {conflict.description}")
    return 0


async def cmd_conflicts_resolve(args: argparse.Namespace) -> int:
    """Resolve one conflict, or all of them with --all."""
    config = load_config(args.config)
    try:
        strategy = ResolutionStrategy(args.strategy or config.conflicts.default_strategy)
    except ValueError:
        print(f"Unknown strategy: {config.conflicts.default_strategy}", file=sys.stderr)
        return 1

    resolved_data = None
    if args.data:
        with open(args.data) as f:
            resolved_data = json.load(f)

    context = await _open_context(config)
    try:
        if args.all:
            resolutions = context.engine.resolve_conflicts(strategy)
            print(f"Resolved {len(resolutions)} conflicts with {strategy.value}")
        elif args.conflict_id:
            context.engine.resolve_conflict(
                args.conflict_id, strategy, resolved_data, args.notes
            )
            if strategy == ResolutionStrategy.MANUAL:
                print(f"Deferred {args.conflict_id} for manual review")
            else:
                print(f"Resolved {args.conflict_id} with {strategy.value}")
        else:
            print("Give a conflict id or --all", file=sys.stderr)
            return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await context.dispose()
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="driftsync",
        description="Offline-first record sync between devices",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Run sync with background scheduling")
    run_parser.set_defaults(func=cmd_run)

    sync_parser = subparsers.add_parser("sync", help="Run one sync pass now")
    sync_parser.add_argument(
        "--force",
        action="store_true",
        help="Sync even when the link is not sync eligible",
    )
    sync_parser.set_defaults(func=cmd_sync)

    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument("--json", action="store_true", help="Output status as JSON")
    status_parser.set_defaults(func=cmd_status)

    backup_parser = subparsers.add_parser("backup", help="Upload a backup")
    backup_parser.set_defaults(func=cmd_backup)

    restore_parser = subparsers.add_parser("restore", help="Restore from a backup")
    restore_parser.add_argument(
        "backup_id",
        nargs="?",
        default=None,
        help="Backup to restore (default: latest)",
    )
    restore_parser.set_defaults(func=cmd_restore)

    conflicts_parser = subparsers.add_parser("conflicts", help="Inspect and resolve conflicts")
    conflicts_subparsers = conflicts_parser.add_subparsers(
        dest="conflicts_command", help="Conflict commands"
    )

    conflicts_list = conflicts_subparsers.add_parser("list", help="List outstanding conflicts")
    conflicts_list.add_argument("--json", action="store_true", help="Output as JSON")
    conflicts_list.set_defaults(func=cmd_conflicts_list)

    conflicts_resolve = conflicts_subparsers.add_parser("resolve", help="Resolve conflicts")
    conflicts_resolve.add_argument("conflict_id", nargs="?", help="Conflict to resolve")
    conflicts_resolve.add_argument(
        "-s", "--strategy",
        choices=[s.value for s in ResolutionStrategy],
        default=None,
        help="Resolution strategy (default: conflicts.default_strategy from config)",
    )
    conflicts_resolve.add_argument(
        "--data",
        type=Path,
        default=None,
        help="JSON file with the merged record (merge strategy)",
    )
    conflicts_resolve.add_argument("--notes", default=None, help="Note stored with the resolution")
    conflicts_resolve.add_argument(
        "--all",
        action="store_true",
        help="Resolve every outstanding conflict with the strategy",
    )
    conflicts_resolve.set_defaults(func=cmd_conflicts_resolve)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "conflicts" and not args.conflicts_command:
        conflicts_parser.print_help()
        return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
