# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Command-line interface for snapkeep.

    snapkeep backup --kind postgres --container db
    snapkeep restore --kind postgres --container db <snapshot>
    snapkeep restore --kind postgres --container db <snapshot> --confirm <token>
    snapkeep list
    snapkeep prune --keep-last 7
    snapkeep resume-upload <snapshot-id>

Configuration comes from SNAPKEEP_* environment variables; --vault and
--remote override them. Exit status is the ResultCode of the operation.
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import List

import structlog

from snapkeep.config import SnapkeepConfig
from snapkeep.core import (
    initialize_state,
    plan_restore,
    prune_snapshots,
    resume_upload,
    run_backup,
    run_restore,
    shutdown_state,
)
from snapkeep.env import create_config_from_env
from snapkeep.exceptions import ConfigurationError, SnapkeepError
from snapkeep.models import ResultCode, Scope
from snapkeep.targets.docker import target_from_name

logger = structlog.get_logger()


def configure_logging(json_output: bool = False, level: str = "INFO") -> None:
    """Route structlog events to stderr as JSON or console lines."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def _add_target_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--kind", required=True, choices=["postgres", "redis"], help="Service kind"
    )
    parser.add_argument("--container", required=True, help="Container name or id")
    parser.add_argument("--name", help="Source name recorded in the catalog (default: container)")
    parser.add_argument("--user", default="postgres", help="PostgreSQL user")
    parser.add_argument("--data-path", default="/data/dump.rdb", help="Redis RDB path")
    parser.add_argument("--subset", help="Database name for a single-database scope")
    parser.add_argument("--timeout", type=float, help="Overall timeout in seconds")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="snapkeep",
        description="Verified backups and reversible restores for containerised services",
    )
    parser.add_argument("--vault", help="Local vault directory")
    parser.add_argument("--remote", help="Remote storage, s3://bucket/prefix or file:///dir")
    parser.add_argument("--json-logs", action="store_true", help="Log as JSON lines")
    parser.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # backup command
    backup_parser = subparsers.add_parser("backup", help="Snapshot a service")
    _add_target_arguments(backup_parser)
    backup_parser.add_argument(
        "--no-upload", action="store_true", help="Keep the snapshot local only"
    )

    # restore command
    restore_parser = subparsers.add_parser(
        "restore", help="Restore a service (dry run unless confirmed)"
    )
    _add_target_arguments(restore_parser)
    restore_parser.add_argument(
        "snapshot", help="Snapshot id, local artifact path or remote locator"
    )
    confirm = restore_parser.add_mutually_exclusive_group()
    confirm.add_argument("--confirm", metavar="TOKEN", help="Token printed by a dry run")
    confirm.add_argument("--force", action="store_true", help="Restore without a token")

    # list command
    list_parser = subparsers.add_parser("list", help="List snapshots, newest first")
    list_parser.add_argument("--source", help="Only this source")
    list_parser.add_argument("--limit", type=int, default=50)
    list_parser.add_argument("--json", action="store_true", help="Print JSON")

    # prune command
    prune_parser = subparsers.add_parser("prune", help="Apply retention")
    prune_parser.add_argument("--source", help="Only this source")
    prune_parser.add_argument("--keep-last", type=int, help="Newest snapshots to keep")
    prune_parser.add_argument("--older-than-days", type=int, help="Delete snapshots older than this")
    prune_parser.add_argument("--dry-run", action="store_true", help="Report only")

    # resume-upload command
    resume_parser = subparsers.add_parser("resume-upload", help="Finish an interrupted upload")
    resume_parser.add_argument("snapshot_id")
    resume_parser.add_argument("--timeout", type=float, help="Overall timeout in seconds")

    return parser


def _target(args: argparse.Namespace):
    return target_from_name(
        args.kind,
        args.container,
        user=args.user,
        data_path=args.data_path,
        name=args.name,
        password=os.getenv("SNAPKEEP_REDIS_PASSWORD"),
    )


def _scope(args: argparse.Namespace) -> Scope:
    return Scope.subset(args.subset) if args.subset else Scope.full()


def _install_cancel_handler(cancel: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except NotImplementedError:
            # Windows event loops
            pass


async def _run(args: argparse.Namespace, config: SnapkeepConfig) -> ResultCode:
    cancel = asyncio.Event()
    _install_cancel_handler(cancel)
    state = await initialize_state(config)
    try:
        if args.command == "backup":
            result = await run_backup(
                config,
                state,
                _target(args),
                _scope(args),
                upload=False if args.no_upload else None,
                cancel=cancel,
                timeout=args.timeout,
            )
            if result.snapshot is not None:
                print(
                    f"{result.snapshot.id}\t{result.snapshot.status.value}\t"
                    f"{result.snapshot.size_bytes}\t{result.snapshot.storage_location or ''}"
                )
            if result.error:
                print(f"backup failed: {result.error}", file=sys.stderr)
            return result.code

        if args.command == "restore":
            target = _target(args)
            scope = _scope(args)
            if not (args.confirm or args.force):
                preview = await plan_restore(config, state, target, args.snapshot, scope)
                if preview.code != ResultCode.OK:
                    print(f"restore validation failed: {preview.error}", file=sys.stderr)
                    return preview.code
                print(f"Restore of {preview.snapshot.id} onto {target.name} ({preview.scope}) validated.")
                print(f"Snapshot size: {preview.snapshot.size_bytes} bytes, digest {preview.snapshot.digest}")
                print("This replaces live data. To proceed run the same command with:")
                print(f"  --confirm {preview.confirmation_token}")
                print(f"The token expires at {preview.expires_at.isoformat()}.")
                return ResultCode.OK

            result = await run_restore(
                config,
                state,
                target,
                args.snapshot,
                scope,
                force=args.force,
                confirmation_token=args.confirm,
                cancel=cancel,
                timeout=args.timeout,
            )
            if result.restore_id:
                print(f"{result.restore_id}\t{result.state}\t{' -> '.join(result.history)}")
            if result.error:
                print(f"restore failed: {result.error}", file=sys.stderr)
            return result.code

        if args.command == "list":
            snapshots = await state["catalog"].list(args.source).collect(args.limit)
            if args.json:
                print(json.dumps([_listing_row(s) for s in snapshots], indent=2))
            else:
                for s in snapshots:
                    print(
                        f"{s.id}\t{s.status.value}\t{s.scope.describe()}\t"
                        f"{s.size_bytes}\t{s.created_at.isoformat()}"
                    )
            return ResultCode.OK

        if args.command == "prune":
            result = await prune_snapshots(
                config,
                state,
                args.source,
                args.keep_last,
                args.older_than_days,
                args.dry_run,
            )
            verb = "would delete" if result.dry_run else "deleted"
            for snapshot_id in result.deleted_ids:
                print(f"{verb}\t{snapshot_id}")
            for snapshot_id in result.skipped_ids:
                print(f"skipped (source busy)\t{snapshot_id}")
            for error in result.errors:
                print(f"error\t{error}", file=sys.stderr)
            return ResultCode.OK if not result.errors else ResultCode.TRANSFER_FAILED

        if args.command == "resume-upload":
            result = await resume_upload(
                config, state, args.snapshot_id, cancel=cancel, timeout=args.timeout
            )
            if result.snapshot is not None:
                print(f"{result.snapshot.id}\t{result.snapshot.status.value}")
            if result.error:
                print(f"upload failed: {result.error}", file=sys.stderr)
            return result.code

        raise ConfigurationError(f"Unknown command: {args.command}")
    finally:
        await shutdown_state(state)


def _listing_row(snapshot) -> dict:
    row = snapshot.to_manifest()
    row["local_path"] = snapshot.local_path
    return row


def main(argv: List[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.json_logs, args.log_level)

    try:
        config = create_config_from_env(vault_path=args.vault, remote_storage=args.remote)
        code = asyncio.run(_run(args, config))
    except SnapkeepError as e:
        logger.error("command_failed", command=args.command, error=str(e), details=e.details)
        code = e.result_code

    sys.exit(code.exit_status)


if __name__ == "__main__":
    main()
