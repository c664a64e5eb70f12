"""Command-line entry point: ``collision-sync file|batch|inbox|validate``.

Exit status is 0 when every file imported (or validated) cleanly, 1 otherwise.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from collision_sync.core.config import AppSettings
from collision_sync.core.logging import configure_logging
from collision_sync.ingest.runner import ImportRunner
from collision_sync.models.results import ImportResult, ImportSummary
from collision_sync.persistence import create_persistence

logger = logging.getLogger(__name__)

FORMAT_CHOICES = ("auto", "bms", "ems")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="collision-sync",
        description="Import BMS/EMS collision estimates into the estimate store.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--json", action="store_true", help="Print machine-readable results")
    commands = parser.add_subparsers(dest="command", required=True)

    file_cmd = commands.add_parser("file", help="Import a single estimate file")
    file_cmd.add_argument("path", type=Path)
    file_cmd.add_argument("--format", choices=FORMAT_CHOICES, default="auto")
    file_cmd.add_argument("--dry-run", action="store_true", help="Parse only; write nothing")

    batch_cmd = commands.add_parser("batch", help="Import every estimate file in a directory")
    batch_cmd.add_argument("directory", type=Path)
    batch_cmd.add_argument("--format", choices=FORMAT_CHOICES, default="auto")
    batch_cmd.add_argument("--concurrency", type=int, default=None)
    batch_cmd.add_argument("--continue-on-error", action=argparse.BooleanOptionalAction, default=None)
    batch_cmd.add_argument("--dry-run", action="store_true")

    inbox_cmd = commands.add_parser("inbox", help="Import files waiting in the file store inbox")
    inbox_cmd.add_argument("--concurrency", type=int, default=None)
    inbox_cmd.add_argument("--continue-on-error", action=argparse.BooleanOptionalAction, default=None)
    inbox_cmd.add_argument("--dry-run", action="store_true")

    validate_cmd = commands.add_parser("validate", help="Parse a file and report without importing")
    validate_cmd.add_argument("path", type=Path)
    validate_cmd.add_argument("--format", choices=FORMAT_CHOICES, default="auto")
    return parser


def _print_result(result: ImportResult) -> None:
    if result.success:
        job = f" job {result.job_number}" if result.job_number else ""
        print(f"OK    {result.file}: {result.action}{job} ({result.format}, "
              f"{result.unknown_tag_count} unknown tags)")
    else:
        print(f"FAIL  {result.file}: {result.error}")


def _print_summary(summary: ImportSummary) -> None:
    for result in summary.results:
        _print_result(result)
    print(f"\n{summary.total_files} files: {summary.success_count} imported, "
          f"{summary.error_count} failed, {summary.skipped_count} skipped "
          f"in {summary.processing_seconds:.2f}s")
    if summary.unknown_tags:
        print(f"Unrecognized elements: {', '.join(summary.unknown_tags)}")


def run(args: argparse.Namespace, settings: AppSettings) -> int:
    persistence = create_persistence(settings)
    runner = ImportRunner(
        persistence.store,
        file_store=persistence.file_store,
        config=settings.importer,
        shop_config=settings.shop,
    )

    if args.command == "validate":
        try:
            content = args.path.read_bytes()
        except OSError as exc:
            print(f"FAIL  {args.path}: cannot read file: {exc}")
            return 1
        report = runner.validate(str(args.path), content, args.format)
        if args.json:
            print(report.model_dump_json(indent=2))
        elif report.valid:
            print(f"VALID {report.file}: {report.format} from {report.source_system or 'unknown'}; "
                  f"ro={report.ro_number or '-'} claim={report.claim_number or '-'} vin={report.vin or '-'}; "
                  f"{report.line_count} lines, {report.part_count} parts")
            for warning in report.warnings:
                print(f"  warning: {warning}")
        else:
            print(f"INVALID {report.file}: {report.error}")
        return 0 if report.valid else 1

    if settings.store_backend == "memory" and not args.dry_run:
        logger.warning(
            "Using the in-memory store: imported jobs are discarded when this command exits. "
            "Set COLLISION_SYNC_STORE_BACKEND=dynamodb to keep them."
        )

    if args.command == "file":
        result = asyncio.run(runner.import_path(args.path, args.format, args.dry_run))
        if args.json:
            print(result.model_dump_json(indent=2))
        else:
            _print_result(result)
        return 0 if result.success else 1

    if args.command == "batch":
        if not args.directory.is_dir():
            print(f"FAIL  {args.directory}: not a directory")
            return 1
        summary = asyncio.run(runner.import_directory(
            args.directory,
            hint=args.format,
            dry_run=args.dry_run,
            concurrency=args.concurrency,
            continue_on_error=args.continue_on_error,
        ))
    else:
        summary = asyncio.run(runner.import_inbox(
            dry_run=args.dry_run,
            concurrency=args.concurrency,
            continue_on_error=args.continue_on_error,
        ))
    if args.json:
        print(summary.model_dump_json(indent=2))
    else:
        _print_summary(summary)
    return 0 if summary.error_count == 0 else 1


def main(argv: Optional[Sequence[str]] = None, settings: Optional[AppSettings] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or AppSettings()
    configure_logging("DEBUG" if args.verbose else settings.log_level)
    return run(args, settings)


if __name__ == "__main__":
    sys.exit(main())
