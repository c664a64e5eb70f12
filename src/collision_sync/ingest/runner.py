"""ImportRunner: bounded concurrent imports with retry and file routing.

Parsing and merging are synchronous; the runner pushes each file's work onto
a worker thread and bounds how many run at once with a semaphore. Every
merge runs in its own store transaction, so one failing file never affects
another.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path, PurePosixPath
from typing import Awaitable, Callable, Optional

from collision_sync.core.config import ImportConfig, ShopConfig
from collision_sync.core.exceptions import CollisionSyncError, FileStoreError, ParseError, RetryableError
from collision_sync.core.protocols import IEstimateStore, IFileStore
from collision_sync.merge.normalizer import JobNormalizer
from collision_sync.models.payload import NormalizedPayload
from collision_sync.models.records import AuditAction, Job
from collision_sync.models.results import ImportResult, ImportSummary, ValidationReport
from collision_sync.parsers import parse_content

logger = logging.getLogger(__name__)

_ACTIONS = {
    AuditAction.CREATED: "created",
    AuditAction.UPDATED: "updated",
    AuditAction.IMPORT_SKIPPED: "skipped",
}


def _job_action(job: Job) -> str:
    if not job.history:
        return "updated"
    return _ACTIONS[job.history[-1].action]


class ImportRunner:
    """Imports estimate files into an ``IEstimateStore``."""

    def __init__(
        self,
        store: IEstimateStore,
        *,
        file_store: Optional[IFileStore] = None,
        config: Optional[ImportConfig] = None,
        shop_config: Optional[ShopConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config or ImportConfig()
        self._normalizer = JobNormalizer(store, shop_config)
        self._file_store = file_store
        self._sleep = sleep

    @property
    def config(self) -> ImportConfig:
        return self._config

    def is_supported(self, name: str) -> bool:
        return PurePosixPath(name).suffix.lower() in self._config.extensions

    # ------------------------------------------------------------------
    # Single file
    # ------------------------------------------------------------------

    async def import_content(self, filename: str, content: str | bytes, hint: Optional[str] = None,
                             dry_run: bool = False) -> ImportResult:
        """Parse and merge one file. Failures are reported, not raised."""
        try:
            estimate_format, payload = await asyncio.to_thread(parse_content, filename, content, hint)
        except ParseError as exc:
            logger.error("Failed to parse %s: %s", filename, exc)
            return ImportResult(file=filename, success=False, error=str(exc), failed_stage="parse")

        unknown_tags = list(payload.meta.unknown_tags)
        if dry_run:
            logger.info("Dry run: %s parsed as %s, nothing written", filename, estimate_format.value)
            return ImportResult(
                file=filename, success=True, format=estimate_format.value, action="dry_run",
                source_system=payload.meta.source_system, unknown_tags=unknown_tags, attempts=0,
            )

        job, attempts, error = await self._merge_with_retry(filename, payload)
        if job is None:
            return ImportResult(
                file=filename, success=False, format=estimate_format.value,
                source_system=payload.meta.source_system, unknown_tags=unknown_tags,
                attempts=attempts, error=error, failed_stage="merge",
            )
        return ImportResult(
            file=filename,
            success=True,
            format=estimate_format.value,
            action=_job_action(job),
            job_id=job.id,
            job_number=job.job_number,
            source_system=payload.meta.source_system,
            unknown_tags=unknown_tags,
            attempts=attempts,
        )

    async def _merge_with_retry(self, filename: str, payload: NormalizedPayload) -> tuple[Optional[Job], int, str]:
        max_attempts = max(1, self._config.retry_attempts)
        for attempt in range(1, max_attempts + 1):
            try:
                job = await asyncio.to_thread(self._normalizer.upsert_job, payload)
                return job, attempt, ""
            except RetryableError as exc:
                if attempt == max_attempts:
                    logger.error("Giving up on %s after %d attempts: %s", filename, attempt, exc)
                    return None, attempt, str(exc)
                delay = self._config.retry_delay_seconds * 2 ** (attempt - 1)
                logger.warning("Attempt %d for %s failed (%s); retrying in %.1fs", attempt, filename, exc, delay)
                await self._sleep(delay)
            except CollisionSyncError as exc:
                logger.error("Failed to import %s: %s", filename, exc)
                return None, attempt, str(exc)
        return None, max_attempts, "no attempts made"

    async def import_path(self, path: Path, hint: Optional[str] = None, dry_run: bool = False) -> ImportResult:
        try:
            content = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            return ImportResult(
                file=str(path), success=False, error=f"cannot read file: {exc}", failed_stage="read",
            )
        return await self.import_content(str(path), content, hint, dry_run)

    def validate(self, filename: str, content: str | bytes, hint: Optional[str] = None) -> ValidationReport:
        """Parse without writing and report what an import would see."""
        try:
            estimate_format, payload = parse_content(filename, content, hint)
        except ParseError as exc:
            return ValidationReport(file=filename, format="", valid=False, error=str(exc))

        identities = payload.identities
        warnings: list[str] = []
        if identities.is_empty:
            warnings.append("no RO number, claim number or VIN; every import will create a new job")
        if not payload.lines:
            warnings.append("estimate has no lines")
        if not payload.customer.display_name:
            warnings.append("customer has no name")
        if payload.meta.unknown_tags:
            warnings.append(f"{len(payload.meta.unknown_tags)} unrecognized elements")
        return ValidationReport(
            file=filename,
            format=estimate_format.value,
            valid=True,
            source_system=payload.meta.source_system,
            ro_number=identities.ro_number,
            claim_number=identities.claim_number,
            vin=identities.vin,
            line_count=len(payload.lines),
            part_count=len(payload.parts),
            unknown_tags=list(payload.meta.unknown_tags),
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def _run_batch(self, names: list[str],
                         worker: Callable[[str], Awaitable[ImportResult]],
                         concurrency: Optional[int], continue_on_error: Optional[bool]) -> ImportSummary:
        started = time.perf_counter()
        limit = max(1, concurrency or self._config.concurrency)
        keep_going = self._config.continue_on_error if continue_on_error is None else continue_on_error
        semaphore = asyncio.Semaphore(limit)
        stop = asyncio.Event()

        async def run(name: str) -> ImportResult:
            async with semaphore:
                if stop.is_set():
                    return ImportResult(file=name, success=False, attempts=0,
                                        error="not attempted: batch stopped after an earlier failure")
                result = await worker(name)
                if not result.success and not keep_going:
                    stop.set()
                return result

        logger.info("Importing %d files with concurrency %d", len(names), limit)
        results = await asyncio.gather(*(run(name) for name in names))
        summary = ImportSummary(total_files=len(names))
        for result in results:
            summary.add(result)
        summary.processing_seconds = round(time.perf_counter() - started, 3)
        logger.info(
            "Batch finished: %d ok, %d failed, %d skipped in %.2fs",
            summary.success_count, summary.error_count, summary.skipped_count, summary.processing_seconds,
        )
        return summary

    async def import_directory(self, directory: Path, *, hint: Optional[str] = None, dry_run: bool = False,
                               concurrency: Optional[int] = None,
                               continue_on_error: Optional[bool] = None) -> ImportSummary:
        """Import every supported file directly inside ``directory``."""
        files = sorted(p for p in directory.iterdir() if p.is_file() and self.is_supported(p.name))
        by_name = {str(p): p for p in files}

        async def worker(name: str) -> ImportResult:
            return await self.import_path(by_name[name], hint, dry_run)

        return await self._run_batch(list(by_name), worker, concurrency, continue_on_error)

    async def import_inbox(self, *, dry_run: bool = False, concurrency: Optional[int] = None,
                           continue_on_error: Optional[bool] = None) -> ImportSummary:
        """Import files under the file store's inbox prefix and route them by outcome."""
        if self._file_store is None:
            raise CollisionSyncError("import_inbox requires a file store")
        file_store = self._file_store
        config = self._config
        keys = [key for key in file_store.list_files(config.inbox_prefix) if self.is_supported(key)]

        async def worker(key: str) -> ImportResult:
            try:
                content = await asyncio.to_thread(file_store.read, key)
            except FileStoreError as exc:
                logger.error("Cannot read %s: %s", key, exc)
                return ImportResult(file=key, success=False, attempts=0, error=str(exc), failed_stage="read")
            result = await self.import_content(key, content, dry_run=dry_run)
            if dry_run or not result.attempts:
                return result
            try:
                await asyncio.to_thread(self._route, file_store, key, result)
            except FileStoreError as exc:
                logger.error("Imported %s but could not route it: %s", key, exc)
                return result.model_copy(update={
                    "success": False,
                    "error": f"{result.error + '; ' if result.error else ''}routing failed: {exc}",
                    "failed_stage": "route",
                })
            return result

        return await self._run_batch(keys, worker, concurrency, continue_on_error)

    def _route(self, file_store: IFileStore, key: str, result: ImportResult) -> None:
        relative = key[len(self._config.inbox_prefix):] if key.startswith(self._config.inbox_prefix) else key
        prefix = self._config.processed_prefix if result.success else self._config.failed_prefix
        destination = f"{prefix}{relative}"
        file_store.move(key, destination)
        if not result.success:
            report = f"file: {key}\nerror: {result.error}\n".encode("utf-8")
            file_store.write(f"{destination}.error.txt", report, content_type="text/plain")
        logger.info("Moved %s to %s", key, destination)
