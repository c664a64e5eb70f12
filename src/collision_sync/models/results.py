"""Import outcome models reported by the runner, CLI and API."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class ImportResult(BaseModel):
    """Outcome of importing a single file."""

    file: str
    success: bool
    format: str = ""
    action: Optional[Literal["created", "updated", "skipped", "dry_run"]] = None
    job_id: Optional[str] = None
    job_number: Optional[str] = None
    source_system: str = ""
    unknown_tags: list[str] = Field(default_factory=list)
    attempts: int = 1
    error: str = ""
    failed_stage: Optional[Literal["read", "parse", "merge", "route"]] = None

    @property
    def unknown_tag_count(self) -> int:
        return len(self.unknown_tags)


class ImportSummary(BaseModel):
    """Aggregated totals for a batch."""

    total_files: int = 0
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    results: list[ImportResult] = Field(default_factory=list)
    unknown_tags: list[str] = Field(default_factory=list)
    processing_seconds: float = 0.0

    def add(self, result: ImportResult) -> None:
        self.results.append(result)
        if not result.success:
            self.error_count += 1
            return
        self.success_count += 1
        if result.action == "skipped":
            self.skipped_count += 1
        for tag in result.unknown_tags:
            if tag not in self.unknown_tags:
                self.unknown_tags.append(tag)


class ValidationReport(BaseModel):
    """Parse-only report: what would be imported, with completeness warnings."""

    file: str
    format: str
    valid: bool
    source_system: str = ""
    ro_number: str = ""
    claim_number: str = ""
    vin: str = ""
    line_count: int = 0
    part_count: int = 0
    unknown_tags: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    error: str = ""
