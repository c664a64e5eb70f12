"""Estimate import endpoints.

The request body is the raw estimate file; the file name travels as a query
parameter so the format can be detected from its extension.
"""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Query, Request

from collision_sync.ingest.runner import ImportRunner
from collision_sync.models.results import ImportResult, ValidationReport

router = APIRouter(tags=["imports"])

FormatHint = Literal["auto", "bms", "ems"]


def _runner(request: Request) -> ImportRunner:
    return request.app.state.runner


@router.post("")
async def import_estimate(
    request: Request,
    filename: str = Query(..., min_length=1),
    format: FormatHint = Query("auto"),
    dry_run: bool = Query(False),
) -> dict[str, Any]:
    """Import one estimate and return the job it created or updated."""
    body = await request.body()
    result: ImportResult = await _runner(request).import_content(filename, body, format, dry_run)
    if not result.success:
        status_code = 422 if result.failed_stage == "parse" else 503
        raise HTTPException(status_code=status_code, detail={"file": filename, "error": result.error})
    return {
        "job_id": result.job_id,
        "job_number": result.job_number,
        "action": result.action,
        "format": result.format,
        "source_system": result.source_system,
        "unknown_tag_count": result.unknown_tag_count,
        "unknown_tags": result.unknown_tags,
        "attempts": result.attempts,
    }


@router.post("/validate", response_model=ValidationReport)
async def validate_estimate(
    request: Request,
    filename: str = Query(..., min_length=1),
    format: FormatHint = Query("auto"),
) -> ValidationReport:
    """Parse an estimate without importing it."""
    body = await request.body()
    report = _runner(request).validate(filename, body, format)
    if not report.valid:
        raise HTTPException(status_code=422, detail={"file": filename, "error": report.error})
    return report
