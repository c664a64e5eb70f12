"""Estimate parsers.

``parse_content`` is the single entry point used by the runner, the CLI and
the API: it classifies the file and hands it to the matching parser.
"""

from __future__ import annotations

from collision_sync.core.exceptions import UnsupportedFormatError
from collision_sync.models.payload import NormalizedPayload
from collision_sync.parsers.bms import parse_bms
from collision_sync.parsers.detector import EstimateFormat, detect_format, parse_hint
from collision_sync.parsers.ems import parse_ems

__all__ = ["EstimateFormat", "detect_format", "parse_bms", "parse_content", "parse_ems"]


def parse_content(
    filename: str, content: str | bytes, hint: str | None = None
) -> tuple[EstimateFormat, NormalizedPayload]:
    """Detect the format of ``content`` and parse it.

    Raises:
        UnsupportedFormatError: ``hint`` is neither "auto", "bms" nor "ems".
        StructuralParseError: the content cannot be parsed in its format.
    """
    if hint is not None and hint.strip().lower() not in ("", "auto") and parse_hint(hint) is None:
        raise UnsupportedFormatError(f"unsupported format {hint!r}; expected auto, bms or ems")
    estimate_format = detect_format(filename, content, hint)
    if estimate_format is EstimateFormat.EMS:
        return estimate_format, parse_ems(content)
    return estimate_format, parse_bms(content)
