"""Classify an estimate file as BMS (XML) or EMS (pipe-delimited)."""

from __future__ import annotations

import logging
import re
from enum import StrEnum
from pathlib import PurePath

logger = logging.getLogger(__name__)


class EstimateFormat(StrEnum):
    BMS = "bms"
    EMS = "ems"


KNOWN_BMS_ROOTS = (
    "VehicleDamageEstimateAddRq",
    "BMS_ESTIMATE",
    "Estimate",
    "estimate",
    "estimateData",
    "estimateInfo",
)
BMS_EXTENSIONS = frozenset({".xml", ".bms"})
EMS_EXTENSIONS = frozenset({".ems", ".csv"})
SUPPORTED_EXTENSIONS = BMS_EXTENSIONS | EMS_EXTENSIONS | {".txt"}

_SNIFF_BYTES = 4096
_ROOT_PATTERN = re.compile(
    r"<\s*(?:[\w.-]+:)?(?:%s)[\s/>]" % "|".join(KNOWN_BMS_ROOTS)
)


def _extension(filename: str) -> str:
    name = filename.strip().lower()
    if name.startswith(".") and name.count(".") == 1:
        return name
    if "." not in name:
        return f".{name}" if name in ("xml", "bms", "ems", "csv", "txt") else ""
    return PurePath(name).suffix


def _head(content: str | bytes) -> str:
    if isinstance(content, bytes):
        return content[:_SNIFF_BYTES].decode("utf-8", errors="replace")
    return content[:_SNIFF_BYTES]


def parse_hint(hint: str | None) -> EstimateFormat | None:
    """Map a caller hint to a format; ``None``, "" and "auto" mean no hint."""
    if hint is None:
        return None
    value = hint.strip().lower()
    if value in ("", "auto"):
        return None
    try:
        return EstimateFormat(value)
    except ValueError:
        return None


def detect_format(filename: str, content: str | bytes, hint: str | None = None) -> EstimateFormat:
    """Best-guess format. Never raises.

    Precedence: explicit hint, then extension (``.txt`` is ambiguous), then
    content sniffing, then BMS.
    """
    explicit = parse_hint(hint)
    if explicit is not None:
        return explicit
    if hint and hint.strip().lower() != "auto":
        logger.warning("Ignoring unrecognized format hint %r for %s", hint, filename)

    extension = _extension(filename or "")
    if extension in BMS_EXTENSIONS:
        return EstimateFormat.BMS
    if extension in EMS_EXTENSIONS:
        return EstimateFormat.EMS

    head = _head(content)
    stripped = head.lstrip("\ufeff \t\r\n")
    if stripped.startswith("<?xml") or _ROOT_PATTERN.search(head):
        return EstimateFormat.BMS

    first_line = next((line.strip() for line in stripped.splitlines() if line.strip()), "")
    if "|" in first_line and "HDR|" in first_line.upper():
        return EstimateFormat.EMS

    return EstimateFormat.BMS
