"""Per-parse mutable state, threaded explicitly through one parse call."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class ParseSession:
    """Accumulates unknown tags for a single parse; never shared between parses."""

    source: str
    unknown_tags: list[str] = field(default_factory=list)

    def note_unknown(self, tag: str) -> None:
        if tag in self.unknown_tags:
            return
        self.unknown_tags.append(tag)
        logger.debug("%s: unrecognized element %s", self.source, tag)

    def frozen_tags(self) -> tuple[str, ...]:
        return tuple(self.unknown_tags)
