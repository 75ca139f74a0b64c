"""Extract the reviewer verdict token from free-form text."""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional

__all__ = ["Verdict", "VERDICT_RE", "parse_verdict"]

_MARKUP = r"[*_`]*"

# ``VERDICT`` then optional emphasis, a colon (inside or outside the
# emphasis) and the token. The colon may be omitted when emphasis separates
# the label from the token, e.g. ``**VERDICT** ACCEPTABLE``.
VERDICT_RE = re.compile(
    rf"\bVERDICT{_MARKUP}\s*(?::\s*)?{_MARKUP}\s*(?::\s*)?{_MARKUP}(ACCEPTABLE|NEEDS_FIXES)\b",
    re.IGNORECASE,
)


class Verdict(str, Enum):
    """Outcome of a review or verification phase."""

    ACCEPTABLE = "ACCEPTABLE"
    NEEDS_FIXES = "NEEDS_FIXES"
    UNKNOWN = "UNKNOWN"

    @property
    def accepted(self) -> bool:
        return self is Verdict.ACCEPTABLE


def parse_verdict(text: Optional[str]) -> Verdict:
    """Return the first verdict token found in ``text``, or ``UNKNOWN``."""
    if not text:
        return Verdict.UNKNOWN
    match = VERDICT_RE.search(text)
    if match is None:
        return Verdict.UNKNOWN
    return Verdict(match.group(1).upper())
