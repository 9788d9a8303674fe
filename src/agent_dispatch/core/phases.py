"""Phase-master title conventions.

A phase master is an issue titled like ``MASTER: Phase 3 rollout``. Its
siblings are the ``Phase 3.1``, ``Phase 3.2`` ... issues that ride along with
it through the pipeline.
"""

import re

PHASE_RE = re.compile(r"Phase\s+(\d+)", re.IGNORECASE)
SUBPHASE_RE = re.compile(r"Phase\s+\d+\.\d+", re.IGNORECASE)


def is_phase_master(title: str) -> bool:
    if "master" not in (title or "").lower():
        return False
    return bool(PHASE_RE.search(title)) and not SUBPHASE_RE.search(title)


def phase_number(title: str) -> int | None:
    match = PHASE_RE.search(title or "")
    return int(match.group(1)) if match else None


def is_phase_sibling(title: str, phase: int) -> bool:
    return bool(re.search(rf"Phase\s+{phase}\.\d+", title or "", re.IGNORECASE))
