"""Completion detection for agent session logs.

Agents are asked to print explicit markers such as ``AUTONOMOUS_SIGNAL:COMPLETE``.
When a session ends without one, a heuristic scan of the log tail decides
whether the work looks finished.
"""

import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

SIGNAL_RE = re.compile(r"AUTONOMOUS_SIGNAL:(COMPLETE|BLOCKED|FAILED|PR_CREATED)(?::([^\r\n]*))?")

COMPLETION_INDICATORS = [
    r"pull request created",
    r"pr created",
    r"pr #\d+ is (open|ready)",
    r"work.*complete",
    r"task.*complete",
    r"phase.*complete",
    r"documentation.*complete",
    r"implementation.*complete",
    r"all.*requirements.*met",
    r"acceptance criteria.*met",
    r"✅.*complete",
    r"ready for review",
    r"awaiting.*review",
    r"merged to",
    r"successfully merged",
]

SESSION_ENDED_RE = re.compile(r"=== session ended ===", re.IGNORECASE)

PR_PATTERNS = [
    re.compile(r"\bpr\s+#(\d+)", re.IGNORECASE),
    re.compile(r"pull request\s+#(\d+)", re.IGNORECASE),
    re.compile(r"github\.com/[^/]+/[^/]+/pull/(\d+)", re.IGNORECASE),
]

TAIL_LINES = 1000
MAX_SESSION_AGE = 10 * 60
IDLE_THRESHOLD = 30 * 60


@dataclass
class Signal:
    kind: str  # "complete", "blocked", "failed" or "pr_created"
    detail: str | None = None


@dataclass
class SessionAnalysis:
    is_complete: bool
    has_recent_activity: bool
    indicators: list[str] = field(default_factory=list)
    last_activity: datetime | None = None


def parse_signals(text: str) -> list[Signal]:
    signals = []
    for match in SIGNAL_RE.finditer(text or ""):
        detail = match.group(2).strip() if match.group(2) else None
        signals.append(Signal(kind=match.group(1).lower(), detail=detail or None))
    return signals


def final_signal(text: str) -> Signal | None:
    """Last terminal marker (complete, blocked or failed) in the text."""
    terminal = [s for s in parse_signals(text) if s.kind != "pr_created"]
    return terminal[-1] if terminal else None


def extract_pr_number(text: str) -> int | None:
    for signal in parse_signals(text):
        if signal.kind == "pr_created" and signal.detail and signal.detail.lstrip("#").isdigit():
            return int(signal.detail.lstrip("#"))
    for pattern in PR_PATTERNS:
        if match := pattern.search(text or ""):
            return int(match.group(1))
    return None


def find_completion_indicators(text: str) -> list[str]:
    tail = "\n".join((text or "").split("\n")[-TAIL_LINES:]).lower()
    return [ind for ind in COMPLETION_INDICATORS if re.search(ind, tail, re.IGNORECASE)]


def analyze_session_text(text: str, last_modified: float, now: float | None = None,
                         max_age: float = MAX_SESSION_AGE) -> SessionAnalysis:
    """Complete when the session ended, shows indicators and has gone quiet."""
    now = time.time() if now is None else now
    recent = now - last_modified < max_age
    tail = "\n".join((text or "").split("\n")[-TAIL_LINES:])
    indicators = find_completion_indicators(tail)
    ended = bool(SESSION_ENDED_RE.search(tail))
    return SessionAnalysis(
        is_complete=ended and bool(indicators) and not recent,
        has_recent_activity=recent,
        indicators=indicators,
        last_activity=datetime.fromtimestamp(last_modified),
    )


def analyze_session_log(log_path: str | Path, now: float | None = None,
                        max_age: float = MAX_SESSION_AGE) -> SessionAnalysis:
    path = Path(log_path)
    if not path.exists():
        return SessionAnalysis(is_complete=False, has_recent_activity=False)
    text = path.read_text(errors="replace")
    return analyze_session_text(text, path.stat().st_mtime, now=now, max_age=max_age)


def is_session_idle(log_path: str | Path, now: float | None = None,
                    idle_threshold: float = IDLE_THRESHOLD) -> bool:
    path = Path(log_path)
    if not path.exists():
        return True
    now = time.time() if now is None else now
    return now - path.stat().st_mtime > idle_threshold
