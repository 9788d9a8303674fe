"""Parse typed issue references out of issue bodies."""

import re
from dataclasses import dataclass, field

TASKLIST_RE = re.compile(r"^[\s]*[-*]\s*\[([ xX])\]\s*#(\d+)(?:\s*[-:]?\s*(.+?))?$", re.MULTILINE)
ISSUE_REF_RE = re.compile(r"#(\d+)")

KEYWORD_PATTERNS = [
    ("parent", re.compile(r"parent(?:\s+issue)?:\s*#(\d+)", re.IGNORECASE)),
    ("child", re.compile(r"child(?:\s+issue)?s?:\s*#(\d+)", re.IGNORECASE)),
    ("subtask", re.compile(r"sub-?task(?:s)?:\s*#(\d+)", re.IGNORECASE)),
    ("blocked-by", re.compile(r"depends\s+on:\s*#(\d+)", re.IGNORECASE)),
    ("blocks", re.compile(r"blocks:\s*#(\d+)", re.IGNORECASE)),
    ("blocked-by", re.compile(r"blocked\s+by:\s*#(\d+)", re.IGNORECASE)),
    ("related", re.compile(r"related\s+to:\s*#(\d+)", re.IGNORECASE)),
]

PARENT_BODY_PATTERNS = [
    re.compile(r"^#{1,3}\s*epic", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^#{1,3}\s*parent", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^#{1,3}\s*overview", re.IGNORECASE | re.MULTILINE),
    re.compile(r"task\s*list:", re.IGNORECASE),
    re.compile(r"sub-?tasks?:", re.IGNORECASE),
    re.compile(r"implementation\s+plan:", re.IGNORECASE),
]
PARENT_TITLE_PATTERNS = [
    re.compile(r"epic:", re.IGNORECASE),
    re.compile(r"parent:", re.IGNORECASE),
    re.compile(r"\[epic\]", re.IGNORECASE),
    re.compile(r"\[parent\]", re.IGNORECASE),
]


@dataclass
class TasklistItem:
    issue_number: int
    completed: bool
    title: str | None = None


@dataclass
class Relationship:
    kind: str
    issue_number: int


@dataclass
class ParsedRelationships:
    tasklist: list[TasklistItem] = field(default_factory=list)
    relationships: list[Relationship] = field(default_factory=list)

    def numbers(self, kind: str) -> list[int]:
        return [r.issue_number for r in self.relationships if r.kind == kind]

    @property
    def parents(self) -> list[int]:
        return self.numbers("parent")

    @property
    def children(self) -> list[int]:
        return list(dict.fromkeys(self.numbers("child") + self.numbers("subtask")))

    @property
    def blocked_by(self) -> list[int]:
        return self.numbers("blocked-by")

    @property
    def blocks(self) -> list[int]:
        return self.numbers("blocks")

    @property
    def related(self) -> list[int]:
        return self.numbers("related")


def parse_tasklist(body: str) -> list[TasklistItem]:
    items = []
    for match in TASKLIST_RE.finditer(body or ""):
        title = match.group(3)
        items.append(
            TasklistItem(
                issue_number=int(match.group(2)),
                completed=match.group(1).lower() == "x",
                title=title.strip() if title else None,
            )
        )
    return items


def parse_relationships(body: str, issue_number: int | None = None) -> ParsedRelationships:
    """Extract tasklist items and keyword references from an issue body.

    Tasklist items become subtasks and keyword references take their
    keyword's kind; one number may carry several kinds. Any ``#N`` not
    already referenced is a plain related reference. References to
    ``issue_number`` itself are dropped.
    """
    body = body or ""
    parsed = ParsedRelationships()
    found: set[tuple[str, int]] = set()

    def add(kind: str, number: int) -> bool:
        if number == issue_number or (kind, number) in found:
            return False
        found.add((kind, number))
        parsed.relationships.append(Relationship(kind, number))
        return True

    for item in parse_tasklist(body):
        if add("subtask", item.issue_number):
            parsed.tasklist.append(item)

    for kind, pattern in KEYWORD_PATTERNS:
        for match in pattern.finditer(body):
            add(kind, int(match.group(1)))

    referenced = {number for _, number in found}
    for match in ISSUE_REF_RE.finditer(body):
        number = int(match.group(1))
        if number not in referenced:
            add("related", number)
            referenced.add(number)

    return parsed


def is_likely_parent(body: str, title: str = "") -> bool:
    """Epic-style issue: parent headings or sections, an epic title, or several subtasks."""
    if not body:
        return False
    if any(pattern.search(body) for pattern in PARENT_BODY_PATTERNS):
        return True
    if any(pattern.search(title or "") for pattern in PARENT_TITLE_PATTERNS):
        return True
    return len(parse_tasklist(body)) >= 2


def is_likely_leaf(parsed: ParsedRelationships) -> bool:
    """An implementation issue: it has a parent and no children of its own."""
    return bool(parsed.parents) and not parsed.children
