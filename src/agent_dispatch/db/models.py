"""Data models for the dispatch engine."""

import math
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Issue:
    number: int
    title: str
    body: str = ""
    state: str = "open"
    labels: list[str] = field(default_factory=list)
    url: str | None = None


@dataclass
class WorkSession:
    id: int | None = None
    assignment_id: str = ""
    started_at: datetime | None = None
    ended_at: datetime | None = None
    summary: str | None = None
    prompt_used: str | None = None


@dataclass
class AssignmentEvent:
    id: int | None = None
    assignment_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class PersonaReview:
    persona: str
    passed: bool
    feedback: str
    reviewed_at: datetime
    score: int | None = None


@dataclass
class ReviewResult:
    overall_passed: bool
    persona_reviews: list[PersonaReview] = field(default_factory=list)
    failure_reasons: list[str] | None = None

    def to_dict(self) -> dict:
        return {
            "overall_passed": self.overall_passed,
            "persona_reviews": [
                {
                    "persona": r.persona,
                    "passed": r.passed,
                    "feedback": r.feedback,
                    "reviewed_at": r.reviewed_at.isoformat(),
                    "score": r.score,
                }
                for r in self.persona_reviews
            ],
            "failure_reasons": self.failure_reasons,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ReviewResult":
        return cls(
            overall_passed=data["overall_passed"],
            persona_reviews=[
                PersonaReview(
                    persona=r["persona"],
                    passed=r["passed"],
                    feedback=r["feedback"],
                    reviewed_at=datetime.fromisoformat(r["reviewed_at"]),
                    score=r.get("score"),
                )
                for r in data.get("persona_reviews", [])
            ],
            failure_reasons=data.get("failure_reasons"),
        )


@dataclass
class Assignment:
    id: str
    issue_number: int
    issue_title: str
    provider: str
    issue_body: str = ""
    external_link_id: str | None = None
    instance_id: str | None = None
    worktree_path: str | None = None
    branch_name: str | None = None
    process_id: int | None = None
    status: str = "assigned"
    is_phase_master: bool = False
    pr_number: int | None = None
    stage_commit: str | None = None
    main_commit: str | None = None
    review_result: ReviewResult | None = None
    tracker_pending: str | None = None  # status value whose tracker write failed
    assigned_at: datetime | None = None
    started_at: datetime | None = None
    last_activity: datetime | None = None
    completed_at: datetime | None = None
    merged_at: datetime | None = None
    work_sessions: list[WorkSession] = field(default_factory=list)


@dataclass
class InstanceSlot:
    provider: str
    slot_number: int
    instance_id: str
    is_available: bool
    assignment_id: str | None = None
    issue_number: int | None = None
    is_abandoned: bool = False


@dataclass
class IssueDependency:
    issue_number: int
    depends_on: list[int] = field(default_factory=list)
    blocks: list[int] = field(default_factory=list)
    related_to: list[int] = field(default_factory=list)
    subtasks: list[int] = field(default_factory=list)


@dataclass
class DependencyGraph:
    nodes: dict[int, IssueDependency] = field(default_factory=dict)
    roots: list[int] = field(default_factory=list)
    leaves: list[int] = field(default_factory=list)
    cycles: list[list[int]] = field(default_factory=list)


@dataclass
class DependencyScore:
    issue_number: int
    blocking_score: int = 0
    blocked_by_count: int = 0
    is_blocked: bool = False
    is_leaf: bool = True
    depth_from_root: float = math.inf
