"""Assignment registry: the lifecycle state machine and its persistence."""

import json
import logging
import sqlite3
import uuid
from collections import deque
from datetime import datetime

from agent_dispatch.core.phases import is_phase_master
from agent_dispatch.db.models import Assignment, AssignmentEvent, Issue, ReviewResult, WorkSession
from agent_dispatch.errors import InvalidTransition, TrackerError, ValidationError

logger = logging.getLogger(__name__)

STATUSES = (
    "assigned",
    "in-progress",
    "in-review",
    "dev-complete",
    "merge-review",
    "stage-ready",
    "merged",
)

TRANSITIONS: dict[str, tuple[str, ...]] = {
    "assigned": ("in-progress",),
    "in-progress": ("in-review", "dev-complete", "assigned"),
    "in-review": ("dev-complete", "in-progress"),
    "dev-complete": ("merge-review",),
    "merge-review": ("stage-ready", "assigned"),
    "stage-ready": ("merged",),
    "merged": (),
}


def can_transition(old_status: str, new_status: str) -> bool:
    return new_status in TRANSITIONS.get(old_status, ())


def transition_path(old_status: str, new_status: str) -> list[str] | None:
    """Shortest chain of statuses leading from old_status to new_status."""
    if old_status == new_status:
        return []
    queue = deque([(old_status, [])])
    seen = {old_status}
    while queue:
        status, path = queue.popleft()
        for nxt in TRANSITIONS.get(status, ()):
            if nxt == new_status:
                return path + [nxt]
            if nxt not in seen:
                seen.add(nxt)
                queue.append((nxt, path + [nxt]))
    return None


def _is_forward(old_status: str, new_status: str) -> bool:
    """True if new_status lies later in the lifecycle and is reachable from old_status."""
    if STATUSES.index(new_status) <= STATUSES.index(old_status):
        return False
    return transition_path(old_status, new_status) is not None


class AssignmentRegistry:
    """Owns assignment rows. Every status write goes through this class.

    Each status change is mirrored to the tracker when the assignment has an
    ``external_link_id``. Mirror failures are logged and never undo the
    local change.
    """

    def __init__(self, conn: sqlite3.Connection, tracker=None, reject_status: str | None = None):
        self.conn = conn
        self.tracker = tracker
        self.reject_status = reject_status

    # ── Creation and queries ────────────────────────────────────────────

    def create(
        self,
        issue: Issue,
        provider: str,
        instance_id: str | None = None,
        external_link_id: str | None = None,
    ) -> Assignment:
        if self.is_issue_assigned(issue.number):
            raise ValidationError(f"Issue #{issue.number} already has an active assignment")

        assignment_id = uuid.uuid4().hex[:12]
        try:
            self.conn.execute(
                """INSERT INTO assignments (id, issue_number, issue_title, issue_body,
                       external_link_id, provider, instance_id, is_phase_master, status)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'assigned')""",
                (
                    assignment_id,
                    issue.number,
                    issue.title,
                    issue.body,
                    external_link_id,
                    provider,
                    instance_id,
                    int(is_phase_master(issue.title)),
                ),
            )
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            raise ValidationError(f"Cannot assign issue #{issue.number}: {e}") from e

        self._log_event(assignment_id, "created", None, "assigned")
        if instance_id:
            self._log_event(assignment_id, "slot_claimed", None, instance_id)
        self.conn.commit()

        assignment = self.get(assignment_id)
        logger.info("Assigned issue #%d to %s", issue.number, instance_id or provider)
        self._mirror_status(assignment)
        self._mirror_instance(assignment)
        return assignment

    def get(self, assignment_id: str) -> Assignment | None:
        row = self.conn.execute(
            "SELECT * FROM assignments WHERE id = ?", (assignment_id,)
        ).fetchone()
        if not row:
            return None
        assignment = _row_to_assignment(row)
        assignment.work_sessions = self.get_work_sessions(assignment_id)
        return assignment

    def require(self, assignment_id: str) -> Assignment:
        assignment = self.get(assignment_id)
        if assignment is None:
            raise ValidationError(f"Assignment {assignment_id} not found")
        return assignment

    def get_by_issue(self, issue_number: int) -> Assignment | None:
        """The active assignment for an issue, else its most recent one."""
        row = self.conn.execute(
            """SELECT * FROM assignments WHERE issue_number = ?
               ORDER BY (status = 'merged') ASC, assigned_at DESC LIMIT 1""",
            (issue_number,),
        ).fetchone()
        return _row_to_assignment(row) if row else None

    def list_assignments(self, status: str | None = None, provider: str | None = None) -> list[Assignment]:
        query = "SELECT * FROM assignments WHERE 1 = 1"
        params: list = []
        if status:
            query += " AND status = ?"
            params.append(status)
        if provider:
            query += " AND provider = ?"
            params.append(provider)
        query += " ORDER BY assigned_at ASC, issue_number ASC"
        return [_row_to_assignment(r) for r in self.conn.execute(query, params).fetchall()]

    def list_active(self) -> list[Assignment]:
        rows = self.conn.execute(
            "SELECT * FROM assignments WHERE status != 'merged' ORDER BY assigned_at ASC"
        ).fetchall()
        return [_row_to_assignment(r) for r in rows]

    def is_issue_assigned(self, issue_number: int) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM assignments WHERE issue_number = ? AND status != 'merged'",
            (issue_number,),
        ).fetchone()
        return row is not None

    # ── Status transitions ──────────────────────────────────────────────

    def transition(self, assignment_id: str, new_status: str,
                   tracker_status: str | None = None, mirror: bool = True) -> Assignment:
        """Move an assignment along one declared edge of the status graph."""
        if new_status not in STATUSES:
            raise ValidationError(f"Unknown status '{new_status}'")
        assignment = self.require(assignment_id)
        old_status = assignment.status
        if not can_transition(old_status, new_status):
            raise InvalidTransition(assignment_id, old_status, new_status)

        now = datetime.now().isoformat()
        updates: dict = {"status": new_status, "last_activity": now}
        if new_status == "in-progress" and assignment.started_at is None:
            updates["started_at"] = now
        if new_status == "dev-complete":
            updates["completed_at"] = now
        if new_status == "merged":
            updates["merged_at"] = now

        self._update(assignment_id, updates)
        self._log_event(assignment_id, "status_changed", old_status, new_status)
        self.conn.commit()
        logger.info("Assignment %s (#%d): %s -> %s", assignment_id,
                    assignment.issue_number, old_status, new_status)

        assignment = self.get(assignment_id)
        if mirror:
            self._mirror_status(assignment, tracker_status)
        return assignment

    def advance_to(self, assignment_id: str, target: str, mirror: bool = True) -> Assignment:
        """Walk the shortest declared path to ``target``, one edge at a time.

        Only the final status is mirrored to the tracker.
        """
        assignment = self.require(assignment_id)
        path = transition_path(assignment.status, target)
        if path is None:
            raise InvalidTransition(assignment_id, assignment.status, target)
        for i, status in enumerate(path):
            assignment = self.transition(assignment_id, status, mirror=mirror and i == len(path) - 1)
        return assignment

    def requeue(self, assignment_id: str) -> Assignment:
        """Send rejected work back to ``assigned`` for another pass."""
        return self.transition(assignment_id, "assigned", tracker_status=self.reject_status)

    # ── Slots ───────────────────────────────────────────────────────────

    def claim_instance(self, assignment_id: str, instance_id: str) -> Assignment:
        assignment = self.require(assignment_id)
        if assignment.instance_id:
            raise ValidationError(
                f"Assignment {assignment_id} already holds slot {assignment.instance_id}"
            )
        try:
            self._update(assignment_id, {"instance_id": instance_id})
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            raise ValidationError(f"Slot {instance_id} is already in use") from e
        self._log_event(assignment_id, "slot_claimed", None, instance_id)
        self.conn.commit()
        assignment = self.get(assignment_id)
        self._mirror_instance(assignment)
        return assignment

    def hand_over_instance(self, assignment_id: str, instance_id: str) -> Assignment:
        """Replace the slot holder, e.g. with the merge worker."""
        assignment = self.require(assignment_id)
        self._update(assignment_id, {"instance_id": instance_id})
        self._log_event(assignment_id, "slot_handed_over", assignment.instance_id, instance_id)
        self.conn.commit()
        assignment = self.get(assignment_id)
        self._mirror_instance(assignment)
        return assignment

    # ── Metadata ────────────────────────────────────────────────────────

    def set_stage_commit(self, assignment_id: str, sha: str):
        self._set_field(assignment_id, "stage_commit", sha)

    def set_main_commit(self, assignment_id: str, sha: str):
        self._set_field(assignment_id, "main_commit", sha)

    def set_review_result(self, assignment_id: str, review: ReviewResult):
        self._update(assignment_id, {"review_result": json.dumps(review.to_dict())})
        self._log_event(assignment_id, "review_recorded", None,
                        "passed" if review.overall_passed else "failed")
        self.conn.commit()

    def set_pr_number(self, assignment_id: str, pr_number: int):
        self._set_field(assignment_id, "pr_number", pr_number)

    def set_process(self, assignment_id: str, process_id: int | None,
                    worktree_path: str | None = None, branch_name: str | None = None):
        updates: dict = {"process_id": process_id}
        if worktree_path is not None:
            updates["worktree_path"] = worktree_path
        if branch_name is not None:
            updates["branch_name"] = branch_name
        self._update(assignment_id, updates)
        if process_id is None:
            self._log_event(assignment_id, "process_cleared", None, None)
        else:
            self._log_event(assignment_id, "process_started", None, str(process_id))
        self.conn.commit()

    def set_worktree(self, assignment_id: str, worktree_path: str | None, branch_name: str | None):
        old = self.require(assignment_id).worktree_path
        self._update(assignment_id, {"worktree_path": worktree_path, "branch_name": branch_name})
        if worktree_path:
            self._log_event(assignment_id, "worktree_created", old, worktree_path)
        else:
            self._log_event(assignment_id, "worktree_removed", old, None)
        self.conn.commit()

    def touch(self, assignment_id: str):
        self._update(assignment_id, {"last_activity": datetime.now().isoformat()})
        self.conn.commit()

    def _set_field(self, assignment_id: str, column: str, value):
        old = self.conn.execute(
            f"SELECT {column} FROM assignments WHERE id = ?", (assignment_id,)
        ).fetchone()
        if old is None:
            raise ValidationError(f"Assignment {assignment_id} not found")
        self._update(assignment_id, {column: value})
        self._log_event(assignment_id, f"{column}_changed",
                        None if old[0] is None else str(old[0]), str(value))
        self.conn.commit()

    # ── Work sessions ───────────────────────────────────────────────────

    def add_work_session(self, assignment_id: str, prompt_used: str | None = None,
                         summary: str | None = None) -> WorkSession:
        cur = self.conn.execute(
            """INSERT INTO work_sessions (assignment_id, started_at, prompt_used, summary)
               VALUES (?, ?, ?, ?)""",
            (assignment_id, datetime.now().isoformat(), prompt_used, summary),
        )
        self.conn.commit()
        row = self.conn.execute("SELECT * FROM work_sessions WHERE id = ?", (cur.lastrowid,)).fetchone()
        return _row_to_session(row)

    def update_last_work_session(self, assignment_id: str, summary: str | None = None,
                                 ended: bool = True) -> WorkSession | None:
        row = self.conn.execute(
            "SELECT * FROM work_sessions WHERE assignment_id = ? ORDER BY id DESC LIMIT 1",
            (assignment_id,),
        ).fetchone()
        if row is None:
            return None
        updates = {}
        if summary is not None:
            updates["summary"] = summary
        if ended:
            updates["ended_at"] = datetime.now().isoformat()
        if updates:
            set_parts = ", ".join(f"{k} = ?" for k in updates)
            self.conn.execute(f"UPDATE work_sessions SET {set_parts} WHERE id = ?",
                              [*updates.values(), row["id"]])
            self.conn.commit()
        row = self.conn.execute("SELECT * FROM work_sessions WHERE id = ?", (row["id"],)).fetchone()
        return _row_to_session(row)

    def get_work_sessions(self, assignment_id: str) -> list[WorkSession]:
        rows = self.conn.execute(
            "SELECT * FROM work_sessions WHERE assignment_id = ? ORDER BY id ASC",
            (assignment_id,),
        ).fetchall()
        return [_row_to_session(r) for r in rows]

    def get_events(self, assignment_id: str) -> list[AssignmentEvent]:
        rows = self.conn.execute(
            "SELECT * FROM assignment_events WHERE assignment_id = ? ORDER BY id ASC",
            (assignment_id,),
        ).fetchall()
        return [
            AssignmentEvent(
                id=r["id"],
                assignment_id=r["assignment_id"],
                event_type=r["event_type"],
                old_value=r["old_value"],
                new_value=r["new_value"],
                created_at=_parse_dt(r["created_at"]),
            )
            for r in rows
        ]

    # ── Tracker sync ────────────────────────────────────────────────────

    def reconcile_with_tracker(self) -> list[str]:
        """Bring local and tracker statuses back in line.

        A status whose tracker write failed is pushed again. Otherwise the
        tracker wins when it is further along the lifecycle: the local record
        walks the declared path to it. Tracker values behind the local status
        are ignored. Returns the ids whose local status changed.
        """
        if self.tracker is None:
            return []
        try:
            remote = self.tracker.get_statuses()
        except TrackerError as e:
            logger.warning("Could not read tracker statuses: %s", e)
            return []

        changed = []
        for assignment in self.list_assignments():
            if not assignment.external_link_id:
                continue
            if assignment.tracker_pending:
                self._mirror_status(assignment, assignment.tracker_pending)
                continue
            status = remote.get(assignment.external_link_id)
            if status is None or status not in STATUSES or status == assignment.status:
                continue
            if not _is_forward(assignment.status, status):
                logger.warning("Ignoring tracker status %s for #%d, local status %s is further along",
                               status, assignment.issue_number, assignment.status)
                continue
            self.advance_to(assignment.id, status, mirror=False)
            self._log_event(assignment.id, "reconciled", assignment.status, status)
            self.conn.commit()
            changed.append(assignment.id)
            logger.info("Issue #%d reconciled from tracker: %s -> %s",
                        assignment.issue_number, assignment.status, status)
        return changed

    def _mirror_status(self, assignment: Assignment, tracker_status: str | None = None):
        if self.tracker is None or not assignment.external_link_id:
            return
        value = tracker_status or assignment.status
        try:
            self.tracker.set_status(assignment.external_link_id, value)
        except TrackerError as e:
            logger.warning("Failed to mirror status of #%d to tracker: %s", assignment.issue_number, e)
            self._update(assignment.id, {"tracker_pending": value})
        else:
            self._update(assignment.id, {"tracker_pending": None})
        self.conn.commit()

    def _mirror_instance(self, assignment: Assignment):
        if self.tracker is None or not assignment.external_link_id:
            return
        try:
            self.tracker.set_instance(assignment.external_link_id, assignment.instance_id)
        except TrackerError as e:
            logger.warning("Failed to mirror instance of #%d to tracker: %s", assignment.issue_number, e)

    # ── Internals ───────────────────────────────────────────────────────

    def _update(self, assignment_id: str, updates: dict):
        set_parts = ", ".join(f"{k} = ?" for k in updates)
        self.conn.execute(
            f"UPDATE assignments SET {set_parts} WHERE id = ?",
            [*updates.values(), assignment_id],
        )

    def _log_event(self, assignment_id: str, event_type: str,
                   old_value: str | None, new_value: str | None):
        self.conn.execute(
            """INSERT INTO assignment_events (assignment_id, event_type, old_value, new_value)
               VALUES (?, ?, ?, ?)""",
            (assignment_id, event_type, old_value, new_value),
        )


def _row_to_assignment(row: sqlite3.Row) -> Assignment:
    review = json.loads(row["review_result"]) if row["review_result"] else None
    return Assignment(
        id=row["id"],
        issue_number=row["issue_number"],
        issue_title=row["issue_title"],
        issue_body=row["issue_body"] or "",
        external_link_id=row["external_link_id"],
        provider=row["provider"],
        instance_id=row["instance_id"],
        worktree_path=row["worktree_path"],
        branch_name=row["branch_name"],
        process_id=row["process_id"],
        status=row["status"],
        is_phase_master=bool(row["is_phase_master"]),
        pr_number=row["pr_number"],
        stage_commit=row["stage_commit"],
        main_commit=row["main_commit"],
        review_result=ReviewResult.from_dict(review) if review else None,
        tracker_pending=row["tracker_pending"],
        assigned_at=_parse_dt(row["assigned_at"]),
        started_at=_parse_dt(row["started_at"]),
        last_activity=_parse_dt(row["last_activity"]),
        completed_at=_parse_dt(row["completed_at"]),
        merged_at=_parse_dt(row["merged_at"]),
    )


def _row_to_session(row: sqlite3.Row) -> WorkSession:
    return WorkSession(
        id=row["id"],
        assignment_id=row["assignment_id"],
        started_at=_parse_dt(row["started_at"]),
        ended_at=_parse_dt(row["ended_at"]),
        summary=row["summary"],
        prompt_used=row["prompt_used"],
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
