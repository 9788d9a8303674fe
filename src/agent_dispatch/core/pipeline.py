"""Merge pipeline: dev-complete work through integration, review and promotion."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime

from agent_dispatch.core.assignments import AssignmentRegistry
from agent_dispatch.core.conflicts import ConflictContext, ConflictResolutionService
from agent_dispatch.core.phases import is_phase_sibling, phase_number
from agent_dispatch.core.review import PersonaReviewGate, format_review_feedback
from agent_dispatch.core.slots import MERGE_WORKER, InstanceSlotAllocator
from agent_dispatch.core.stage import StageBranchController
from agent_dispatch.core.worktrees import cleanup_merged_worktrees
from agent_dispatch.db.models import Assignment
from agent_dispatch.errors import DispatchError, MergeConflict, ReviewRejected, TrackerError, ValidationError
from agent_dispatch.integrations.git import GitError
from agent_dispatch.integrations.slack import format_batch_report

logger = logging.getLogger(__name__)


@dataclass
class ItemOutcome:
    issue_number: int
    assignment_id: str
    outcome: str  # "merged", "stage-ready" or "rejected"
    detail: str = ""


@dataclass
class BatchReport:
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None
    outcomes: list[ItemOutcome] = field(default_factory=list)

    def _issues(self, outcome: str) -> list[int]:
        return [o.issue_number for o in self.outcomes if o.outcome == outcome]

    @property
    def merged(self) -> list[int]:
        return self._issues("merged")

    @property
    def stage_ready(self) -> list[int]:
        return self._issues("stage-ready")

    @property
    def rejected(self) -> list[int]:
        return self._issues("rejected")

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcomes": [
                {"issue_number": o.issue_number, "assignment_id": o.assignment_id,
                 "outcome": o.outcome, "detail": o.detail}
                for o in self.outcomes
            ],
        }


def format_conflict_feedback(issue_number: int, error: MergeConflict) -> str:
    files = "\n".join(f"- `{f}`" for f in error.files) or "- (unknown)"
    return (
        "## ❌ Merge Worker: Merge Conflict\n\n"
        f"The branch for issue #{issue_number} could not be merged cleanly.\n\n"
        f"**Conflicted files:**\n{files}\n\n"
        f"**Details:** {error}\n\n"
        "### Next Steps\n\n"
        "Rebase the branch on the latest main and resolve the conflicts; "
        "the issue has been sent back for rework."
    )


class IntegrationPipeline:
    """Drains dev-complete assignments one at a time. Only one batch runs at once."""

    def __init__(
        self,
        registry: AssignmentRegistry,
        allocator: InstanceSlotAllocator,
        stage: StageBranchController,
        resolver: ConflictResolutionService,
        review_gate: PersonaReviewGate,
        auto_resolve_conflicts: bool = True,
        auto_merge_to_main: bool = False,
        epic_mode: bool = False,
        notifier=None,
    ):
        self.registry = registry
        self.allocator = allocator
        self.stage = stage
        self.resolver = resolver
        self.review_gate = review_gate
        self.auto_resolve_conflicts = auto_resolve_conflicts
        self.auto_merge_to_main = auto_merge_to_main
        self.epic_mode = epic_mode
        self.notifier = notifier
        self._lock = threading.Lock()
        self.last_report: BatchReport | None = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def pending(self) -> list[Assignment]:
        candidates = self.registry.list_assignments(status="dev-complete")
        if self.epic_mode:
            candidates = [a for a in candidates if a.is_phase_master]
        return candidates

    def run_batch(self) -> BatchReport | None:
        """Process every pending assignment. Returns None if a batch is already running."""
        if not self._lock.acquire(blocking=False):
            logger.info("Merge pipeline already running; skipping")
            return None
        try:
            report = BatchReport()
            candidates = self.pending()
            if candidates:
                logger.info("Merge pipeline processing %d assignment(s)", len(candidates))
                self.stage.create_or_reset_integration_branch()
                for candidate in candidates:
                    # Phase propagation can move a later candidate on before its turn
                    assignment = self.registry.require(candidate.id)
                    if assignment.status != "dev-complete":
                        logger.info("Skipping issue #%d, now %s", assignment.issue_number, assignment.status)
                        continue
                    try:
                        report.outcomes.append(self.process_assignment(assignment))
                    except DispatchError as e:
                        logger.exception("Could not start merge of issue #%d", assignment.issue_number)
                        report.outcomes.append(
                            ItemOutcome(assignment.issue_number, assignment.id, "rejected", str(e))
                        )
                if report.merged:
                    self._cleanup_worktrees()
            report.finished_at = datetime.now()
            self.last_report = report
            self._notify(report)
            return report
        finally:
            self._lock.release()

    # ── Per-assignment flow ─────────────────────────────────────────────

    def process_assignment(self, assignment: Assignment) -> ItemOutcome:
        self.registry.transition(assignment.id, "merge-review")
        self.registry.hand_over_instance(assignment.id, MERGE_WORKER)
        checkpoint = self.stage.checkpoint()

        try:
            self._merge_feature(assignment)
            diff = self.stage.get_diff_with_main()
            review = self.review_gate.review(self.registry.require(assignment.id), diff)
            self.registry.set_review_result(assignment.id, review)
            if not review.overall_passed:
                raise ReviewRejected(review)

            push = self.stage.force_push_to_stage()
            self.registry.set_stage_commit(assignment.id, push.commit)
            self.registry.transition(assignment.id, "stage-ready")
            self.allocator.lease_for(assignment.id).release()
        except MergeConflict as e:
            return self._reject(assignment, checkpoint, f"merge conflict: {e}",
                                format_conflict_feedback(assignment.issue_number, e))
        except ReviewRejected as e:
            return self._reject(assignment, checkpoint, f"review failed: {e}",
                                format_review_feedback(e.review, assignment.issue_number))
        except Exception as e:
            logger.exception("Error processing issue #%d", assignment.issue_number)
            return self._reject(assignment, checkpoint, f"internal error: {e}", None)

        self._propagate_phase(assignment, "stage-ready")
        if self.auto_merge_to_main:
            return self._promote(assignment)
        return ItemOutcome(assignment.issue_number, assignment.id, "stage-ready", push.tag)

    def _merge_feature(self, assignment: Assignment):
        if not assignment.branch_name:
            raise ValidationError(f"Assignment {assignment.id} has no branch")

        result = self.stage.merge_feature_branch(assignment.branch_name, assignment.issue_number)
        if result.success:
            return

        if not self.auto_resolve_conflicts:
            self.stage.abort_merge()
            raise MergeConflict("auto-resolution disabled", result.conflicts)

        context = ConflictContext(
            branch_name=assignment.branch_name,
            issue_number=assignment.issue_number,
            issue_title=assignment.issue_title,
            integration_branch=self.stage.integration_branch,
        )
        resolution = self.resolver.resolve_conflicts(result.conflicts, context)
        if not resolution.success:
            self.stage.abort_merge()
            raise MergeConflict(f"could not resolve {resolution.failed_file}: {resolution.error}",
                                result.conflicts)

        self.stage.commit_resolved_conflicts(
            f"Merge {assignment.branch_name} for issue #{assignment.issue_number} (conflicts resolved)"
        )

    def _reject(self, assignment: Assignment, checkpoint: str, reason: str,
                comment: str | None) -> ItemOutcome:
        try:
            self.stage.rollback_to(checkpoint)
        except GitError:
            logger.exception("Could not roll back integration branch to %s; manual cleanup needed",
                             checkpoint[:8])

        if comment:
            self._comment(assignment.issue_number, comment)

        current = self.registry.require(assignment.id)
        if current.instance_id:
            self.allocator.lease_for(assignment.id).release()
        if current.status == "merge-review":
            self.registry.requeue(assignment.id)
        else:
            logger.warning("Issue #%d left at %s after failure", assignment.issue_number, current.status)

        logger.info("Issue #%d rejected: %s", assignment.issue_number, reason)
        return ItemOutcome(assignment.issue_number, assignment.id, "rejected", reason)

    # ── Promotion to main ───────────────────────────────────────────────

    def _promote(self, assignment: Assignment) -> ItemOutcome:
        try:
            sha = self._merge_stage_to_main(assignment)
        except (GitError, DispatchError) as e:
            logger.exception("Promotion of issue #%d to main failed", assignment.issue_number)
            self.stage.abort_merge()
            return ItemOutcome(assignment.issue_number, assignment.id, "stage-ready", f"promotion failed: {e}")

        if sha is None:
            return ItemOutcome(assignment.issue_number, assignment.id, "stage-ready",
                               "main promotion conflicted")

        self.registry.set_main_commit(assignment.id, sha)
        self.registry.transition(assignment.id, "merged")
        self._propagate_phase(assignment, "merged")
        return ItemOutcome(assignment.issue_number, assignment.id, "merged", sha[:8])

    def _merge_stage_to_main(self, assignment: Assignment) -> str | None:
        """Main head after promotion, or None when conflicts were left unresolved."""
        result = self.stage.merge_stage_to_main()
        if result.success:
            return result.commit

        if self.auto_resolve_conflicts:
            context = ConflictContext(
                branch_name=self.stage.stage_branch,
                issue_number=assignment.issue_number,
                issue_title=assignment.issue_title,
                integration_branch=self.stage.main_branch,
            )
            resolution = self.resolver.resolve_conflicts(result.conflicts, context)
            if resolution.success:
                self.stage.commit_resolved_conflicts(
                    f"Merge {self.stage.stage_branch} into {self.stage.main_branch} (conflicts resolved)"
                )
                return self.stage.push_main()

        self.stage.abort_merge()
        logger.warning("Issue #%d parked at stage-ready: main promotion conflicted in %s",
                       assignment.issue_number, ", ".join(result.conflicts))
        return None

    # ── Phase propagation ───────────────────────────────────────────────

    def _propagate_phase(self, master: Assignment, status: str):
        """Carry a phase master's status over to its Phase N.M siblings."""
        if not master.is_phase_master:
            return
        phase = phase_number(master.issue_title)
        if phase is None:
            return

        for sibling in self.registry.list_active():
            if sibling.id == master.id or not is_phase_sibling(sibling.issue_title, phase):
                continue
            try:
                if sibling.status != status:
                    self.registry.advance_to(sibling.id, status)
                if status == "merged" and sibling.instance_id:
                    self.allocator.lease_for(sibling.id).release()
            except DispatchError as e:
                logger.warning("Could not propagate %s to phase sibling #%d: %s",
                               status, sibling.issue_number, e)
            else:
                logger.info("Phase %d sibling #%d -> %s", phase, sibling.issue_number, status)

    def _cleanup_worktrees(self):
        try:
            for result in cleanup_merged_worktrees(self.registry, self.stage.repo_path):
                if not result["removed"]:
                    logger.warning("Kept worktree of assignment %s: %s",
                                   result["assignment_id"], result["reason"])
        except GitError:
            logger.exception("Could not clean up worktrees of merged assignments")

    # ── Side channels ───────────────────────────────────────────────────

    def _comment(self, issue_number: int, body: str):
        tracker = self.registry.tracker
        if tracker is None:
            return
        try:
            tracker.post_comment(issue_number, body)
        except TrackerError as e:
            logger.warning("Failed to comment on #%d: %s", issue_number, e)

    def _notify(self, report: BatchReport):
        if self.notifier is None or not report.outcomes:
            return
        outcomes = [(o.issue_number, o.outcome, o.detail) for o in report.outcomes]
        self.notifier.notify(
            f"Merge pipeline: {len(report.merged)} merged, {len(report.stage_ready)} stage-ready, "
            f"{len(report.rejected)} rejected",
            format_batch_report(outcomes),
        )
