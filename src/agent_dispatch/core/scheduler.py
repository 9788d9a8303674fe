"""Intake: pick unblocked issues, create assignments, start agents."""

import logging
from pathlib import Path
from typing import Callable

from agent_dispatch.core.assignments import AssignmentRegistry
from agent_dispatch.core.dependencies import DependencyGraphAnalyzer
from agent_dispatch.core.slots import InstanceSlotAllocator
from agent_dispatch.core.worktrees import create_worktree_for_assignment
from agent_dispatch.db.models import Assignment, Issue
from agent_dispatch.errors import DispatchError, ResourceExhausted, TrackerError, ValidationError
from agent_dispatch.integrations.git import GitError

logger = logging.getLogger(__name__)


class Scheduler:
    def __init__(
        self,
        registry: AssignmentRegistry,
        allocator: InstanceSlotAllocator,
        repo_path: str | Path,
        tracker=None,
        analyzer: DependencyGraphAnalyzer | None = None,
        worktree_dir: str = ".worktrees",
        main_branch: str = "main",
        branch_prefix: str = "feature/issue-",
        launcher: Callable[[str], object] | None = None,
    ):
        self.registry = registry
        self.allocator = allocator
        self.repo_path = Path(repo_path)
        self.tracker = tracker
        self.analyzer = analyzer or DependencyGraphAnalyzer()
        self.worktree_dir = worktree_dir
        self.main_branch = main_branch
        self.branch_prefix = branch_prefix
        self.launcher = launcher

    def _issue_states(self, issues: list[Issue], graph) -> dict[int, str]:
        states = {issue.number: issue.state for issue in issues}
        referenced = {dep for node in graph.nodes.values() for dep in node.depends_on}
        for number in referenced - states.keys():
            if self.tracker is None:
                continue
            try:
                states[number] = self.tracker.get_issue(number).state
            except TrackerError as e:
                logger.warning("Could not read state of #%d; treating it as unresolved: %s", number, e)
        return states

    def eligible_issues(self, issues: list[Issue]) -> list[Issue]:
        """Unassigned, unblocked issues, most-blocking first."""
        graph = self.analyzer.build_graph(issues)
        states = self._issue_states(issues, graph)
        unblocked = set(self.analyzer.get_unblocked_issues(graph, states))

        by_number = {issue.number: issue for issue in issues}
        candidates = [
            n for n in unblocked if not self.registry.is_issue_assigned(n)
        ]
        scores = {n: self.analyzer.calculate_dependency_score(n, graph, states) for n in candidates}
        candidates.sort(key=lambda n: (-scores[n].blocking_score, scores[n].depth_from_root, n))
        return [by_number[n] for n in candidates]

    def schedule_issue(self, issue: Issue, provider: str, launch: bool = True) -> Assignment:
        """Claim a slot for an issue, set up its worktree and (optionally) launch its agent.

        An issue whose earlier assignment was rejected reuses that assignment.
        """
        existing = self.registry.get_by_issue(issue.number)
        if existing and existing.status != "merged":
            if existing.status != "assigned" or existing.instance_id:
                raise ValidationError(
                    f"Issue #{issue.number} is already {existing.status} on {existing.instance_id}"
                )
            slot = self.allocator.require_slot(existing.provider)
            assignment = self.registry.claim_instance(existing.id, slot.instance_id)
        else:
            slot = self.allocator.require_slot(provider)
            assignment = self.registry.create(
                issue, provider, slot.instance_id, external_link_id=self._find_link(issue.number)
            )

        try:
            create_worktree_for_assignment(
                self.registry, assignment.id, self.repo_path,
                worktree_base_dir=self.worktree_dir,
                base_branch=self.main_branch,
                branch_prefix=self.branch_prefix,
            )
            if launch and self.launcher is not None:
                self.launcher(assignment.id)
        except (DispatchError, GitError):
            self.allocator.lease_for(assignment.id).release()
            raise

        return self.registry.require(assignment.id)

    def schedule_next(self, provider: str, issues: list[Issue] | None = None,
                      limit: int | None = None, launch: bool = True) -> list[Assignment]:
        """Fill free slots: rejected work first, then new eligible issues."""
        scheduled: list[Assignment] = []

        requeued = [a for a in self.registry.list_assignments(status="assigned", provider=provider)
                    if a.instance_id is None]
        queue: list[Issue] = [Issue(number=a.issue_number, title=a.issue_title, body=a.issue_body)
                              for a in requeued]

        if issues is None and self.tracker is not None:
            issues = self.tracker.list_open_issues()
        queue += self.eligible_issues(issues or [])

        for issue in queue:
            if limit is not None and len(scheduled) >= limit:
                break
            try:
                scheduled.append(self.schedule_issue(issue, provider, launch=launch))
            except ResourceExhausted:
                logger.info("No free %s slots; %d issue(s) scheduled", provider, len(scheduled))
                break
        return scheduled

    def _find_link(self, issue_number: int) -> str | None:
        if self.tracker is None:
            return None
        try:
            return self.tracker.find_item_id(issue_number)
        except TrackerError as e:
            logger.warning("Could not find project item for #%d: %s", issue_number, e)
            return None
