"""Tests for issue intake and scheduling."""

from unittest.mock import MagicMock

import pytest

from agent_dispatch.core.assignments import AssignmentRegistry
from agent_dispatch.core.scheduler import Scheduler
from agent_dispatch.core.slots import InstanceSlotAllocator
from agent_dispatch.db.models import Issue
from agent_dispatch.errors import ProcessError, ResourceExhausted, ValidationError
from agent_dispatch.integrations import git as gitops


@pytest.fixture
def registry(db, fake_tracker):
    return AssignmentRegistry(db, tracker=fake_tracker)


@pytest.fixture
def make_scheduler(db, registry, git_repo, fake_tracker):
    def _make(slots=2, tracker=fake_tracker, launcher=None):
        return Scheduler(
            registry,
            InstanceSlotAllocator(db, {"claude": slots}),
            git_repo,
            tracker=tracker,
            launcher=launcher,
        )

    return _make


ISSUES = [
    Issue(1, "Schema"),
    Issue(2, "API", body="Depends on: #1"),
    Issue(3, "UI", body="Depends on: #1"),
    Issue(4, "Docs"),
]


class TestEligibility:
    def test_most_blocking_first(self, make_scheduler):
        eligible = make_scheduler().eligible_issues(ISSUES)
        assert [i.number for i in eligible] == [1, 4]

    def test_closed_dependency_unblocks(self, make_scheduler):
        issues = [Issue(1, "Schema", state="closed"), Issue(2, "API", body="Depends on: #1")]
        assert [i.number for i in make_scheduler().eligible_issues(issues)] == [2]

    def test_outside_dependency_is_looked_up(self, make_scheduler, fake_tracker):
        fake_tracker.issues[99] = Issue(99, "Old", state="closed")
        issues = [Issue(5, "Needs old", body="Depends on: #99")]
        assert [i.number for i in make_scheduler().eligible_issues(issues)] == [5]

    def test_unknown_dependency_blocks(self, make_scheduler):
        issues = [Issue(5, "Needs old", body="Depends on: #99")]
        assert make_scheduler().eligible_issues(issues) == []
        assert make_scheduler(tracker=None).eligible_issues(issues) == []

    def test_assigned_issues_are_skipped(self, make_scheduler, registry):
        registry.create(Issue(1, "Schema"), "claude", "claude-1")
        assert [i.number for i in make_scheduler().eligible_issues(ISSUES)] == [4]


class TestScheduleIssue:
    def test_creates_assignment_and_worktree(self, make_scheduler, git_repo):
        launcher = MagicMock()
        a = make_scheduler(launcher=launcher).schedule_issue(Issue(1, "Schema"), "claude")

        assert a.instance_id == "claude-1"
        assert a.external_link_id == "item-1"
        assert a.branch_name == "feature/issue-1"
        assert a.worktree_path == str(git_repo / ".worktrees" / "issue-1")
        assert gitops.branch_exists(git_repo, "feature/issue-1")
        launcher.assert_called_once_with(a.id)

    def test_no_launch(self, make_scheduler):
        launcher = MagicMock()
        make_scheduler(launcher=launcher).schedule_issue(Issue(1, "Schema"), "claude", launch=False)
        launcher.assert_not_called()

    def test_launch_failure_releases_slot(self, make_scheduler, registry):
        launcher = MagicMock(side_effect=ProcessError("boom"))
        with pytest.raises(ProcessError):
            make_scheduler(launcher=launcher).schedule_issue(Issue(1, "Schema"), "claude")
        a = registry.get_by_issue(1)
        assert a.status == "assigned"
        assert a.instance_id is None

    def test_active_issue_rejected(self, make_scheduler, registry):
        a = registry.create(Issue(1, "Schema"), "claude", "claude-1")
        registry.transition(a.id, "in-progress")
        with pytest.raises(ValidationError):
            make_scheduler().schedule_issue(Issue(1, "Schema"), "claude")

    def test_no_slots(self, make_scheduler, registry):
        registry.create(Issue(9, "Busy"), "claude", "claude-1")
        with pytest.raises(ResourceExhausted):
            make_scheduler(slots=1).schedule_issue(Issue(1, "Schema"), "claude")

    def test_rejected_assignment_is_reused(self, make_scheduler, registry, git_repo,
                                           commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"work.txt": "first try\n"})
        old = registry.create(Issue(1, "Schema"), "claude")

        a = make_scheduler().schedule_issue(Issue(1, "Schema"), "claude", launch=False)
        assert a.id == old.id
        assert a.instance_id == "claude-1"
        assert (git_repo / ".worktrees" / "issue-1" / "work.txt").exists()


class TestScheduleNext:
    def test_fills_free_slots(self, make_scheduler):
        scheduled = make_scheduler(slots=1).schedule_next("claude", ISSUES, launch=False)
        assert [a.issue_number for a in scheduled] == [1]

    def test_limit(self, make_scheduler):
        scheduled = make_scheduler(slots=2).schedule_next("claude", ISSUES, limit=1, launch=False)
        assert len(scheduled) == 1

    def test_requeued_work_goes_first(self, make_scheduler, registry):
        registry.create(Issue(7, "Rework me"), "claude")
        scheduled = make_scheduler(slots=1).schedule_next("claude", ISSUES, launch=False)
        assert [a.issue_number for a in scheduled] == [7]

    def test_reads_open_issues_from_tracker(self, make_scheduler, fake_tracker):
        fake_tracker.issues = {4: Issue(4, "Docs"), 8: Issue(8, "Closed", state="closed")}
        scheduled = make_scheduler().schedule_next("claude", launch=False)
        assert [a.issue_number for a in scheduled] == [4]
