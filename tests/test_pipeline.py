"""End-to-end tests for the merge pipeline over a real temporary repo."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from agent_dispatch.core.assignments import AssignmentRegistry
from agent_dispatch.core.conflicts import ConflictResolutionService
from agent_dispatch.core.pipeline import IntegrationPipeline
from agent_dispatch.core.review import PersonaReviewGate
from agent_dispatch.core.slots import InstanceSlotAllocator
from agent_dispatch.core.stage import StageBranchController
from agent_dispatch.core.worktrees import create_worktree_for_assignment
from agent_dispatch.db.models import Issue
from agent_dispatch.integrations import git as gitops


@pytest.fixture
def registry(db, fake_tracker):
    return AssignmentRegistry(db, tracker=fake_tracker, reject_status="Rework")


@pytest.fixture
def allocator(db):
    return InstanceSlotAllocator(db, {"claude": 2})


@pytest.fixture
def build(registry, allocator, git_repo, make_agent, passing_reviewer):
    """Build a pipeline; keyword overrides replace the defaults."""

    def _build(resolver_agent=None, reviewer=None, **options):
        return IntegrationPipeline(
            registry=registry,
            allocator=allocator,
            stage=StageBranchController(git_repo, remote=None),
            resolver=ConflictResolutionService(resolver_agent or make_agent(), git_repo),
            review_gate=PersonaReviewGate(reviewer or passing_reviewer, git_repo),
            **options,
        )

    return _build


def _dev_complete(registry, number, title="Feature", instance_id="claude-1"):
    a = registry.create(Issue(number, title, body="Do it"), "claude", instance_id,
                        external_link_id=f"item-{number}")
    registry.set_worktree(a.id, f"/tmp/wt-{number}", f"feature/issue-{number}")
    return registry.advance_to(a.id, "dev-complete")


class TestCleanPass:
    def test_reaches_stage_ready(self, build, registry, fake_tracker, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"a.txt": "a\n"})
        a = _dev_complete(registry, 1)

        pipeline = build()
        report = pipeline.run_batch()

        assert report.stage_ready == [1]
        a = registry.get(a.id)
        assert a.status == "stage-ready"
        assert a.instance_id is None
        assert a.stage_commit == gitops.rev_parse(git_repo, "stage")
        assert a.review_result.overall_passed
        assert fake_tracker.statuses["item-1"] == "stage-ready"
        assert pipeline.last_report is report
        assert not pipeline.is_running

    def test_batch_accumulates_on_stage(self, build, registry, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"a.txt": "a\n"})
        commit_on_branch(git_repo, "feature/issue-2", {"b.txt": "b\n"})
        _dev_complete(registry, 1)
        _dev_complete(registry, 2)

        report = build().run_batch()
        assert report.stage_ready == [1, 2]
        files = gitops.run_git(["ls-tree", "--name-only", "stage"], cwd=git_repo).splitlines()
        assert {"a.txt", "b.txt"} <= set(files)

    def test_nothing_pending(self, build, git_repo):
        report = build().run_batch()
        assert report.outcomes == []
        assert not gitops.branch_exists(git_repo, "merge_stage")


class TestRejection:
    def test_conflict_without_auto_resolve(self, build, registry, fake_tracker, git_repo,
                                           commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"README.md": "one\n"})
        commit_on_branch(git_repo, "feature/issue-2", {"README.md": "two\n"})
        first = _dev_complete(registry, 1)
        second = _dev_complete(registry, 2)

        report = build(auto_resolve_conflicts=False).run_batch()

        assert report.stage_ready == [1]
        assert report.rejected == [2]
        second = registry.get(second.id)
        assert second.status == "assigned"
        assert second.instance_id is None
        assert fake_tracker.statuses["item-2"] == "Rework"
        number, body = fake_tracker.comments[-1]
        assert number == 2
        assert "Merge Conflict" in body
        assert "`README.md`" in body
        # The rejected merge is rolled back; the earlier one survives.
        assert gitops.rev_parse(git_repo, "merge_stage") == registry.get(first.id).stage_commit

    def test_conflict_resolved_by_agent(self, build, registry, git_repo, commit_on_branch, make_agent):
        commit_on_branch(git_repo, "feature/issue-1", {"README.md": "one\n"})
        commit_on_branch(git_repo, "feature/issue-2", {"README.md": "two\n"})
        _dev_complete(registry, 1)
        _dev_complete(registry, 2)

        resolver = make_agent(lambda prompt: "one\ntwo\n")
        report = build(resolver_agent=resolver).run_batch()

        assert report.stage_ready == [1, 2]
        assert len(resolver.prompts) == 1
        assert gitops.run_git(["show", "stage:README.md"], cwd=git_repo) == "one\ntwo"

    def test_unresolvable_conflict(self, build, registry, git_repo, commit_on_branch, failing_agent):
        commit_on_branch(git_repo, "feature/issue-1", {"README.md": "one\n"})
        commit_on_branch(git_repo, "feature/issue-2", {"README.md": "two\n"})
        _dev_complete(registry, 1)
        _dev_complete(registry, 2)

        report = build(resolver_agent=failing_agent).run_batch()
        assert report.rejected == [2]
        assert "could not resolve README.md" in report.outcomes[1].detail

    def test_review_failure(self, build, registry, fake_tracker, git_repo, commit_on_branch, make_agent):
        commit_on_branch(git_repo, "feature/issue-1", {"a.txt": "a\n"})
        a = _dev_complete(registry, 1)
        reviewer = make_agent(lambda p: "DECISION: FAIL\nSCORE: 2\nFEEDBACK: Missing tests.")

        report = build(reviewer=reviewer).run_batch()

        assert report.rejected == [1]
        a = registry.get(a.id)
        assert a.status == "assigned"
        assert not a.review_result.overall_passed
        assert "Missing tests." in fake_tracker.comments[-1][1]
        assert "Review Failed" in fake_tracker.comments[-1][1]
        assert gitops.rev_parse(git_repo, "merge_stage") == gitops.rev_parse(git_repo, "main")
        assert not gitops.branch_exists(git_repo, "stage")

    def test_missing_branch_name(self, build, registry):
        a = registry.create(Issue(1, "No branch"), "claude", "claude-1")
        registry.advance_to(a.id, "dev-complete")

        report = build().run_batch()
        assert report.rejected == [1]
        assert registry.get(a.id).status == "assigned"

    def test_requeued_work_can_claim_a_slot_again(self, build, registry, allocator, git_repo,
                                                  commit_on_branch, make_agent):
        commit_on_branch(git_repo, "feature/issue-1", {"a.txt": "a\n"})
        a = _dev_complete(registry, 1)
        reviewer = make_agent(lambda p: "DECISION: FAIL\nFEEDBACK: no")
        build(reviewer=reviewer).run_batch()

        slot = allocator.require_slot("claude")
        a = registry.claim_instance(a.id, slot.instance_id)
        assert a.instance_id == "claude-1"


class TestPhases:
    def test_siblings_follow_master(self, build, registry, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-10", {"phase.txt": "1\n"})
        master = _dev_complete(registry, 10, title="MASTER: Phase 1 storage")
        sibling = registry.create(Issue(11, "Phase 1.1 schema"), "claude", "claude-1")
        registry.transition(sibling.id, "in-progress")
        other = registry.create(Issue(12, "Phase 2.1 api"), "claude", "claude-2")

        build().run_batch()

        assert registry.get(master.id).status == "stage-ready"
        assert registry.get(sibling.id).status == "stage-ready"
        assert registry.get(other.id).status == "assigned"

    def test_epic_mode_only_processes_masters(self, build, registry, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-10", {"phase.txt": "1\n"})
        commit_on_branch(git_repo, "feature/issue-20", {"other.txt": "1\n"})
        _dev_complete(registry, 10, title="MASTER: Phase 1 storage")
        plain = _dev_complete(registry, 20, title="Fix typo")

        report = build(epic_mode=True).run_batch()
        assert report.stage_ready == [10]
        assert registry.get(plain.id).status == "dev-complete"

    def test_siblings_merge_with_master(self, build, registry, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-10", {"phase.txt": "1\n"})
        master = _dev_complete(registry, 10, title="MASTER: Phase 1 storage")
        sibling = registry.create(Issue(11, "Phase 1.1 schema"), "claude", "claude-1")

        build(auto_merge_to_main=True).run_batch()

        assert registry.get(master.id).status == "merged"
        sibling = registry.get(sibling.id)
        assert sibling.status == "merged"
        assert sibling.instance_id is None


class TestPromotion:
    @pytest.fixture
    def diverging_reviewer(self, git_repo, git, make_agent, tmp_path):
        """Passes review, but first moves main so that promoting stage conflicts."""
        moved = []

        def _review(prompt):
            if not moved:
                main_tree = tmp_path / "main-tree"
                git(["worktree", "add", str(main_tree), "main"], git_repo)
                (main_tree / "README.md").write_text("main edit\n")
                git(["commit", "-am", "Edit README on main"], main_tree)
                git(["worktree", "remove", str(main_tree)], git_repo)
                moved.append(True)
            return "DECISION: PASS\nSCORE: 8\nFEEDBACK: Fine."

        return make_agent(_review)

    def test_auto_merge_to_main(self, build, registry, fake_tracker, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"a.txt": "a\n"})
        a = _dev_complete(registry, 1)

        report = build(auto_merge_to_main=True).run_batch()

        assert report.merged == [1]
        a = registry.get(a.id)
        assert a.status == "merged"
        assert a.main_commit == gitops.rev_parse(git_repo, "main")
        assert a.merged_at is not None
        assert gitops.run_git(["show", "main:a.txt"], cwd=git_repo) == "a"
        assert fake_tracker.statuses["item-1"] == "merged"

    def test_merged_worktree_is_removed(self, build, registry, git_repo, git):
        a = registry.create(Issue(1, "Feature"), "claude", "claude-1")
        create_worktree_for_assignment(registry, a.id, git_repo)
        tree = Path(registry.get(a.id).worktree_path)
        (tree / "a.txt").write_text("a\n")
        git(["add", "a.txt"], tree)
        git(["commit", "-m", "Add a"], tree)
        registry.advance_to(a.id, "dev-complete")

        report = build(auto_merge_to_main=True).run_batch()

        assert report.merged == [1]
        a = registry.get(a.id)
        assert a.worktree_path is None
        assert a.branch_name == "feature/issue-1"
        assert not tree.exists()
        assert gitops.branch_exists(git_repo, "feature/issue-1")

    def test_unresolved_promotion_conflict_parks_at_stage_ready(
            self, build, registry, git_repo, commit_on_branch, failing_agent, diverging_reviewer):
        commit_on_branch(git_repo, "feature/issue-1", {"README.md": "feature\n"})
        a = _dev_complete(registry, 1)

        report = build(resolver_agent=failing_agent, reviewer=diverging_reviewer,
                       auto_merge_to_main=True).run_batch()

        assert report.stage_ready == [1]
        assert report.merged == []
        assert report.outcomes[0].detail == "main promotion conflicted"
        a = registry.get(a.id)
        assert a.status == "stage-ready"
        assert a.main_commit is None
        assert not gitops.is_merge_in_progress(git_repo)
        assert gitops.run_git(["show", "main:README.md"], cwd=git_repo) == "main edit"
        assert gitops.run_git(["show", "stage:README.md"], cwd=git_repo) == "feature"

    def test_promotion_conflict_without_auto_resolve(
            self, build, registry, git_repo, commit_on_branch, make_agent, diverging_reviewer):
        commit_on_branch(git_repo, "feature/issue-1", {"README.md": "feature\n"})
        a = _dev_complete(registry, 1)
        resolver = make_agent(lambda prompt: "feature\nmain edit\n")

        report = build(resolver_agent=resolver, reviewer=diverging_reviewer,
                       auto_merge_to_main=True, auto_resolve_conflicts=False).run_batch()

        assert report.stage_ready == [1]
        assert resolver.prompts == []
        assert registry.get(a.id).status == "stage-ready"
        assert not gitops.is_merge_in_progress(git_repo)

    def test_resolved_promotion_conflict_is_pushed_to_main(
            self, build, registry, fake_tracker, git_repo, commit_on_branch, make_agent,
            diverging_reviewer):
        commit_on_branch(git_repo, "feature/issue-1", {"README.md": "feature\n"})
        a = _dev_complete(registry, 1)
        resolver = make_agent(lambda prompt: "feature\nmain edit\n")

        report = build(resolver_agent=resolver, reviewer=diverging_reviewer,
                       auto_merge_to_main=True).run_batch()

        assert report.merged == [1]
        assert len(resolver.prompts) == 1
        a = registry.get(a.id)
        assert a.status == "merged"
        assert a.main_commit == gitops.rev_parse(git_repo, "main")
        assert gitops.run_git(["show", "main:README.md"], cwd=git_repo) == "feature\nmain edit"
        assert not gitops.is_merge_in_progress(git_repo)
        assert fake_tracker.statuses["item-1"] == "merged"


class TestBatchControl:
    def test_busy_pipeline_returns_none(self, build, registry, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"a.txt": "a\n"})
        a = _dev_complete(registry, 1)
        pipeline = build()

        pipeline._lock.acquire()
        try:
            assert pipeline.is_running
            assert pipeline.run_batch() is None
        finally:
            pipeline._lock.release()
        assert registry.get(a.id).status == "dev-complete"

    def test_notifier_receives_summary(self, build, registry, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"a.txt": "a\n"})
        _dev_complete(registry, 1)
        notifier = MagicMock()

        build(notifier=notifier).run_batch()

        notifier.notify.assert_called_once()
        text = notifier.notify.call_args.args[0]
        assert "1 stage-ready" in text

    def test_report_dict(self, build, registry, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"a.txt": "a\n"})
        _dev_complete(registry, 1)
        data = build().run_batch().to_dict()
        assert data["outcomes"][0]["issue_number"] == 1
        assert data["outcomes"][0]["outcome"] == "stage-ready"
        assert data["finished_at"] is not None
