"""Tests for the integration branch controller against real temporary repos."""

from datetime import datetime

import pytest

from agent_dispatch.core.stage import StageBranchController, stage_tag_name
from agent_dispatch.integrations import git as gitops


@pytest.fixture
def stage(git_repo):
    return StageBranchController(git_repo, remote=None)


class TestTagName:
    def test_tag_has_no_colons_or_dots(self):
        name = stage_tag_name(datetime(2026, 1, 2, 3, 4, 5, 600))
        assert name == "stage-2026-01-02T03-04-05-000600"


class TestIntegrationBranch:
    def test_created_from_main(self, stage, git_repo):
        head = stage.create_or_reset_integration_branch()
        assert head == gitops.rev_parse(git_repo, "main")
        assert gitops.get_current_branch(git_repo) == "merge_stage"

    def test_reset_discards_previous_merges(self, stage, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"a.txt": "a\n"})
        stage.create_or_reset_integration_branch()
        assert stage.merge_feature_branch("feature/issue-1", 1).success

        head = stage.create_or_reset_integration_branch()
        assert head == gitops.rev_parse(git_repo, "main")
        assert not (git_repo / "a.txt").exists()

    def test_reset_aborts_a_stuck_merge(self, stage, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"README.md": "one\n"})
        commit_on_branch(git_repo, "feature/issue-2", {"README.md": "two\n"})
        stage.create_or_reset_integration_branch()
        stage.merge_feature_branch("feature/issue-1", 1)
        assert not stage.merge_feature_branch("feature/issue-2", 2).success
        assert stage.is_merge_in_progress()

        stage.create_or_reset_integration_branch()
        assert not stage.is_merge_in_progress()

    def test_delete(self, stage, git_repo):
        stage.create_or_reset_integration_branch()
        stage.delete_integration_branch()
        assert not gitops.branch_exists(git_repo, "merge_stage")
        assert gitops.get_current_branch(git_repo) == "main"


class TestMerging:
    def test_clean_merge(self, stage, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"a.txt": "a\n"})
        stage.create_or_reset_integration_branch()

        result = stage.merge_feature_branch("feature/issue-1", 1)
        assert result.success
        assert result.commit == gitops.rev_parse(git_repo, "merge_stage")
        assert (git_repo / "a.txt").read_text() == "a\n"
        assert "Merge feature/issue-1 for issue #1" in gitops.run_git(
            ["log", "-1", "--format=%s"], cwd=git_repo
        )

    def test_conflict_is_reported_and_left_in_progress(self, stage, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"README.md": "one\n"})
        commit_on_branch(git_repo, "feature/issue-2", {"README.md": "two\n"})
        stage.create_or_reset_integration_branch()
        stage.merge_feature_branch("feature/issue-1", 1)

        result = stage.merge_feature_branch("feature/issue-2", 2)
        assert not result.success
        assert result.conflicts == ["README.md"]
        assert stage.is_merge_in_progress()

        stage.abort_merge()
        assert not stage.is_merge_in_progress()

    def test_missing_branch_raises(self, stage):
        stage.create_or_reset_integration_branch()
        with pytest.raises(gitops.GitError):
            stage.merge_feature_branch("feature/nope", 9)

    def test_commit_resolved_conflicts(self, stage, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"README.md": "one\n"})
        commit_on_branch(git_repo, "feature/issue-2", {"README.md": "two\n"})
        stage.create_or_reset_integration_branch()
        stage.merge_feature_branch("feature/issue-1", 1)
        stage.merge_feature_branch("feature/issue-2", 2)

        (git_repo / "README.md").write_text("one\ntwo\n")
        gitops.add(git_repo, ["README.md"])
        sha = stage.commit_resolved_conflicts("Resolve #2")
        assert sha == gitops.rev_parse(git_repo, "merge_stage")
        assert not stage.is_merge_in_progress()

    def test_commit_resolved_conflicts_stages_edits(self, stage, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"README.md": "one\n"})
        commit_on_branch(git_repo, "feature/issue-2", {"README.md": "two\n"})
        stage.create_or_reset_integration_branch()
        stage.merge_feature_branch("feature/issue-1", 1)
        stage.merge_feature_branch("feature/issue-2", 2)

        (git_repo / "README.md").write_text("one\ntwo\n")
        stage.commit_resolved_conflicts("Resolve #2")
        assert not stage.is_merge_in_progress()
        assert gitops.run_git(["show", "merge_stage:README.md"], cwd=git_repo) == "one\ntwo"


class TestRollback:
    def test_rollback_to_checkpoint(self, stage, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"a.txt": "a\n"})
        commit_on_branch(git_repo, "feature/issue-2", {"b.txt": "b\n"})
        stage.create_or_reset_integration_branch()
        stage.merge_feature_branch("feature/issue-1", 1)

        checkpoint = stage.checkpoint()
        stage.merge_feature_branch("feature/issue-2", 2)
        stage.rollback_to(checkpoint)

        assert gitops.rev_parse(git_repo, "merge_stage") == checkpoint
        assert (git_repo / "a.txt").exists()
        assert not (git_repo / "b.txt").exists()

    def test_rollback_during_conflict(self, stage, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"README.md": "one\n"})
        commit_on_branch(git_repo, "feature/issue-2", {"README.md": "two\n"})
        stage.create_or_reset_integration_branch()
        stage.merge_feature_branch("feature/issue-1", 1)
        checkpoint = stage.checkpoint()
        stage.merge_feature_branch("feature/issue-2", 2)

        stage.rollback_to(checkpoint)
        assert not stage.is_merge_in_progress()
        assert (git_repo / "README.md").read_text() == "one\n"


class TestStageAndMain:
    def test_force_push_to_stage_locally(self, stage, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"a.txt": "a\n"})
        stage.create_or_reset_integration_branch()
        stage.merge_feature_branch("feature/issue-1", 1)

        push = stage.force_push_to_stage()
        assert push.commit == gitops.rev_parse(git_repo, "merge_stage")
        assert gitops.rev_parse(git_repo, "stage") == push.commit
        assert gitops.rev_parse(git_repo, f"{push.tag}^{{commit}}") == push.commit

    def test_stage_is_overwritten_each_batch(self, stage, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"a.txt": "a\n"})
        commit_on_branch(git_repo, "feature/issue-2", {"b.txt": "b\n"})
        stage.create_or_reset_integration_branch()
        stage.merge_feature_branch("feature/issue-1", 1)
        first = stage.force_push_to_stage()

        stage.create_or_reset_integration_branch()
        stage.merge_feature_branch("feature/issue-2", 2)
        second = stage.force_push_to_stage()

        assert first.tag != second.tag
        assert gitops.rev_parse(git_repo, "stage") == second.commit

    def test_merge_stage_to_main(self, stage, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"a.txt": "a\n"})
        stage.create_or_reset_integration_branch()
        stage.merge_feature_branch("feature/issue-1", 1)
        stage.force_push_to_stage()

        result = stage.merge_stage_to_main()
        assert result.success
        assert result.commit == gitops.rev_parse(git_repo, "main")
        assert gitops.get_current_branch(git_repo) == "main"
        assert (git_repo / "a.txt").exists()

    def test_diff_and_commits(self, stage, git_repo, commit_on_branch):
        commit_on_branch(git_repo, "feature/issue-1", {"a.txt": "hello\n"}, message="Add a")
        stage.create_or_reset_integration_branch()
        stage.merge_feature_branch("feature/issue-1", 1)

        assert "+hello" in stage.get_diff_with_main()
        commits = stage.get_commits_since_main()
        assert len(commits) == 2
        assert any("Add a" in c for c in commits)
