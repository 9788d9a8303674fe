"""Integration branch management: merge features, push to stage, promote to main."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from agent_dispatch.integrations import git
from agent_dispatch.integrations.git import GitError

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    success: bool
    commit: str | None = None
    conflicts: list[str] = field(default_factory=list)
    message: str = ""


@dataclass
class StagePush:
    commit: str
    tag: str


def stage_tag_name(now: datetime | None = None) -> str:
    stamp = (now or datetime.now()).isoformat()
    return "stage-" + stamp.replace(":", "-").replace(".", "-")


class StageBranchController:
    """Owns the ephemeral integration branch in one repository.

    The branch is rebuilt from main for every batch, receives ``--no-ff``
    merges of feature branches, and is force-pushed to the stage branch once
    review passes. With ``remote=None`` every update stays local.
    """

    def __init__(
        self,
        repo_path: str | Path,
        main_branch: str = "main",
        stage_branch: str = "stage",
        integration_branch: str = "merge_stage",
        remote: str | None = "origin",
    ):
        self.repo_path = Path(repo_path)
        self.main_branch = main_branch
        self.stage_branch = stage_branch
        self.integration_branch = integration_branch
        self.remote = remote

    def _ref(self, branch: str) -> str:
        """Remote-tracking ref when a remote is configured and the branch exists there."""
        if self.remote:
            remote_ref = f"{self.remote}/{branch}"
            try:
                git.rev_parse(self.repo_path, f"refs/remotes/{remote_ref}")
                return remote_ref
            except GitError:
                pass
        return branch

    # ── Integration branch lifecycle ────────────────────────────────────

    def create_or_reset_integration_branch(self) -> str:
        """Recreate the integration branch from the latest main. Returns its head."""
        if self.is_merge_in_progress():
            git.merge_abort(self.repo_path)

        if self.remote:
            git.fetch(self.repo_path, self.remote)
        git.checkout(self.repo_path, self.main_branch)
        if self.remote:
            git.pull(self.repo_path, self.remote, self.main_branch)

        if git.branch_exists(self.repo_path, self.integration_branch):
            git.delete_branch(self.repo_path, self.integration_branch, force=True)
        git.checkout(self.repo_path, self.integration_branch, create=True)

        head = git.rev_parse(self.repo_path)
        logger.info("Integration branch %s reset to %s at %s",
                    self.integration_branch, self.main_branch, head[:8])
        return head

    def delete_integration_branch(self):
        if self.is_merge_in_progress():
            git.merge_abort(self.repo_path)
        if git.get_current_branch(self.repo_path) == self.integration_branch:
            git.checkout(self.repo_path, self.main_branch)
        if git.branch_exists(self.repo_path, self.integration_branch):
            git.delete_branch(self.repo_path, self.integration_branch, force=True)

    def checkpoint(self) -> str:
        return git.rev_parse(self.repo_path, self.integration_branch)

    def rollback_to(self, sha: str):
        """Drop everything merged into the integration branch after ``sha``."""
        if self.is_merge_in_progress():
            git.merge_abort(self.repo_path)
        if git.get_current_branch(self.repo_path) != self.integration_branch:
            git.checkout(self.repo_path, self.integration_branch)
        git.reset_hard(self.repo_path, sha)
        logger.info("Integration branch rolled back to %s", sha[:8])

    # ── Merging ─────────────────────────────────────────────────────────

    def _merge(self, branch: str, message: str) -> MergeResult:
        try:
            git.merge_no_ff(self.repo_path, branch, message)
        except GitError as e:
            conflicts = git.get_conflicted_files(self.repo_path)
            if not conflicts:
                raise
            logger.warning("Merge of %s conflicted in %d file(s)", branch, len(conflicts))
            return MergeResult(success=False, conflicts=conflicts, message=str(e))
        return MergeResult(success=True, commit=git.rev_parse(self.repo_path), message=message)

    def merge_feature_branch(self, branch: str, issue_number: int) -> MergeResult:
        """Merge a feature branch into the integration branch.

        On conflict the merge is left in progress so the caller can resolve
        or abort it.
        """
        if git.get_current_branch(self.repo_path) != self.integration_branch:
            git.checkout(self.repo_path, self.integration_branch)
        source = branch if git.branch_exists(self.repo_path, branch) else self._ref(branch)
        return self._merge(source, f"Merge {branch} for issue #{issue_number}")

    def abort_merge(self):
        if self.is_merge_in_progress():
            git.merge_abort(self.repo_path)
            logger.info("Aborted in-progress merge")

    def commit_resolved_conflicts(self, message: str) -> str:
        git.add_tracked(self.repo_path)
        git.commit(self.repo_path, message)
        return git.rev_parse(self.repo_path)

    def is_merge_in_progress(self) -> bool:
        return git.is_merge_in_progress(self.repo_path)

    # ── Stage and main ──────────────────────────────────────────────────

    def force_push_to_stage(self) -> StagePush:
        """Point stage at the integration tip and tag it."""
        sha = git.rev_parse(self.repo_path, self.integration_branch)
        tag = stage_tag_name()

        if self.remote:
            git.push(self.repo_path, self.remote,
                     f"{self.integration_branch}:{self.stage_branch}", force=True)
            git.tag(self.repo_path, tag, sha)
            git.push(self.repo_path, self.remote, tag)
        else:
            git.update_ref(self.repo_path, self.stage_branch, sha)
            git.tag(self.repo_path, tag, sha)

        logger.info("Stage %s updated to %s (tag %s)", self.stage_branch, sha[:8], tag)
        return StagePush(commit=sha, tag=tag)

    def merge_stage_to_main(self) -> MergeResult:
        """Merge stage into main. Pushes main on success; leaves conflicts in progress."""
        if self.remote:
            git.fetch(self.repo_path, self.remote)
        git.checkout(self.repo_path, self.main_branch)
        if self.remote:
            git.pull(self.repo_path, self.remote, self.main_branch)

        result = self._merge(self._ref(self.stage_branch),
                             f"Merge {self.stage_branch} into {self.main_branch}")
        if result.success:
            result.commit = self.push_main()
        return result

    def push_main(self) -> str:
        if self.remote:
            git.push(self.repo_path, self.remote, self.main_branch)
        return git.rev_parse(self.repo_path, self.main_branch)

    # ── Inspection ──────────────────────────────────────────────────────

    def get_diff_with_main(self) -> str:
        return git.diff(self.repo_path, self.main_branch, self.integration_branch)

    def get_commits_since_main(self) -> list[str]:
        return git.log_oneline(self.repo_path, self.main_branch, self.integration_branch)
