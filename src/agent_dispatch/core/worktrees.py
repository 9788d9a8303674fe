"""Git worktree lifecycle management tied to assignments."""

import logging
from pathlib import Path

from agent_dispatch.core.assignments import AssignmentRegistry
from agent_dispatch.integrations.git import (
    GitError,
    branch_exists,
    delete_branch,
    get_status,
    worktree_add,
    worktree_list,
    worktree_remove,
)

logger = logging.getLogger(__name__)


def branch_name_for(issue_number: int, prefix: str = "feature/issue-") -> str:
    return f"{prefix}{issue_number}"


def create_worktree_for_assignment(
    registry: AssignmentRegistry,
    assignment_id: str,
    repo_path: str | Path,
    worktree_base_dir: str = ".worktrees",
    base_branch: str = "main",
    branch_prefix: str = "feature/issue-",
) -> dict:
    """Create (or reuse) the worktree an assignment's agent works in."""
    assignment = registry.require(assignment_id)

    if assignment.worktree_path and Path(assignment.worktree_path).exists():
        return {
            "assignment_id": assignment_id,
            "worktree_path": assignment.worktree_path,
            "branch": assignment.branch_name,
            "already_existed": True,
        }

    repo = Path(repo_path)
    branch = assignment.branch_name or branch_name_for(assignment.issue_number, branch_prefix)
    wt_path = repo / worktree_base_dir / f"issue-{assignment.issue_number}"

    # A rejected assignment keeps its branch so rework builds on earlier commits
    create_branch = not branch_exists(repo, branch)
    worktree_add(repo, wt_path, branch, base_branch, create_branch=create_branch)
    registry.set_worktree(assignment_id, str(wt_path), branch)
    logger.info("Created worktree %s on %s for issue #%d", wt_path, branch, assignment.issue_number)

    return {
        "assignment_id": assignment_id,
        "worktree_path": str(wt_path),
        "branch": branch,
        "already_existed": False,
    }


def remove_worktree_for_assignment(
    registry: AssignmentRegistry,
    assignment_id: str,
    repo_path: str | Path,
    force: bool = False,
    delete_branch_after: bool = False,
) -> dict:
    assignment = registry.require(assignment_id)
    if not assignment.worktree_path:
        return {"assignment_id": assignment_id, "removed": False, "reason": "No worktree assigned"}

    wt_path = Path(assignment.worktree_path)
    repo = Path(repo_path)

    if wt_path.exists():
        try:
            worktree_remove(repo, wt_path, force=force)
        except GitError as e:
            if not force:
                return {"assignment_id": assignment_id, "removed": False, "reason": str(e)}
            raise

    branch = assignment.branch_name
    if delete_branch_after and branch and branch_exists(repo, branch):
        try:
            delete_branch(repo, branch, force=force)
        except GitError as e:
            logger.warning("Could not delete branch %s: %s", branch, e)

    registry.set_worktree(assignment_id, None, branch)
    return {"assignment_id": assignment_id, "removed": True, "path": str(wt_path)}


def list_assignment_worktrees(registry: AssignmentRegistry, repo_path: str | Path) -> list[dict]:
    """All git worktrees, annotated with the assignment working in each."""
    by_path = {
        str(Path(a.worktree_path).resolve()): a
        for a in registry.list_assignments()
        if a.worktree_path
    }
    result = []
    for wt in worktree_list(repo_path):
        entry = {"path": wt.path, "branch": wt.branch, "head": wt.head}
        if assignment := by_path.get(str(Path(wt.path).resolve())):
            entry["assignment_id"] = assignment.id
            entry["issue_number"] = assignment.issue_number
            entry["status"] = assignment.status
        result.append(entry)
    return result


def get_worktree_status(registry: AssignmentRegistry, assignment_id: str) -> dict:
    assignment = registry.require(assignment_id)
    if not assignment.worktree_path:
        return {"assignment_id": assignment_id, "error": "No worktree assigned"}

    wt_path = Path(assignment.worktree_path)
    if not wt_path.exists():
        return {"assignment_id": assignment_id, "error": f"Worktree path does not exist: {wt_path}"}

    status = get_status(wt_path)
    return {
        "assignment_id": assignment_id,
        "worktree_path": str(wt_path),
        "branch": assignment.branch_name,
        "status": status if status else "(clean)",
    }


def cleanup_merged_worktrees(registry: AssignmentRegistry, repo_path: str | Path) -> list[dict]:
    return [
        remove_worktree_for_assignment(registry, a.id, repo_path)
        for a in registry.list_assignments(status="merged")
        if a.worktree_path
    ]
