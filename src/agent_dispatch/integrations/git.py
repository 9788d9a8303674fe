"""Git subprocess wrappers for worktree, branch and merge operations."""

import subprocess
from dataclasses import dataclass
from pathlib import Path

# Porcelain XY codes that mark an unmerged path.
UNMERGED_CODES = {"UU", "AA", "DD", "AU", "UA", "DU", "UD"}


class GitError(Exception):
    """Raised when a git command fails."""


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False


def run_git(args: list[str], cwd: str | Path | None = None, strip: bool = True) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip() if strip else result.stdout
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or e.stdout or "").strip()
        raise GitError(f"git {' '.join(args)} failed: {detail}") from e


# ── Worktrees ───────────────────────────────────────────────────────────


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str = "main",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch, str(worktree_path), base_branch]
    else:
        args += [str(worktree_path), branch]
    return run_git(args, cwd=repo_path)


def _to_worktree_info(entry: dict) -> WorktreeInfo:
    return WorktreeInfo(
        path=entry.get("worktree", ""),
        branch=entry.get("branch", "").replace("refs/heads/", ""),
        head=entry.get("HEAD", ""),
        is_bare=entry.get("bare", False),
    )


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    worktrees = []
    current: dict = {}

    for line in output.split("\n"):
        if not line:
            if current:
                worktrees.append(_to_worktree_info(current))
                current = {}
            continue

        key, _, value = line.partition(" ")
        if key in ("worktree", "HEAD", "branch"):
            current[key] = value
        elif key == "bare":
            current["bare"] = True

    if current:
        worktrees.append(_to_worktree_info(current))

    return worktrees


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


# ── Branches ────────────────────────────────────────────────────────────


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)


def checkout(repo_path: str | Path, ref: str, create: bool = False) -> str:
    args = ["checkout", "-b", ref] if create else ["checkout", ref]
    return run_git(args, cwd=repo_path)


def rev_parse(repo_path: str | Path, ref: str = "HEAD") -> str:
    return run_git(["rev-parse", ref], cwd=repo_path)


def get_current_branch(cwd: str | Path) -> str:
    return run_git(["branch", "--show-current"], cwd=cwd)


def reset_hard(repo_path: str | Path, ref: str) -> str:
    return run_git(["reset", "--hard", ref], cwd=repo_path)


def update_ref(repo_path: str | Path, branch: str, sha: str) -> str:
    """Point a local branch at a commit without checking it out."""
    return run_git(["update-ref", f"refs/heads/{branch}", sha], cwd=repo_path)


# ── Remote ──────────────────────────────────────────────────────────────


def fetch(repo_path: str | Path, remote: str) -> str:
    return run_git(["fetch", remote], cwd=repo_path)


def pull(repo_path: str | Path, remote: str, branch: str) -> str:
    return run_git(["pull", "--ff-only", remote, branch], cwd=repo_path)


def push(repo_path: str | Path, remote: str, refspec: str, force: bool = False) -> str:
    args = ["push", remote, refspec]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


# ── Merging ─────────────────────────────────────────────────────────────


def merge_no_ff(repo_path: str | Path, branch: str, message: str) -> str:
    return run_git(["merge", "--no-ff", branch, "-m", message], cwd=repo_path)


def merge_abort(repo_path: str | Path) -> str:
    return run_git(["merge", "--abort"], cwd=repo_path)


def is_merge_in_progress(repo_path: str | Path) -> bool:
    try:
        run_git(["rev-parse", "-q", "--verify", "MERGE_HEAD"], cwd=repo_path)
        return True
    except GitError:
        return False


def get_status(cwd: str | Path) -> str:
    """Get git status of a working directory."""
    return run_git(["status", "--short"], cwd=cwd)


def get_conflicted_files(repo_path: str | Path) -> list[str]:
    """Return paths left unmerged by the last merge."""
    output = run_git(["status", "--porcelain"], cwd=repo_path, strip=False)
    files = []
    for line in output.splitlines():
        if len(line) > 3 and line[:2] in UNMERGED_CODES:
            files.append(line[3:])
    return files


def add(repo_path: str | Path, paths: list[str]) -> str:
    return run_git(["add", "--"] + paths, cwd=repo_path)


def add_tracked(repo_path: str | Path) -> str:
    """Stage every change to tracked files, including resolved conflicts."""
    return run_git(["add", "-u"], cwd=repo_path)


def commit(repo_path: str | Path, message: str) -> str:
    return run_git(["commit", "--no-edit", "-m", message], cwd=repo_path)


def tag(repo_path: str | Path, name: str, ref: str = "HEAD") -> str:
    return run_git(["tag", name, ref], cwd=repo_path)


# ── Inspection ──────────────────────────────────────────────────────────


def diff(repo_path: str | Path, base: str, head: str = "HEAD") -> str:
    return run_git(["diff", f"{base}...{head}"], cwd=repo_path, strip=False)


def log_oneline(repo_path: str | Path, base: str, head: str = "HEAD") -> list[str]:
    output = run_git(["log", "--oneline", f"{base}..{head}"], cwd=repo_path)
    return [line for line in output.splitlines() if line]
