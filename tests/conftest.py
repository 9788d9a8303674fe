"""Shared fixtures: temporary git repositories, databases, and fake collaborators."""

import subprocess
import tempfile
from pathlib import Path

import pytest

from agent_dispatch.db.engine import init_db
from agent_dispatch.db.models import Issue
from agent_dispatch.errors import ProcessError, TrackerError


def _git(args: list[str], cwd):
    return subprocess.run(["git"] + args, cwd=cwd, capture_output=True, text=True, check=True).stdout


def _init_repo(path: Path):
    _git(["init"], path)
    _git(["symbolic-ref", "HEAD", "refs/heads/main"], path)
    _git(["config", "user.name", "Test"], path)
    _git(["config", "user.email", "test@test.com"], path)
    (path / "README.md").write_text("# Test\n")
    _git(["add", "."], path)
    _git(["commit", "-m", "init"], path)


@pytest.fixture
def git_repo():
    """A temporary git repo on main with one commit."""
    with tempfile.TemporaryDirectory() as tmp:
        repo = Path(tmp) / "repo"
        repo.mkdir()
        _init_repo(repo)
        yield repo


@pytest.fixture
def git():
    """Run a git command in a directory and return stdout."""
    return _git


@pytest.fixture
def commit_on_branch():
    """Commit files on a branch (created from main if missing), then return to main."""

    def _commit(repo: Path, branch: str, files: dict[str, str], message: str = "change"):
        existing = _git(["branch", "--list", branch], repo).strip()
        _git(["checkout", branch] if existing else ["checkout", "-b", branch, "main"], repo)
        for name, content in files.items():
            path = repo / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        _git(["add", "."], repo)
        _git(["commit", "-m", message], repo)
        _git(["checkout", "main"], repo)

    return _commit


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


class FakeTracker:
    """In-memory tracker recording every write."""

    def __init__(self, issues: list[Issue] | None = None):
        self.issues = {i.number: i for i in issues or []}
        self.statuses: dict[str, str] = {}
        self.status_history: list[tuple[str, str]] = []
        self.instances: dict[str, str | None] = {}
        self.comments: list[tuple[int, str]] = []
        self.fail_writes = False

    def _check(self):
        if self.fail_writes:
            raise TrackerError("tracker unavailable")

    def get_issue(self, number: int) -> Issue:
        if number not in self.issues:
            raise TrackerError(f"issue #{number} not found")
        return self.issues[number]

    def list_open_issues(self, limit: int = 100, label=None) -> list[Issue]:
        return [i for i in self.issues.values() if i.state == "open"][:limit]

    def find_item_id(self, issue_number: int) -> str | None:
        return f"item-{issue_number}"

    def set_status(self, item_id: str, status: str):
        self._check()
        self.statuses[item_id] = status
        self.status_history.append((item_id, status))

    def set_instance(self, item_id: str, instance_id: str | None):
        self._check()
        self.instances[item_id] = instance_id

    def post_comment(self, number: int, body: str):
        self._check()
        self.comments.append((number, body))

    def get_statuses(self) -> dict[str, str]:
        return dict(self.statuses)


class FakeAgent:
    """Stands in for the one-shot Claude CLI.

    ``responder`` maps a prompt to a response string; raising ProcessError
    simulates a CLI failure.
    """

    def __init__(self, responder=None):
        self.responder = responder or (lambda prompt: "")
        self.prompts: list[str] = []

    def run(self, prompt: str, cwd=None) -> str:
        self.prompts.append(prompt)
        return self.responder(prompt)


@pytest.fixture
def fake_tracker():
    return FakeTracker()


@pytest.fixture
def make_agent():
    return FakeAgent


@pytest.fixture
def failing_agent():
    def _fail(prompt):
        raise ProcessError("claude exited with 1")

    return FakeAgent(_fail)


@pytest.fixture
def passing_reviewer():
    return FakeAgent(lambda prompt: "DECISION: PASS\nSCORE: 9\nFEEDBACK: Looks good.")
