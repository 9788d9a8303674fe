"""Delegate merge-conflict resolution to the coding agent, one file at a time."""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from agent_dispatch.errors import ProcessError
from agent_dispatch.integrations import git
from agent_dispatch.integrations.git import GitError

logger = logging.getLogger(__name__)

CONFLICT_MARKERS = ("<<<<<<<", "=======", ">>>>>>>")
CODE_FENCE_RE = re.compile(r"```[\w+-]*\n([\s\S]*)\n```")


@dataclass
class ConflictContext:
    branch_name: str
    issue_number: int
    issue_title: str
    integration_branch: str = "merge_stage"


@dataclass
class ResolutionResult:
    success: bool
    resolved_files: list[str] = field(default_factory=list)
    failed_file: str | None = None
    error: str | None = None


def build_resolution_prompt(path: str, content: str, context: ConflictContext) -> str:
    return f"""You are resolving merge conflicts in one file during automated integration.

**Context:**
- File: {path}
- Feature branch: {context.branch_name}
- Issue: #{context.issue_number} - {context.issue_title}
- Integration branch: {context.integration_branch} (based on main)

**Task:**
The file below contains conflict markers (<<<<<<< HEAD, =======, >>>>>>>).
Produce a clean version that keeps the intent of both main (HEAD) and the
feature branch.

**Strategy:**
- When both sides add something, keep both
- When the feature branch clearly replaces old code, use the feature version
- When unsure, prefer the feature branch
- Keep every import, type and dependency from both sides
- Keep the file's existing formatting and style

**Output format:**
Respond with ONLY the complete resolved file content. No explanations and no
markdown code fences. Start with the file's first line and end with its last.

**File with conflicts:**

{content}

**Resolved file:**"""


def extract_resolved_content(response: str) -> str | None:
    """Strip a wrapping code fence; None if nothing usable or conflict markers remain."""
    content = response.strip()
    if match := CODE_FENCE_RE.fullmatch(content):
        content = match.group(1)
    if not content or any(marker in content for marker in CONFLICT_MARKERS):
        return None
    return content


class ConflictResolutionService:
    def __init__(self, agent, repo_path: str | Path):
        self.agent = agent
        self.repo_path = Path(repo_path)

    def resolve_file(self, path: str, context: ConflictContext):
        """Resolve and stage one file. Raises ProcessError when it cannot."""
        full_path = self.repo_path / path
        conflicted = full_path.read_text()
        response = self.agent.run(build_resolution_prompt(path, conflicted, context), cwd=self.repo_path)

        resolved = extract_resolved_content(response)
        if resolved is None:
            raise ProcessError(f"Agent response for {path} still contains conflict markers")

        if conflicted.endswith("\n") and not resolved.endswith("\n"):
            resolved += "\n"
        full_path.write_text(resolved)
        git.add(self.repo_path, [path])

    def resolve_conflicts(self, files: list[str], context: ConflictContext) -> ResolutionResult:
        """Resolve every file or stop at the first one that fails."""
        result = ResolutionResult(success=True)
        for path in files:
            logger.info("Resolving conflicts in %s for issue #%d", path, context.issue_number)
            try:
                self.resolve_file(path, context)
            except (ProcessError, GitError, OSError) as e:
                logger.warning("Could not resolve %s: %s", path, e)
                result.success = False
                result.failed_file = path
                result.error = str(e)
                return result
            result.resolved_files.append(path)
        return result
