"""Agent processes: launching, cancellation, and background completion monitoring."""

import logging
import os
import signal
import subprocess
import threading
from datetime import datetime
from pathlib import Path

from agent_dispatch.core.assignments import AssignmentRegistry
from agent_dispatch.core.signals import (
    analyze_session_log,
    extract_pr_number,
    final_signal,
    find_completion_indicators,
)
from agent_dispatch.core.slots import InstanceSlotAllocator
from agent_dispatch.db.models import Assignment
from agent_dispatch.errors import DispatchError, ProcessError, TrackerError, ValidationError
from agent_dispatch.integrations.slack import format_assignment_notification

logger = logging.getLogger(__name__)


class AgentHandle:
    """A launched agent: its process, its log, and a way to stop it."""

    def __init__(self, pid: int, log_path: Path, proc: subprocess.Popen | None = None):
        self.pid = pid
        self.log_path = Path(log_path)
        self.proc = proc

    def poll(self) -> int | None:
        """Exit code, or None while running. Orphaned processes report -1 once gone."""
        if self.proc is not None:
            return self.proc.poll()
        return None if _is_pid_alive(self.pid) else -1

    def is_running(self) -> bool:
        return self.poll() is None

    def read_output(self) -> str:
        if not self.log_path.exists():
            return ""
        return self.log_path.read_text(errors="replace")

    def terminate(self):
        """Send SIGTERM to the agent's whole process group."""
        try:
            os.killpg(os.getpgid(self.pid), signal.SIGTERM)
        except ProcessLookupError:
            pass  # Already exited


# Handles for agents launched by this process, keyed by assignment id
_active_handles: dict[str, AgentHandle] = {}


def _is_pid_alive(pid: int | None) -> bool:
    if pid is None:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


def log_path_for(output_dir: str | Path, assignment_id: str) -> Path:
    return Path(output_dir) / f"assignment-{assignment_id}.log"


def _archive_log(log_path: Path) -> Path | None:
    """Move a previous run's log aside so the next run starts with an empty one."""
    if not log_path.exists():
        return None
    stamp = datetime.fromtimestamp(log_path.stat().st_mtime).strftime("%Y%m%d-%H%M%S")
    archived = log_path.with_name(f"{log_path.stem}-{stamp}.log")
    counter = 1
    while archived.exists():
        archived = log_path.with_name(f"{log_path.stem}-{stamp}-{counter}.log")
        counter += 1
    log_path.rename(archived)
    return archived


def get_handle(assignment: Assignment, output_dir: str | Path) -> AgentHandle | None:
    """The live handle for an assignment, rebuilt from its pid after a restart."""
    if handle := _active_handles.get(assignment.id):
        return handle
    if assignment.process_id is None:
        return None
    return AgentHandle(assignment.process_id, log_path_for(output_dir, assignment.id))


# ── Prompt Construction ──────────────────────────────────────────────────────


def build_agent_prompt(assignment: Assignment, main_branch: str = "main") -> str:
    parts = [f"# Issue #{assignment.issue_number}: {assignment.issue_title}"]
    if assignment.issue_body:
        parts.append(f"\n## Description\n{assignment.issue_body}")

    parts.append("\n## Workspace")
    parts.append(f"Working directory: {assignment.worktree_path}")
    parts.append(f"Branch: {assignment.branch_name}")
    parts.append(f"Base branch: {main_branch}")

    if assignment.review_result and not assignment.review_result.overall_passed:
        parts.append("\n## Previous Review Feedback")
        parts.append("An earlier attempt was rejected at review. Address this feedback:")
        for reason in assignment.review_result.failure_reasons or []:
            parts.append(f"- {reason}")

    parts.append(
        "\n## Completion\n"
        "Commit your work to the branch above. Do not merge into the base branch.\n"
        "When you are done, print a line with exactly `AUTONOMOUS_SIGNAL:COMPLETE`.\n"
        "If you open a pull request, print `AUTONOMOUS_SIGNAL:PR_CREATED:<number>`.\n"
        "If you cannot continue, print `AUTONOMOUS_SIGNAL:BLOCKED:<reason>` or "
        "`AUTONOMOUS_SIGNAL:FAILED:<reason>` and stop."
    )
    return "\n".join(parts)


# ── Agent Launching ──────────────────────────────────────────────────────────


def launch_agent(
    registry: AssignmentRegistry,
    assignment_id: str,
    output_dir: str | Path,
    claude_path: str = "claude",
    model: str | None = "sonnet",
    permission_mode: str = "acceptEdits",
    max_turns: int | None = None,
    main_branch: str = "main",
) -> AgentHandle:
    """Start a long-running agent session in the assignment's worktree."""
    assignment = registry.require(assignment_id)
    if not assignment.worktree_path:
        raise ValidationError(f"Assignment {assignment_id} has no worktree")

    existing = _active_handles.get(assignment_id)
    if existing and existing.is_running():
        raise ValidationError(f"Assignment {assignment_id} already has a running agent (PID {existing.pid})")

    prompt = build_agent_prompt(assignment, main_branch)
    out_path = Path(output_dir)
    out_path.mkdir(parents=True, exist_ok=True)
    log_path = log_path_for(out_path, assignment_id)
    _archive_log(log_path)

    cmd = [claude_path, "-p", prompt]
    if model:
        cmd += ["--model", model]
    if permission_mode:
        cmd += ["--permission-mode", permission_mode]
    if max_turns:
        cmd += ["--max-turns", str(max_turns)]

    try:
        with open(log_path, "w") as f:
            proc = subprocess.Popen(
                cmd,
                cwd=assignment.worktree_path,
                stdout=f,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
    except OSError as e:
        raise ProcessError(f"Failed to launch agent for issue #{assignment.issue_number}: {e}") from e

    handle = AgentHandle(proc.pid, log_path, proc)
    _active_handles[assignment_id] = handle

    registry.set_process(assignment_id, proc.pid)
    registry.add_work_session(assignment_id, prompt_used=prompt)
    if assignment.status == "assigned":
        registry.transition(assignment_id, "in-progress")

    logger.info("Launched agent PID %d for issue #%d in %s", proc.pid,
                assignment.issue_number, assignment.worktree_path)
    return handle


def cancel_agent(registry: AssignmentRegistry, assignment_id: str, output_dir: str | Path = ".") -> bool:
    """Terminate the agent working on an assignment. Returns False if none was running."""
    assignment = registry.require(assignment_id)
    handle = get_handle(assignment, output_dir)
    if handle is None:
        return False
    handle.terminate()
    _active_handles.pop(assignment_id, None)
    registry.set_process(assignment_id, None)
    registry.update_last_work_session(assignment_id, summary="cancelled")
    logger.info("Cancelled agent PID %d for issue #%d", handle.pid, assignment.issue_number)
    return True


# ── Agent Monitor ────────────────────────────────────────────────────────────


class AgentMonitor:
    """Background thread that polls running agents and records their outcome.

    Explicit ``AUTONOMOUS_SIGNAL`` markers win. Without one, a finished log
    that looks complete moves the work to dev-complete; any other exit sends
    the assignment back to ``assigned``.
    """

    def __init__(
        self,
        db_path: Path,
        output_dir: str | Path,
        poll_interval: float = 30.0,
        tracker=None,
        notifier=None,
        reject_status: str | None = None,
    ):
        self.db_path = db_path
        self.output_dir = Path(output_dir)
        self.poll_interval = poll_interval
        self.tracker = tracker
        self.notifier = notifier
        self.reject_status = reject_status
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="agent-monitor", daemon=True)
        self._thread.start()
        logger.info("Agent monitor started")

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Agent monitor stopped")

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.check_agents()
            except Exception:
                logger.exception("Error in agent monitor loop")
            self._stop_event.wait(self.poll_interval)

    def check_agents(self) -> dict[str, str]:
        """One polling pass. Returns assignment id -> outcome for finished agents."""
        from agent_dispatch.db.engine import init_db

        conn = init_db(self.db_path)
        try:
            registry = AssignmentRegistry(conn, self.tracker, self.reject_status)
            outcomes = {}
            for assignment in registry.list_assignments(status="in-progress"):
                if assignment.process_id is None:
                    continue
                try:
                    if outcome := self._check_one(registry, assignment):
                        outcomes[assignment.id] = outcome
                except DispatchError:
                    logger.exception("Could not record outcome for issue #%d", assignment.issue_number)
            return outcomes
        finally:
            conn.close()

    def _check_one(self, registry: AssignmentRegistry, assignment: Assignment) -> str | None:
        handle = get_handle(assignment, self.output_dir)
        exit_code = handle.poll()
        text = handle.read_output()

        if pr_number := extract_pr_number(text):
            if pr_number != assignment.pr_number:
                registry.set_pr_number(assignment.id, pr_number)

        sig = final_signal(text)
        if sig is None:
            if exit_code is None:
                if not analyze_session_log(handle.log_path).is_complete:
                    registry.touch(assignment.id)
                    return None
                outcome = "complete"
            else:
                outcome = "complete" if find_completion_indicators(text) else "exited"
        else:
            outcome = sig.kind

        if exit_code is None and outcome != "complete":
            handle.terminate()
        _active_handles.pop(assignment.id, None)
        self._handle_outcome(registry, assignment, outcome, sig.detail if sig else None, exit_code)
        return outcome

    def _handle_outcome(self, registry: AssignmentRegistry, assignment: Assignment,
                        outcome: str, detail: str | None, exit_code: int | None):
        registry.set_process(assignment.id, None)
        registry.update_last_work_session(assignment.id, summary=detail or outcome)
        allocator = InstanceSlotAllocator(registry.conn, {})

        if outcome == "complete":
            registry.transition(assignment.id, "dev-complete")
        elif outcome in ("blocked", "failed"):
            self._comment(assignment.issue_number,
                          f"## ⚠️ Agent {outcome}\n\n{detail or 'No reason given.'}\n\n"
                          "The slot has been released; this issue needs attention.")
            if assignment.instance_id:
                allocator.lease_for(assignment.id).release()
        else:
            if assignment.instance_id:
                allocator.lease_for(assignment.id).release()
            registry.transition(assignment.id, "assigned")

        logger.info("Agent for issue #%d finished: %s (exit_code=%s)",
                    assignment.issue_number, outcome, exit_code)
        self._notify(assignment, outcome)

    def _comment(self, issue_number: int, body: str):
        if self.tracker is None:
            return
        try:
            self.tracker.post_comment(issue_number, body)
        except TrackerError as e:
            logger.warning("Failed to comment on #%d: %s", issue_number, e)

    def _notify(self, assignment: Assignment, outcome: str):
        if self.notifier is None:
            return
        emoji = ":white_check_mark:" if outcome == "complete" else ":x:"
        self.notifier.notify(
            f"{emoji} Agent {outcome} for issue #{assignment.issue_number}",
            format_assignment_notification(assignment.issue_number, assignment.issue_title,
                                           outcome, assignment.instance_id),
        )
