"""CLI entry point for agent-dispatch."""

import json
import logging
import sys
import time
from functools import partial
from pathlib import Path

import click

from agent_dispatch.config import Config, get_config
from agent_dispatch.core import agents as agents_mod
from agent_dispatch.core.assignments import AssignmentRegistry
from agent_dispatch.core.conflicts import ConflictResolutionService
from agent_dispatch.core.dependencies import DependencyGraphAnalyzer
from agent_dispatch.core.pipeline import IntegrationPipeline
from agent_dispatch.core.review import PersonaReviewGate
from agent_dispatch.core.scheduler import Scheduler
from agent_dispatch.core.signals import is_session_idle
from agent_dispatch.core.slots import InstanceSlotAllocator
from agent_dispatch.core.stage import StageBranchController
from agent_dispatch.core.worktrees import (
    cleanup_merged_worktrees,
    get_worktree_status,
    list_assignment_worktrees,
)
from agent_dispatch.db.engine import get_db
from agent_dispatch.db.models import Issue
from agent_dispatch.errors import DispatchError
from agent_dispatch.integrations.claude import ClaudeCli
from agent_dispatch.integrations.git import GitError
from agent_dispatch.integrations.github import GitHubTracker
from agent_dispatch.integrations.slack import SlackNotifier

logger = logging.getLogger(__name__)


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _build_tracker(config: Config) -> GitHubTracker | None:
    if not config.github_repo and not config.project_owner:
        return None
    return GitHubTracker(config.github_repo, config.project_owner, config.project_number)


def _build_registry(config: Config, db) -> AssignmentRegistry:
    return AssignmentRegistry(db, _build_tracker(config), config.reject_status)


def _build_pipeline(config: Config, registry: AssignmentRegistry) -> IntegrationPipeline:
    agent = ClaudeCli(config.claude_path, config.agent_model)
    return IntegrationPipeline(
        registry=registry,
        allocator=InstanceSlotAllocator(registry.conn, config.max_slots),
        stage=StageBranchController(
            config.repo_path,
            main_branch=config.main_branch,
            stage_branch=config.stage_branch,
            integration_branch=config.integration_branch,
            remote=config.remote,
        ),
        resolver=ConflictResolutionService(agent, config.repo_path),
        review_gate=PersonaReviewGate(
            agent,
            repo_path=config.repo_path,
            personas=config.review_personas,
            require_all=config.require_all_personas_pass,
        ),
        auto_resolve_conflicts=config.auto_resolve_conflicts,
        auto_merge_to_main=config.auto_merge_to_main,
        epic_mode=config.epic_mode,
        notifier=SlackNotifier(config.slack_bot_token, config.slack_channel),
    )


def _build_scheduler(config: Config, registry: AssignmentRegistry, launch: bool) -> Scheduler:
    launcher = None
    if launch:
        launcher = partial(
            agents_mod.launch_agent,
            registry,
            output_dir=config.repo_path / config.agent_output_dir,
            claude_path=config.claude_path,
            model=config.agent_model,
            main_branch=config.main_branch,
        )
    return Scheduler(
        registry,
        InstanceSlotAllocator(registry.conn, config.max_slots),
        config.repo_path,
        tracker=registry.tracker,
        worktree_dir=config.worktree_dir,
        main_branch=config.main_branch,
        branch_prefix=config.branch_prefix,
        launcher=launcher,
    )


def _load_issues(issues_file: str | None, tracker: GitHubTracker | None) -> list[Issue]:
    if issues_file:
        data = json.loads(Path(issues_file).read_text())
        return [
            Issue(
                number=int(entry["number"]),
                title=entry.get("title", ""),
                body=entry.get("body") or "",
                state=entry.get("state", "open").lower(),
                labels=entry.get("labels", []),
            )
            for entry in data
        ]
    if tracker is None:
        click.echo("No issue source: pass --issues-file or set AD_GITHUB_REPO.", err=True)
        sys.exit(1)
    return tracker.list_open_issues()


def _resolve(registry: AssignmentRegistry, ref: str):
    """Look up an assignment by id or by issue number ('12' or '#12')."""
    number = ref.lstrip("#")
    if number.isdigit():
        return registry.get_by_issue(int(number))
    return registry.get(ref)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """dispatch - schedule coding agents and merge their work"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Assignment Commands ───────────────────────────────────────────────────────


@main.command("assign")
@click.argument("issue_numbers", nargs=-1, type=int)
@click.option("--provider", default=None, help="Agent provider (default: first configured)")
@click.option("--issues-file", default=None, help="JSON file of issues instead of GitHub")
@click.option("--limit", default=None, type=int, help="Maximum number of issues to assign")
@click.option("--launch/--no-launch", default=True, help="Start the agent after assigning")
def assign(issue_numbers, provider, issues_file, limit, launch):
    """Assign issues to free agent slots.

    With no ISSUE_NUMBERS, picks the highest-priority unblocked issues.
    """
    config = get_config()
    provider = provider or next(iter(config.max_slots))

    with _get_db() as db:
        registry = _build_registry(config, db)
        scheduler = _build_scheduler(config, registry, launch)
        try:
            if issue_numbers:
                issues = {i.number: i for i in _load_issues(issues_file, registry.tracker)} if issues_file else {}
                assigned = []
                for number in issue_numbers:
                    issue = issues.get(number)
                    if issue is None and registry.tracker is not None:
                        issue = registry.tracker.get_issue(number)
                    if issue is None:
                        click.echo(f"Issue #{number} not found.", err=True)
                        sys.exit(1)
                    assigned.append(scheduler.schedule_issue(issue, provider, launch=launch))
            else:
                issues = _load_issues(issues_file, registry.tracker)
                assigned = scheduler.schedule_next(provider, issues, limit=limit, launch=launch)
        except (DispatchError, GitError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

        if not assigned:
            click.echo("Nothing assigned.")
            return
        for a in assigned:
            click.echo(f"  #{a.issue_number} -> {a.instance_id} ({a.status}) {a.branch_name}")


@main.command("status")
@click.option("--status", "status_filter", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def status(status_filter, json_output):
    """List assignments."""
    config = get_config()
    with _get_db() as db:
        registry = _build_registry(config, db)
        assignments = registry.list_assignments(status=status_filter)

        if json_output:
            click.echo(json.dumps([_assignment_dict(a) for a in assignments], indent=2))
            return

        if not assignments:
            click.echo("No assignments found.")
            return

        output_dir = config.repo_path / config.agent_output_dir
        for a in assignments:
            master = " [phase master]" if a.is_phase_master else ""
            idle = ""
            if a.status == "in-progress" and is_session_idle(agents_mod.log_path_for(output_dir, a.id)):
                idle = " [idle]"
            instance = f" on {a.instance_id}" if a.instance_id else ""
            click.echo(f"  #{a.issue_number} {a.issue_title} ({a.status}){instance}{master}{idle}")


@main.command("show")
@click.argument("ref")
def show(ref):
    """Show an assignment by id or issue number."""
    config = get_config()
    with _get_db() as db:
        registry = _build_registry(config, db)
        assignment = _resolve(registry, ref)
        if not assignment:
            click.echo(f"Assignment not found: {ref}", err=True)
            sys.exit(1)

        click.echo(f"Assignment: {assignment.id}")
        click.echo(f"  Issue: #{assignment.issue_number} {assignment.issue_title}")
        click.echo(f"  Status: {assignment.status}")
        click.echo(f"  Provider: {assignment.provider}")
        if assignment.instance_id:
            click.echo(f"  Instance: {assignment.instance_id}")
        if assignment.branch_name:
            click.echo(f"  Branch: {assignment.branch_name}")
        if assignment.worktree_path:
            click.echo(f"  Worktree: {assignment.worktree_path}")
            wt_status = get_worktree_status(registry, assignment.id)
            if "error" in wt_status:
                click.echo(f"    {wt_status['error']}")
            else:
                for line in wt_status["status"].splitlines():
                    click.echo(f"    {line}")
        if assignment.pr_number:
            click.echo(f"  PR: #{assignment.pr_number}")
        if assignment.stage_commit:
            click.echo(f"  Stage commit: {assignment.stage_commit}")
        if assignment.main_commit:
            click.echo(f"  Main commit: {assignment.main_commit}")
        if assignment.review_result:
            verdict = "passed" if assignment.review_result.overall_passed else "failed"
            click.echo(f"  Review: {verdict}")
            for r in assignment.review_result.persona_reviews:
                click.echo(f"    - {r.persona}: {'PASS' if r.passed else 'FAIL'}")

        events = registry.get_events(assignment.id)
        if events:
            click.echo("  Events:")
            for e in events:
                change = f"{e.old_value or ''} -> {e.new_value or ''}".strip()
                click.echo(f"    {e.created_at}  {e.event_type}  {change}")


@main.command("slots")
def slots():
    """Show slot utilization per provider."""
    config = get_config()
    with _get_db() as db:
        allocator = InstanceSlotAllocator(db, config.max_slots)
        for provider in config.max_slots:
            stats = allocator.get_utilization_stats(provider)[provider]
            click.echo(f"{provider}: {stats['used_slots']}/{stats['max_slots']} in use")
            for slot in allocator.get_provider_slots(provider):
                owner = f"#{slot.issue_number}" if slot.issue_number else "free"
                click.echo(f"  {slot.instance_id}: {owner}")


@main.command("graph")
@click.option("--issues-file", default=None, help="JSON file of issues instead of GitHub")
def graph(issues_file):
    """Show the dependency graph and which issues are ready."""
    config = get_config()
    issues = _load_issues(issues_file, _build_tracker(config))
    analyzer = DependencyGraphAnalyzer()
    dep_graph = analyzer.build_graph(issues)
    states = {i.number: i.state for i in issues}
    ready = set(analyzer.get_unblocked_issues(dep_graph, states))

    for number, node in sorted(dep_graph.nodes.items()):
        marker = "ready" if number in ready else "blocked" if node.depends_on else states.get(number, "?")
        deps = f" depends on {', '.join(f'#{d}' for d in node.depends_on)}" if node.depends_on else ""
        click.echo(f"  #{number} [{marker}]{deps}")

    validation = analyzer.validate_graph(dep_graph)
    for error in validation.errors:
        click.echo(f"Error: {error}", err=True)
    for warning in validation.warnings:
        click.echo(f"Warning: {warning}", err=True)
    if not validation.valid:
        sys.exit(1)


@main.command("requeue")
@click.argument("ref")
def requeue(ref):
    """Stop an in-progress assignment and send it back to the queue."""
    config = get_config()
    with _get_db() as db:
        registry = _build_registry(config, db)
        assignment = _resolve(registry, ref)
        if not assignment:
            click.echo(f"Assignment not found: {ref}", err=True)
            sys.exit(1)
        if assignment.status != "in-progress":
            click.echo(f"Error: only in-progress work can be requeued (is {assignment.status})", err=True)
            sys.exit(1)

        agents_mod.cancel_agent(registry, assignment.id, config.repo_path / config.agent_output_dir)
        if assignment.instance_id:
            InstanceSlotAllocator(db, config.max_slots).lease_for(assignment.id).release()
        registry.transition(assignment.id, "assigned")
        click.echo(f"Requeued #{assignment.issue_number}")


@main.command("worktrees")
@click.option("--cleanup", is_flag=True, help="Remove worktrees of merged assignments first")
def worktrees(cleanup):
    """List git worktrees and the assignments working in them."""
    config = get_config()
    with _get_db() as db:
        registry = _build_registry(config, db)
        try:
            if cleanup:
                for result in cleanup_merged_worktrees(registry, config.repo_path):
                    if result["removed"]:
                        click.echo(f"Removed {result['path']}")
                    else:
                        click.echo(f"Kept worktree of {result['assignment_id']}: {result['reason']}", err=True)
            entries = list_assignment_worktrees(registry, config.repo_path)
        except GitError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

        for wt in entries:
            owner = f" #{wt['issue_number']} ({wt['status']})" if "assignment_id" in wt else ""
            click.echo(f"  {wt['path']} [{wt['branch'] or 'detached'}]{owner}")


# ── Pipeline Commands ─────────────────────────────────────────────────────────


@main.command("merge")
def merge():
    """Run one merge pipeline batch over dev-complete work."""
    config = get_config()
    with _get_db() as db:
        registry = _build_registry(config, db)
        pipeline = _build_pipeline(config, registry)
        try:
            report = pipeline.run_batch()
        except (DispatchError, GitError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

        if report is None:
            click.echo("A merge batch is already running.")
            return
        if not report.outcomes:
            click.echo("Nothing to merge.")
            return
        for o in report.outcomes:
            detail = f" ({o.detail})" if o.detail else ""
            click.echo(f"  #{o.issue_number}: {o.outcome}{detail}")
        if report.rejected:
            sys.exit(2)


@main.command("monitor")
@click.option("--auto-assign/--no-auto-assign", default=False, help="Fill free slots every poll")
@click.option("--provider", default=None, help="Provider used for auto-assignment")
def monitor(auto_assign, provider):
    """Watch agents, run the merge pipeline and (optionally) keep slots busy."""
    config = get_config()
    provider = provider or next(iter(config.max_slots))
    tracker = _build_tracker(config)
    notifier = SlackNotifier(config.slack_bot_token, config.slack_channel)

    agent_monitor = agents_mod.AgentMonitor(
        config.db_path,
        output_dir=config.repo_path / config.agent_output_dir,
        poll_interval=config.poll_interval,
        tracker=tracker,
        notifier=notifier,
        reject_status=config.reject_status,
    )
    agent_monitor.start()
    click.echo(f"Monitoring every {config.poll_interval:.0f}s (Ctrl-C to stop)")

    with _get_db() as db:
        registry = _build_registry(config, db)
        pipeline = _build_pipeline(config, registry)
        scheduler = _build_scheduler(config, registry, launch=True)
        try:
            while True:
                try:
                    registry.reconcile_with_tracker()
                    report = pipeline.run_batch()
                    if report and report.outcomes:
                        click.echo(f"Batch: {len(report.merged)} merged, "
                                   f"{len(report.stage_ready)} stage-ready, {len(report.rejected)} rejected")
                    if auto_assign:
                        for a in scheduler.schedule_next(provider):
                            click.echo(f"Assigned #{a.issue_number} to {a.instance_id}")
                except (DispatchError, GitError):
                    logger.exception("Monitor iteration failed")
                time.sleep(config.poll_interval)
        except KeyboardInterrupt:
            click.echo("Stopping...")
        finally:
            agent_monitor.stop()


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve(host, port):
    """Serve the JSON status API."""
    from agent_dispatch.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _assignment_dict(a) -> dict:
    return {
        "id": a.id,
        "issue_number": a.issue_number,
        "issue_title": a.issue_title,
        "status": a.status,
        "provider": a.provider,
        "instance_id": a.instance_id,
        "branch": a.branch_name,
        "worktree": a.worktree_path,
        "pr_number": a.pr_number,
        "is_phase_master": a.is_phase_master,
    }


if __name__ == "__main__":
    main()
