"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_max_slots(value: str) -> dict[str, int]:
    """Parse 'claude=2,codex=1' into a provider -> slot count mapping."""
    slots: dict[str, int] = {}
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        provider, _, count = part.partition("=")
        if not count:
            raise ValueError(f"Invalid slot spec '{part}', expected provider=count")
        slots[provider.strip()] = int(count)
    return slots


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".agent_dispatch" / "dispatch.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    worktree_dir: str = ".worktrees"
    agent_output_dir: str = ".agent_outputs"
    branch_prefix: str = "feature/issue-"
    claude_path: str = "claude"
    agent_model: str = "sonnet"
    max_slots: dict[str, int] = field(default_factory=lambda: {"claude": 1})

    main_branch: str = "main"
    stage_branch: str = "stage"
    integration_branch: str = "merge_stage"
    remote: str | None = "origin"

    auto_resolve_conflicts: bool = True
    require_all_personas_pass: bool = True
    review_personas: list[str] = field(default_factory=list)
    auto_merge_to_main: bool = False
    epic_mode: bool = False
    reject_status: str | None = None

    github_repo: str | None = None
    project_owner: str | None = None
    project_number: int | None = None

    poll_interval: float = 30.0
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("AD_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("AD_REPO_PATH"):
            config.repo_path = Path(repo)

        if wt_dir := os.environ.get("AD_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        if out_dir := os.environ.get("AD_AGENT_OUTPUT_DIR"):
            config.agent_output_dir = out_dir

        if prefix := os.environ.get("AD_BRANCH_PREFIX"):
            config.branch_prefix = prefix

        if claude := os.environ.get("AD_CLAUDE_PATH"):
            config.claude_path = claude

        if model := os.environ.get("AD_AGENT_MODEL"):
            config.agent_model = model

        if slots := os.environ.get("AD_MAX_SLOTS"):
            config.max_slots = parse_max_slots(slots)

        if main := os.environ.get("AD_MAIN_BRANCH"):
            config.main_branch = main

        if stage := os.environ.get("AD_STAGE_BRANCH"):
            config.stage_branch = stage

        if integration := os.environ.get("AD_INTEGRATION_BRANCH"):
            config.integration_branch = integration

        # An empty value means "no remote": branches are updated locally only.
        if "AD_REMOTE" in os.environ:
            config.remote = os.environ["AD_REMOTE"] or None

        if (val := os.environ.get("AD_AUTO_RESOLVE_CONFLICTS")) is not None:
            config.auto_resolve_conflicts = _parse_bool(val)

        if (val := os.environ.get("AD_REQUIRE_ALL_PERSONAS_PASS")) is not None:
            config.require_all_personas_pass = _parse_bool(val)

        if personas := os.environ.get("AD_REVIEW_PERSONAS"):
            config.review_personas = [p.strip() for p in personas.split(",") if p.strip()]

        if (val := os.environ.get("AD_AUTO_MERGE_TO_MAIN")) is not None:
            config.auto_merge_to_main = _parse_bool(val)

        if (val := os.environ.get("AD_EPIC_MODE")) is not None:
            config.epic_mode = _parse_bool(val)

        config.reject_status = os.environ.get("AD_REJECT_STATUS") or None
        config.github_repo = os.environ.get("AD_GITHUB_REPO") or None
        config.project_owner = os.environ.get("AD_PROJECT_OWNER") or None

        if number := os.environ.get("AD_PROJECT_NUMBER"):
            config.project_number = int(number)

        if interval := os.environ.get("AD_POLL_INTERVAL"):
            config.poll_interval = float(interval)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("AD_SLACK_CHANNEL") or None

        return config


def get_config() -> Config:
    return Config.from_env()
