"""GitHub issue and project access via the gh CLI."""

import json
import logging
import shutil
import subprocess
from dataclasses import dataclass, field

from agent_dispatch.db.models import Issue
from agent_dispatch.errors import TrackerError

logger = logging.getLogger(__name__)

STATUS_FIELD = "Status"
INSTANCE_FIELD = "Assigned Instance"

DEFAULT_STATUS_OPTIONS = {
    "assigned": "Todo",
    "in-progress": "In Progress",
    "in-review": "In Review",
    "dev-complete": "Dev Complete",
    "merge-review": "Merge Review",
    "stage-ready": "Stage Ready",
    "merged": "Done",
}


def _require_gh():
    if shutil.which("gh") is None:
        raise TrackerError("missing required command: gh")


def _run(cmd: list[str]) -> str:
    result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    if result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip()
        raise TrackerError(message or f"Command failed: {' '.join(cmd)}")
    return result.stdout


def _run_json(cmd: list[str]) -> object:
    output = _run(cmd)
    if not output.strip():
        return None
    try:
        return json.loads(output)
    except json.JSONDecodeError as e:
        raise TrackerError(f"Unparseable output from {' '.join(cmd[:3])}: {e}") from e


@dataclass
class TrackerFields:
    """Maps internal statuses and field values onto the project's schema."""

    status_options: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_STATUS_OPTIONS))
    status_field: str = STATUS_FIELD
    instance_field: str = INSTANCE_FIELD

    def option_for(self, status: str) -> str:
        return self.status_options.get(status, status)

    def status_for(self, option: str | None) -> str | None:
        """Internal status for a project option name, or None if unknown."""
        if not option:
            return None
        for status, name in self.status_options.items():
            if name.lower() == option.lower():
                return status
        return None

    @staticmethod
    def _value(item: dict, field_name: str):
        # item-list keys are the field name with a lowercase first letter
        for key in (field_name, field_name[:1].lower() + field_name[1:], field_name.lower()):
            if key in item:
                return item[key]
        return None

    def read_status(self, item: dict) -> str | None:
        value = self._value(item, self.status_field)
        return self.status_for(value) if isinstance(value, str) else None

    def read_instance(self, item: dict) -> str | None:
        value = self._value(item, self.instance_field)
        return value if isinstance(value, str) and value else None

    def read_issue_number(self, item: dict) -> int | None:
        content = item.get("content") or {}
        number = content.get("number")
        return number if isinstance(number, int) else None


class GitHubTracker:
    """Issue tracker backed by a GitHub repository and, optionally, a project."""

    def __init__(self, repo: str | None = None, project_owner: str | None = None,
                 project_number: int | None = None, fields: TrackerFields | None = None):
        self.repo = repo
        self.project_owner = project_owner
        self.project_number = project_number
        self.fields = fields or TrackerFields()
        self._project_id: str | None = None
        self._field_cache: dict[str, dict] | None = None

    @property
    def has_project(self) -> bool:
        return bool(self.project_owner and self.project_number)

    def _repo_args(self) -> list[str]:
        return ["--repo", self.repo] if self.repo else []

    # ── Issues ──────────────────────────────────────────────────────────

    def get_issue(self, number: int) -> Issue:
        _require_gh()
        payload = _run_json(
            ["gh", "issue", "view", str(number), *self._repo_args(),
             "--json", "number,title,body,state,labels,url"]
        )
        if not isinstance(payload, dict):
            raise TrackerError(f"Unexpected gh issue view output for #{number}")
        return _issue_from_payload(payload)

    def list_open_issues(self, limit: int = 100, label: str | None = None) -> list[Issue]:
        _require_gh()
        cmd = ["gh", "issue", "list", *self._repo_args(), "--state", "open",
               "--limit", str(limit), "--json", "number,title,body,state,labels,url"]
        if label:
            cmd += ["--label", label]
        payload = _run_json(cmd)
        if not isinstance(payload, list):
            raise TrackerError("Unexpected gh issue list output")
        return [_issue_from_payload(entry) for entry in payload if isinstance(entry, dict)]

    def post_comment(self, number: int, body: str):
        _require_gh()
        _run(["gh", "issue", "comment", str(number), *self._repo_args(), "--body", body])

    # ── Project fields ──────────────────────────────────────────────────

    def _project_args(self) -> list[str]:
        return [str(self.project_number), "--owner", self.project_owner, "--format", "json"]

    def _get_project_id(self) -> str:
        if self._project_id is None:
            payload = _run_json(["gh", "project", "view", *self._project_args()])
            if not isinstance(payload, dict) or "id" not in payload:
                raise TrackerError("Unexpected gh project view output")
            self._project_id = payload["id"]
        return self._project_id

    def _get_fields(self) -> dict[str, dict]:
        if self._field_cache is None:
            payload = _run_json(["gh", "project", "field-list", *self._project_args()])
            if not isinstance(payload, dict):
                raise TrackerError("Unexpected gh project field-list output")
            self._field_cache = {f["name"]: f for f in payload.get("fields", [])}
        return self._field_cache

    def list_project_items(self, limit: int = 500) -> list[dict]:
        _require_gh()
        payload = _run_json(["gh", "project", "item-list", *self._project_args(), "--limit", str(limit)])
        if not isinstance(payload, dict):
            raise TrackerError("Unexpected gh project item-list output")
        return payload.get("items", [])

    def find_item_id(self, issue_number: int) -> str | None:
        """Project item id for an issue, or None when it is not on the project."""
        if not self.has_project:
            return None
        for item in self.list_project_items():
            if self.fields.read_issue_number(item) == issue_number:
                return item.get("id")
        return None

    def _edit_item(self, item_id: str, field_name: str, value: str):
        _require_gh()
        fields = self._get_fields()
        if field_name not in fields:
            raise TrackerError(f"Project has no field named '{field_name}'")
        spec = fields[field_name]
        cmd = ["gh", "project", "item-edit", "--id", item_id,
               "--project-id", self._get_project_id(), "--field-id", spec["id"]]

        if options := spec.get("options"):
            match = next((o for o in options if o["name"].lower() == value.lower()), None)
            if match is None:
                raise TrackerError(f"Field '{field_name}' has no option '{value}'")
            cmd += ["--single-select-option-id", match["id"]]
        else:
            cmd += ["--text", value]
        _run(cmd)

    def set_status(self, item_id: str, status: str):
        """Write a status to the project, given an internal status or raw option name."""
        self._edit_item(item_id, self.fields.status_field, self.fields.option_for(status))

    def set_instance(self, item_id: str, instance_id: str | None):
        self._edit_item(item_id, self.fields.instance_field, instance_id or "")

    def get_statuses(self) -> dict[str, str]:
        """Internal status per project item id for items with a known status."""
        statuses = {}
        for item in self.list_project_items():
            status = self.fields.read_status(item)
            if status and item.get("id"):
                statuses[item["id"]] = status
        return statuses


def _issue_from_payload(payload: dict) -> Issue:
    labels = [
        label["name"] if isinstance(label, dict) else str(label)
        for label in payload.get("labels") or []
    ]
    return Issue(
        number=int(payload["number"]),
        title=payload.get("title", ""),
        body=payload.get("body") or "",
        state=str(payload.get("state", "open")).lower(),
        labels=labels,
        url=payload.get("url"),
    )
