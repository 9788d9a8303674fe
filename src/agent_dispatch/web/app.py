"""JSON status API for agent-dispatch."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from agent_dispatch.config import get_config
from agent_dispatch.core.assignments import STATUSES, AssignmentRegistry
from agent_dispatch.core.slots import InstanceSlotAllocator
from agent_dispatch.db.engine import init_db


def _get_db():
    config = get_config()
    return init_db(config.db_path)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_assignments(request: Request):
    status_filter = request.query_params.get("status")
    if status_filter and status_filter not in STATUSES:
        return JSONResponse({"error": f"Unknown status: {status_filter}"}, status_code=400)
    db = _get_db()
    try:
        registry = AssignmentRegistry(db)
        assignments = registry.list_assignments(
            status=status_filter, provider=request.query_params.get("provider")
        )
        return JSONResponse([_assignment_dict(a) for a in assignments])
    finally:
        db.close()


async def api_get_assignment(request: Request):
    ref = request.path_params["ref"]
    db = _get_db()
    try:
        registry = AssignmentRegistry(db)
        assignment = registry.get_by_issue(int(ref)) if ref.isdigit() else registry.get(ref)
        if not assignment:
            return JSONResponse({"error": "Assignment not found"}, status_code=404)
        data = _assignment_dict(assignment)
        data["issue_body"] = assignment.issue_body
        data["review_result"] = assignment.review_result.to_dict() if assignment.review_result else None
        data["events"] = [_event_dict(e) for e in registry.get_events(assignment.id)]
        data["work_sessions"] = [_session_dict(s) for s in registry.get_work_sessions(assignment.id)]
        return JSONResponse(data)
    finally:
        db.close()


async def api_slots(request: Request):
    config = get_config()
    db = _get_db()
    try:
        allocator = InstanceSlotAllocator(db, config.max_slots)
        return JSONResponse({
            provider: {
                **stats,
                "slots": [
                    {
                        "instance_id": s.instance_id,
                        "is_available": s.is_available,
                        "assignment_id": s.assignment_id,
                        "issue_number": s.issue_number,
                    }
                    for s in allocator.get_provider_slots(provider)
                ],
            }
            for provider, stats in allocator.get_utilization_stats().items()
        })
    finally:
        db.close()


async def api_pipeline(request: Request):
    db = _get_db()
    try:
        registry = AssignmentRegistry(db)
        by_status = {s: [a.issue_number for a in registry.list_assignments(status=s)]
                     for s in ("dev-complete", "merge-review", "stage-ready", "merged")}
        pipeline = request.app.state.pipeline
        last_report = pipeline.last_report if pipeline else None
        return JSONResponse({
            "running": pipeline.is_running if pipeline else bool(by_status["merge-review"]),
            "pending": by_status["dev-complete"],
            "in_review": by_status["merge-review"],
            "stage_ready": by_status["stage-ready"],
            "merged": by_status["merged"],
            "last_batch": last_report.to_dict() if last_report else None,
        })
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _dt(value):
    return value.isoformat() if value else None


def _assignment_dict(a) -> dict:
    return {
        "id": a.id,
        "issue_number": a.issue_number,
        "issue_title": a.issue_title,
        "status": a.status,
        "provider": a.provider,
        "instance_id": a.instance_id,
        "branch_name": a.branch_name,
        "worktree_path": a.worktree_path,
        "pr_number": a.pr_number,
        "is_phase_master": a.is_phase_master,
        "stage_commit": a.stage_commit,
        "main_commit": a.main_commit,
        "assigned_at": _dt(a.assigned_at),
        "started_at": _dt(a.started_at),
        "last_activity": _dt(a.last_activity),
        "completed_at": _dt(a.completed_at),
        "merged_at": _dt(a.merged_at),
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _dt(e.created_at),
    }


def _session_dict(s) -> dict:
    return {
        "id": s.id,
        "started_at": _dt(s.started_at),
        "ended_at": _dt(s.ended_at),
        "summary": s.summary,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(pipeline=None) -> Starlette:
    routes = [
        Route("/api/assignments", api_list_assignments),
        Route("/api/assignments/{ref}", api_get_assignment),
        Route("/api/slots", api_slots),
        Route("/api/pipeline", api_pipeline),
    ]
    app = Starlette(routes=routes)
    app.state.pipeline = pipeline
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787, pipeline=None):
    app = create_app(pipeline)
    uvicorn.run(app, host=host, port=port)
