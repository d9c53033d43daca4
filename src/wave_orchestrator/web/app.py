"""Read-only web dashboard API for the wave orchestrator."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse
from starlette.routing import Route

from wave_orchestrator.config import get_config
from wave_orchestrator.core import graph as graph_mod
from wave_orchestrator.core import ledger
from wave_orchestrator.core import resolver
from wave_orchestrator.core.errors import CyclicDependencyError, NotFoundError
from wave_orchestrator.core.serialization import task_to_record
from wave_orchestrator.db.engine import init_db
from wave_orchestrator.db.models import TaskStatus
from wave_orchestrator.web.dashboard import get_dashboard_html


def _get_db():
    config = get_config()
    return init_db(config.db_path)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def index(request: Request):
    return HTMLResponse(get_dashboard_html())


async def api_list_tasks(request: Request):
    status_filter = request.query_params.get("status")
    if status_filter and status_filter not in {s.value for s in TaskStatus}:
        return JSONResponse({"error": f"Unknown status: {status_filter}"}, status_code=400)
    db = _get_db()
    try:
        tasks = ledger.list_tasks(db, status=status_filter)
        return JSONResponse([task_to_record(t) for t in tasks])
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        try:
            task = ledger.get_task(db, task_id)
        except NotFoundError:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        td = task_to_record(task)
        td["events"] = [_event_dict(e) for e in ledger.get_task_events(db, task_id)]
        return JSONResponse(td)
    finally:
        db.close()


async def api_plan(request: Request):
    db = _get_db()
    try:
        try:
            plan = graph_mod.plan(db)
        except CyclicDependencyError as e:
            return JSONResponse({"error": str(e), "cycle": e.cycle}, status_code=409)
        return JSONResponse({
            "waves": [[_brief(t) for t in wave] for wave in plan.waves],
            "ready": [t.id for t in plan.ready()],
            "stranded": [_brief(t) for t in plan.stranded],
        })
    finally:
        db.close()


async def api_blocked(request: Request):
    db = _get_db()
    try:
        return JSONResponse([task_to_record(t) for t in resolver.list_blocked(db)])
    finally:
        db.close()


async def api_summary(request: Request):
    db = _get_db()
    try:
        counts = {s.value: ledger.count_tasks(db, s) for s in TaskStatus}
        total = sum(counts.values())
        finished = counts[TaskStatus.DONE.value] + counts[TaskStatus.CANCELLED.value]
        progress = (finished / total * 100) if total > 0 else 0

        return JSONResponse({
            "counts": counts,
            "total": total,
            "progress_pct": round(progress, 1),
            "wave_cycle": ledger.get_wave_cycle(db),
            "escalated": len(ledger.list_tasks(db, status=TaskStatus.BLOCKED, escalated=True)),
        })
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _brief(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "status": t.status.value,
        "owner": t.owner,
        "dependencies": sorted(t.dependencies),
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "actor": e.actor,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/", index),
        Route("/api/tasks", api_list_tasks),
        Route("/api/tasks/{task_id:int}", api_get_task),
        Route("/api/plan", api_plan),
        Route("/api/blocked", api_blocked),
        Route("/api/summary", api_summary),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
