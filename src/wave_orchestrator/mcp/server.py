"""MCP server exposing the task ledger to agents."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from wave_orchestrator.config import Config, get_config
from wave_orchestrator.core import graph as graph_mod
from wave_orchestrator.core import ledger
from wave_orchestrator.core import locks
from wave_orchestrator.core import resolver
from wave_orchestrator.core.errors import LedgerError
from wave_orchestrator.core.serialization import task_to_record
from wave_orchestrator.db.engine import init_db
from wave_orchestrator.integrations import slack as slack_mod


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    try:
        yield AppContext(db=db, config=config)
    finally:
        db.close()


mcp = FastMCP("wave-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _worker(ctx: Context, worker_id: str | None) -> str:
    return worker_id or _ctx(ctx).config.worker_id


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    description: str = "",
    depends_on: list[int] | None = None,
    difficulty: str = "medium",
) -> dict:
    """Create a new task. Difficulty: easy, medium, hard or critical."""
    app = _ctx(ctx)
    try:
        task = ledger.create_task(app.db, title, description, depends_on, difficulty)
    except (LedgerError, ValueError) as e:
        return {"error": str(e)}
    return task_to_record(task)


@mcp.tool()
def list_tasks(ctx: Context, status: str | None = None, owner: str | None = None) -> list[dict]:
    """List tasks oldest first, optionally filtered by status and owner."""
    app = _ctx(ctx)
    return [task_to_record(t) for t in ledger.list_tasks(app.db, status=status, owner=owner)]


@mcp.tool()
def get_task(ctx: Context, task_id: int) -> dict:
    """Get full details of a task including its event history."""
    app = _ctx(ctx)
    try:
        task = ledger.get_task(app.db, task_id)
    except LedgerError as e:
        return {"error": str(e)}
    result = task_to_record(task)
    result["events"] = [
        {"type": e.event_type, "old": e.old_value, "new": e.new_value, "actor": e.actor}
        for e in ledger.get_task_events(app.db, task_id)
    ]
    return result


@mcp.tool()
def add_note(ctx: Context, task_id: int, text: str, worker_id: str | None = None) -> dict:
    """Append a note to a task."""
    app = _ctx(ctx)
    try:
        task = ledger.append_note(app.db, task_id, text, actor=_worker(ctx, worker_id))
    except (LedgerError, ValueError) as e:
        return {"error": str(e)}
    return task_to_record(task)


@mcp.tool()
def add_dependency(ctx: Context, task_id: int, depends_on_id: int) -> dict:
    """Make a task wait for another. Rejected if it would create a cycle."""
    app = _ctx(ctx)
    try:
        task = ledger.add_dependency(app.db, task_id, depends_on_id)
    except LedgerError as e:
        return {"error": str(e)}
    return task_to_record(task)


@mcp.tool()
def remove_dependency(ctx: Context, task_id: int, depends_on_id: int) -> dict:
    """Remove a dependency from a task."""
    app = _ctx(ctx)
    try:
        task = ledger.remove_dependency(app.db, task_id, depends_on_id)
    except LedgerError as e:
        return {"error": str(e)}
    return task_to_record(task)


# ── Claim Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def claim_task(ctx: Context, task_id: int, worker_id: str | None = None) -> dict:
    """Claim a todo task whose dependencies are all done.

    Fails while the ledger already has the configured number of tasks in
    progress.
    """
    app = _ctx(ctx)
    try:
        task = locks.claim(
            app.db, task_id, _worker(ctx, worker_id), app.config.max_concurrency
        )
    except LedgerError as e:
        return {"error": str(e)}
    return task_to_record(task)


@mcp.tool()
def release_task(
    ctx: Context,
    task_id: int,
    status: str,
    notes: str = "",
    worker_id: str | None = None,
) -> dict:
    """Release a claimed task as done, blocked, in-review, todo or cancelled.

    Blocking requires notes describing the blocker.
    """
    app = _ctx(ctx)
    try:
        task = locks.release(app.db, task_id, _worker(ctx, worker_id), status, notes)
    except (LedgerError, ValueError) as e:
        return {"error": str(e)}
    return task_to_record(task)


@mcp.tool()
def heartbeat(ctx: Context, task_id: int, worker_id: str | None = None) -> dict:
    """Signal that a claimed task is still being worked on."""
    app = _ctx(ctx)
    try:
        task = locks.heartbeat(app.db, task_id, _worker(ctx, worker_id))
    except LedgerError as e:
        return {"error": str(e)}
    return {"id": task.id, "updated_at": task_to_record(task)["updated_at"]}


# ── Scheduling Tools ──────────────────────────────────────────────────────────


@mcp.tool()
def get_plan(ctx: Context) -> dict:
    """Get the dependency waves, the ready tasks and the stranded ones."""
    app = _ctx(ctx)
    try:
        plan = graph_mod.plan(app.db)
    except LedgerError as e:
        return {"error": str(e)}
    return {
        "waves": plan.wave_ids(),
        "ready": [task_to_record(t) for t in plan.ready()],
        "stranded": [t.id for t in plan.stranded],
    }


@mcp.tool()
def list_blocked(ctx: Context) -> list[dict]:
    """List blocked tasks with their blocker notes."""
    app = _ctx(ctx)
    return [task_to_record(t) for t in resolver.list_blocked(app.db)]


@mcp.tool()
def unblock_task(ctx: Context, task_id: int, resolution: str = "") -> dict:
    """Send a blocked task back to todo once its blocker is resolved."""
    app = _ctx(ctx)
    actor = _worker(ctx, None)
    try:
        if resolution:
            ledger.append_note(app.db, task_id, resolution, actor=actor)
        result = resolver.attempt_unblock(app.db, task_id, lambda _task: False, actor=actor)
    except (LedgerError, ValueError) as e:
        return {"error": str(e)}
    return {"id": task_id, "result": result.value}


@mcp.tool()
def escalate_task(ctx: Context, task_id: int) -> dict:
    """Flag a blocked task for operator attention, notifying Slack when configured."""
    app = _ctx(ctx)
    try:
        task = resolver.escalate(app.db, task_id, actor=_worker(ctx, None))
    except LedgerError as e:
        return {"error": str(e)}
    result = task_to_record(task)
    notify = slack_mod.escalation_notifier(app.config.slack_bot_token, app.config.slack_channel)
    if notify:
        try:
            notify(task)
            result["notified"] = app.config.slack_channel
        except slack_mod.SlackError as e:
            result["notify_error"] = str(e)
    return result
