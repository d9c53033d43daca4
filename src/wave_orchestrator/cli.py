"""CLI entry point for the wave orchestrator."""

import json
import logging
import shlex
import subprocess
import sys
import warnings

import click

from wave_orchestrator.config import get_config
from wave_orchestrator.core import graph as graph_mod
from wave_orchestrator.core import ledger
from wave_orchestrator.core import locks
from wave_orchestrator.core import resolver
from wave_orchestrator.core.errors import DuplicateTitleWarning, LedgerError
from wave_orchestrator.core.runners import ShellRunner
from wave_orchestrator.core.scheduler import WaveScheduler, WaveState
from wave_orchestrator.core.serialization import export_ledger, import_ledger, task_to_record
from wave_orchestrator.db.engine import get_db
from wave_orchestrator.db.models import Difficulty, TaskStatus
from wave_orchestrator.integrations import slack as slack_mod

STATUS_ICONS = {
    TaskStatus.TODO: "○",
    TaskStatus.IN_PROGRESS: "●",
    TaskStatus.BLOCKED: "✗",
    TaskStatus.IN_REVIEW: "◐",
    TaskStatus.DONE: "✓",
    TaskStatus.CANCELLED: "–",
}

STATUS_CHOICE = click.Choice([s.value for s in TaskStatus])
DIFFICULTY_CHOICE = click.Choice([d.value for d in Difficulty])


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(error: Exception):
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def _worker(worker: str | None) -> str:
    return worker or get_config().worker_id


@click.group()
@click.option("--log-level", default=None, help="Logging level (default: WV_LOG_LEVEL or WARNING)")
def main(log_level):
    """wv - Wave Orchestrator CLI"""
    level = (log_level or get_config().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks in the ledger."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option("--difficulty", type=DIFFICULTY_CHOICE, default="medium", help="Informational difficulty")
def task_add(title, description, depends_on, difficulty):
    """Create a new task."""
    try:
        deps = [int(d) for d in depends_on.split(",") if d.strip()] if depends_on else None
    except ValueError:
        _fail(ValueError(f"--depends-on must be comma-separated task IDs, got {depends_on!r}"))

    with _get_db() as db:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", DuplicateTitleWarning)
            try:
                task = ledger.create_task(db, title, description, deps, difficulty)
            except (LedgerError, ValueError) as e:
                _fail(e)
        for w in caught:
            if issubclass(w.category, DuplicateTitleWarning):
                click.echo(f"Warning: {w.message}", err=True)

        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Difficulty: {task.difficulty.value}")
        click.echo(f"  Status: {task.status.value}")
        if task.dependencies:
            click.echo(f"  Depends on: {_ids(task.dependencies)}")


@task_group.command("list")
@click.option("--status", type=STATUS_CHOICE, default=None, help="Filter by status")
@click.option("--owner", default=None, help="Filter by owner")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(status, owner, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = ledger.iter_tasks(db, status=status, owner=owner)

        if json_output:
            click.echo(json.dumps([task_to_record(t) for t in tasks], indent=2))
            return

        found = False
        for task in tasks:
            found = True
            icon = STATUS_ICONS.get(task.status, "?")
            deps = f" [depends: {_ids(task.dependencies)}]" if task.dependencies else ""
            owner_info = f" [owner: {task.owner}]" if task.owner else ""
            flag = " [escalated]" if task.escalated else ""
            click.echo(f"  {icon} {task.id}: {task.title} ({task.status.value}){deps}{owner_info}{flag}")
        if not found:
            click.echo("No tasks found.")


@task_group.command("show")
@click.argument("task_id", type=int)
def task_show(task_id):
    """Show task details and history."""
    with _get_db() as db:
        try:
            task = ledger.get_task(db, task_id)
        except LedgerError as e:
            _fail(e)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status.value}")
        click.echo(f"  Difficulty: {task.difficulty.value}")
        if task.owner:
            click.echo(f"  Owner: {task.owner}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.dependencies:
            click.echo(f"  Depends on: {_ids(task.dependencies)}")
        if task.notes:
            click.echo("  Notes:")
            for line in task.notes.splitlines():
                click.echo(f"    {line}")
        if task.escalated:
            click.echo(f"  Escalated: {task.escalated_at}")
        click.echo(f"  Created: {task.created_at}")
        click.echo(f"  Updated: {task.updated_at}")

        events = ledger.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                actor = f" by {e.actor}" if e.actor else ""
                click.echo(f"    [{e.created_at}] {e.event_type}{actor}: {e.old_value} -> {e.new_value}")


@task_group.command("edit")
@click.argument("task_id", type=int)
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--difficulty", type=DIFFICULTY_CHOICE, default=None)
def task_edit(task_id, title, description, difficulty):
    """Edit a task's title, description or difficulty."""
    changes = {
        k: v
        for k, v in {"title": title, "description": description, "difficulty": difficulty}.items()
        if v is not None
    }
    if not changes:
        _fail(ValueError("Nothing to change"))
    with _get_db() as db:
        try:
            task = ledger.update_with_retry(db, task_id, lambda _task: changes)
        except (LedgerError, ValueError) as e:
            _fail(e)
        click.echo(f"Updated task {task.id}: {task.title}")


@task_group.command("note")
@click.argument("task_id", type=int)
@click.argument("text")
def task_note(task_id, text):
    """Append a note to a task."""
    with _get_db() as db:
        try:
            ledger.append_note(db, task_id, text, actor=_worker(None))
        except (LedgerError, ValueError) as e:
            _fail(e)
        click.echo(f"Note added to task {task_id}")


@task_group.command("dep-add")
@click.argument("task_id", type=int)
@click.argument("depends_on_id", type=int)
def task_dep_add(task_id, depends_on_id):
    """Make a task depend on another."""
    with _get_db() as db:
        try:
            task = ledger.add_dependency(db, task_id, depends_on_id)
        except LedgerError as e:
            _fail(e)
        click.echo(f"Added dependency: {task_id} now depends on {depends_on_id}")
        click.echo(f"  Depends on: {_ids(task.dependencies)}")


@task_group.command("dep-remove")
@click.argument("task_id", type=int)
@click.argument("depends_on_id", type=int)
def task_dep_remove(task_id, depends_on_id):
    """Remove a dependency from a task."""
    with _get_db() as db:
        try:
            task = ledger.remove_dependency(db, task_id, depends_on_id)
        except LedgerError as e:
            _fail(e)
        click.echo(f"Removed dependency: {task_id} no longer depends on {depends_on_id}")
        if task.dependencies:
            click.echo(f"  Remaining deps: {_ids(task.dependencies)}")
        else:
            click.echo("  No remaining dependencies")


@task_group.command("cancel")
@click.argument("task_id", type=int)
@click.option("--reason", required=True, help="Why the task is cancelled")
def task_cancel(task_id, reason):
    """Cancel a task, overriding its owner if it is claimed."""
    with _get_db() as db:
        try:
            locks.force_cancel(db, task_id, reason)
        except (LedgerError, ValueError) as e:
            _fail(e)
        click.echo(f"Cancelled task {task_id}")


# ── Claim Commands ────────────────────────────────────────────────────────────


@main.command("claim")
@click.argument("task_id", type=int)
@click.option("--worker", default=None, help="Worker ID (default: WV_WORKER_ID)")
def claim_command(task_id, worker):
    """Claim a ready task, respecting the concurrency cap."""
    config = get_config()
    with _get_db() as db:
        try:
            task = locks.claim(db, task_id, _worker(worker), config.max_concurrency)
        except (LedgerError, ValueError) as e:
            _fail(e)
        click.echo(f"Claimed task {task.id} as {task.owner}")


@main.command("next")
@click.option("--worker", default=None, help="Worker ID (default: WV_WORKER_ID)")
def next_command(worker):
    """Claim the next ready task, respecting the concurrency cap."""
    config = get_config()
    with _get_db() as db:
        scheduler = WaveScheduler.from_config(db, config, worker_id=_worker(worker))
        try:
            claimed = scheduler.claim_batch(limit=1)
        except LedgerError as e:
            _fail(e)
        if not claimed:
            click.echo("No task available.")
            return
        task = claimed[0]
        click.echo(f"Claimed task {task.id}: {task.title}")


@main.command("release")
@click.argument("task_id", type=int)
@click.argument("status", type=click.Choice(
    [s.value for s in TaskStatus if s != TaskStatus.IN_PROGRESS]
))
@click.option("--worker", default=None, help="Worker ID (default: WV_WORKER_ID)")
@click.option("--notes", default="", help="Notes; required when blocking")
def release_command(task_id, status, worker, notes):
    """Release a claimed task with its final status."""
    with _get_db() as db:
        try:
            task = locks.release(db, task_id, _worker(worker), status, notes)
        except (LedgerError, ValueError) as e:
            _fail(e)
        click.echo(f"Released task {task.id} as {task.status.value}")


@main.command("heartbeat")
@click.argument("task_id", type=int)
@click.option("--worker", default=None, help="Worker ID (default: WV_WORKER_ID)")
def heartbeat_command(task_id, worker):
    """Mark a claimed task as still being worked on."""
    with _get_db() as db:
        try:
            task = locks.heartbeat(db, task_id, _worker(worker))
        except LedgerError as e:
            _fail(e)
        click.echo(f"Task {task.id} updated at {task.updated_at}")


# ── Scheduling Commands ───────────────────────────────────────────────────────


@main.command("plan")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def plan_command(json_output):
    """Show the current dependency waves."""
    with _get_db() as db:
        try:
            plan = graph_mod.plan(db)
        except LedgerError as e:
            _fail(e)

        if json_output:
            click.echo(json.dumps({
                "waves": plan.wave_ids(),
                "ready": [t.id for t in plan.ready()],
                "stranded": [t.id for t in plan.stranded],
            }, indent=2))
            return

        if not plan.waves and not plan.stranded:
            click.echo("Nothing left to schedule.")
            return
        for index, wave in enumerate(plan.waves):
            click.echo(f"Wave {index}:")
            for task in wave:
                icon = STATUS_ICONS.get(task.status, "?")
                click.echo(f"  {icon} {task.id}: {task.title} ({task.status.value})")
        if plan.stranded:
            click.echo("Stranded (a dependency was cancelled):")
            for task in plan.stranded:
                click.echo(f"  {task.id}: {task.title}")


@main.command("run")
@click.option("--command", "command", required=True, help="Command to run for each task")
@click.option("--max-concurrency", type=int, default=None, help="Override WV_MAX_CONCURRENCY")
@click.option("--timeout", type=float, default=None, help="Per-task timeout in seconds")
def run_command(command, max_concurrency, timeout):
    """Run every ready task through COMMAND, wave by wave.

    The task is passed in WV_TASK_ID, WV_TASK_TITLE and WV_TASK_OWNER.
    Exit status 0 marks the task done; anything else blocks it.
    """
    config = get_config()
    overrides = {"on_escalate": slack_mod.escalation_notifier(config.slack_bot_token, config.slack_channel)}
    if max_concurrency is not None:
        overrides["max_concurrency"] = max_concurrency

    with _get_db() as db:
        try:
            scheduler = WaveScheduler.from_config(db, config, **overrides)
            report = scheduler.run(ShellRunner(command, timeout=timeout))
        except (LedgerError, ValueError) as e:
            _fail(e)

        click.echo(f"Waves closed: {sum(1 for w in report.waves if w.state == WaveState.CLOSED)}")
        click.echo(f"  Done: {_ids(report.done) or '-'}")
        click.echo(f"  Blocked: {_ids(report.blocked) or '-'}")
        if report.in_review:
            click.echo(f"  In review: {_ids(report.in_review)}")
        if report.escalated:
            click.echo(f"  Escalated: {_ids(report.escalated)}")
        if report.stranded:
            click.echo(f"  Stranded: {_ids(report.stranded)}")
        if report.waiting_on:
            click.echo(f"  Still running elsewhere: {_ids(report.waiting_on)}")
        if report.lost:
            click.echo(f"  Taken away mid-run: {_ids(report.lost)}")


# ── Blocked Commands ──────────────────────────────────────────────────────────


@main.group("blocked")
def blocked_group():
    """Review and resolve blocked tasks."""
    pass


@blocked_group.command("list")
def blocked_list():
    """List blocked tasks and their blockers."""
    with _get_db() as db:
        tasks = resolver.list_blocked(db)
        if not tasks:
            click.echo("No blocked tasks.")
            return
        for task in tasks:
            flag = " [escalated]" if task.escalated else ""
            click.echo(f"  ✗ {task.id}: {task.title}{flag}")
            for line in task.notes.splitlines():
                click.echo(f"      {line}")


@blocked_group.command("unblock")
@click.argument("task_id", type=int)
@click.option("--check", default=None, help="Command that exits 0 once the blocker is gone")
def blocked_unblock(task_id, check):
    """Send a blocked task back to todo if its blocker has cleared."""

    def still_blocked(task):
        if not check:
            return False
        proc = subprocess.run(shlex.split(check), capture_output=True, text=True)
        return proc.returncode != 0

    with _get_db() as db:
        try:
            result = resolver.attempt_unblock(db, task_id, still_blocked, actor=_worker(None))
        except (LedgerError, OSError) as e:
            _fail(e)
        if result == resolver.UnblockResult.RESOLVED:
            click.echo(f"Task {task_id} unblocked and back in todo")
        else:
            click.echo(f"Task {task_id} is still blocked")


@blocked_group.command("escalate")
@click.argument("task_id", type=int)
def blocked_escalate(task_id):
    """Flag a blocked task for operator attention."""
    config = get_config()
    with _get_db() as db:
        try:
            task = resolver.escalate(db, task_id, actor=_worker(None))
        except LedgerError as e:
            _fail(e)
        click.echo(f"Task {task.id} escalated")
        notify = slack_mod.escalation_notifier(config.slack_bot_token, config.slack_channel)
        if notify:
            try:
                notify(task)
                click.echo(f"  Slack notification sent to {config.slack_channel}")
            except slack_mod.SlackError as e:
                click.echo(f"  Slack notification failed: {e}", err=True)


@blocked_group.command("cancel")
@click.argument("task_id", type=int)
@click.option("--reason", required=True, help="Why the task is abandoned")
def blocked_cancel(task_id, reason):
    """Cancel a blocked task."""
    with _get_db() as db:
        try:
            resolver.cancel_blocked(db, task_id, reason, actor=_worker(None))
        except (LedgerError, ValueError) as e:
            _fail(e)
        click.echo(f"Cancelled blocked task {task_id}")


# ── Stale Claim Commands ─────────────────────────────────────────────────────


@main.group("stale")
def stale_group():
    """Find and release abandoned claims."""
    pass


@stale_group.command("list")
@click.option("--hours", type=float, default=None, help="Override WV_STALE_AFTER_HOURS")
def stale_list(hours):
    """List claims with no update inside the staleness window."""
    config = get_config()
    if hours is not None:
        config.stale_after_hours = hours
    with _get_db() as db:
        tasks = locks.list_stale_claims(db, config.stale_after)
        if not tasks:
            click.echo("No stale claims.")
            return
        for task in tasks:
            click.echo(f"  {task.id}: {task.title} [owner: {task.owner}, updated: {task.updated_at}]")


@stale_group.command("release")
@click.argument("task_id", type=int)
@click.option("--hours", type=float, default=None, help="Override WV_STALE_AFTER_HOURS")
def stale_release(task_id, hours):
    """Force a stale claim back to todo."""
    config = get_config()
    if hours is not None:
        config.stale_after_hours = hours
    with _get_db() as db:
        try:
            locks.force_release(db, task_id, config.stale_after, actor=_worker(None))
        except LedgerError as e:
            _fail(e)
        click.echo(f"Task {task_id} released back to todo")


# ── Import / Export ───────────────────────────────────────────────────────────


@main.command("export")
@click.argument("output", type=click.File("w"), default="-")
def export_command(output):
    """Write the ledger as JSON (stdout by default)."""
    with _get_db() as db:
        count = export_ledger(db, output)
    click.echo(f"Exported {count} tasks", err=True)


@main.command("import")
@click.argument("source", type=click.File("r"))
def import_command(source):
    """Load tasks from a JSON export, keeping their IDs."""
    with _get_db() as db:
        try:
            count = import_ledger(db, source)
        except (LedgerError, ValueError, KeyError) as e:
            _fail(e)
        click.echo(f"Imported {count} tasks")


# ── Dashboard Command ────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--open/--no-open", default=True, help="Open browser automatically")
def ui_command(host, port, open):
    """Launch the web dashboard."""
    import webbrowser

    from wave_orchestrator.web.app import run_server

    url = f"http://{host}:{port}"
    click.echo(f"Starting dashboard at {url}")
    if open:
        webbrowser.open(url)
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from wave_orchestrator.mcp.server import mcp
    from wave_orchestrator.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _ids(ids) -> str:
    return ", ".join(str(i) for i in sorted(ids))


if __name__ == "__main__":
    main()
