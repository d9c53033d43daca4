"""MCP prompt templates for common ledger workflows."""

from wave_orchestrator.mcp.server import mcp


@mcp.prompt()
def plan_work(goal: str) -> str:
    """Generate a prompt to break a goal into dependent tasks."""
    return (
        f"I need to accomplish the following goal:\n\n"
        f"{goal}\n\n"
        f"Break this down into concrete tasks. For each task:\n"
        f"1. Give it a clear, concise title\n"
        f"2. Add a brief description of what needs to be done\n"
        f"3. Pick a difficulty: easy, medium, hard or critical\n"
        f"4. Identify which tasks must be done before it\n\n"
        f"Create the tasks with create_task, passing depends_on for each one, "
        f"then call get_plan and show me the resulting waves."
    )


@mcp.prompt()
def work_next_task(worker_id: str) -> str:
    """Generate a prompt that has an agent claim and finish one ready task."""
    return (
        f"You are worker '{worker_id}'.\n\n"
        f"1. Call get_plan and pick the first task listed under 'ready'\n"
        f"2. Claim it with claim_task using worker_id='{worker_id}'. If the claim fails, "
        f"pick the next ready task. If it fails because too many tasks are in progress, "
        f"stop and try again later\n"
        f"3. Do the work. Call heartbeat every few minutes while you are busy\n"
        f"4. Release it with release_task: status 'done' when finished, or 'blocked' "
        f"with notes that say exactly what is in the way"
    )


@mcp.prompt()
def triage_blocked() -> str:
    """Generate a prompt to review blocked tasks."""
    return (
        "Use list_blocked to see every blocked task and its notes.\n\n"
        "For each one:\n"
        "1. Decide whether the blocker has been resolved\n"
        "2. If so, call unblock_task with a short resolution note\n"
        "3. If it needs a human, call escalate_task\n\n"
        "Finish with a short summary of what was unblocked and what was escalated."
    )
