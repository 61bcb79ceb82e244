"""evoteam CLI — operate the agent pool from the terminal.

`evoteam init` creates the workspace, `evoteam bootstrap` seeds
generation 0, and `evoteam run` starts every periodic driver. The other
commands run a single pass or inspect state.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from evoteam import __version__
from evoteam.cli.context import EvoteamContext, configure_logging, load_worker, run_async
from evoteam.config import settings
from evoteam.evolution.history import FamilyTreeNode
from evoteam.exceptions import EvoteamError
from evoteam.types import ExecutionMode, GovernanceAction, Task, TaskStatus

console = Console()

app = typer.Typer(
    name="evoteam",
    help="evoteam -- an evolving team of worker agents.",
    no_args_is_help=True,
)

_STATUS_STYLE = {
    "IDLE": "green",
    "BUSY": "yellow",
    "OFFLINE": "dim",
    "COMPLETED": "green",
    "FAILED": "red",
    "BLOCKED": "red",
    "WAR_ROOM": "magenta",
}


def _mode(dry_run: bool) -> ExecutionMode:
    return ExecutionMode.DRY_RUN if dry_run else EvoteamContext.get().settings.execution_mode


def _styled(value: str) -> str:
    style = _STATUS_STYLE.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def _fail(error: Exception) -> None:
    console.print(f"[red]{error}[/red]")
    raise typer.Exit(1)


@app.callback()
def main(
    log_level: str = typer.Option(settings.log_level, "--log-level", help="Logging level"),
) -> None:
    configure_logging(log_level)


@app.command("version")
def version() -> None:
    """Show the installed version."""
    console.print(f"evoteam {__version__}")


@app.command("init")
def init() -> None:
    """Create the workspace and database."""
    ctx = EvoteamContext.get()
    run_async(ctx.ensure_store())
    console.print(f"[green]Workspace ready:[/green] {ctx.settings.db_path}")


@app.command("bootstrap")
def bootstrap() -> None:
    """Seed generation 0 when the pool is below its minimum size."""
    ctx = EvoteamContext.get()

    async def _bootstrap():
        await ctx.ensure_store()
        return await ctx.population.initialize_population()

    created = run_async(_bootstrap())
    if created:
        console.print(f"[green]Spawned {created} genesis agents.[/green]")
    else:
        console.print("[dim]Population already at minimum size.[/dim]")


@app.command("ps")
def ps(
    all_agents: bool = typer.Option(False, "--all", "-a", help="Include offline agents"),
) -> None:
    """List agents."""
    ctx = EvoteamContext.get()

    async def _agents():
        await ctx.ensure_store()
        async with ctx.store.transaction() as tx:
            return await tx.list_agents()

    agents = [a for a in run_async(_agents()) if all_agents or a.is_alive]
    if not agents:
        console.print("[dim]No agents. Run `evoteam bootstrap` first.[/dim]")
        return

    table = Table(title="Agents")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Role")
    table.add_column("Specialization", style="blue")
    table.add_column("Status")
    table.add_column("E", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Risk")
    table.add_column("Gen", justify="right")
    table.add_column("Task", style="dim")
    for a in sorted(agents, key=lambda a: -a.existence_potential):
        table.add_row(
            a.id,
            a.role.value,
            a.specialization,
            _styled(a.status.value),
            f"{a.existence_potential:.1f}",
            f"{a.score:.0f}",
            a.risk_level.value,
            str(a.generation),
            a.current_task_id or "",
        )
    console.print(table)


@app.command("tasks")
def tasks(
    status: Optional[TaskStatus] = typer.Option(None, "--status", "-s", help="Filter by status"),
    limit: int = typer.Option(50, "--limit", "-n", help="Max rows"),
) -> None:
    """List tasks, oldest first."""
    ctx = EvoteamContext.get()

    async def _tasks():
        await ctx.ensure_store()
        async with ctx.store.transaction() as tx:
            return await tx.list_tasks([status] if status else None, limit=limit)

    rows = run_async(_tasks())
    if not rows:
        console.print("[dim]No tasks.[/dim]")
        return

    table = Table(title="Tasks")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Role")
    table.add_column("Project", style="blue")
    table.add_column("Status")
    table.add_column("Rev", justify="right")
    table.add_column("Assignee", style="dim")
    table.add_column("Note", style="dim", max_width=40)
    for t in rows:
        table.add_row(
            t.id,
            t.title[:40],
            t.required_role,
            t.project_id,
            _styled(t.status.value),
            f"{t.revision_count}/{t.max_revisions}",
            t.assigned_to_agent_id or "",
            t.blocked_reason or t.error_message or "",
        )
    console.print(table)


@app.command("submit")
def submit(
    title: str = typer.Argument(help="Short task title"),
    role: str = typer.Option("MidDev", "--role", "-r", help="Required role (free text)"),
    project: str = typer.Option("default", "--project", "-p", help="Project id"),
    complexity: float = typer.Option(50.0, "--complexity", "-c", min=1, max=100),
    description: str = typer.Option("", "--description", "-d"),
    max_revisions: int = typer.Option(3, "--max-revisions"),
) -> None:
    """Queue a new task."""
    ctx = EvoteamContext.get()
    task = Task(
        title=title,
        description=description,
        required_role=role,
        project_id=project,
        complexity_score=complexity,
        max_revisions=max_revisions,
    )

    async def _submit():
        await ctx.ensure_store()
        async with ctx.store.transaction() as tx:
            await tx.save_task(task)

    run_async(_submit())
    console.print(f"[green]Queued[/green] {task.id} ({role}, project={project})")


@app.command("dispatch")
def dispatch() -> None:
    """Assign queued tasks to idle agents (one pass)."""
    ctx = EvoteamContext.get()

    async def _dispatch():
        await ctx.ensure_store()
        await ctx.dispatcher.recover_stale()
        return await ctx.dispatcher.dispatch()

    report = run_async(_dispatch())
    console.print(
        f"Examined {report.examined}: [green]{len(report.assigned)} assigned[/green], "
        f"{len(report.unmatched)} waiting, [red]{len(report.blocked)} blocked[/red], "
        f"{len(report.paused)} paused"
    )
    for task_id, agent_id in report.assigned.items():
        console.print(f"  {task_id} -> {agent_id}")
    for task_id in report.deadlocked:
        console.print(f"  [red]{task_id} frozen in the war room[/red]")


@app.command("work")
def work(
    worker: Optional[str] = typer.Option(None, "--worker", "-w", help="module:attr of a BaseWorker"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Log terminations instead of applying them"),
) -> None:
    """Run every waiting pipeline stage once."""
    ctx = EvoteamContext.get()
    if worker:
        ctx.work.worker = load_worker(worker)

    async def _work():
        await ctx.ensure_store()
        try:
            return await ctx.work.run_once(_mode(dry_run))
        finally:
            ctx.save_budget()

    report = run_async(_work())
    console.print(
        f"Processed {report.processed}: [green]{report.succeeded} ok[/green], "
        f"[red]{report.failed} failed[/red], {len(report.capped)} capped, "
        f"{len(report.blocked)} blocked, {len(report.routed)} routed, "
        f"{len(report.waiting)} waiting for an agent"
    )


@app.command("govern")
def govern(
    dry_run: bool = typer.Option(False, "--dry-run", help="Evaluate without applying"),
) -> None:
    """Re-score every agent and apply governance decisions."""
    ctx = EvoteamContext.get()

    async def _govern():
        await ctx.ensure_store()
        return await ctx.governance.run_once(_mode(dry_run))

    report = run_async(_govern())
    console.print(
        f"Evaluated {report.evaluated}, skipped {report.skipped}, failed {report.failed}"
    )
    for agent_id, action in report.decisions.items():
        if action != GovernanceAction.NONE:
            console.print(f"  {agent_id}: [bold]{action.value}[/bold]")


@app.command("evolve")
def evolve(
    dry_run: bool = typer.Option(False, "--dry-run", help="Compute without writing"),
) -> None:
    """Run one evolution cycle."""
    ctx = EvoteamContext.get()

    async def _evolve():
        await ctx.ensure_store()
        return await ctx.evolution.run(_mode(dry_run))

    result = run_async(_evolve())
    if not result.survivors and not result.terminated:
        console.print("[dim]No living agents; nothing to evolve.[/dim]")
        return
    console.print(
        f"Generation {result.generation_number}: "
        f"{len(result.survivors)} survivors, [red]{len(result.terminated)} removed[/red], "
        f"[green]{len(result.bred)} born[/green], "
        f"avg fitness {result.avg_fitness:.3f}, max {result.max_fitness:.3f}"
    )
    for line in result.innovations:
        console.print(f"  [cyan]{line}[/cyan]")


@app.command("scale")
def scale(
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without creating agents"),
) -> None:
    """Grow the pool toward the workload target."""
    ctx = EvoteamContext.get()

    async def _scale():
        await ctx.ensure_store()
        return await ctx.population.scale_population(_mode(dry_run))

    result = run_async(_scale())
    console.print(
        f"{result.action}: {result.current_size} agents, target {result.target_size} "
        f"for {result.pending_tasks} pending tasks"
    )


def _tree_lines(node: FamilyTreeNode, depth: int = 0) -> list[str]:
    lines = [f"{'  ' * depth}{node.agent_id} ({node.role}, gen {node.generation}, {node.status})"]
    for child in node.children:
        lines.extend(_tree_lines(child, depth + 1))
    return lines


@app.command("history")
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Max generations"),
    tree: Optional[str] = typer.Option(None, "--tree", help="Show the family tree rooted at this agent"),
) -> None:
    """Show evolution history or an agent's lineage."""
    ctx = EvoteamContext.get()

    if tree:
        async def _tree():
            await ctx.ensure_store()
            return await ctx.history.family_tree(tree)

        try:
            node = run_async(_tree())
        except EvoteamError as e:
            _fail(e)
        for line in _tree_lines(node):
            console.print(line)
        return

    async def _timeline():
        await ctx.ensure_store()
        return await ctx.history.timeline(limit)

    records = run_async(_timeline())
    if not records:
        console.print("[dim]No generations recorded yet.[/dim]")
        return

    table = Table(title="Evolution history")
    table.add_column("Gen", justify="right")
    table.add_column("When", style="dim", no_wrap=True)
    table.add_column("Pop", justify="right")
    table.add_column("Avg", justify="right")
    table.add_column("Max", justify="right")
    table.add_column("Born", justify="right", style="green")
    table.add_column("Died", justify="right", style="red")
    table.add_column("Top agent", style="cyan")
    for r in records:
        table.add_row(
            str(r.generation_number),
            r.created_at.strftime("%Y-%m-%d %H:%M"),
            str(r.population_size),
            f"{r.avg_fitness:.3f}",
            f"{r.max_fitness:.3f}",
            str(r.birth_count),
            str(r.death_count),
            r.top_agent_id or "",
        )
    console.print(table)


@app.command("events")
def events(
    agent: str = typer.Option("", "--agent", help="Only this agent"),
    action: Optional[GovernanceAction] = typer.Option(None, "--action", help="Only this action"),
    limit: int = typer.Option(50, "--limit", "-n", help="Max events"),
) -> None:
    """Show the governance audit trail, most recent first."""
    ctx = EvoteamContext.get()

    async def _events():
        await ctx.ensure_store()
        return await ctx.audit.query(agent_id=agent, action=action, limit=limit)

    rows = run_async(_events())
    if not rows:
        console.print("[dim]No governance events.[/dim]")
        return

    table = Table(title="Governance events")
    table.add_column("When", style="dim", no_wrap=True)
    table.add_column("Agent", style="cyan")
    table.add_column("Action", style="bold")
    table.add_column("Roles")
    table.add_column("Reason", max_width=60)
    for e in rows:
        roles = ""
        if e.previous_role and e.new_role:
            roles = f"{e.previous_role.value} -> {e.new_role.value}"
        table.add_row(
            e.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            e.agent_id,
            e.action.value,
            roles,
            e.reason,
        )
    console.print(table)


@app.command("budget")
def budget(
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project id"),
    set_limit: Optional[float] = typer.Option(None, "--set-limit", help="Override the project ceiling (USD)"),
) -> None:
    """Show spend against the budget ceilings."""
    ctx = EvoteamContext.get()
    run_async(ctx.ensure_store())

    if set_limit is not None:
        if not project:
            _fail(ValueError("--set-limit needs --project"))
        ctx.budget.set_project_budget(project, project_limit=set_limit)
        ctx.save_budget()

    stats = ctx.budget.spend_stats(project)
    table = Table(title="Budget")
    table.add_column("Bucket")
    table.add_column("Spent", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Used", justify="right")
    lines = [("daily", stats.daily)]
    if stats.project is not None:
        lines.append((f"project {project}", stats.project))
    for name, line in lines:
        table.add_row(name, f"${line.spent:.2f}", f"${line.limit:.2f}", f"{line.percent:.0%}")
    console.print(table)
    if ctx.budget.all_paused:
        console.print("[red]All projects are paused.[/red]")
    elif ctx.budget.paused_projects:
        console.print(f"[red]Paused:[/red] {', '.join(sorted(ctx.budget.paused_projects))}")


@app.command("resume")
def resume(
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Resume one project only"),
) -> None:
    """Lift a budget pause."""
    ctx = EvoteamContext.get()

    async def _resume():
        await ctx.ensure_store()
        if project:
            await ctx.budget.resume_project(project)
        else:
            await ctx.budget.resume_all()
        ctx.save_budget()

    run_async(_resume())
    console.print(f"[green]Resumed[/green] {project or 'all projects'}")


@app.command("resolve")
def resolve(
    task_id: str = typer.Argument(help="Deadlocked task id"),
    clarification: str = typer.Argument(help="What the team needs to know"),
    author: str = typer.Option("operator", "--author"),
) -> None:
    """Clear a war-room task with a clarification and requeue it."""
    ctx = EvoteamContext.get()

    async def _resolve():
        await ctx.ensure_store()
        return await ctx.escalation.resolve(task_id, clarification, author=author)

    try:
        task = run_async(_resolve())
    except EvoteamError as e:
        _fail(e)
    console.print(
        f"[green]Requeued[/green] {task.id} (context v{task.context_packet.version})"
    )


@app.command("run")
def run(
    worker: Optional[str] = typer.Option(None, "--worker", "-w", help="module:attr of a BaseWorker"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Log destructive changes only"),
    duration: Optional[float] = typer.Option(None, "--duration", help="Stop after this many seconds"),
) -> None:
    """Start every periodic driver until interrupted."""
    ctx = EvoteamContext.get()
    if worker:
        ctx.work.worker = load_worker(worker)
    if dry_run:
        ctx.settings.execution_mode = ExecutionMode.DRY_RUN

    async def _save_budget(event) -> None:
        ctx.save_budget()

    async def _run():
        await ctx.ensure_store()
        ctx.bus.subscribe("budget.*", _save_budget)
        orchestrator = ctx.orchestrator()
        await orchestrator.start()
        console.print(
            f"[green]Running[/green] ({orchestrator.mode.value}). Ctrl+C to stop."
        )
        try:
            if duration is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(duration)
        finally:
            await orchestrator.stop()
            ctx.save_budget()
        return orchestrator

    try:
        orchestrator = run_async(_run())
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")
        return
    passes = ", ".join(f"{k}={v}" for k, v in orchestrator.passes.items())
    console.print(f"[dim]Stopped. Passes: {passes}[/dim]")
