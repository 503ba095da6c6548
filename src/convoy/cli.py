"""Convoy CLI."""

import asyncio
import json
import sys

import click
import structlog
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from convoy.config import Settings, get_settings
from convoy.core.errors import ConvoyError, LeaseHeldError
from convoy.database import crud
from convoy.database.session import dispose_engines, get_session_factory, init_db
from convoy.database.state import LeaseManager
from convoy.orchestrator import (
    DispatchEngine,
    FleetAutoscaler,
    FleetCycle,
    FleetScheduler,
    TaskMatcher,
)
from convoy.orchestrator.templates import get_templates
from convoy.reporting import StandupAggregator, format_agent_standup, format_fleet_summary
from convoy.utils.clock import ms_to_datetime
from convoy.utils.logging import configure_logging

console = Console()
logger = structlog.get_logger()


class Services:
    """Engines wired from settings, built once per CLI invocation."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.session_factory = get_session_factory(settings.database_url)
        self.templates = get_templates(settings.templates_file)
        self.leases = LeaseManager(self.session_factory, ttl_seconds=settings.lease_ttl_seconds)
        self.matcher = TaskMatcher(self.session_factory, self.templates)
        self.engine = DispatchEngine(self.session_factory, self.matcher)
        self.cycle = FleetCycle(self.session_factory, self.engine, leases=self.leases)
        self.autoscaler = FleetAutoscaler(
            self.session_factory,
            self.templates,
            backlog_threshold=settings.spawn_backlog_threshold,
            role_cap=settings.spawn_role_cap,
            learning_limit=settings.learning_limit,
            leases=self.leases,
        )
        self.standups = StandupAggregator(self.session_factory, reporter_name=settings.standup_reporter)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")
    sys.exit(1)


@click.group()
@click.version_option(package_name="convoy")
@click.option("--database-url", envvar="DATABASE_URL", help="Override the entity store URL")
@click.pass_context
def main(ctx, database_url: str | None):
    """Convoy - work dispatch for a fleet of autonomous agents.

    Keeps idle agents fed with the highest-priority open task, grows the
    fleet from role templates when work piles up, and summarizes each day's
    work as standups.
    """
    settings = get_settings()
    if database_url:
        settings = settings.model_copy(update={"database_url": database_url})
    configure_logging(settings.log_level, settings.log_format)
    ctx.obj = Services(settings)


@main.command()
@click.pass_obj
def init(services: Services):
    """Create the entity store tables."""
    init_db(services.settings.database_url)
    console.print(f"[green]✓[/green] Initialized {services.settings.database_url}")


# ============================================================================
# Agents
# ============================================================================


@main.group()
def agent():
    """Manage agents."""
    pass


@agent.command(name="add")
@click.argument("name")
@click.option("--role", required=True, help="Agent role, e.g. backend")
@click.option("--status", default="idle", show_default=True, help="Initial status")
@click.option("--skill", "skills", multiple=True, help="Skill tag (repeatable)")
@click.pass_obj
def add_agent(services: Services, name: str, role: str, status: str, skills: tuple[str, ...]):
    """Register an agent."""
    with services.session_factory() as session:
        try:
            created = crud.create_agent(name, role, status=status, skills=skills, session=session)
        except (crud.DuplicateError, ValueError) as e:
            _fail(str(e))
        console.print(f"[green]✓[/green] Added agent {created.name} ({created.role}, {created.status})")


@agent.command(name="list")
@click.option("--status", help="Filter by status")
@click.option("--role", help="Filter by role")
@click.pass_obj
def list_agents(services: Services, status: str | None, role: str | None):
    """List agents."""
    with services.session_factory() as session:
        agents = crud.list_agents(status=status, role=role, session=session)

        if not agents:
            console.print("[yellow]No agents found.[/yellow]")
            return

        table = Table(title="Agents")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Role")
        table.add_column("Status", style="green")
        table.add_column("Reason", style="dim")

        for a in agents:
            table.add_row(str(a.id), a.name, a.role, a.status, a.status_reason or "-")

        console.print(table)


@agent.command(name="heartbeat")
@click.argument("name")
@click.option("--status", default="online", show_default=True, help="Reported status")
@click.option("--metadata", help="JSON object with model, host, pid or note")
@click.pass_obj
def heartbeat(services: Services, name: str, status: str, metadata: str | None):
    """Record a heartbeat for an agent."""
    with services.session_factory() as session:
        found = crud.get_agent_by_name(name, session=session)
        if found is None:
            _fail(f"Agent '{name}' not found")

        try:
            meta = json.loads(metadata) if metadata else None
            crud.record_heartbeat(found.id, status, metadata=meta, session=session)
        except (ValueError, ValidationError) as e:
            _fail(f"Invalid heartbeat: {e}")

        console.print(f"[green]✓[/green] Heartbeat recorded for {found.name} ({status})")


# ============================================================================
# Tasks
# ============================================================================


@main.group()
def task():
    """Manage tasks."""
    pass


@task.command(name="add")
@click.argument("title")
@click.option("--priority", default="medium", show_default=True, help="urgent, high, medium or low")
@click.option("--status", default="backlog", show_default=True, help="backlog or todo")
@click.option("--description", default="", help="Task description")
@click.option("--agent", "affinity", help="Agent that should pick this task up")
@click.option("--external-id", help="External tracker ID, e.g. AGT-208")
@click.option("--created-by", help="Agent credited with creating the task")
@click.pass_obj
def add_task(
    services: Services,
    title: str,
    priority: str,
    status: str,
    description: str,
    affinity: str | None,
    external_id: str | None,
    created_by: str | None,
):
    """Add a task to the queue."""
    with services.session_factory() as session:
        creator_id = None
        if created_by:
            creator = crud.get_agent_by_name(created_by, session=session)
            if creator is None:
                _fail(f"Agent '{created_by}' not found")
            creator_id = creator.id

        try:
            created = crud.create_task(
                title,
                priority=priority,
                status=status,
                description=description,
                agent_name=affinity,
                external_id=external_id,
                created_by=creator_id,
                session=session,
            )
        except ValueError as e:
            _fail(str(e))

        console.print(f"[green]✓[/green] Added task {created.id}: {created.title} ({created.priority})")


@task.command(name="move")
@click.argument("task_id", type=int)
@click.argument("status")
@click.option("--by", "actor", help="Agent credited with the change (default: assignee; required when unassigned)")
@click.pass_obj
def move_task(services: Services, task_id: int, status: str, actor: str | None):
    """Move a task to a new status."""
    with services.session_factory() as session:
        actor_id = None
        if actor:
            found = crud.get_agent_by_name(actor, session=session)
            if found is None:
                _fail(f"Agent '{actor}' not found")
            actor_id = found.id

        try:
            moved = crud.update_task_status(task_id, status, actor_id=actor_id, session=session)
        except (ConvoyError, ValueError) as e:
            _fail(str(e))

        console.print(f"[green]✓[/green] Task {moved.id} is now {moved.status}")


@main.command(name="next-task")
@click.option("--agent", "agent_name", help="Match for this agent")
@click.option("--role", help="Match for this role")
@click.pass_obj
def next_task(services: Services, agent_name: str | None, role: str | None):
    """Show the task an agent or role would be given next."""
    if not agent_name and not role:
        _fail("Pass --agent or --role")

    found = services.matcher.find_next_task(agent_name=agent_name, role=role)
    if found is None:
        console.print("[yellow]No eligible tasks.[/yellow]")
        return

    label = found.external_id or f"#{found.id}"
    console.print(f"[cyan]{label}[/cyan] {found.title} [dim]({found.priority}, {found.status})[/dim]")


# ============================================================================
# Dispatch
# ============================================================================


@main.command()
@click.argument("agent_name")
@click.pass_obj
def dispatch(services: Services, agent_name: str):
    """Assign the next task to one idle agent."""
    result = services.engine.dispatch(agent_name)

    if not result.success:
        detail = f" (status: {result.agent_status})" if result.agent_status else ""
        console.print(f"[yellow]Not dispatched:[/yellow] {result.error_code.value}{detail}")
        sys.exit(1)

    console.print(
        f"[green]✓[/green] {result.agent_name} ← {result.external_id or result.task_id} "
        f"[dim](dispatch {result.dispatch_id}, {result.priority})[/dim]"
    )


@main.command()
@click.pass_obj
def cycle(services: Services):
    """Run one fleet cycle."""
    try:
        outcomes = services.cycle.run_cycle()
    except LeaseHeldError as e:
        _fail(str(e))

    table = Table(title="Fleet Cycle")
    table.add_column("Agent", style="cyan")
    table.add_column("Result")
    table.add_column("Task")

    for o in outcomes:
        if o.success:
            table.add_row(o.agent, "[green]dispatched[/green]", o.external_id or str(o.task_id))
        else:
            table.add_row(o.agent, f"[yellow]{o.reason}[/yellow]", "-")

    console.print(table)


# ============================================================================
# Autoscaling
# ============================================================================


@main.group()
def autoscale():
    """Inspect and run the autoscaler."""
    pass


@autoscale.command(name="check")
@click.pass_obj
def autoscale_check(services: Services):
    """Show spawn recommendations without acting on them."""
    check = services.autoscaler.check_spawn_needed()
    console.print(f"Agents: {check.current_agents}  Pending dispatches: {check.pending_dispatches}")

    if not check.recommendations:
        console.print("[green]No spawns recommended.[/green]")
        return

    table = Table(title="Spawn Recommendations")
    table.add_column("Role", style="cyan")
    table.add_column("Reason")
    for rec in check.recommendations:
        table.add_row(rec.role, rec.reason)
    console.print(table)


@autoscale.command(name="run")
@click.pass_obj
def autoscale_run(services: Services):
    """Check recommendations and spawn agents under the role cap."""
    try:
        summary = services.autoscaler.check_and_auto_spawn()
    except LeaseHeldError as e:
        _fail(str(e))

    for spawned in summary.spawned:
        console.print(f"[green]✓[/green] Spawned {spawned.name} ({spawned.role})")
    for rec in summary.skipped:
        console.print(f"[yellow]Skipped[/yellow] {rec.role}: {rec.reason}")
    console.print(
        f"{summary.recommendations_count} recommendations, {summary.spawned_count} spawned"
    )


@main.command()
@click.argument("role")
@click.option("--reason", default="Manual spawn", show_default=True)
@click.option("--enforce-cap", is_flag=True, help="Refuse if the role is at its cap")
@click.pass_obj
def spawn(services: Services, role: str, reason: str, enforce_cap: bool):
    """Spawn an agent from a role template."""
    try:
        result = services.autoscaler.auto_spawn(role, reason, enforce_cap=enforce_cap)
    except ConvoyError as e:
        _fail(str(e))

    console.print(f"[green]✓[/green] Spawned {result.name} ({result.role})")


# ============================================================================
# Reporting
# ============================================================================


@main.command()
@click.option("--start", "start_ts", type=int, help="Window start (epoch ms)")
@click.option("--end", "end_ts", type=int, help="Window end, inclusive (epoch ms)")
@click.option("--markdown", is_flag=True, help="Print markdown digests instead of a table")
@click.option("--save", is_flag=True, help="Generate today's digest and save daily notes")
@click.pass_obj
def standup(services: Services, start_ts: int | None, end_ts: int | None, markdown: bool, save: bool):
    """Summarize work for a window (default: today)."""
    if save:
        digest = services.standups.generate_daily_standup()
        console.print(digest.summary_markdown)
        console.print(f"[green]✓[/green] Saved notes for {digest.agents_processed} agents")
        return

    try:
        report = services.standups.report(start_ts, end_ts)
    except ValueError as e:
        _fail(str(e))

    date = ms_to_datetime(report.start_ts).strftime("%Y-%m-%d")
    if markdown:
        for agent_report in report.per_agent:
            console.print(format_agent_standup(agent_report, date), markup=False)
            console.print()
        console.print(format_fleet_summary(report, date), markup=False)
        return

    table = Table(title=f"Standup {date}")
    table.add_column("Agent", style="cyan")
    table.add_column("Done", justify="right")
    table.add_column("In Progress", justify="right")
    table.add_column("Backlog", justify="right")
    table.add_column("Blocked", justify="right", style="red")
    table.add_column("Activity", justify="right", style="dim")

    for a in report.per_agent:
        table.add_row(
            a.agent.name,
            str(len(a.completed)),
            str(len(a.in_progress)),
            str(len(a.backlog)),
            str(len(a.blocked)),
            str(a.activity_count),
        )

    console.print(table)
    s = report.summary
    console.print(
        f"Completed {s.tasks_completed}, in progress {s.tasks_in_progress}, backlog {s.tasks_backlog}, "
        f"blocked {s.tasks_blocked}, active agents {s.agents_active}, messages {s.messages_sent}"
    )


@main.group()
def learning():
    """Manage team learnings."""
    pass


@learning.command(name="add")
@click.argument("summary")
@click.option("--tag", "tags", multiple=True, help="Tag, e.g. a role name (repeatable)")
@click.option("--agent", "agent_name", help="Agent the learning came from")
@click.pass_obj
def add_learning(services: Services, summary: str, tags: tuple[str, ...], agent_name: str | None):
    """Record a learning folded into future spawned agents' prompts."""
    with services.session_factory() as session:
        created = crud.create_learning(summary, tags=tags, agent_name=agent_name, session=session)
        console.print(f"[green]✓[/green] Learning {created.id} recorded")


@main.group()
def mapping():
    """Manage canonical agent names."""
    pass


@mapping.command(name="add")
@click.argument("canonical_name")
@click.argument("agent_name")
@click.pass_obj
def add_mapping(services: Services, canonical_name: str, agent_name: str):
    """Map CANONICAL_NAME to the agent named AGENT_NAME."""
    with services.session_factory() as session:
        found = crud.get_agent_by_name(agent_name, session=session)
        if found is None:
            _fail(f"Agent '{agent_name}' not found")
        try:
            crud.create_agent_mapping(canonical_name, found.id, session=session)
        except crud.DuplicateError as e:
            _fail(str(e))
        console.print(f"[green]✓[/green] {canonical_name.lower()} → {found.name}")


# ============================================================================
# Scheduler
# ============================================================================


@main.command()
@click.pass_obj
def run(services: Services):
    """Run the fleet cycle and autoscaler on their intervals until interrupted."""
    scheduler = FleetScheduler(
        services.cycle,
        services.autoscaler,
        poll_interval_seconds=services.settings.poll_interval_seconds,
        autoscale_interval_seconds=services.settings.autoscale_interval_seconds,
    )

    console.print(
        f"[bold green]Scheduler started[/bold green] "
        f"[dim](cycle every {scheduler.poll_interval_seconds}s)[/dim]"
    )
    try:
        asyncio.run(scheduler.start())
    except KeyboardInterrupt:
        scheduler.stop()
        console.print("\n[yellow]Scheduler stopped.[/yellow]")
    finally:
        dispose_engines()


if __name__ == "__main__":
    main()
