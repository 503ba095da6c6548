"""Standup aggregation - windowed per-agent and fleet-wide work summaries.

For a window [start, end] (inclusive, epoch ms):

- completed: task moved to ``done`` by a status_changed event inside the window,
  and still done
- in progress / backlog: current status, and the task was touched in the window
- blocked: touched in the window and "blocked" appears in title or description

A task is touched in the window when it has a status_changed or task_created
event inside it, or its own ``updated_at`` falls inside it. Either is enough.

Reports are pure reads; the same window over an unchanged store gives the same
report.
"""

from datetime import datetime

import structlog
from sqlalchemy.orm import sessionmaker

from convoy.core.events import StatusChangedMeta, parse_metadata
from convoy.core.models import (
    OPEN_TASK_STATUSES,
    AgentCard,
    AgentStandup,
    StandupDigest,
    StandupReport,
    StandupSummary,
    TaskStatus,
    TaskSummary,
)
from convoy.database import crud
from convoy.database.canonical import CanonicalAgent, CanonicalRegistry
from convoy.database.models import ActivityEvent, Task
from convoy.utils.clock import Clock, local_day_bounds, ms_to_datetime, now_ms

logger = structlog.get_logger(__name__)

TOUCH_EVENT_TYPES = ("status_changed", "task_created")
BLOCKED_KEYWORD = "blocked"
QUEUE_PREVIEW = 5


def moved_to_done(event: ActivityEvent) -> bool:
    if event.event_type != "status_changed":
        return False
    meta = parse_metadata(event.event_metadata)
    return isinstance(meta, StatusChangedMeta) and meta.to_status == TaskStatus.DONE.value


def is_blocked(task: Task) -> bool:
    return BLOCKED_KEYWORD in task.title.lower() or BLOCKED_KEYWORD in (task.description or "").lower()


def owned_by(task: Task, canonical: CanonicalAgent) -> bool:
    """Whether a task belongs to a canonical agent.

    The affinity hint decides when present (canonical or display name);
    otherwise the formal assignee does.
    """
    affinity = (task.agent_name or "").lower()
    if affinity:
        return affinity in (canonical.name.lower(), canonical.agent.name.lower())
    return task.assignee_id == canonical.agent.id


def summarize(task: Task) -> TaskSummary:
    return TaskSummary(id=task.id, title=task.title, priority=task.priority, external_id=task.external_id)


class StandupAggregator:
    """Builds standup reports and daily digests from the entity store."""

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Clock = now_ms,
        reporter_name: str = "MAX",
    ):
        """Initialize the aggregator.

        Args:
            session_factory: Factory producing sessions on the entity store
            clock: Millisecond clock
            reporter_name: Agent credited with standup_generated events
        """
        self.session_factory = session_factory
        self.clock = clock
        self.reporter_name = reporter_name

    def report(self, start_ts: int | None = None, end_ts: int | None = None) -> StandupReport:
        """Build the standup report for a window.

        Args:
            start_ts: Window start in ms (default: start of the local day)
            end_ts: Window end in ms, inclusive (default: end of the local day)

        Raises:
            ValueError: If the window is inverted
        """
        day_start, day_end = local_day_bounds(ms_to_datetime(self.clock()))
        start_ts = day_start if start_ts is None else start_ts
        end_ts = day_end if end_ts is None else end_ts
        if start_ts > end_ts:
            raise ValueError(f"start_ts {start_ts} is after end_ts {end_ts}")

        with self.session_factory() as session:
            events = crud.list_activity_in_range(start_ts, end_ts, session)
            tasks = crud.list_tasks(session=session)
            canonical_agents = CanonicalRegistry(session).all()

            completed_ids = {e.task_id for e in events if e.task_id is not None and moved_to_done(e)}
            touched_ids = {e.task_id for e in events if e.task_id is not None and e.event_type in TOUCH_EVENT_TYPES}
            touched_ids.update(t.id for t in tasks if start_ts <= t.updated_at <= end_ts)

            per_agent = [
                self._agent_report(canonical, tasks, events, completed_ids, touched_ids)
                for canonical in canonical_agents
            ]

            touched = [t for t in tasks if t.id in touched_ids]
            summary = StandupSummary(
                total_activities=len(events),
                tasks_completed=len(completed_ids),
                tasks_in_progress=sum(1 for t in touched if t.status == TaskStatus.IN_PROGRESS.value),
                tasks_backlog=sum(1 for t in touched if t.status in OPEN_TASK_STATUSES),
                tasks_blocked=sum(1 for t in touched if is_blocked(t)),
                agents_active=len({e.agent_id for e in events}),
                messages_sent=sum(1 for e in events if e.event_type == "message_sent"),
            )

        logger.debug(
            "standup_report_built",
            start_ts=start_ts,
            end_ts=end_ts,
            agents=len(per_agent),
            activities=summary.total_activities,
        )
        return StandupReport(start_ts=start_ts, end_ts=end_ts, per_agent=per_agent, summary=summary)

    @staticmethod
    def _agent_report(
        canonical: CanonicalAgent,
        tasks: list[Task],
        events: list[ActivityEvent],
        completed_ids: set[int],
        touched_ids: set[int],
    ) -> AgentStandup:
        agent = canonical.agent
        owned = [t for t in tasks if owned_by(t, canonical)]

        return AgentStandup(
            agent=AgentCard(
                id=agent.id,
                name=agent.name,
                role=agent.role,
                status=agent.status,
                canonical_name=canonical.name,
            ),
            completed=[
                summarize(t) for t in owned if t.status == TaskStatus.DONE.value and t.id in completed_ids
            ],
            in_progress=[
                summarize(t) for t in owned if t.status == TaskStatus.IN_PROGRESS.value and t.id in touched_ids
            ],
            backlog=[summarize(t) for t in owned if t.status in OPEN_TASK_STATUSES and t.id in touched_ids],
            blocked=[summarize(t) for t in owned if t.id in touched_ids and is_blocked(t)],
            activity_count=sum(1 for e in events if e.agent_id == agent.id),
        )

    def generate_daily_standup(self) -> StandupDigest:
        """Build today's report, save a daily note per agent and log the run."""
        now = self.clock()
        date = ms_to_datetime(now).strftime("%Y-%m-%d")
        report = self.report()

        notes: dict[str, str] = {}
        summary_markdown = format_fleet_summary(report, date, generated_at=ms_to_datetime(now))

        with self.session_factory() as session:
            for agent_report in report.per_agent:
                markdown = format_agent_standup(agent_report, date)
                crud.save_daily_note(agent_report.agent.id, date, markdown, now=now, session=session)
                notes[agent_report.agent.canonical_name] = markdown

            reporter = crud.get_agent_by_name(self.reporter_name, session=session)
            if reporter is None:
                logger.warning("standup_reporter_not_found", reporter=self.reporter_name)
            else:
                crud.record_activity(
                    reporter.id,
                    {"event_type": "standup_generated", "source": "standup_scheduler", "date": date},
                    title=f"Daily standup generated for {date}",
                    description="Auto-generated standup summary",
                    now=now,
                    session=session,
                )

        logger.info("daily_standup_generated", date=date, agents=len(report.per_agent))
        return StandupDigest(
            date=date,
            agents_processed=len(report.per_agent),
            summary_markdown=summary_markdown,
            notes=notes,
        )


# ============================================================================
# Markdown rendering
# ============================================================================


def _task_line(task: TaskSummary) -> str:
    return f"- [{task.external_id}] {task.title}" if task.external_id else f"- {task.title}"


def format_agent_standup(report: AgentStandup, date: str) -> str:
    """Render one agent's standup as markdown."""
    lines = [f"# {report.agent.name.upper()} Daily Standup - {date}", ""]

    lines.append(f"## Completed ({len(report.completed)})")
    lines.extend([_task_line(t) for t in report.completed] or ["- (none)"])
    lines.append("")

    lines.append(f"## In Progress ({len(report.in_progress)})")
    lines.extend([_task_line(t) for t in report.in_progress] or ["- (none)"])
    lines.append("")

    if report.blocked:
        lines.append(f"## Blocked ({len(report.blocked)})")
        lines.extend(_task_line(t) for t in report.blocked)
        lines.append("")

    lines.append(f"## Queue ({len(report.backlog)})")
    if report.backlog:
        lines.extend(_task_line(t) for t in report.backlog[:QUEUE_PREVIEW])
        if len(report.backlog) > QUEUE_PREVIEW:
            lines.append(f"- ... and {len(report.backlog) - QUEUE_PREVIEW} more")
    else:
        lines.append("- (none)")

    return "\n".join(lines)


def agent_state_word(report: AgentStandup) -> str:
    if report.blocked:
        return "BLOCKED"
    if report.in_progress:
        return "Working"
    if report.completed:
        return "Done"
    return "Idle"


def format_fleet_summary(report: StandupReport, date: str, generated_at: datetime | None = None) -> str:
    """Render the fleet-wide standup summary as markdown.

    The closing "Generated" line is written only when ``generated_at`` is given.
    """
    summary = report.summary
    lines = [
        f"# Fleet Daily Standup - {date}",
        "",
        "## Summary",
        f"- **Completed:** {summary.tasks_completed} tasks",
        f"- **In Progress:** {summary.tasks_in_progress} tasks",
        f"- **Backlog:** {summary.tasks_backlog} tasks",
        f"- **Blocked:** {summary.tasks_blocked} tasks",
        f"- **Active Agents:** {summary.agents_active}/{len(report.per_agent)}",
        "",
        "## Per-Agent Breakdown",
    ]

    for agent_report in report.per_agent:
        lines.append(
            f"- **{agent_report.agent.name.upper()}**: {len(agent_report.completed)} done, "
            f"{len(agent_report.in_progress)} in progress ({agent_state_word(agent_report)})"
        )
    lines.append("")

    blockers = [(a.agent.name.upper(), t) for a in report.per_agent for t in a.blocked]
    if blockers:
        lines.append("## Blockers Requiring Attention")
        for agent_name, task in blockers:
            label = f"{task.external_id}: " if task.external_id else ""
            lines.append(f"- [{agent_name}] {label}{task.title}")
        lines.append("")

    if generated_at is not None:
        lines.append("---")
        lines.append(f"_Generated {generated_at.isoformat(timespec='seconds')}_")
    return "\n".join(lines)
