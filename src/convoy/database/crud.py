"""Database CRUD operations for the Convoy entity store.

This module provides Create, Read and Update operations for agents, tasks,
dispatches, activity events, learnings, canonical mappings, heartbeats and
daily notes. Nothing here hard-deletes agents or activity events.

Write helpers commit the session they are given. Read helpers never commit,
so the dispatch engine can call them inside its own transaction.
"""

import json
from collections.abc import Generator, Iterable
from contextlib import contextmanager

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from convoy.core.errors import ConflictError, InvalidStateError, NotFoundError
from convoy.core.events import EVENT_CATEGORIES, HeartbeatMetadata, parse_metadata
from convoy.core.models import (
    OPEN_TASK_STATUSES,
    AgentStatus,
    DispatchStatus,
    Priority,
    TaskStatus,
)
from convoy.database.models import (
    ActivityEvent,
    Agent,
    AgentMapping,
    DailyNote,
    Dispatch,
    Heartbeat,
    Learning,
    Task,
)
from convoy.database.session import get_session_factory
from convoy.utils.clock import now_ms

logger = structlog.get_logger(__name__)


# ============================================================================
# Exceptions
# ============================================================================


class DuplicateError(Exception):
    """Raised when trying to create a duplicate record."""

    pass


@contextmanager
def _session_scope(session: Session | None) -> Generator[Session, None, None]:
    """Use the caller's session, or open (and close) a new one."""
    if session is not None:
        yield session
        return

    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


def normalize_agent_name(name: str) -> str:
    """Canonical stored form of an agent display name."""
    return name.strip().upper()


# ============================================================================
# Agent Operations
# ============================================================================


def create_agent(
    name: str,
    role: str,
    status: str = AgentStatus.OFFLINE.value,
    skills: Iterable[str] | None = None,
    territory: Iterable[str] | None = None,
    capability_tags: Iterable[str] | None = None,
    base_prompt: str | None = None,
    profile: str | None = None,
    spawn_reason: str | None = None,
    spawned_at: int | None = None,
    now: int | None = None,
    session: Session | None = None,
) -> Agent:
    """Create a new agent.

    Args:
        name: Display name (stored upper-cased; must be unique case-insensitively)
        role: Agent role (planner, backend, frontend, qa, devops, content, ...)
        status: Initial status (default: offline)
        skills: Skill tags
        territory: Advisory path/scope patterns
        capability_tags: Opaque tags used for prompt construction
        base_prompt: Instruction text
        profile: Free-text profile
        spawn_reason: Why the autoscaler created this agent (optional)
        spawned_at: When the autoscaler created this agent (optional)
        now: Timestamp override in ms (optional)
        session: Database session (optional, will create if not provided)

    Returns:
        Created Agent instance

    Raises:
        DuplicateError: If an agent with this name already exists
        ValueError: If the status is not a known agent status
    """
    status = AgentStatus(status.lower()).value
    now = now if now is not None else now_ms()
    name = normalize_agent_name(name)

    with _session_scope(session) as session:
        if get_agent_by_name(name, session=session) is not None:
            raise DuplicateError(f"Agent '{name}' already exists")

        agent = Agent(
            name=name,
            role=role.lower(),
            status=status,
            status_since=now,
            skills=list(skills or []),
            territory=list(territory or []),
            capability_tags=list(capability_tags or []),
            base_prompt=base_prompt,
            profile=profile,
            spawn_reason=spawn_reason,
            spawned_at=spawned_at,
            last_seen=now,
            created_at=now,
        )

        try:
            session.add(agent)
            session.commit()
        except IntegrityError as e:
            session.rollback()
            logger.error("duplicate_agent", name=name, error=str(e))
            raise DuplicateError(f"Agent '{name}' already exists")

        session.refresh(agent)
        logger.info("agent_created", agent_id=agent.id, name=name, role=agent.role)
        return agent


def get_agent_by_name(name: str, session: Session | None = None) -> Agent | None:
    """Get an agent by display name, case-insensitively.

    Args:
        name: Agent display name in any case
        session: Database session (optional, will create if not provided)

    Returns:
        Agent instance or None if not found
    """
    with _session_scope(session) as session:
        agent = (
            session.query(Agent)
            .filter(func.upper(Agent.name) == normalize_agent_name(name))
            .first()
        )

        if agent:
            logger.debug("agent_found", name=name, agent_id=agent.id)
        else:
            logger.debug("agent_not_found", name=name)

        return agent


def list_agents(
    status: str | None = None,
    role: str | None = None,
    session: Session | None = None,
) -> list[Agent]:
    """List agents in creation order, optionally filtered by status and role."""
    with _session_scope(session) as session:
        query = session.query(Agent)

        if status is not None:
            query = query.filter(Agent.status == status.lower())
        if role is not None:
            query = query.filter(Agent.role == role.lower())

        return query.order_by(Agent.id).all()


def count_agents_by_role(role: str, session: Session | None = None) -> int:
    with _session_scope(session) as session:
        return session.query(Agent).filter(Agent.role == role.lower()).count()


def set_agent_status(
    agent_id: int,
    status: str,
    reason: str | None = None,
    now: int | None = None,
    session: Session | None = None,
) -> Agent:
    """Set an agent's status and touch its last-seen timestamp.

    Raises:
        NotFoundError: If the agent does not exist
    """
    status = AgentStatus(status.lower()).value
    now = now if now is not None else now_ms()

    with _session_scope(session) as session:
        agent = session.get(Agent, agent_id)
        if agent is None:
            raise NotFoundError(f"Agent with id {agent_id} not found")

        if agent.status != status:
            agent.status_since = now
        agent.status = status
        agent.status_reason = reason
        agent.last_seen = now

        session.commit()
        session.refresh(agent)

        logger.info("agent_status_updated", agent_id=agent_id, status=status)
        return agent


def record_heartbeat(
    agent_id: int,
    status: str,
    metadata: HeartbeatMetadata | dict | None = None,
    now: int | None = None,
    session: Session | None = None,
) -> Heartbeat:
    """Record a heartbeat: update status, last-seen and last-heartbeat.

    Raises:
        NotFoundError: If the agent does not exist
        pydantic.ValidationError: If the metadata has unknown keys
    """
    status = AgentStatus(status.lower()).value
    now = now if now is not None else now_ms()

    if metadata is None:
        metadata = HeartbeatMetadata()
    elif isinstance(metadata, dict):
        metadata = HeartbeatMetadata.model_validate(metadata)

    with _session_scope(session) as session:
        agent = session.get(Agent, agent_id)
        if agent is None:
            raise NotFoundError(f"Agent with id {agent_id} not found")

        if agent.status != status:
            agent.status_since = now
        agent.status = status
        agent.last_seen = now
        agent.last_heartbeat = now

        heartbeat = Heartbeat(
            agent_id=agent_id,
            status=status,
            heartbeat_metadata=metadata.model_dump(exclude_none=True),
            timestamp=now,
        )
        session.add(heartbeat)
        session.commit()
        session.refresh(heartbeat)

        logger.debug("heartbeat_recorded", agent_id=agent_id, status=status)
        return heartbeat


def ping_agent(agent_id: int, now: int | None = None, session: Session | None = None) -> int:
    """Touch last-seen and last-heartbeat without changing status."""
    now = now if now is not None else now_ms()

    with _session_scope(session) as session:
        agent = session.get(Agent, agent_id)
        if agent is None:
            raise NotFoundError(f"Agent with id {agent_id} not found")

        agent.last_seen = now
        agent.last_heartbeat = now
        session.commit()
        return now


def set_agent_offline(agent_id: int, now: int | None = None, session: Session | None = None) -> Agent:
    now = now if now is not None else now_ms()

    with _session_scope(session) as session:
        agent = session.get(Agent, agent_id)
        if agent is None:
            raise NotFoundError(f"Agent with id {agent_id} not found")

        if agent.status != AgentStatus.OFFLINE.value:
            agent.status_since = now
        agent.status = AgentStatus.OFFLINE.value
        agent.last_seen = now
        agent.last_heartbeat = now
        session.commit()
        session.refresh(agent)

        logger.info("agent_set_offline", agent_id=agent_id)
        return agent


# ============================================================================
# Task Operations
# ============================================================================


def create_task(
    title: str,
    priority: str = Priority.MEDIUM.value,
    status: str = TaskStatus.BACKLOG.value,
    description: str = "",
    agent_name: str | None = None,
    external_id: str | None = None,
    project_ref: str | None = None,
    created_by: int | None = None,
    now: int | None = None,
    session: Session | None = None,
) -> Task:
    """Create a new task.

    Args:
        title: Task title
        priority: urgent, high, medium or low (default: medium)
        status: backlog, todo, in_progress or done (default: backlog)
        description: Task description
        agent_name: Affinity hint naming the agent that should pick this up (optional)
        external_id: External tracker identifier, e.g. "AGT-208" (optional)
        project_ref: Project reference (optional)
        created_by: Agent ID credited with a task_created event (optional)
        now: Timestamp override in ms (optional)
        session: Database session (optional, will create if not provided)

    Returns:
        Created Task instance
    """
    priority = Priority(priority.lower()).value
    status = TaskStatus(status.lower()).value
    now = now if now is not None else now_ms()

    with _session_scope(session) as session:
        task = Task(
            title=title,
            description=description or "",
            status=status,
            priority=priority,
            agent_name=agent_name.strip().lower() if agent_name else None,
            external_id=external_id,
            project_ref=project_ref,
            created_at=now,
            updated_at=now,
        )
        session.add(task)
        session.flush()

        if created_by is not None:
            creator = session.get(Agent, created_by)
            if creator is None:
                raise NotFoundError(f"Agent with id {created_by} not found")
            session.add(
                build_activity_event(
                    creator,
                    {"event_type": "task_created", "priority": priority},
                    title=f"{creator.name} created {external_id or title}",
                    task=task,
                    now=now,
                )
            )

        session.commit()
        session.refresh(task)

        logger.info(
            "task_created",
            task_id=task.id,
            title=title,
            priority=priority,
            affinity=task.agent_name,
        )
        return task


def list_open_unassigned_tasks(session: Session) -> list[Task]:
    """Unassigned backlog tasks followed by unassigned todo tasks, each in id order."""
    tasks: list[Task] = []
    for status in OPEN_TASK_STATUSES:
        tasks.extend(
            session.query(Task)
            .filter(Task.status == status, Task.assignee_id.is_(None))
            .order_by(Task.id)
            .all()
        )
    return tasks


def list_tasks(status: str | None = None, session: Session | None = None) -> list[Task]:
    with _session_scope(session) as session:
        query = session.query(Task)
        if status is not None:
            query = query.filter(Task.status == status)
        return query.order_by(Task.id).all()


def update_task_status(
    task_id: int,
    status: str,
    actor_id: int | None = None,
    now: int | None = None,
    session: Session | None = None,
) -> Task:
    """Move a task to a new status and log the change.

    The status_changed event is credited to ``actor_id``, falling back to the
    task's assignee. Standups count completions from these events, so a
    change nobody can be credited with is refused.

    Raises:
        NotFoundError: If the task or actor does not exist
        InvalidStateError: If no actor is given and the task is unassigned
    """
    status = TaskStatus(status.lower()).value
    now = now if now is not None else now_ms()

    with _session_scope(session) as session:
        task = session.get(Task, task_id)
        if task is None:
            raise NotFoundError(f"Task with id {task_id} not found")

        actor_id = actor_id if actor_id is not None else task.assignee_id
        if actor_id is None:
            raise InvalidStateError(f"Task {task_id} is unassigned; name the agent making the change")
        actor = session.get(Agent, actor_id)
        if actor is None:
            raise NotFoundError(f"Agent with id {actor_id} not found")

        from_status = task.status
        task.status = status
        task.updated_at = now
        session.add(
            build_activity_event(
                actor,
                {"event_type": "status_changed", "from_status": from_status, "to_status": status},
                title=f"{actor.name} moved {task.external_id or task.title} to {status}",
                task=task,
                now=now,
            )
        )

        session.commit()
        session.refresh(task)

        logger.info("task_status_updated", task_id=task_id, from_status=from_status, to_status=status)
        return task


# ============================================================================
# Activity Event Operations
# ============================================================================


def build_activity_event(
    agent: Agent,
    metadata: dict,
    title: str,
    description: str | None = None,
    task: Task | None = None,
    now: int | None = None,
) -> ActivityEvent:
    """Build (but do not add) an activity event with validated metadata.

    Raises:
        pydantic.ValidationError: If the metadata does not match its event type
    """
    meta = parse_metadata(metadata)

    return ActivityEvent(
        agent_id=agent.id,
        agent_name=agent.name.lower(),
        category=EVENT_CATEGORIES[meta.event_type],
        event_type=meta.event_type,
        title=title,
        description=description,
        task_id=task.id if task is not None else None,
        external_id=task.external_id if task is not None else None,
        project_ref=task.project_ref if task is not None else None,
        event_metadata=meta.model_dump(mode="json"),
        timestamp=now if now is not None else now_ms(),
    )


def record_activity(
    agent_id: int,
    metadata: dict,
    title: str,
    description: str | None = None,
    task_id: int | None = None,
    now: int | None = None,
    session: Session | None = None,
) -> ActivityEvent:
    """Append an activity event.

    Raises:
        NotFoundError: If the agent or task does not exist
    """
    with _session_scope(session) as session:
        agent = session.get(Agent, agent_id)
        if agent is None:
            raise NotFoundError(f"Agent with id {agent_id} not found")

        task = None
        if task_id is not None:
            task = session.get(Task, task_id)
            if task is None:
                raise NotFoundError(f"Task with id {task_id} not found")

        event = build_activity_event(agent, metadata, title, description, task, now)
        session.add(event)
        session.commit()
        session.refresh(event)

        logger.debug("activity_recorded", event_id=event.id, event_type=event.event_type)
        return event


def list_activity_in_range(start_ts: int, end_ts: int, session: Session) -> list[ActivityEvent]:
    """Activity events with ``start_ts <= timestamp <= end_ts``, oldest first."""
    return (
        session.query(ActivityEvent)
        .filter(ActivityEvent.timestamp >= start_ts, ActivityEvent.timestamp <= end_ts)
        .order_by(ActivityEvent.timestamp, ActivityEvent.id)
        .all()
    )


# ============================================================================
# Learning Operations
# ============================================================================


def create_learning(
    summary: str,
    tags: Iterable[str] | None = None,
    agent_name: str | None = None,
    now: int | None = None,
    session: Session | None = None,
) -> Learning:
    with _session_scope(session) as session:
        learning = Learning(
            summary=summary,
            tags=[t.lower() for t in tags or []],
            agent_name=agent_name.lower() if agent_name else None,
            created_at=now if now is not None else now_ms(),
        )
        session.add(learning)
        session.commit()
        session.refresh(learning)

        logger.info("learning_created", learning_id=learning.id, agent_name=learning.agent_name)
        return learning


def list_recent_learnings(session: Session, limit: int | None = None) -> list[Learning]:
    """Learnings, most recent first."""
    query = session.query(Learning).order_by(Learning.created_at.desc(), Learning.id.desc())
    if limit is not None:
        query = query.limit(limit)
    return query.all()


# ============================================================================
# Canonical Mapping Operations
# ============================================================================


def create_agent_mapping(name: str, agent_id: int, session: Session | None = None) -> AgentMapping:
    """Map a canonical agent name to an agent record.

    Raises:
        NotFoundError: If the agent does not exist
        DuplicateError: If the canonical name is already mapped
    """
    with _session_scope(session) as session:
        if session.get(Agent, agent_id) is None:
            raise NotFoundError(f"Agent with id {agent_id} not found")

        mapping = AgentMapping(name=name.strip().lower(), agent_id=agent_id)
        try:
            session.add(mapping)
            session.commit()
        except IntegrityError as e:
            session.rollback()
            logger.error("duplicate_agent_mapping", name=name, error=str(e))
            raise DuplicateError(f"Canonical name '{name}' is already mapped")

        session.refresh(mapping)
        logger.info("agent_mapping_created", name=mapping.name, agent_id=agent_id)
        return mapping


# ============================================================================
# Dispatch Operations
# ============================================================================


def has_running_dispatch(agent_id: int, session: Session) -> bool:
    return (
        session.query(Dispatch.id)
        .filter(Dispatch.agent_id == agent_id, Dispatch.status == DispatchStatus.RUNNING.value)
        .first()
        is not None
    )


def list_dispatches(
    status: str | None = None, agent_id: int | None = None, session: Session | None = None
) -> list[Dispatch]:
    with _session_scope(session) as session:
        query = session.query(Dispatch)
        if status is not None:
            query = query.filter(Dispatch.status == status)
        if agent_id is not None:
            query = query.filter(Dispatch.agent_id == agent_id)
        return query.order_by(Dispatch.id).all()


def dispatch_payload(dispatch: Dispatch) -> dict:
    try:
        return json.loads(dispatch.payload)
    except (TypeError, ValueError):
        return {}


def start_dispatch(dispatch_id: int, now: int | None = None, session: Session | None = None) -> Dispatch:
    """Move a pending dispatch to running.

    Raises:
        NotFoundError: If the dispatch does not exist
        InvalidStateError: If the dispatch is not pending
        ConflictError: If the agent already has a running dispatch
    """
    now = now if now is not None else now_ms()

    with _session_scope(session) as session:
        dispatch = session.get(Dispatch, dispatch_id)
        if dispatch is None:
            raise NotFoundError(f"Dispatch with id {dispatch_id} not found")
        if dispatch.status != DispatchStatus.PENDING.value:
            raise InvalidStateError(f"Dispatch {dispatch_id} is {dispatch.status}, expected pending")
        if has_running_dispatch(dispatch.agent_id, session):
            raise ConflictError(f"Agent {dispatch.agent_id} already has a running dispatch")

        dispatch.status = DispatchStatus.RUNNING.value
        dispatch.started_at = now
        agent = session.get(Agent, dispatch.agent_id)
        session.add(
            build_activity_event(
                agent,
                {"event_type": "dispatch_transition", "dispatch_id": dispatch_id, "to_status": "running"},
                title=f"{agent.name} started dispatch {dispatch_id}",
                now=now,
            )
        )

        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.warning("running_dispatch_conflict", dispatch_id=dispatch_id)
            raise ConflictError(f"Agent {dispatch.agent_id} already has a running dispatch")

        session.refresh(dispatch)
        logger.info("dispatch_started", dispatch_id=dispatch_id, agent_id=dispatch.agent_id)
        return dispatch


def _finish_dispatch(
    dispatch_id: int,
    status: DispatchStatus,
    error_message: str | None,
    now: int | None,
    session: Session | None,
) -> Dispatch:
    now = now if now is not None else now_ms()

    with _session_scope(session) as session:
        dispatch = session.get(Dispatch, dispatch_id)
        if dispatch is None:
            raise NotFoundError(f"Dispatch with id {dispatch_id} not found")
        if dispatch.status not in (DispatchStatus.PENDING.value, DispatchStatus.RUNNING.value):
            raise InvalidStateError(f"Dispatch {dispatch_id} already {dispatch.status}")

        dispatch.status = status.value
        dispatch.finished_at = now
        dispatch.error_message = error_message

        agent = session.get(Agent, dispatch.agent_id)
        task_id = dispatch_payload(dispatch).get("taskId")
        if agent.current_task_id is None or agent.current_task_id == task_id:
            agent.status = AgentStatus.IDLE.value
            agent.status_reason = None
            agent.status_since = now
            agent.current_task_id = None

        session.add(
            build_activity_event(
                agent,
                {"event_type": "dispatch_transition", "dispatch_id": dispatch_id, "to_status": status.value},
                title=f"{agent.name} {status.value} dispatch {dispatch_id}",
                description=error_message,
                now=now,
            )
        )
        session.commit()
        session.refresh(dispatch)

        logger.info("dispatch_finished", dispatch_id=dispatch_id, status=status.value)
        return dispatch


def complete_dispatch(dispatch_id: int, now: int | None = None, session: Session | None = None) -> Dispatch:
    """Mark a dispatch completed and return its agent to idle."""
    return _finish_dispatch(dispatch_id, DispatchStatus.COMPLETED, None, now, session)


def fail_dispatch(
    dispatch_id: int, error_message: str, now: int | None = None, session: Session | None = None
) -> Dispatch:
    """Mark a dispatch failed and return its agent to idle."""
    return _finish_dispatch(dispatch_id, DispatchStatus.FAILED, error_message, now, session)


# ============================================================================
# Daily Note Operations
# ============================================================================


def save_daily_note(
    agent_id: int,
    date: str,
    content: str,
    now: int | None = None,
    session: Session | None = None,
) -> tuple[DailyNote, bool]:
    """Create or update an agent's note for a date.

    Returns:
        Tuple of (note, created)
    """
    now = now if now is not None else now_ms()

    with _session_scope(session) as session:
        note = session.query(DailyNote).filter_by(agent_id=agent_id, date=date).first()
        created = note is None

        if created:
            note = DailyNote(
                agent_id=agent_id,
                date=date,
                content=content,
                version=1,
                created_at=now,
                updated_at=now,
            )
            session.add(note)
        else:
            note.content = content
            note.updated_at = now
            note.version += 1

        session.commit()
        session.refresh(note)

        logger.debug("daily_note_saved", agent_id=agent_id, date=date, created=created)
        return note, created
