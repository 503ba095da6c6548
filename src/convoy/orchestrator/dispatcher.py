"""Dispatch engine - assigns the next task to one idle agent atomically."""

import json

import structlog
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from convoy.core.errors import ErrorCode
from convoy.core.models import (
    WORK_ON_TASK,
    AgentStatus,
    DispatchResult,
    DispatchStatus,
    TaskStatus,
)
from convoy.database import crud
from convoy.database.canonical import CanonicalRegistry
from convoy.database.models import Agent, Dispatch, Task
from convoy.orchestrator.idle import IdleDetector
from convoy.orchestrator.matcher import TaskMatcher
from convoy.utils.clock import Clock, now_ms

logger = structlog.get_logger(__name__)


class DispatchEngine:
    """Composes idle detection and task matching into one "assign work" operation.

    Every dispatch runs in a single store transaction. The task is marked
    in progress, a pending Dispatch is inserted, the agent is marked busy and an
    ``auto_dispatched`` activity event is appended; either all four land or
    none do.

    Agents and tasks carry a version column. If another writer changes the
    agent or the chosen task between the read and the commit, the commit
    fails and the dispatch reports ``conflict`` instead of double-assigning.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        matcher: TaskMatcher | None = None,
        clock: Clock = now_ms,
    ):
        """Initialize the engine.

        Args:
            session_factory: Factory producing sessions on the entity store
            matcher: Task matcher (default: matcher with built-in role templates)
            clock: Millisecond clock
        """
        self.session_factory = session_factory
        self.matcher = matcher or TaskMatcher(session_factory)
        self.clock = clock

    def dispatch(self, agent_name: str, source: str = "auto_dispatch") -> DispatchResult:
        """Assign the best eligible task to an agent.

        Args:
            agent_name: Agent display name (case-insensitive)
            source: Recorded in the activity event ("auto_dispatch" or "auto_dispatch_cycle")

        Returns:
            DispatchResult; failures carry an error code rather than raising
        """
        try:
            with self.session_factory() as session, session.begin():
                result = self._dispatch_in_session(session, agent_name, source)
        except StaleDataError as e:
            logger.warning("dispatch_conflict", agent=agent_name, error=str(e))
            return DispatchResult.failure(agent_name, ErrorCode.CONFLICT)

        if result.success:
            logger.info(
                "task_dispatched",
                agent=agent_name,
                task_id=result.task_id,
                external_id=result.external_id,
                dispatch_id=result.dispatch_id,
                priority=result.priority,
                source=source,
            )
        else:
            logger.info(
                "dispatch_skipped",
                agent=agent_name,
                error_code=result.error_code.value,
                agent_status=result.agent_status,
            )
        return result

    def _dispatch_in_session(self, session: Session, agent_name: str, source: str) -> DispatchResult:
        # 1. Resolve agent by display name, then canonical name
        agent = CanonicalRegistry(session).find_agent(agent_name)
        if agent is None:
            return DispatchResult.failure(agent_name, ErrorCode.AGENT_NOT_FOUND)

        # 2. Idle check
        check = IdleDetector.check_agent(agent, session)
        if not check.idle:
            if check.reason == "has_running_dispatch":
                return DispatchResult.failure(agent.name, ErrorCode.HAS_RUNNING_DISPATCH, agent_status=agent.status)
            return DispatchResult.failure(agent.name, ErrorCode.AGENT_NOT_IDLE, agent_status=agent.status)

        # 3. Select task
        task = self.matcher.select(session, agent_name=agent.name)
        if task is None:
            return DispatchResult.failure(agent.name, ErrorCode.NO_TASKS_AVAILABLE)

        now = self.clock()

        # 4-7. Commit the assignment
        self._assign(task, agent, now)
        dispatch = self._create_dispatch(session, task, agent, now)
        self._mark_busy(agent, task, now)
        session.add(
            crud.build_activity_event(
                agent,
                {
                    "event_type": "auto_dispatched",
                    "source": source,
                    "priority": task.priority,
                    "dispatch_id": dispatch.id,
                },
                title=f"{agent.name.upper()} auto-assigned {task.external_id or task.title}",
                description=task.title,
                task=task,
                now=now,
            )
        )
        session.flush()

        return DispatchResult(
            success=True,
            agent_name=agent.name,
            task_id=task.id,
            external_id=task.external_id,
            dispatch_id=dispatch.id,
            priority=task.priority,
        )

    @staticmethod
    def _assign(task: Task, agent: Agent, now: int) -> None:
        task.assignee_id = agent.id
        task.status = TaskStatus.IN_PROGRESS.value
        task.updated_at = now

    @staticmethod
    def _create_dispatch(session: Session, task: Task, agent: Agent, now: int) -> Dispatch:
        dispatch = Dispatch(
            agent_id=agent.id,
            command=WORK_ON_TASK,
            payload=json.dumps(
                {
                    "taskId": task.id,
                    "externalId": task.external_id,
                    "title": task.title,
                }
            ),
            status=DispatchStatus.PENDING.value,
            created_at=now,
        )
        session.add(dispatch)
        session.flush()
        return dispatch

    @staticmethod
    def _mark_busy(agent: Agent, task: Task, now: int) -> None:
        agent.status = AgentStatus.BUSY.value
        agent.status_reason = f"Working on {task.external_id or task.title}"
        agent.status_since = now
        agent.current_task_id = task.id
