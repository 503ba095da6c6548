"""Task matching: pick the single best open task for an agent or a role.

Eligibility for a named agent:
- the task's affinity equals the agent's name (case-insensitive), or
- the task has no affinity.

Tasks whose affinity names a different agent are excluded. When matching for
a role instead of an agent, tasks whose title carries one of the role's
bracket tags are also eligible; this fallback classifier is never used to
exclude tasks.

Eligible tasks are sorted by priority rank (urgent, high, medium, low) with a
stable sort, so ties keep the store's scan order: backlog before todo, then by
id.
"""

import structlog
from sqlalchemy.orm import Session, sessionmaker

from convoy.core.models import priority_rank
from convoy.database import crud
from convoy.database.models import Task
from convoy.orchestrator.templates import DEFAULT_TEMPLATES, RoleTemplate, TemplateTable

logger = structlog.get_logger(__name__)


def is_eligible_for_agent(task: Task, agent_name: str) -> bool:
    affinity = (task.agent_name or "").lower()
    return not affinity or affinity == agent_name.lower()


def is_eligible_for_role(task: Task, template: RoleTemplate | None) -> bool:
    if not task.agent_name:
        return True
    return template is not None and template.matches_title(task.title)


def rank_tasks(tasks: list[Task]) -> list[Task]:
    """Stable sort by priority rank."""
    return sorted(tasks, key=lambda t: priority_rank(t.priority))


class TaskMatcher:
    """Selects the next task from the open, unassigned queue."""

    def __init__(self, session_factory: sessionmaker, templates: TemplateTable = DEFAULT_TEMPLATES):
        self.session_factory = session_factory
        self.templates = templates

    def find_next_task(self, agent_name: str | None = None, role: str | None = None) -> Task | None:
        """Find the highest-priority eligible task.

        Args:
            agent_name: Agent to match for (affinity rules)
            role: Role to match for when no agent is given (role tag fallback)

        Returns:
            The selected Task, or None if nothing is eligible
        """
        with self.session_factory() as session:
            return self.select(session, agent_name=agent_name, role=role)

    def select(
        self,
        session: Session,
        agent_name: str | None = None,
        role: str | None = None,
    ) -> Task | None:
        """Selection inside the caller's session (used by the dispatch engine)."""
        ranked = self.candidates(session, agent_name=agent_name, role=role)
        task = ranked[0] if ranked else None

        logger.debug(
            "next_task_selected",
            agent=agent_name,
            role=role,
            candidates=len(ranked),
            task_id=task.id if task else None,
        )
        return task

    def candidates(
        self,
        session: Session,
        agent_name: str | None = None,
        role: str | None = None,
    ) -> list[Task]:
        """All eligible tasks in selection order."""
        if agent_name is None and role is None:
            raise ValueError("agent_name or role is required")

        open_tasks = crud.list_open_unassigned_tasks(session)

        if agent_name is not None:
            eligible = [t for t in open_tasks if is_eligible_for_agent(t, agent_name)]
        else:
            template = self.templates.get(role.lower())
            eligible = [t for t in open_tasks if is_eligible_for_role(t, template)]

        return rank_tasks(eligible)
