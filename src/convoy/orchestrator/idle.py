"""Idle detection: may a named agent take new work right now?"""

import structlog
from sqlalchemy.orm import Session, sessionmaker

from convoy.core.errors import AgentNotFoundError
from convoy.core.models import IDLE_STATUSES, IdleCheck
from convoy.database import crud
from convoy.database.canonical import CanonicalRegistry
from convoy.database.models import Agent

logger = structlog.get_logger(__name__)


class IdleDetector:
    """Pure read over agent status and running dispatches."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def check_idle(self, agent_name: str) -> IdleCheck:
        """Check whether an agent is idle.

        Args:
            agent_name: Agent display name (case-insensitive) or canonical name

        Returns:
            IdleCheck with ``idle`` and a reason code

        Raises:
            AgentNotFoundError: If no agent has this name
        """
        with self.session_factory() as session:
            agent = CanonicalRegistry(session).find_agent(agent_name)
            if agent is None:
                raise AgentNotFoundError(agent_name)
            return self.check_agent(agent, session)

    @staticmethod
    def check_agent(agent: Agent, session: Session) -> IdleCheck:
        """Idle check for an already-loaded agent, inside the caller's session.

        A running dispatch makes the agent non-idle whatever its status says.
        """
        canonical_name = CanonicalRegistry(session).canonical_name_for(agent)
        status = agent.status.lower()

        if crud.has_running_dispatch(agent.id, session):
            reason = "has_running_dispatch"
            idle = False
        elif status in IDLE_STATUSES:
            reason = "available"
            idle = True
        else:
            reason = f"status_{status}"
            idle = False

        logger.debug("idle_checked", agent=agent.name, idle=idle, reason=reason)
        return IdleCheck(
            idle=idle,
            reason=reason,
            agent_id=agent.id,
            canonical_name=canonical_name,
            status=status,
        )
