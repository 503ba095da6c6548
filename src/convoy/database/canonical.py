"""Canonical agent identities.

Reporting groups work by a stable canonical name (``max``, ``sam``, ...) that
maps to one agent record, so renaming an agent does not split its history.
"""

from dataclasses import dataclass

from sqlalchemy.orm import Session

from convoy.database import crud
from convoy.database.models import Agent, AgentMapping


@dataclass(frozen=True)
class CanonicalAgent:
    name: str
    agent: Agent


class CanonicalRegistry:
    """Read-only lookups over the agent mapping table, scoped to one session."""

    def __init__(self, session: Session):
        self.session = session

    def all(self) -> list[CanonicalAgent]:
        """Mapped agents in mapping order; mappings to missing agents are dropped."""
        rows = (
            self.session.query(AgentMapping, Agent)
            .join(Agent, Agent.id == AgentMapping.agent_id)
            .order_by(AgentMapping.id)
            .all()
        )
        return [CanonicalAgent(name=mapping.name, agent=agent) for mapping, agent in rows]

    def resolve(self, canonical_name: str) -> Agent | None:
        mapping = self.session.query(AgentMapping).filter_by(name=canonical_name.lower()).first()
        if mapping is None:
            return None
        return self.session.get(Agent, mapping.agent_id)

    def find_agent(self, name: str) -> Agent | None:
        """Agent by display name, falling back to a canonical name."""
        agent = crud.get_agent_by_name(name, session=self.session)
        return agent if agent is not None else self.resolve(name)

    def canonical_name_for(self, agent: Agent) -> str:
        """Canonical name of an agent, or its lower-cased display name when unmapped."""
        mapping = self.session.query(AgentMapping).filter_by(agent_id=agent.id).first()
        return mapping.name if mapping is not None else agent.name.lower()
