"""Fleet autoscaler - grows the fleet from role templates under backlog pressure.

Phase A (``check_spawn_needed``) recommends roles:
- backlog pressure: a role's pending dispatches exceed the threshold
- saturation: every agent of a role is busy

Phase B (``check_and_auto_spawn``) walks the recommendations in order and
spawns an agent for each one whose role is still under its cap. A failed
spawn is logged and skipped; the pass carries on.
"""

from collections import Counter
from collections.abc import Callable, Iterable

import structlog
from sqlalchemy.orm import Session, sessionmaker

from convoy.core.errors import CapacityExceededError, ConvoyError, UnknownRoleError
from convoy.core.models import (
    AgentStatus,
    AutoSpawnSummary,
    DispatchStatus,
    SpawnCheck,
    SpawnedAgent,
    SpawnRecommendation,
    SpawnResult,
)
from convoy.database import crud
from convoy.database.models import Agent, Dispatch, Learning
from convoy.database.state import AUTOSCALER_LEASE, LeaseManager
from convoy.orchestrator.templates import DEFAULT_TEMPLATES, RoleTemplate, TemplateTable
from convoy.utils.clock import Clock, now_ms

logger = structlog.get_logger(__name__)

GENERAL_ROLE = "general"

RoleClassifier = Callable[[Dispatch], str]


def keyword_role_classifier(roles: Iterable[str]) -> RoleClassifier:
    """Classify a dispatch by the first role name found in its command or payload text."""
    roles = tuple(r.lower() for r in roles)

    def classify(dispatch: Dispatch) -> str:
        text = f"{dispatch.command or ''} {dispatch.payload or ''}".lower()
        for role in roles:
            if role in text:
                return role
        return GENERAL_ROLE

    return classify


def build_prompt(template: RoleTemplate, learnings: list[Learning]) -> str:
    """Base instructions followed by a team-learnings section, if any."""
    prompt = template.base_prompt
    if learnings:
        prompt += "\n\n## Learnings from Team\n"
        for learning in learnings:
            prompt += f"- {learning.summary}\n"
    return prompt


class FleetAutoscaler:
    """Recommends and synthesizes new agents."""

    def __init__(
        self,
        session_factory: sessionmaker,
        templates: TemplateTable = DEFAULT_TEMPLATES,
        classifier: RoleClassifier | None = None,
        backlog_threshold: int = 10,
        role_cap: int = 2,
        learning_limit: int = 5,
        leases: LeaseManager | None = None,
        clock: Clock = now_ms,
    ):
        """Initialize the autoscaler.

        Args:
            session_factory: Factory producing sessions on the entity store
            templates: Immutable role -> template table
            classifier: Maps a pending dispatch to a role (default: keyword match on template roles)
            backlog_threshold: Pending dispatches per role above which a spawn is recommended
            role_cap: Maximum agents per role for automatic spawning
            learning_limit: Learnings folded into a spawned agent's prompt
            leases: When given, each check-and-spawn pass holds the autoscaler lease
            clock: Millisecond clock
        """
        self.session_factory = session_factory
        self.templates = templates
        self.classifier = classifier or keyword_role_classifier(templates.keys())
        self.backlog_threshold = backlog_threshold
        self.role_cap = role_cap
        self.learning_limit = learning_limit
        self.leases = leases
        self.clock = clock

    # ------------------------------------------------------------------
    # Phase A
    # ------------------------------------------------------------------

    def check_spawn_needed(self) -> SpawnCheck:
        """Recommend roles that need another agent.

        Both rules may recommend the same role; duplicates are left for
        phase B to cap.
        """
        with self.session_factory() as session:
            agents = crud.list_agents(session=session)
            pending = (
                session.query(Dispatch)
                .filter(Dispatch.status == DispatchStatus.PENDING.value)
                .order_by(Dispatch.id)
                .all()
            )

            recommendations: list[SpawnRecommendation] = []

            backlog_by_role = Counter(self.classifier(d) for d in pending)
            for role, count in backlog_by_role.items():
                if count > self.backlog_threshold:
                    recommendations.append(
                        SpawnRecommendation(role=role, reason=f"High backlog: {count} pending tasks")
                    )

            total_by_role: Counter[str] = Counter()
            busy_by_role: Counter[str] = Counter()
            for agent in agents:
                role = agent.role or GENERAL_ROLE
                total_by_role[role] += 1
                if agent.status == AgentStatus.BUSY.value:
                    busy_by_role[role] += 1

            for role, total in total_by_role.items():
                if total > 0 and busy_by_role[role] == total:
                    recommendations.append(
                        SpawnRecommendation(role=role, reason=f"All {total} {role} agents busy")
                    )

            check = SpawnCheck(
                recommendations=recommendations,
                current_agents=len(agents),
                pending_dispatches=len(pending),
            )

        logger.info(
            "spawn_check_completed",
            current_agents=check.current_agents,
            pending_dispatches=check.pending_dispatches,
            recommendations=[r.role for r in check.recommendations],
        )
        return check

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    def auto_spawn(self, role: str, reason: str, enforce_cap: bool = False) -> SpawnResult:
        """Create a new agent for a role from its template.

        Args:
            role: Role to spawn
            reason: Why the agent is needed (stored on the agent and the event)
            enforce_cap: Refuse when the role is already at the cap

        Returns:
            SpawnResult naming the new agent

        Raises:
            UnknownRoleError: If the role has no template
            CapacityExceededError: If ``enforce_cap`` and the role is at the cap
        """
        role = role.lower()
        template = self.templates.get(role)
        if template is None:
            raise UnknownRoleError(role)

        with self.session_factory() as session, session.begin():
            count = session.query(Agent).filter(Agent.role == role).count()
            if enforce_cap and count >= self.role_cap:
                raise CapacityExceededError(f"Role '{role}' already has {count} agents (cap {self.role_cap})")

            name = self._next_name(session, template, count)
            learnings = self._relevant_learnings(session, template)
            now = self.clock()

            agent = Agent(
                name=name,
                role=role,
                status=AgentStatus.IDLE.value,
                status_since=now,
                current_task_id=None,
                skills=list(template.skills),
                territory=list(template.territory),
                capability_tags=list(template.capability_tags),
                base_prompt=build_prompt(template, learnings),
                spawned_at=now,
                spawn_reason=reason,
                last_seen=now,
                created_at=now,
            )
            session.add(agent)
            session.flush()

            session.add(
                crud.build_activity_event(
                    agent,
                    {
                        "event_type": "agent_spawned",
                        "role": role,
                        "reason": reason,
                        "template": template.name_prefix,
                    },
                    title=f"{name} joined the team",
                    description=f"Auto-spawned: {reason}",
                    now=now,
                )
            )
            agent_id = agent.id

        logger.info(
            "agent_spawned",
            agent_id=agent_id,
            name=name,
            role=role,
            reason=reason,
            learnings=len(learnings),
        )
        return SpawnResult(success=True, agent_id=agent_id, name=name, role=role, reason=reason)

    def _next_name(self, session: Session, template: RoleTemplate, count: int) -> str:
        """``PREFIX`` for the first agent of a role, else ``PREFIX-<count+1>``, skipping taken names."""
        prefix = template.name_prefix.upper()
        name = prefix if count == 0 else f"{prefix}-{count + 1}"
        n = count + 2 if count else 2

        while crud.get_agent_by_name(name, session=session) is not None:
            logger.debug("agent_name_taken", name=name)
            name = f"{prefix}-{n}"
            n += 1

        return name

    def _relevant_learnings(self, session: Session, template: RoleTemplate) -> list[Learning]:
        prefix = template.name_prefix.lower()
        relevant = [
            learning
            for learning in crud.list_recent_learnings(session)
            if template.role in (learning.tags or []) or (learning.agent_name or "").lower() == prefix
        ]
        return relevant[: self.learning_limit]

    # ------------------------------------------------------------------
    # Phase B
    # ------------------------------------------------------------------

    def check_and_auto_spawn(self) -> AutoSpawnSummary:
        """Run phase A, then spawn for each recommendation under the role cap.

        Raises:
            LeaseHeldError: If a lease manager is configured and another pass holds the lease
        """
        if self.leases is None:
            return self._check_and_spawn()

        with self.leases.hold(AUTOSCALER_LEASE):
            return self._check_and_spawn()

    def _check_and_spawn(self) -> AutoSpawnSummary:
        check = self.check_spawn_needed()
        summary = AutoSpawnSummary(
            checked=self.clock(),
            recommendations_count=len(check.recommendations),
        )

        for rec in check.recommendations:
            try:
                result = self.auto_spawn(rec.role, rec.reason, enforce_cap=True)
            except CapacityExceededError:
                logger.info("autospawn_skipped_at_capacity", role=rec.role, cap=self.role_cap)
                summary.skipped.append(rec)
                continue
            except ConvoyError as e:
                logger.error("autospawn_failed", role=rec.role, reason=rec.reason, error=str(e))
                summary.skipped.append(rec)
                continue

            summary.spawned.append(SpawnedAgent(role=result.role, name=result.name))

        summary.spawned_count = len(summary.spawned)
        logger.info(
            "autospawn_completed",
            recommendations=summary.recommendations_count,
            spawned=summary.spawned_count,
            skipped=len(summary.skipped),
        )
        return summary
