"""Fleet cycle - one dispatch attempt for every agent in the fleet."""

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from convoy.core.errors import ErrorCode
from convoy.core.models import AgentStatus, CycleOutcome
from convoy.database import crud
from convoy.database.state import FLEET_CYCLE_LEASE, LeaseManager
from convoy.orchestrator.dispatcher import DispatchEngine

logger = structlog.get_logger(__name__)


class FleetCycle:
    """Keeps idle agents fed.

    Each agent is handled independently. Offline agents are skipped and every
    other agent gets one dispatch attempt. An error while dispatching to one
    agent is logged and recorded as that agent's outcome; only integrity
    violations in the store abort the cycle.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        engine: DispatchEngine,
        leases: LeaseManager | None = None,
    ):
        """Initialize the cycle.

        Args:
            session_factory: Factory producing sessions on the entity store
            engine: Dispatch engine used for each agent
            leases: When given, each run holds the fleet-cycle lease, renewed before each agent
        """
        self.session_factory = session_factory
        self.engine = engine
        self.leases = leases

    def run_cycle(self) -> list[CycleOutcome]:
        """Run one cycle.

        Raises:
            LeaseHeldError: If a lease manager is configured and another run holds the lease
        """
        if self.leases is None:
            return self._run()

        with self.leases.hold(FLEET_CYCLE_LEASE) as token:
            return self._run(token)

    def _run(self, token: str | None = None) -> list[CycleOutcome]:
        with self.session_factory() as session:
            roster = [(a.name, a.status) for a in crud.list_agents(session=session)]

        outcomes: list[CycleOutcome] = []
        for name, status in roster:
            if status.lower() == AgentStatus.OFFLINE.value:
                continue

            # Stop the pass once another instance has taken the lease over
            if token is not None and not self.leases.renew(FLEET_CYCLE_LEASE, token):
                logger.warning("fleet_cycle_lease_lost", remaining_from=name)
                break

            try:
                result = self.engine.dispatch(name, source="auto_dispatch_cycle")
            except IntegrityError:
                raise
            except Exception as e:
                logger.error("cycle_dispatch_failed", agent=name, error=str(e), exc_info=True)
                outcomes.append(CycleOutcome(agent=name, success=False, reason="error"))
                continue

            if result.success:
                outcomes.append(
                    CycleOutcome(
                        agent=name,
                        success=True,
                        task_id=result.task_id,
                        external_id=result.external_id,
                        dispatch_id=result.dispatch_id,
                    )
                )
            else:
                reason = "no_tasks" if result.error_code == ErrorCode.NO_TASKS_AVAILABLE else result.error_code.value
                outcomes.append(CycleOutcome(agent=name, success=False, reason=reason))

        dispatched = sum(1 for o in outcomes if o.success)
        logger.info(
            "fleet_cycle_completed",
            agents=len(roster),
            attempted=len(outcomes),
            dispatched=dispatched,
        )
        return outcomes
