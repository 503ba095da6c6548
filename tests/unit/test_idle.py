"""Tests for idle detection."""

import pytest

from convoy.core.errors import AgentNotFoundError
from convoy.database import crud
from convoy.database.models import Dispatch
from convoy.orchestrator.idle import IdleDetector


@pytest.fixture
def detector(session_factory):
    return IdleDetector(session_factory)


class TestIdleDetector:
    @pytest.mark.parametrize("status", ["idle", "online"])
    def test_idle_statuses(self, detector, make_agent, status):
        make_agent("SAM", status=status)

        check = detector.check_idle("sam")

        assert check.idle
        assert check.reason == "available"
        assert check.canonical_name == "sam"

    def test_busy_agent(self, detector, make_agent):
        make_agent("SAM", status="busy")

        check = detector.check_idle("SAM")

        assert not check.idle
        assert check.reason == "status_busy"

    def test_running_dispatch_overrides_status(self, detector, make_agent, session_factory):
        agent_id = make_agent("SAM", status="idle")
        with session_factory() as session:
            session.add(Dispatch(agent_id=agent_id, command="work_on_task", payload="{}", status="running", created_at=0))
            session.commit()

        check = detector.check_idle("SAM")

        assert not check.idle
        assert check.reason == "has_running_dispatch"

    def test_canonical_name_from_mapping(self, detector, make_agent, session_factory):
        agent_id = make_agent("SAMUEL", status="idle")
        with session_factory() as session:
            crud.create_agent_mapping("sam", agent_id, session=session)

        assert detector.check_idle("Samuel").canonical_name == "sam"

    def test_lookup_by_canonical_name(self, detector, make_agent, session_factory):
        agent_id = make_agent("SAMUEL", status="busy")
        with session_factory() as session:
            crud.create_agent_mapping("sam", agent_id, session=session)

        check = detector.check_idle("sam")

        assert check.agent_id == agent_id
        assert check.reason == "status_busy"

    def test_unknown_agent(self, detector):
        with pytest.raises(AgentNotFoundError):
            detector.check_idle("ghost")
