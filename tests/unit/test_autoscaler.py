"""Tests for the fleet autoscaler."""

from unittest.mock import patch

import pytest

from convoy.core.errors import CapacityExceededError, UnknownRoleError
from convoy.core.models import SpawnCheck, SpawnRecommendation
from convoy.database import crud
from convoy.database.models import ActivityEvent, Agent, Dispatch
from convoy.orchestrator.autoscaler import (
    GENERAL_ROLE,
    FleetAutoscaler,
    build_prompt,
    keyword_role_classifier,
)
from convoy.orchestrator.templates import DEFAULT_TEMPLATES


@pytest.fixture
def autoscaler(session_factory, clock):
    return FleetAutoscaler(session_factory, DEFAULT_TEMPLATES, backlog_threshold=3, role_cap=2, clock=clock)


def _add_pending(session_factory, agent_id: int, count: int, command: str = "work_on_task", payload: str = "{}"):
    with session_factory() as session:
        for _ in range(count):
            session.add(Dispatch(agent_id=agent_id, command=command, payload=payload, status="pending", created_at=0))
        session.commit()


class TestClassifier:
    def test_matches_role_in_payload(self):
        classify = keyword_role_classifier(["backend", "qa"])
        dispatch = Dispatch(command="work_on_task", payload='{"title": "[QA] regression pass"}')

        assert classify(dispatch) == "qa"

    def test_falls_back_to_general(self):
        classify = keyword_role_classifier(["backend"])

        assert classify(Dispatch(command="work_on_task", payload="{}")) == GENERAL_ROLE


class TestCheckSpawnNeeded:
    def test_backlog_over_threshold(self, autoscaler, make_agent, session_factory):
        agent_id = make_agent("SAM", role="backend", status="idle")
        _add_pending(session_factory, agent_id, 4, payload='{"title": "[backend] job"}')

        check = autoscaler.check_spawn_needed()

        assert check.pending_dispatches == 4
        assert check.current_agents == 1
        assert [r.role for r in check.recommendations] == ["backend"]
        assert check.recommendations[0].reason == "High backlog: 4 pending tasks"

    def test_backlog_at_threshold_is_fine(self, autoscaler, make_agent, session_factory):
        agent_id = make_agent("SAM", role="backend", status="idle")
        _add_pending(session_factory, agent_id, 3, payload='{"title": "[backend] job"}')

        assert autoscaler.check_spawn_needed().recommendations == []

    def test_all_role_agents_busy(self, autoscaler, make_agent):
        make_agent("LEO", role="frontend", status="busy")
        make_agent("LEO-2", role="frontend", status="busy")
        make_agent("SAM", role="backend", status="busy")
        make_agent("SAM-2", role="backend", status="idle")

        check = autoscaler.check_spawn_needed()

        assert [(r.role, r.reason) for r in check.recommendations] == [("frontend", "All 2 frontend agents busy")]

    def test_custom_classifier(self, session_factory, clock, make_agent):
        agent_id = make_agent("SAM", role="backend", status="idle")
        _add_pending(session_factory, agent_id, 2)
        autoscaler = FleetAutoscaler(
            session_factory, DEFAULT_TEMPLATES, classifier=lambda d: "qa", backlog_threshold=1, clock=clock
        )

        assert [r.role for r in autoscaler.check_spawn_needed().recommendations] == ["qa"]


class TestAutoSpawn:
    def test_names_follow_prefix_and_count(self, autoscaler, session_factory):
        first = autoscaler.auto_spawn("backend", "high backlog")
        second = autoscaler.auto_spawn("backend", "high backlog")

        assert first.name == "SAM"
        assert second.name == "SAM-2"

        with session_factory() as session:
            agent = session.get(Agent, first.agent_id)
            assert agent.role == "backend"
            assert agent.status == "idle"
            assert agent.spawn_reason == "high backlog"
            assert agent.skills == list(DEFAULT_TEMPLATES["backend"].skills)

            event = session.query(ActivityEvent).filter_by(agent_id=first.agent_id).one()
            assert event.event_type == "agent_spawned"
            assert event.title == "SAM joined the team"
            assert event.description == "Auto-spawned: high backlog"
            assert event.event_metadata["template"] == "SAM"

    def test_taken_name_is_skipped(self, autoscaler, make_agent):
        # An agent named SAM-2 exists under another role
        make_agent("SAM", role="backend")
        make_agent("SAM-2", role="general")

        assert autoscaler.auto_spawn("backend", "more hands").name == "SAM-3"

    def test_learnings_folded_into_prompt(self, autoscaler, session_factory):
        with session_factory() as session:
            crud.create_learning("Run migrations before tests", tags=["backend"], now=1, session=session)
            crud.create_learning("SAM prefers small PRs", agent_name="sam", now=2, session=session)
            crud.create_learning("Frontend only", tags=["frontend"], now=3, session=session)

        result = autoscaler.auto_spawn("backend", "more hands")

        with session_factory() as session:
            prompt = session.get(Agent, result.agent_id).base_prompt
        assert prompt.startswith(DEFAULT_TEMPLATES["backend"].base_prompt)
        assert "## Learnings from Team" in prompt
        assert "- SAM prefers small PRs\n" in prompt
        assert "- Run migrations before tests\n" in prompt
        assert "Frontend only" not in prompt

    def test_learning_limit(self, session_factory, clock):
        with session_factory() as session:
            for i in range(4):
                crud.create_learning(f"lesson {i}", tags=["qa"], now=i, session=session)
        autoscaler = FleetAutoscaler(session_factory, DEFAULT_TEMPLATES, learning_limit=2, clock=clock)

        result = autoscaler.auto_spawn("qa", "coverage")

        with session_factory() as session:
            prompt = session.get(Agent, result.agent_id).base_prompt
        assert "lesson 3" in prompt
        assert "lesson 2" in prompt
        assert "lesson 1" not in prompt

    def test_unknown_role(self, autoscaler):
        with pytest.raises(UnknownRoleError):
            autoscaler.auto_spawn("astronaut", "why not")

    def test_cap_only_when_enforced(self, autoscaler):
        for _ in range(2):
            autoscaler.auto_spawn("qa", "coverage")

        with pytest.raises(CapacityExceededError):
            autoscaler.auto_spawn("qa", "coverage", enforce_cap=True)

        assert autoscaler.auto_spawn("qa", "manual").name == "QUINN-3"


class TestBuildPrompt:
    def test_without_learnings(self):
        template = DEFAULT_TEMPLATES["qa"]
        assert build_prompt(template, []) == template.base_prompt


class TestCheckAndAutoSpawn:
    def test_cap_limits_repeated_recommendations(self, autoscaler, session_factory):
        recommendations = [SpawnRecommendation(role="backend", reason=f"rec {i}") for i in range(3)]
        check = SpawnCheck(recommendations=recommendations)

        with patch.object(autoscaler, "check_spawn_needed", return_value=check):
            summary = autoscaler.check_and_auto_spawn()

        assert summary.recommendations_count == 3
        assert summary.spawned_count == 2
        assert [s.name for s in summary.spawned] == ["SAM", "SAM-2"]
        assert [r.reason for r in summary.skipped] == ["rec 2"]
        with session_factory() as session:
            assert session.query(Agent).filter_by(role="backend").count() == 2

    def test_unknown_role_skipped(self, autoscaler):
        check = SpawnCheck(
            recommendations=[
                SpawnRecommendation(role=GENERAL_ROLE, reason="High backlog: 20 pending tasks"),
                SpawnRecommendation(role="qa", reason="All 1 qa agents busy"),
            ]
        )

        with patch.object(autoscaler, "check_spawn_needed", return_value=check):
            summary = autoscaler.check_and_auto_spawn()

        assert [s.role for s in summary.spawned] == ["qa"]
        assert [r.role for r in summary.skipped] == [GENERAL_ROLE]

    def test_saturated_role_grows(self, autoscaler, make_agent):
        make_agent("QUINN", role="qa", status="busy")

        summary = autoscaler.check_and_auto_spawn()

        assert [s.name for s in summary.spawned] == ["QUINN-2"]
        assert summary.checked == autoscaler.clock()
