"""Tests for standup aggregation and rendering."""

import pytest

from convoy.core.errors import InvalidStateError
from convoy.database import crud
from convoy.database.models import ActivityEvent, DailyNote
from convoy.reporting.standup import StandupAggregator, format_agent_standup, format_fleet_summary
from convoy.utils.clock import DAY_MS, local_day_bounds, ms_to_datetime

DAY_START = 1_772_409_600_000
DAY_END = DAY_START + DAY_MS - 1


@pytest.fixture
def aggregator(session_factory, clock):
    return StandupAggregator(session_factory, clock=clock, reporter_name="MAX")


@pytest.fixture
def fleet(session_factory):
    """SAM (backend) and LEO (frontend), each with a canonical mapping."""
    ids = {}
    with session_factory() as session:
        for name, role in (("SAM", "backend"), ("LEO", "frontend")):
            agent = crud.create_agent(name, role, status="idle", now=0, session=session)
            crud.create_agent_mapping(name.lower(), agent.id, session=session)
            ids[name] = agent.id
    return ids


def _titles(tasks):
    return [t.title for t in tasks]


class TestReport:
    def test_updated_in_window_counts_without_events(self, aggregator, fleet, make_task):
        make_task("Wire up auth", status="in_progress", agent_name="sam", now=DAY_START + 1)

        report = aggregator.report(DAY_START, DAY_END)

        sam = report.per_agent[0]
        assert sam.agent.canonical_name == "sam"
        assert _titles(sam.in_progress) == ["Wire up auth"]
        assert report.summary.tasks_in_progress == 1
        assert report.summary.total_activities == 0

    def test_untouched_tasks_are_left_out(self, aggregator, fleet, make_task):
        make_task("Old work", status="in_progress", agent_name="sam", now=DAY_START - 1)

        report = aggregator.report(DAY_START, DAY_END)

        assert report.per_agent[0].in_progress == []
        assert report.summary.tasks_in_progress == 0

    @pytest.mark.parametrize(
        "offsets, expected",
        [
            ((0, 0), True),
            ((-10, 10), True),
            ((-10, 0), True),
            ((0, 10), True),
            ((1, 10), False),
            ((-10, -1), False),
        ],
    )
    def test_completion_follows_the_window(self, aggregator, fleet, session_factory, make_task, offsets, expected):
        done_at = DAY_START + 5_000
        task_id = make_task("Ship it", status="in_progress", agent_name="sam", now=DAY_START)
        with session_factory() as session:
            crud.update_task_status(task_id, "done", actor_id=fleet["SAM"], now=done_at, session=session)

        report = aggregator.report(done_at + offsets[0], done_at + offsets[1])

        assert (_titles(report.per_agent[0].completed) == ["Ship it"]) is expected
        assert (report.summary.tasks_completed == 1) is expected

    def test_unassigned_completion_is_credited(self, aggregator, fleet, session_factory, make_task):
        task_id = make_task("Ship it", status="in_progress", agent_name="sam", now=DAY_START)
        with session_factory() as session:
            with pytest.raises(InvalidStateError):
                crud.update_task_status(task_id, "done", now=DAY_START + 5_000, session=session)
            crud.update_task_status(task_id, "done", actor_id=fleet["SAM"], now=DAY_START + 5_000, session=session)

        report = aggregator.report(DAY_START, DAY_END)

        assert _titles(report.per_agent[0].completed) == ["Ship it"]
        assert report.summary.tasks_completed == 1

    def test_reopened_task_is_not_completed(self, aggregator, fleet, session_factory, make_task):
        task_id = make_task("Flaky", status="in_progress", agent_name="sam", now=DAY_START)
        with session_factory() as session:
            crud.update_task_status(task_id, "done", actor_id=fleet["SAM"], now=DAY_START + 10, session=session)
            crud.update_task_status(task_id, "in_progress", actor_id=fleet["SAM"], now=DAY_START + 20, session=session)

        sam = aggregator.report(DAY_START, DAY_END).per_agent[0]

        assert sam.completed == []
        assert _titles(sam.in_progress) == ["Flaky"]

    def test_ownership_by_affinity_then_assignee(self, aggregator, fleet, session_factory, make_task):
        from convoy.database.models import Task

        make_task("Affinity to LEO", status="todo", agent_name="leo", now=DAY_START)
        assigned = make_task("Assigned to SAM", status="todo", now=DAY_START)
        claimed = make_task("Claimed by LEO, assigned to SAM", status="todo", agent_name="LEO", now=DAY_START)
        with session_factory() as session:
            for task_id in (assigned, claimed):
                session.get(Task, task_id).assignee_id = fleet["SAM"]
            session.commit()

        sam, leo = aggregator.report(DAY_START, DAY_END).per_agent

        assert _titles(sam.backlog) == ["Assigned to SAM"]
        assert _titles(leo.backlog) == ["Affinity to LEO", "Claimed by LEO, assigned to SAM"]

    def test_affinity_matches_display_name(self, aggregator, session_factory, make_task):
        with session_factory() as session:
            agent = crud.create_agent("SAMUEL", "backend", session=session)
            crud.create_agent_mapping("sam", agent.id, session=session)
        make_task("By display name", status="backlog", agent_name="samuel", now=DAY_START)
        make_task("By canonical name", status="backlog", agent_name="sam", now=DAY_START)

        (sam,) = aggregator.report(DAY_START, DAY_END).per_agent

        assert _titles(sam.backlog) == ["By display name", "By canonical name"]

    def test_blocked_keyword(self, aggregator, fleet, make_task):
        make_task("Deploy", status="todo", agent_name="sam", description="BLOCKED on credentials", now=DAY_START)
        make_task("Blocked by review", status="in_progress", agent_name="sam", now=DAY_START)
        make_task("Fine", status="todo", agent_name="sam", now=DAY_START)

        report = aggregator.report(DAY_START, DAY_END)

        assert _titles(report.per_agent[0].blocked) == ["Deploy", "Blocked by review"]
        assert report.summary.tasks_blocked == 2

    def test_summary_counts(self, aggregator, fleet, session_factory, make_task):
        task_id = make_task("Shared", status="in_progress", agent_name="sam", now=DAY_START)
        with session_factory() as session:
            crud.update_task_status(task_id, "done", actor_id=fleet["SAM"], now=DAY_START + 1, session=session)
            crud.update_task_status(task_id, "done", actor_id=fleet["LEO"], now=DAY_START + 2, session=session)
            crud.record_activity(
                fleet["LEO"], {"event_type": "message_sent", "recipient": "sam"}, title="hi", now=DAY_START + 3,
                session=session,
            )

        report = aggregator.report(DAY_START, DAY_END)

        assert report.summary.tasks_completed == 1
        assert report.summary.total_activities == 3
        assert report.summary.agents_active == 2
        assert report.summary.messages_sent == 1
        assert [a.activity_count for a in report.per_agent] == [1, 2]

    def test_unmapped_agents_not_reported(self, aggregator, session_factory):
        with session_factory() as session:
            crud.create_agent("GHOST", "qa", session=session)

        assert aggregator.report(DAY_START, DAY_END).per_agent == []

    def test_inverted_window(self, aggregator):
        with pytest.raises(ValueError):
            aggregator.report(DAY_END, DAY_START)

    def test_defaults_to_local_day(self, aggregator, fleet, clock):
        start, end = local_day_bounds(ms_to_datetime(clock()))

        report = aggregator.report()

        assert (report.start_ts, report.end_ts) == (start, end)


class TestFormatting:
    def test_agent_standup_markdown(self, aggregator, fleet, make_task):
        for i in range(7):
            make_task(f"Queued {i}", status="backlog", agent_name="sam", now=DAY_START)
        make_task("Login", status="in_progress", agent_name="sam", external_id="AGT-7", now=DAY_START)

        sam = aggregator.report(DAY_START, DAY_END).per_agent[0]
        markdown = format_agent_standup(sam, "2026-03-02")

        assert markdown.startswith("# SAM Daily Standup - 2026-03-02")
        assert "## Completed (0)\n- (none)" in markdown
        assert "## In Progress (1)\n- [AGT-7] Login" in markdown
        assert "## Queue (7)" in markdown
        assert "- Queued 4" in markdown
        assert "- Queued 5" not in markdown
        assert "- ... and 2 more" in markdown
        assert "## Blocked" not in markdown

    def test_fleet_summary_markdown(self, aggregator, fleet, make_task):
        make_task("Blocked on DNS", status="todo", agent_name="leo", external_id="AGT-9", now=DAY_START)
        make_task("Build API", status="in_progress", agent_name="sam", now=DAY_START)

        report = aggregator.report(DAY_START, DAY_END)
        markdown = format_fleet_summary(report, "2026-03-02")

        assert "# Fleet Daily Standup - 2026-03-02" in markdown
        assert "- **Active Agents:** 0/2" in markdown
        assert "- **SAM**: 0 done, 1 in progress (Working)" in markdown
        assert "- **LEO**: 0 done, 0 in progress (BLOCKED)" in markdown
        assert "## Blockers Requiring Attention\n- [LEO] AGT-9: Blocked on DNS" in markdown
        assert "_Generated" not in markdown


class TestGenerateDailyStandup:
    def test_saves_notes_and_logs_event(self, aggregator, fleet, session_factory, make_task, clock):
        with session_factory() as session:
            max_id = crud.create_agent("MAX", "planner", session=session).id
        make_task("Build API", status="in_progress", agent_name="sam")

        digest = aggregator.generate_daily_standup()
        again = aggregator.generate_daily_standup()

        date = ms_to_datetime(clock()).strftime("%Y-%m-%d")
        assert digest.date == date
        assert digest.agents_processed == 2
        assert set(digest.notes) == {"sam", "leo"}
        assert "- Build API" in digest.notes["sam"]
        assert digest.summary_markdown.startswith(f"# Fleet Daily Standup - {date}")

        with session_factory() as session:
            notes = session.query(DailyNote).order_by(DailyNote.agent_id).all()
            assert [n.agent_id for n in notes] == [fleet["SAM"], fleet["LEO"]]
            assert all(n.version == 2 for n in notes)
            assert notes[0].content == again.notes["sam"]

            events = session.query(ActivityEvent).filter_by(event_type="standup_generated").all()
            assert len(events) == 2
            assert events[0].agent_id == max_id
            assert events[0].event_metadata == {
                "event_type": "standup_generated",
                "source": "standup_scheduler",
                "date": date,
            }

    def test_summary_stamped_with_clock_time(self, aggregator, fleet, clock):
        digest = aggregator.generate_daily_standup()

        stamp = ms_to_datetime(clock()).isoformat(timespec="seconds")
        assert digest.summary_markdown.endswith(f"---\n_Generated {stamp}_")

    def test_missing_reporter_skips_event(self, aggregator, fleet, session_factory):
        digest = aggregator.generate_daily_standup()

        assert digest.agents_processed == 2
        with session_factory() as session:
            assert session.query(ActivityEvent).filter_by(event_type="standup_generated").count() == 0
            assert session.query(DailyNote).count() == 2
