"""End-to-end tests for the CLI against a throwaway SQLite database."""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from convoy.cli import main


@pytest.fixture
def invoke(tmp_path):
    db_url = f"sqlite:///{tmp_path / 'cli.sqlite'}"
    runner = CliRunner()

    def _invoke(*args):
        with patch("convoy.cli.configure_logging"):
            return runner.invoke(main, ["--database-url", db_url, *args])

    assert _invoke("init").exit_code == 0
    return _invoke


def test_dispatch_flow(invoke):
    assert invoke("agent", "add", "sam", "--role", "backend").exit_code == 0
    assert invoke("task", "add", "Low chore", "--priority", "low").exit_code == 0
    assert invoke("task", "add", "Hotfix", "--priority", "urgent", "--external-id", "AGT-1").exit_code == 0

    result = invoke("next-task", "--agent", "SAM")
    assert "AGT-1" in result.output

    result = invoke("dispatch", "SAM")
    assert result.exit_code == 0
    assert "AGT-1" in result.output

    result = invoke("dispatch", "SAM")
    assert result.exit_code == 1
    assert "agent_not_idle" in result.output

    result = invoke("agent", "list")
    assert "busy" in result.output


def test_duplicate_agent(invoke):
    invoke("agent", "add", "SAM", "--role", "backend")

    result = invoke("agent", "add", "sam", "--role", "backend")

    assert result.exit_code == 1
    assert "already exists" in result.output


def test_heartbeat_rejects_unknown_metadata(invoke):
    invoke("agent", "add", "SAM", "--role", "backend")

    assert invoke("agent", "heartbeat", "SAM", "--metadata", '{"pid": 12}').exit_code == 0
    assert invoke("agent", "heartbeat", "SAM", "--metadata", '{"mood": "great"}').exit_code == 1


def test_spawn_and_cap(invoke):
    assert "SAM" in invoke("spawn", "backend").output
    assert "SAM-2" in invoke("spawn", "backend").output

    result = invoke("spawn", "backend", "--enforce-cap")
    assert result.exit_code == 1

    result = invoke("spawn", "astronaut")
    assert result.exit_code == 1
    assert "Unknown role" in result.output


def test_cycle_and_standup(invoke):
    invoke("agent", "add", "SAM", "--role", "backend")
    invoke("mapping", "add", "sam", "SAM")
    invoke("task", "add", "Build API", "--agent", "sam")

    result = invoke("cycle")
    assert result.exit_code == 0
    assert "dispatched" in result.output

    result = invoke("standup", "--markdown")
    assert result.exit_code == 0
    assert "# SAM Daily Standup" in result.output
    assert "Build API" in result.output


def test_standup_inverted_window(invoke):
    result = invoke("standup", "--start", "10", "--end", "5")
    assert result.exit_code == 1


def test_move_unassigned_task_needs_agent(invoke):
    invoke("agent", "add", "SAM", "--role", "backend")
    invoke("mapping", "add", "sam", "SAM")
    invoke("task", "add", "Ship it", "--agent", "sam")

    result = invoke("task", "move", "1", "done")
    assert result.exit_code == 1
    assert "unassigned" in result.output

    assert invoke("task", "move", "1", "done", "--by", "sam").exit_code == 0
    result = invoke("standup", "--markdown")
    assert "## Completed (1)" in result.output
