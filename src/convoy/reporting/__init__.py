"""Standup reporting."""

from convoy.reporting.standup import (
    StandupAggregator,
    format_agent_standup,
    format_fleet_summary,
)

__all__ = ["StandupAggregator", "format_agent_standup", "format_fleet_summary"]
