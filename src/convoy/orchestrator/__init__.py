"""Dispatch, fleet cycle, autoscaling and scheduling."""

from convoy.orchestrator.autoscaler import FleetAutoscaler
from convoy.orchestrator.cycle import FleetCycle
from convoy.orchestrator.dispatcher import DispatchEngine
from convoy.orchestrator.idle import IdleDetector
from convoy.orchestrator.matcher import TaskMatcher
from convoy.orchestrator.scheduler import FleetScheduler

__all__ = [
    "DispatchEngine",
    "FleetAutoscaler",
    "FleetCycle",
    "FleetScheduler",
    "IdleDetector",
    "TaskMatcher",
]
