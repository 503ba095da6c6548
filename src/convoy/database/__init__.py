"""Database models and persistence."""

from convoy.database.models import (
    ActivityEvent,
    Agent,
    AgentMapping,
    Base,
    DailyNote,
    Dispatch,
    Heartbeat,
    Learning,
    RunLease,
    Task,
)
from convoy.database.session import dispose_engines, get_session_factory, init_db

__all__ = [
    "Base",
    "Agent",
    "Task",
    "Dispatch",
    "ActivityEvent",
    "Learning",
    "AgentMapping",
    "Heartbeat",
    "DailyNote",
    "RunLease",
    "init_db",
    "dispose_engines",
    "get_session_factory",
]
