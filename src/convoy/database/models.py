"""SQLAlchemy database models for Convoy.

All timestamps are integer epoch milliseconds.
"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base

from convoy.utils.clock import now_ms

Base = declarative_base()


class Agent(Base):
    """A worker in the fleet."""

    __tablename__ = "agents"

    id = Column(Integer, primary_key=True)

    # Identity (stored upper-cased, unique case-insensitively)
    name = Column(String(100), unique=True, nullable=False, index=True)
    role = Column(String(50), nullable=False, index=True)

    # Status
    status = Column(String(20), nullable=False, default="offline", index=True)  # online, idle, busy, offline
    status_reason = Column(Text)
    status_since = Column(BigInteger)
    current_task_id = Column(Integer, nullable=True)

    # Profile
    skills = Column(JSON, default=list)
    territory = Column(JSON, default=list)  # advisory only
    capability_tags = Column(JSON, default=list)  # prompt construction only
    base_prompt = Column(Text)
    profile = Column(Text)

    # Lifecycle
    spawned_at = Column(BigInteger)
    spawn_reason = Column(Text)
    last_seen = Column(BigInteger)
    last_heartbeat = Column(BigInteger)
    created_at = Column(BigInteger, nullable=False, default=now_ms)

    # Optimistic concurrency token
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class Task(Base):
    """A unit of work in the queue."""

    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True)

    # Details
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=False, default="")

    # Status
    status = Column(String(20), nullable=False, default="backlog", index=True)  # backlog, todo, in_progress, done
    priority = Column(String(20), nullable=False, default="medium")  # urgent, high, medium, low

    # Assignment
    assignee_id = Column(Integer, ForeignKey("agents.id", ondelete="SET NULL"), index=True)
    agent_name = Column(String(100))  # affinity hint, lower-cased

    # External references
    external_id = Column(String(50), index=True)
    project_ref = Column(String(100))

    # Tracking
    created_at = Column(BigInteger, nullable=False, default=now_ms)
    updated_at = Column(BigInteger, nullable=False, default=now_ms, index=True)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (Index("idx_tasks_status_assignee", "status", "assignee_id"),)


class Dispatch(Base):
    """Audit and control record of one assignment attempt."""

    __tablename__ = "dispatches"

    id = Column(Integer, primary_key=True)
    agent_id = Column(Integer, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)

    command = Column(String(100), nullable=False)
    payload = Column(Text, nullable=False)  # JSON document
    status = Column(String(20), nullable=False, default="pending")  # pending, running, completed, failed

    created_at = Column(BigInteger, nullable=False, default=now_ms)
    started_at = Column(BigInteger)
    finished_at = Column(BigInteger)
    error_message = Column(Text)

    __table_args__ = (
        Index("idx_dispatches_agent_status", "agent_id", "status"),
        Index("idx_dispatches_status", "status"),
        # At most one running dispatch per agent
        Index(
            "uq_dispatches_one_running",
            "agent_id",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
    )


class ActivityEvent(Base):
    """Append-only audit log entry."""

    __tablename__ = "activity_events"

    id = Column(Integer, primary_key=True)
    agent_id = Column(Integer, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    agent_name = Column(String(100), nullable=False)  # lower-cased

    category = Column(String(50), nullable=False)
    event_type = Column(String(100), nullable=False, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text)

    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="SET NULL"))
    external_id = Column(String(50))
    project_ref = Column(String(100))

    event_metadata = Column("metadata", JSON, default=dict)

    timestamp = Column(BigInteger, nullable=False, default=now_ms, index=True)

    __table_args__ = (Index("idx_events_agent_timestamp", "agent_id", "timestamp"),)


class Learning(Base):
    """A note distilled from an agent's past work."""

    __tablename__ = "learnings"

    id = Column(Integer, primary_key=True)
    agent_name = Column(String(100))
    summary = Column(Text, nullable=False)
    tags = Column(JSON, default=list)
    created_at = Column(BigInteger, nullable=False, default=now_ms, index=True)


class AgentMapping(Base):
    """Stable canonical identity for an agent, independent of its display name."""

    __tablename__ = "agent_mappings"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), unique=True, nullable=False)  # lower-cased
    agent_id = Column(Integer, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)


class Heartbeat(Base):
    """Liveness report from an agent."""

    __tablename__ = "heartbeats"

    id = Column(Integer, primary_key=True)
    agent_id = Column(Integer, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(20), nullable=False)
    heartbeat_metadata = Column("metadata", JSON, default=dict)
    timestamp = Column(BigInteger, nullable=False, default=now_ms)

    __table_args__ = (Index("idx_heartbeats_agent_timestamp", "agent_id", "timestamp"),)


class DailyNote(Base):
    """Generated standup note for one agent and day."""

    __tablename__ = "daily_notes"

    id = Column(Integer, primary_key=True)
    agent_id = Column(Integer, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    date = Column(String(10), nullable=False)  # YYYY-MM-DD
    content = Column(Text, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(BigInteger, nullable=False, default=now_ms)
    updated_at = Column(BigInteger, nullable=False, default=now_ms)

    __table_args__ = (UniqueConstraint("agent_id", "date", name="uq_daily_notes_agent_date"),)


class RunLease(Base):
    """Single-instance lease for a periodic run (fleet cycle, autoscaler)."""

    __tablename__ = "run_leases"

    name = Column(String(100), primary_key=True)
    token = Column(String(64), nullable=False)
    holder = Column(String(255))
    acquired_at = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=False)
