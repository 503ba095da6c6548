"""Core data models for Convoy.

Enumerations shared with the database layer plus the result models returned
by the dispatch, cycle, autoscaler and standup operations.
"""

from enum import Enum

from pydantic import BaseModel, Field

from convoy.core.errors import ErrorCode


class AgentStatus(str, Enum):
    ONLINE = "online"
    IDLE = "idle"
    BUSY = "busy"
    OFFLINE = "offline"


# Statuses under which an agent may accept new work
IDLE_STATUSES = frozenset({AgentStatus.IDLE.value, AgentStatus.ONLINE.value})


class TaskStatus(str, Enum):
    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


OPEN_TASK_STATUSES = (TaskStatus.BACKLOG.value, TaskStatus.TODO.value)


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_ORDER = ("urgent", "high", "medium", "low")


def priority_rank(priority: str | None) -> int:
    """Rank used for sorting; unknown priorities sort after ``low``."""
    try:
        return PRIORITY_ORDER.index((priority or "").lower())
    except ValueError:
        return len(PRIORITY_ORDER)


class DispatchStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


WORK_ON_TASK = "work_on_task"


class IdleCheck(BaseModel):
    """Outcome of an idle check for one agent."""

    idle: bool
    reason: str = Field(..., description="available, status_<status> or has_running_dispatch")
    agent_id: int | None = None
    canonical_name: str | None = None
    status: str | None = None


class DispatchResult(BaseModel):
    """Result of a single dispatch attempt."""

    success: bool
    agent_name: str
    task_id: int | None = None
    external_id: str | None = None
    dispatch_id: int | None = None
    priority: str | None = None
    error_code: ErrorCode | None = None
    agent_status: str | None = Field(None, description="Current status when the agent was not idle")

    @classmethod
    def failure(cls, agent_name: str, code: ErrorCode, **kwargs) -> "DispatchResult":
        return cls(success=False, agent_name=agent_name, error_code=code, **kwargs)


class CycleOutcome(BaseModel):
    """Per-agent outcome of one fleet cycle."""

    agent: str
    success: bool
    task_id: int | None = None
    external_id: str | None = None
    dispatch_id: int | None = None
    reason: str | None = None


class SpawnRecommendation(BaseModel):
    role: str
    reason: str


class SpawnCheck(BaseModel):
    recommendations: list[SpawnRecommendation] = Field(default_factory=list)
    current_agents: int = 0
    pending_dispatches: int = 0


class SpawnResult(BaseModel):
    success: bool
    agent_id: int
    name: str
    role: str
    reason: str


class SpawnedAgent(BaseModel):
    role: str
    name: str


class AutoSpawnSummary(BaseModel):
    checked: int = Field(..., description="Timestamp (ms) of the check")
    recommendations_count: int = 0
    spawned_count: int = 0
    spawned: list[SpawnedAgent] = Field(default_factory=list)
    skipped: list[SpawnRecommendation] = Field(default_factory=list)


class TaskSummary(BaseModel):
    id: int
    title: str
    priority: str
    external_id: str | None = None


class AgentCard(BaseModel):
    id: int
    name: str
    role: str
    status: str
    canonical_name: str


class AgentStandup(BaseModel):
    agent: AgentCard
    completed: list[TaskSummary] = Field(default_factory=list)
    in_progress: list[TaskSummary] = Field(default_factory=list)
    backlog: list[TaskSummary] = Field(default_factory=list)
    blocked: list[TaskSummary] = Field(default_factory=list)
    activity_count: int = 0


class StandupSummary(BaseModel):
    total_activities: int = 0
    tasks_completed: int = 0
    tasks_in_progress: int = 0
    tasks_backlog: int = 0
    tasks_blocked: int = 0
    agents_active: int = 0
    messages_sent: int = 0


class StandupReport(BaseModel):
    start_ts: int
    end_ts: int
    per_agent: list[AgentStandup] = Field(default_factory=list)
    summary: StandupSummary = Field(default_factory=StandupSummary)


class StandupDigest(BaseModel):
    date: str
    agents_processed: int
    summary_markdown: str
    notes: dict[str, str] = Field(default_factory=dict)
