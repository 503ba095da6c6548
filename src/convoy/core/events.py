"""Typed metadata for activity events and heartbeats.

Every activity event carries metadata shaped by its event type. The variants
form a discriminated union on ``event_type`` so reporting code can match on
them exhaustively; unknown event types and stray keys are rejected.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Metadata(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class AutoDispatchedMeta(_Metadata):
    event_type: Literal["auto_dispatched"] = "auto_dispatched"
    source: Literal["auto_dispatch", "auto_dispatch_cycle"] = "auto_dispatch"
    priority: str
    dispatch_id: int | None = None


class StatusChangedMeta(_Metadata):
    event_type: Literal["status_changed"] = "status_changed"
    from_status: str | None = None
    to_status: str


class TaskCreatedMeta(_Metadata):
    event_type: Literal["task_created"] = "task_created"
    priority: str


class MessageSentMeta(_Metadata):
    event_type: Literal["message_sent"] = "message_sent"
    recipient: str


class AgentSpawnedMeta(_Metadata):
    event_type: Literal["agent_spawned"] = "agent_spawned"
    role: str
    reason: str
    template: str


class StandupGeneratedMeta(_Metadata):
    event_type: Literal["standup_generated"] = "standup_generated"
    source: str = "standup_scheduler"
    date: str


class DispatchTransitionMeta(_Metadata):
    event_type: Literal["dispatch_transition"] = "dispatch_transition"
    dispatch_id: int
    to_status: str


EventMetadata = Annotated[
    AutoDispatchedMeta
    | StatusChangedMeta
    | TaskCreatedMeta
    | MessageSentMeta
    | AgentSpawnedMeta
    | StandupGeneratedMeta
    | DispatchTransitionMeta,
    Field(discriminator="event_type"),
]

EVENT_CATEGORIES = {
    "auto_dispatched": "task",
    "status_changed": "task",
    "task_created": "task",
    "message_sent": "message",
    "agent_spawned": "system",
    "standup_generated": "system",
    "dispatch_transition": "dispatch",
}

_metadata_adapter: TypeAdapter = TypeAdapter(EventMetadata)


def parse_metadata(data: dict) -> EventMetadata:
    """Validate a stored metadata dict into its typed variant."""
    return _metadata_adapter.validate_python(data)


class HeartbeatMetadata(BaseModel):
    """Optional details an agent reports with a heartbeat."""

    model_config = ConfigDict(extra="forbid")

    model: str | None = None
    host: str | None = None
    pid: int | None = None
    note: str | None = None
