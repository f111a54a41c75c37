"""Data models for tracked operations, resources and configuration."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_operation_id() -> str:
    """Generate an opaque, unguessable operation ID."""
    return f"op-{uuid.uuid4().hex}"


ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]*$"


class EntityKind(str, Enum):
    """Kinds of entity the engine tracks."""
    OPERATION = "operation"
    RESOURCE = "resource"


class OperationStatus(str, Enum):
    """Stepwise operation lifecycle states."""
    NOT_STARTED = "notStarted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ResourceStatus(str, Enum):
    """Status values embedded in a RELO resource."""
    PROVISIONING = "provisioning"
    UPDATING = "updating"
    SUCCEEDED = "succeeded"
    DELETING = "deleting"
    DELETED = "deleted"
    FAILED = "failed"


class Event(str, Enum):
    """Events that drive state transitions."""
    START = "start"
    PROGRESS = "progress"
    COMPLETE = "complete"
    FAIL = "fail"
    CANCEL = "cancel"


OPERATION_TERMINAL = frozenset(
    {OperationStatus.SUCCEEDED, OperationStatus.FAILED, OperationStatus.CANCELLED}
)
# A failed resource can still be deleted, so only deletion ends a resource
RESOURCE_TERMINAL = frozenset({ResourceStatus.DELETED})
RESOURCE_IN_PROGRESS = frozenset(
    {ResourceStatus.PROVISIONING, ResourceStatus.UPDATING, ResourceStatus.DELETING}
)


class EntityRef(BaseModel):
    """Reference to a tracked entity."""
    kind: EntityKind
    id: str = Field(pattern=ID_PATTERN)

    model_config = {"frozen": True}

    @classmethod
    def operation(cls, entity_id: str) -> "EntityRef":
        return cls(kind=EntityKind.OPERATION, id=entity_id)

    @classmethod
    def resource(cls, entity_id: str) -> "EntityRef":
        return cls(kind=EntityKind.RESOURCE, id=entity_id)

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.id}"


class ErrorDetail(BaseModel):
    """Error reported for a failed entity."""
    code: str
    message: str = ""


class Operation(BaseModel):
    """Stepwise operation record."""
    id: str = Field(default_factory=new_operation_id, pattern=ID_PATTERN)
    status: OperationStatus = OperationStatus.NOT_STARTED
    created_at: datetime = Field(default_factory=utcnow)
    last_action_at: datetime = Field(default_factory=utcnow)
    resource_location: Optional[str] = None
    retry_after: int = Field(default=30, ge=0)
    percent_complete: Optional[int] = Field(default=None, ge=0, le=100)
    error: Optional[ErrorDetail] = None
    retention_expiry: Optional[datetime] = None
    tombstoned_at: Optional[datetime] = None
    version: int = 0

    @model_validator(mode="after")
    def check_location(self) -> "Operation":
        # resource_location is present iff the operation succeeded
        if self.status == OperationStatus.SUCCEEDED and not self.resource_location:
            raise ValueError("a succeeded operation requires resource_location")
        if self.status != OperationStatus.SUCCEEDED and self.resource_location:
            raise ValueError("resource_location is only set on succeeded operations")
        return self

    @property
    def ref(self) -> EntityRef:
        return EntityRef.operation(self.id)

    @property
    def is_terminal(self) -> bool:
        return self.status in OPERATION_TERMINAL


class Resource(BaseModel):
    """RELO resource carrying its own status field."""
    id: str = Field(pattern=ID_PATTERN)
    status: ResourceStatus = ResourceStatus.PROVISIONING
    created_at: datetime = Field(default_factory=utcnow)
    last_action_at: datetime = Field(default_factory=utcnow)
    retry_after: int = Field(default=30, ge=0)
    error: Optional[ErrorDetail] = None
    properties: Dict[str, Any] = Field(default_factory=dict)
    tombstoned_at: Optional[datetime] = None
    version: int = 0

    @property
    def ref(self) -> EntityRef:
        return EntityRef.resource(self.id)

    @property
    def is_terminal(self) -> bool:
        return self.status in RESOURCE_TERMINAL

    @property
    def in_progress(self) -> bool:
        return self.status in RESOURCE_IN_PROGRESS


Entity = Union[Operation, Resource]


class TransitionRecord(BaseModel):
    """Entry in the transition log, consumed by notification collaborators."""
    entity_kind: EntityKind
    entity_id: str
    event: Event
    from_status: str
    to_status: str
    at: datetime = Field(default_factory=utcnow)
    detail: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class Config(BaseModel):
    """Engine policy, persisted alongside the data."""
    default_retry_after: int = Field(default=30, ge=0)  # seconds
    retention_seconds: int = Field(default=86400, ge=0)  # 24 hours after finishing
    tombstone_grace_seconds: int = Field(default=86400, ge=0)
    stale_after_seconds: int = Field(default=86400, ge=0)  # 0 disables
    sweep_interval: float = Field(default=60.0, gt=0)
    sweep_max_retries: int = Field(default=3, ge=1)
    lock_timeout: float = Field(default=5.0, gt=0)
