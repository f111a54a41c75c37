"""Polling gateway: answers GETs with the current snapshot of an entity."""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ValidationError
from .errors import NotFound
from .models import (
    EntityKind,
    EntityRef,
    ErrorDetail,
    Operation,
    Resource,
    ResourceStatus,
)
from .settings import get_settings
from .storage import Storage


class PollResult(BaseModel):
    """LRO-shaped response for the API layer to render."""
    id: str
    kind: EntityKind
    status: str
    status_code: int = 200
    created_at: datetime
    last_action_at: datetime
    retry_after: Optional[int] = None
    resource_location: Optional[str] = None
    location: Optional[str] = None
    percent_complete: Optional[int] = None
    error: Optional[ErrorDetail] = None
    properties: Optional[Dict[str, Any]] = None

    def headers(self) -> Dict[str, str]:
        """HTTP headers for the response."""
        headers = {}
        if self.location:
            headers["Location"] = self.location
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers

    def body(self) -> Dict[str, Any]:
        """Response body using the wire field names."""
        body: Dict[str, Any] = {
            "id": self.id,
            "status": self.status,
            "createdDateTime": self.created_at.isoformat(),
            "lastActionDateTime": self.last_action_at.isoformat(),
        }
        if self.resource_location:
            body["resourceLocation"] = self.resource_location
        if self.percent_complete is not None:
            body["percentComplete"] = self.percent_complete
        if self.error:
            body["error"] = self.error.model_dump()
        if self.properties is not None:
            body["properties"] = self.properties
        return body


def operation_location(operation_id: str) -> str:
    """URI of an operation."""
    return f"{get_settings().operations_path.rstrip('/')}/{operation_id}"


def resource_location(resource_id: str) -> str:
    """URI of a resource."""
    return f"{get_settings().resources_path.rstrip('/')}/{resource_id}"


def entity_ref(kind: EntityKind, entity_id: str) -> EntityRef:
    """Reference from a URI segment. IDs that cannot exist are not found."""
    try:
        return EntityRef(kind=kind, id=entity_id)
    except ValidationError:
        raise NotFound(f"{kind.value}/{entity_id}") from None


def operation_result(operation: Operation, status_code: int = 200) -> PollResult:
    """Shape an operation snapshot as a poll response."""
    return PollResult(
        id=operation.id,
        kind=EntityKind.OPERATION,
        status=operation.status.value,
        status_code=status_code,
        created_at=operation.created_at,
        last_action_at=operation.last_action_at,
        retry_after=None if operation.is_terminal else operation.retry_after,
        resource_location=operation.resource_location,
        percent_complete=operation.percent_complete,
        error=operation.error,
    )


def resource_result(resource: Resource, status_code: int = 200) -> PollResult:
    """Shape a resource snapshot as a poll response."""
    return PollResult(
        id=resource.id,
        kind=EntityKind.RESOURCE,
        status=resource.status.value,
        status_code=status_code,
        created_at=resource.created_at,
        last_action_at=resource.last_action_at,
        retry_after=resource.retry_after if resource.in_progress else None,
        error=resource.error,
        properties=resource.properties,
    )


def accepted(operation: Operation) -> PollResult:
    """202 Accepted response for a newly created operation.

    Used even when the operation finished at creation, so callers handle a
    single response shape.
    """
    result = operation_result(operation, status_code=202)
    result.location = operation_location(operation.id)
    return result


def created(resource: Resource) -> PollResult:
    """201 Created response for a new RELO resource."""
    result = resource_result(resource, status_code=201)
    result.location = resource_location(resource.id)
    return result


class PollingGateway:
    """Translates GET requests into store reads. Never waits for completion."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def poll(self, ref: EntityRef) -> PollResult:
        if ref.kind == EntityKind.OPERATION:
            return self.poll_operation(ref.id)
        return self.poll_resource(ref.id)

    def poll_operation(self, operation_id: str) -> PollResult:
        """Current state of an operation. Tombstoned ones are still served."""
        operation = self.storage.get(entity_ref(EntityKind.OPERATION, operation_id))
        return operation_result(operation)

    def poll_resource(self, resource_id: str) -> PollResult:
        """Current state of a resource. Deleted resources are not found."""
        ref = entity_ref(EntityKind.RESOURCE, resource_id)
        resource = self.storage.get(ref)
        if resource.status == ResourceStatus.DELETED or resource.tombstoned_at is not None:
            raise NotFound(ref)
        return resource_result(resource)
