"""State machine engine for operations and RELO resources.

Every status change goes through :meth:`StateMachine.transition`. The
legality check and the write happen inside a single atomic store update, so
a rejected event never leaves a partial mutation behind.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union
from .errors import InvalidTransition
from .models import (
    Entity,
    EntityKind,
    EntityRef,
    ErrorDetail,
    Event,
    Operation,
    OperationStatus,
    Resource,
    ResourceStatus,
    TransitionRecord,
    OPERATION_TERMINAL,
    RESOURCE_TERMINAL,
    utcnow,
)
from .storage import Storage

logger = logging.getLogger(__name__)

Status = Union[OperationStatus, ResourceStatus]

OPERATION_TRANSITIONS: Dict[OperationStatus, Dict[Event, OperationStatus]] = {
    OperationStatus.NOT_STARTED: {
        Event.START: OperationStatus.RUNNING,
        Event.PROGRESS: OperationStatus.RUNNING,
        Event.COMPLETE: OperationStatus.SUCCEEDED,
        Event.FAIL: OperationStatus.FAILED,
        Event.CANCEL: OperationStatus.CANCELLED,
    },
    OperationStatus.RUNNING: {
        Event.PROGRESS: OperationStatus.RUNNING,
        Event.COMPLETE: OperationStatus.SUCCEEDED,
        Event.FAIL: OperationStatus.FAILED,
        Event.CANCEL: OperationStatus.CANCELLED,
    },
    OperationStatus.SUCCEEDED: {},
    OperationStatus.FAILED: {},
    OperationStatus.CANCELLED: {},
}

RESOURCE_TRANSITIONS: Dict[ResourceStatus, Dict[Event, ResourceStatus]] = {
    ResourceStatus.PROVISIONING: {
        Event.PROGRESS: ResourceStatus.PROVISIONING,
        Event.COMPLETE: ResourceStatus.SUCCEEDED,
        Event.FAIL: ResourceStatus.FAILED,
        Event.CANCEL: ResourceStatus.DELETING,
    },
    ResourceStatus.SUCCEEDED: {
        Event.START: ResourceStatus.UPDATING,
        Event.CANCEL: ResourceStatus.DELETING,
    },
    ResourceStatus.UPDATING: {
        Event.PROGRESS: ResourceStatus.UPDATING,
        Event.COMPLETE: ResourceStatus.SUCCEEDED,
        Event.FAIL: ResourceStatus.FAILED,
        Event.CANCEL: ResourceStatus.DELETING,
    },
    ResourceStatus.DELETING: {
        Event.PROGRESS: ResourceStatus.DELETING,
        Event.COMPLETE: ResourceStatus.DELETED,
        Event.FAIL: ResourceStatus.FAILED,
    },
    ResourceStatus.DELETED: {},
    ResourceStatus.FAILED: {
        Event.CANCEL: ResourceStatus.DELETING,
    },
}

TRANSITIONS = {
    EntityKind.OPERATION: OPERATION_TRANSITIONS,
    EntityKind.RESOURCE: RESOURCE_TRANSITIONS,
}

# The event that produces each final status; re-delivering it is a no-op
TERMINAL_EVENTS: Dict[Status, Event] = {
    OperationStatus.SUCCEEDED: Event.COMPLETE,
    OperationStatus.FAILED: Event.FAIL,
    OperationStatus.CANCELLED: Event.CANCEL,
    ResourceStatus.DELETED: Event.COMPLETE,
    ResourceStatus.FAILED: Event.FAIL,
}


def is_terminal(kind: EntityKind, status: Status) -> bool:
    """Check if status is terminal for the entity kind."""
    if kind == EntityKind.OPERATION:
        return status in OPERATION_TERMINAL
    return status in RESOURCE_TERMINAL


def next_status(kind: EntityKind, status: Status, event: Event) -> Optional[Status]:
    """Look up the target status of event, or None if it is not allowed."""
    return TRANSITIONS[kind].get(status, {}).get(event)


class StateMachine:
    """Applies events to tracked entities and records every transition."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def create_operation(
        self,
        operation_id: Optional[str] = None,
        status: OperationStatus = OperationStatus.NOT_STARTED,
        resource_location: Optional[str] = None,
        retry_after: Optional[int] = None,
    ) -> Operation:
        """Create a Stepwise operation.

        An operation may be created already finished; it is tracked and
        retained exactly like one that finished later.
        """
        config = self.storage.get_config()
        fields: Dict[str, Any] = {
            "status": status,
            "resource_location": resource_location,
            "retry_after": config.default_retry_after if retry_after is None else retry_after,
        }
        if operation_id is not None:
            fields["id"] = operation_id
        operation = Operation(**fields)
        if operation.is_terminal:
            operation.retention_expiry = operation.last_action_at + timedelta(
                seconds=config.retention_seconds
            )
        self.storage.create(operation)
        logger.info("Created %s (%s)", operation.ref, operation.status.value)
        return operation

    def create_resource(
        self,
        resource_id: str,
        status: ResourceStatus = ResourceStatus.PROVISIONING,
        properties: Optional[Dict[str, Any]] = None,
    ) -> Resource:
        """Create a RELO resource with its embedded status."""
        config = self.storage.get_config()
        resource = Resource(
            id=resource_id,
            status=status,
            properties=properties or {},
            retry_after=config.default_retry_after,
        )
        self.storage.create(resource)
        logger.info("Created %s (%s)", resource.ref, resource.status.value)
        return resource

    def get(self, ref: EntityRef) -> Entity:
        return self.storage.get(ref)

    def transition(
        self,
        ref: EntityRef,
        event: Event,
        expected_version: Optional[int] = None,
        **detail: Any,
    ) -> Status:
        """Apply event to the entity and return its new status.

        Raises InvalidTransition when the event is not allowed from the
        current status. Re-delivery of the event that produced a final or
        failed status returns that status without writing anything.
        """
        event = Event(event)
        config = self.storage.get_config()
        changes: List[TransitionRecord] = []

        def apply(entity: Entity) -> Optional[Entity]:
            current = entity.status
            if TERMINAL_EVENTS.get(current) == event:
                return None
            target = next_status(ref.kind, current, event)
            if target is None:
                raise InvalidTransition(ref, current, event)
            self._apply_detail(ref, entity, current, target, event, detail)

            now = max(utcnow(), entity.last_action_at)
            entity.status = target
            entity.last_action_at = now
            if ref.kind == EntityKind.OPERATION and is_terminal(ref.kind, target):
                entity.retention_expiry = now + timedelta(seconds=config.retention_seconds)
            if ref.kind == EntityKind.RESOURCE and target == ResourceStatus.DELETED:
                entity.tombstoned_at = now

            changes.append(
                TransitionRecord(
                    entity_kind=ref.kind,
                    entity_id=ref.id,
                    event=event,
                    from_status=current.value,
                    to_status=target.value,
                    at=now,
                    detail={key: value for key, value in detail.items() if value is not None},
                )
            )
            return entity

        def record(entity: Entity) -> None:
            for change in changes:
                self.storage.append_event(change)
                logger.info(
                    "%s: %s -> %s on %s", ref, change.from_status, change.to_status, event.value
                )

        try:
            entity = self.storage.update(
                ref, apply, expected_version=expected_version, after_write=record
            )
        except InvalidTransition as e:
            logger.warning("Rejected transition: %s", e)
            raise
        return entity.status

    def _apply_detail(self, ref, entity, current, target, event, detail) -> None:
        """Validate and copy event details onto the entity."""
        if ref.kind == EntityKind.OPERATION:
            location = detail.get("resource_location")
            if target == OperationStatus.SUCCEEDED:
                if not location:
                    raise InvalidTransition(ref, current, event, "resource_location is required")
                entity.resource_location = location
                entity.percent_complete = 100
            elif location:
                raise InvalidTransition(
                    ref, current, event, "resource_location is only set on success"
                )
            percent = detail.get("percent_complete")
            if event == Event.PROGRESS and percent is not None:
                if not 0 <= percent <= 100:
                    raise InvalidTransition(ref, current, event, "percent_complete out of range")
                entity.percent_complete = percent

        if event == Event.FAIL:
            entity.error = ErrorDetail(
                code=detail.get("error_code") or "Failed",
                message=detail.get("error_message") or "",
            )
        elif ref.kind == EntityKind.RESOURCE and target != ResourceStatus.FAILED:
            entity.error = None

    def events(self, ref: Optional[EntityRef] = None, limit: Optional[int] = None) -> List[TransitionRecord]:
        """Get recorded transitions, newest last."""
        records = self.storage.read_events(ref)
        if limit is not None:
            records = records[-limit:] if limit else []
        return records
