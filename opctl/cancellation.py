"""Cancellation coordinator for operations and resources."""

import logging
from .errors import AlreadyTerminal, InvalidTransition, NotFound
from .gateway import PollResult, entity_ref, resource_result
from .machine import StateMachine, Status, is_terminal
from .models import EntityKind, EntityRef, Event, ResourceStatus

logger = logging.getLogger(__name__)


class CancellationCoordinator:
    """Accepts cancel requests and drives the cancel transition.

    Only tracked state changes here. Stopping or compensating the actual
    work is up to the domain collaborator, which sees the cancel in the
    transition log.
    """

    def __init__(self, machine: StateMachine):
        self.machine = machine

    def cancel(self, ref: EntityRef, strict: bool = False) -> Status:
        """Cancel an entity and return its resulting status.

        A finished entity is left alone: its current status is returned, or
        AlreadyTerminal is raised when strict is set.
        """
        entity = self.machine.get(ref)
        if is_terminal(ref.kind, entity.status):
            return self._already_terminal(ref, entity.status, strict)
        if ref.kind == EntityKind.RESOURCE and entity.status == ResourceStatus.DELETING:
            # Delete already under way
            return entity.status

        try:
            status = self.machine.transition(ref, Event.CANCEL)
        except InvalidTransition:
            # Lost a race with another transition; re-read to find out which
            current = self.machine.get(ref).status
            if is_terminal(ref.kind, current):
                return self._already_terminal(ref, current, strict)
            if ref.kind == EntityKind.RESOURCE and current == ResourceStatus.DELETING:
                return current
            raise
        logger.info("Cancelled %s -> %s", ref, status.value)
        return status

    def delete(self, resource_id: str) -> PollResult:
        """RELO DELETE: start deletion and return the 202 response."""
        ref = entity_ref(EntityKind.RESOURCE, resource_id)
        resource = self.machine.get(ref)
        if resource.status == ResourceStatus.DELETED or resource.tombstoned_at is not None:
            raise NotFound(ref)
        self.cancel(ref)
        resource = self.machine.get(ref)
        return resource_result(resource, status_code=202)

    def _already_terminal(self, ref: EntityRef, status: Status, strict: bool) -> Status:
        if strict:
            raise AlreadyTerminal(ref, status)
        logger.info("Cancel of %s ignored, already %s", ref, status.value)
        return status
