"""Error kinds raised by the engine and the store."""

from typing import Optional


class OpctlError(Exception):
    """Base class for all opctl errors."""

    http_status = 500


class InvalidTransition(OpctlError):
    """Illegal state change attempted. State is left unchanged."""

    http_status = 409

    def __init__(self, ref, status, event, reason: Optional[str] = None):
        self.ref = ref
        self.status = status
        self.event = event
        message = f"{ref}: cannot apply '{_value(event)}' in status '{_value(status)}'"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class NotFound(OpctlError):
    """Entity purged or never existed."""

    http_status = 404

    def __init__(self, ref):
        self.ref = ref
        super().__init__(f"{ref} not found")


class AlreadyTerminal(OpctlError):
    """Cancel requested on an entity that has already finished."""

    http_status = 200

    def __init__(self, ref, status):
        self.ref = ref
        self.status = status
        super().__init__(f"{ref} is already {_value(status)}")


class AlreadyExists(OpctlError):
    """Create with an ID that is already taken. Retrying cannot succeed."""

    http_status = 409

    def __init__(self, ref):
        self.ref = ref
        super().__init__(f"{ref} already exists")


class ConcurrentModification(OpctlError):
    """Lost update detected or lock not obtained. Retry the whole call."""

    http_status = 409


class StoreUnavailable(OpctlError):
    """Storage failure. Safe to retry with backoff."""

    http_status = 503


def _value(item) -> str:
    return getattr(item, "value", str(item))
