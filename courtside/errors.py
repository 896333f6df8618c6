"""Error taxonomy for queue operations and the typed result returned to callers."""
from dataclasses import dataclass, field
from typing import Any, Optional


class QueueError(Exception):
    """Base class for errors raised by the repository and the engine."""
    kind = 'error'


class StoreUnavailable(QueueError):
    """The backing store could not be reached. Retryable."""
    kind = 'store_unavailable'


class NotFound(QueueError):
    """The game, court or user no longer exists (or is not in the expected list)."""
    kind = 'not_found'


class Conflict(QueueError):
    """A conditional write lost a race. Callers treat this as a no-op."""
    kind = 'noop'


class InvalidState(QueueError):
    """The requested transition is not allowed from the entity's current state."""
    kind = 'invalid_state'


@dataclass
class OperationResult:
    ok: bool
    kind: str = 'ok'
    message: str = ''
    data: dict = field(default_factory=dict)
    refresh: bool = False

    @classmethod
    def success(cls, message='', **data):
        return cls(ok=True, kind='ok', message=message, data=data)

    @classmethod
    def noop(cls, message=''):
        return cls(ok=True, kind='noop', message=message)

    @classmethod
    def from_error(cls, error: QueueError, data: Optional[dict] = None):
        return cls(
            ok=False,
            kind=error.kind,
            message=str(error),
            data=data or {},
            refresh=isinstance(error, (NotFound, InvalidState)),
        )

    @property
    def retryable(self):
        return self.kind == StoreUnavailable.kind

    def to_dict(self) -> dict[str, Any]:
        payload = {'ok': self.ok, 'kind': self.kind, **self.data}
        if self.message:
            payload['message' if self.ok else 'error'] = self.message
        if self.refresh:
            payload['refresh'] = True
        if self.retryable:
            payload['retryable'] = True
        return payload
