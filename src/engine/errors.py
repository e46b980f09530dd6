"""Errors raised by execution engine clients.

Transports translate their failures into these exactly once, so callers
match on type and on lock_identifier, never on message text.
"""

from typing import Optional


class EngineError(Exception):
    """Engine call failed.

    Attributes:
        lock_identifier: Id of the state lock that blocked the call, if any
        code: Transport-level error code
    """

    def __init__(self, message: str, lock_identifier: Optional[str] = None, code: str = 'Unknown'):
        self.message = message
        self.lock_identifier = lock_identifier or None
        self.code = code
        super().__init__(message)

    @property
    def is_lock_error(self) -> bool:
        return self.lock_identifier is not None


class EngineNotFoundError(EngineError):
    """The engine reports that the target does not exist."""

    def __init__(self, message: str):
        super().__init__(message, code='NotFound')


class EngineUnavailableError(EngineError):
    """Transient failure reaching the engine; safe to retry later."""

    def __init__(self, message: str):
        super().__init__(message, code='Unavailable')


class EngineCancelled(Exception):
    """The reconcile pass was cancelled before or during the call.

    Not an EngineError: phases must not record cancellation as a failure.
    """
