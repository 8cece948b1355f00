"""
Error taxonomy for the reconciliation engine.

Remote-API collaborators classify their own failures by raising
``NotFoundError``, ``RetryableError`` or ``FatalError``; the engine never
infers the class from an error message.
"""

from typing import Any, Optional, Sequence


class ConvergeError(Exception):
    """Base class for engine errors. ``instance`` names the offending instance."""

    def __init__(self, message: str, instance: Optional[Any] = None):
        self.message = message
        self.instance = instance
        super().__init__(message)

    def __str__(self) -> str:
        if self.instance is not None:
            return f"{self.instance}: {self.message}"
        return self.message


class SchemaMismatch(ConvergeError):
    """Configuration does not match the resource schema (fatal, config time)."""


class CyclicDependency(ConvergeError):
    """The dependency graph contains a cycle (fatal, plan time)."""

    def __init__(self, members: Sequence[Any]):
        self.members = list(members)
        names = ", ".join(str(m) for m in self.members)
        super().__init__(f"Dependency cycle between: {names}")


class RemoteError(ConvergeError):
    """Base class for classified remote-API failures."""


class RetryableError(RemoteError):
    """Transient remote condition (rate limit, eventual consistency, timeout)."""


class FatalError(RemoteError):
    """Non-retryable remote failure."""


class NotFoundError(RemoteError):
    """The remote object does not exist."""


class RetryExhausted(FatalError):
    """A retryable operation ran out of attempts or time budget."""

    def __init__(
        self,
        message: str,
        attempts: int,
        last_error: Optional[Exception] = None,
        instance: Optional[Any] = None,
    ):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message, instance=instance)


class StateConflict(ConvergeError):
    """A compare-and-swap write found a different snapshot serial than expected."""

    def __init__(
        self, expected: int, actual: int, instance: Optional[Any] = None
    ):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"State serial is {actual}, expected {expected}; re-read state and re-plan",
            instance=instance,
        )


class StateLocked(ConvergeError):
    """The state lock is held by another run."""
