from __future__ import annotations

from nodeward.core.exceptions import NodewardError


class ReliabilityError(NodewardError):
    """Base class for errors raised by the reliability layer."""

    attempts: int = 0


class MaxRetriesExceededError(ReliabilityError):
    """All retry attempts were exhausted."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"maximum retry attempts exceeded after {attempts} attempts: {last_error}"
        )


class NonRetryableError(ReliabilityError):
    """The retry predicate rejected the error; no further attempts were made."""

    def __init__(self, error: BaseException, attempts: int = 1) -> None:
        self.error = error
        self.attempts = attempts
        super().__init__(f"non-retryable error: {error}")


class OperationCancelledError(ReliabilityError):
    """The cancellation signal fired while waiting between attempts."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"operation canceled after {attempts} attempts{detail}")


class CircuitOpenError(ReliabilityError):
    """The circuit breaker rejected the call without invoking it."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        target = f" for {name}" if name else ""
        super().__init__(f"circuit breaker is open{target}")


def root_cause(error: BaseException) -> BaseException:
    """Unwrap reliability wrappers down to the error raised by the operation."""
    match error:
        case NonRetryableError(error=inner):
            return root_cause(inner)
        case MaxRetriesExceededError(last_error=inner):
            return root_cause(inner)
        case OperationCancelledError(last_error=inner) if inner is not None:
            return root_cause(inner)
        case _:
            return error


def is_circuit_open(error: BaseException) -> bool:
    """True when the failure was a circuit-open rejection, possibly wrapped."""
    return isinstance(root_cause(error), CircuitOpenError)
