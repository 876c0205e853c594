"""Fault tolerance for outbound calls.

Retry with jittered exponential backoff, a per-dependency circuit breaker
and a bounded dead letter store for operations that exhaust both.
"""

from .backoff import jittered_backoff, next_backoff
from .breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState, retry_with_breaker
from .deadletter import DeadLetterQueueFullError, DeadLetterStore, FailedOperation
from .errors import (
    CircuitOpenError,
    MaxRetriesExceededError,
    NonRetryableError,
    OperationCancelledError,
    ReliabilityError,
    is_circuit_open,
    root_cause,
)
from .retry import (
    RetryConfig,
    execute,
    is_retryable_error,
    on_status_code,
)

__all__ = [
    # Backoff
    "jittered_backoff",
    "next_backoff",
    # Retry
    "RetryConfig",
    "execute",
    "is_retryable_error",
    "on_status_code",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "retry_with_breaker",
    # Dead letters
    "DeadLetterStore",
    "FailedOperation",
    "DeadLetterQueueFullError",
    # Errors
    "ReliabilityError",
    "MaxRetriesExceededError",
    "NonRetryableError",
    "OperationCancelledError",
    "CircuitOpenError",
    "root_cause",
    "is_circuit_open",
]
