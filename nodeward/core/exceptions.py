"""Custom exception hierarchy for nodeward.

All nodeward-specific exceptions inherit from NodewardError, enabling
callers to catch every operator failure with a single except clause.
Reliability errors (retry exhaustion, circuit open, cancellation) live in
``nodeward.reliability`` but share the same root.
"""

from __future__ import annotations


class NodewardError(Exception):
    """Base exception for all nodeward errors."""


class ConfigurationError(NodewardError):
    """Raised for invalid configuration or missing required settings.

    Covers a missing provider config block, an unresolved name-to-ID lookup
    and an unsupported provider or cluster type. Never retried inside a pass.
    """


class ProviderError(NodewardError):
    """Raised when a provider API call fails."""


class NotFoundError(ProviderError):
    """Raised when a provider resource does not exist."""


class ReconcileError(NodewardError):
    """Raised when a reconcile pass fails after its status was written."""

    def __init__(self, phase: str, message: str) -> None:
        self.phase = phase
        self.message = message
        super().__init__(f"{phase}: {message}")


class ClusterError(NodewardError):
    """Raised when a Kubernetes API call fails."""

    def __init__(self, message: str, status: int = 0) -> None:
        self.status = status
        super().__init__(message)
