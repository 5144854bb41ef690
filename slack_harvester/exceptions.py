"""Exception types used across the harvester.

Downstream failures are never fatal to a run: adapters raise `UpstreamAPIError`
and the orchestrator converts it into a logged, recorded skip.
"""

from typing import Any, Dict, Optional


class HarvesterError(Exception):
    """Base exception for all harvester errors."""


class ConfigurationError(HarvesterError):
    """Invalid or incomplete configuration."""


class UpstreamAPIError(HarvesterError):
    """A messaging, datastore or embedding call reported a failure.

    Args:
        operation: Name of the failed operation (e.g. "conversations.history").
        error: Error payload returned by the upstream service.
        response: Full response body when one was received (a failed history
            page may still carry a cursor).
    """

    def __init__(self, operation: str, error: Any = None, response: Optional[Dict[str, Any]] = None):
        self.operation = operation
        self.error = error
        self.response = response
        super().__init__(f"{operation} failed: {error}")


class CallTimeoutError(UpstreamAPIError):
    """A downstream call exceeded the configured timeout."""

    def __init__(self, operation: str, timeout_seconds: Optional[float]):
        self.timeout_seconds = timeout_seconds
        super().__init__(operation, f"timed out after {timeout_seconds}s")
