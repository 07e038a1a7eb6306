"""
Exception hierarchy shared by the agent and the server-side policy check.
"""


class AgentError(Exception):
    """Base exception for the geofence agent."""


class ValidationError(AgentError):
    """Raised when a coordinate, zone or event violates its invariants."""


class FetchError(AgentError):
    """Raised when the zone list cannot be fetched from the backend."""


class DeliveryError(AgentError):
    """Raised when an attendance event could not be delivered."""

    def __init__(self, message, *, retryable=True, status=None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class PolicyRejection(AgentError):
    """Raised by the policy validator. Always terminal for the client."""

    def __init__(self, reason, message):
        super().__init__(message)
        self.reason = reason
        self.message = message
