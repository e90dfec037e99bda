"""
Domain errors raised by the decision engine services.
Routers translate these into HTTP responses in one place (app.routers.errors).
"""

from typing import Optional


class DecisionEngineError(Exception):
    """Base class for all decision engine errors."""
    pass


class ConfigurationError(DecisionEngineError):
    """Workspace setup is incomplete (missing business profile or guardrails)."""
    pass


class EmptyDataError(DecisionEngineError):
    """Nothing to analyze in the requested window."""
    pass


class RecommendationSchemaError(DecisionEngineError):
    """Generated recommendation payload failed schema validation on every attempt."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


class AIResponseFormatError(DecisionEngineError):
    """Text generation returned something that is not a JSON object."""
    pass


class AuthorizationError(DecisionEngineError):
    pass


class NotFoundError(DecisionEngineError):
    pass


class InvalidTransitionError(DecisionEngineError):
    """Lifecycle transition not allowed from the current status."""
    pass


class EmptyBatchError(DecisionEngineError):
    """Execution requested but no approved actions matched."""
    pass


class ExecutionConflictError(DecisionEngineError):
    """Another run is in flight, or the batch targets one entity twice."""
    pass


class GuardrailViolation(DecisionEngineError):
    """An action would exceed a workspace guardrail. Recoverable by the user."""

    def __init__(self, reasons: list[str]):
        self.reasons = reasons
        super().__init__("Guardrail exceeded: " + "; ".join(reasons))


class AdPlatformError(DecisionEngineError):
    """Non-2xx response from an ad platform. body holds the raw response text."""

    def __init__(self, channel: str, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.channel = channel
        self.status_code = status_code
        self.body = body


class UnsupportedActionError(DecisionEngineError):
    """No executor path for this (channel, action type, entity level) combination."""
    pass
