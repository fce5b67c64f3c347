"""Relay-Engine exception hierarchy."""


class RelayError(Exception):
    """Base exception for all Relay errors."""

    def __init__(self, message: str = "", code: str = "RELAY_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


# ── Configuration (never retried) ──


class ConfigurationError(RelayError):
    """Raised when a definition cannot be used as configured."""

    def __init__(self, message: str = "Invalid configuration", code: str = "CONFIGURATION"):
        super().__init__(message, code=code)


class WebhookNotFoundError(ConfigurationError):
    def __init__(self, message: str = "Webhook not found"):
        super().__init__(message, code="WEBHOOK_NOT_FOUND")


class WebhookInactiveError(ConfigurationError):
    def __init__(self, message: str = "Webhook is inactive"):
        super().__init__(message, code="WEBHOOK_INACTIVE")


class AutomationInactiveError(ConfigurationError):
    def __init__(self, message: str = "Automation is inactive"):
        super().__init__(message, code="AUTOMATION_INACTIVE")


# ── Lookups ──


class AutomationNotFoundError(RelayError):
    def __init__(self, message: str = "Automation not found"):
        super().__init__(message, code="NOT_FOUND")


class StepNotFoundError(RelayError):
    def __init__(self, message: str = "Step not found"):
        super().__init__(message, code="NOT_FOUND")


class ExecutionNotFoundError(RelayError):
    def __init__(self, message: str = "Execution not found"):
        super().__init__(message, code="NOT_FOUND")


# ── Dispatch (retried within the step's attempt budget) ──


class DispatchError(RelayError):
    """A single HTTP attempt that did not produce a 2xx response."""

    kind = "dispatch"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
        latency_ms: int = 0,
    ):
        super().__init__(message, code=f"DISPATCH_{self.kind.upper()}")
        self.status_code = status_code
        self.body = body
        self.latency_ms = latency_ms


class NetworkError(DispatchError):
    kind = "network"


class DispatchTimeoutError(DispatchError):
    kind = "timeout"


class HTTPStatusError(DispatchError):
    kind = "http"


# ── Rendering / validation ──


class ValidationError(RelayError):
    """Raised when a payload template or rule set is malformed."""

    def __init__(self, message: str = "Validation failed"):
        super().__init__(message, code="VALIDATION")


# ── Execution lifecycle ──


class PersistenceError(RelayError):
    """Raised when the execution record cannot be written."""

    def __init__(self, message: str = "Failed to persist execution state"):
        super().__init__(message, code="PERSISTENCE")


class ExecutionStateError(RelayError):
    """Raised when a write would violate the execution record's invariants."""

    def __init__(self, message: str = "Execution is already terminal"):
        super().__init__(message, code="EXECUTION_STATE")


class ExecutionCancelledError(RelayError):
    """Raised at a suspension point once the execution was cancelled."""

    def __init__(self, message: str = "Execution cancelled"):
        super().__init__(message, code="CANCELLED")
