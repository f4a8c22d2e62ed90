"""Error handling utilities."""

from typing import Optional


class TaskboardError(Exception):
    """Base exception for the taskboard engine."""
    code = "taskboard_error"


class ValidationError(TaskboardError):
    """Malformed or out-of-range input."""
    code = "validation_error"

    def __init__(self, message: str, matches: Optional[list[dict]] = None):
        super().__init__(message)
        self.matches = matches or []


class NotFoundError(TaskboardError):
    """Referenced task or worker does not exist."""
    code = "not_found"


class InvalidTransitionError(TaskboardError):
    """Requested status change is illegal from the current state."""
    code = "invalid_transition"


class ConfirmationRequiredError(TaskboardError):
    """Destructive operation attempted without explicit confirmation."""
    code = "confirmation_required"


class LedgerAdjustmentError(TaskboardError):
    """Workload counter update failed."""
    code = "ledger_adjustment_failed"

    def __init__(self, message: str, worker_id: Optional[str] = None, delta: int = 0):
        super().__init__(message)
        self.worker_id = worker_id
        self.delta = delta


class AuthRequiredError(TaskboardError):
    """Acting identity missing or invalid."""
    code = "auth_required"


class StoreError(TaskboardError):
    """Record store operation error."""
    code = "store_error"


class ConfigurationError(TaskboardError):
    """Required configuration is missing or malformed."""
    code = "configuration_error"
