"""
Error taxonomy (SSOT).

Every failure the engine distinguishes is one of these types:
- ConfigurationError: a bad catalog entry; the pattern is skipped
- TransientIOError: reader/sink hiccup; retried at page granularity
- InvalidStateTransition: approval action on a terminal suggestion
- FatalError: auth/credential failure or corrupted catalog; aborts the run
"""


class CashClearingError(Exception):
    """Base exception for the cash clearing engine."""

    pass


class ConfigurationError(CashClearingError):
    """A catalog entry or configuration value is malformed."""

    def __init__(self, message: str, entry_id: str | None = None):
        self.entry_id = entry_id
        if entry_id:
            message = f"{entry_id}: {message}"
        super().__init__(message)


class TransientIOError(CashClearingError):
    """A source or sink call failed in a way that may succeed on retry."""

    pass


class FatalError(CashClearingError):
    """Unrecoverable failure; the run stops after persisting its checkpoint."""

    pass


class ValidationError(CashClearingError, ValueError):
    """Input failed validation at a boundary (record, request, reason)."""

    pass


class SuggestionNotFoundError(CashClearingError, LookupError):
    """No suggestion exists with the given id."""

    def __init__(self, suggestion_id: str):
        self.suggestion_id = suggestion_id
        super().__init__(f"Suggestion '{suggestion_id}' not found")


class InvalidStateTransition(CashClearingError):
    """Transition attempted from a state that does not allow it."""

    def __init__(self, suggestion_id: str, current_status: str, action: str):
        self.suggestion_id = suggestion_id
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} suggestion '{suggestion_id}' with status {current_status}"
        )
