"""Exception hierarchy for the cascade orchestrator.

Transient infrastructure errors are retried at the call site and
only reach the state machine as RetryExhausted. Merge conflicts are
not errors at all; they are the CONFLICTED state. IllegalTransition
is a caller bug and is never swallowed.
"""

from __future__ import annotations


class CascadeError(Exception):
    """Base class for all forkcascade errors."""


class HostError(CascadeError):
    """A git or host API operation failed permanently."""

    def __init__(self, operation: str, message: str, returncode: int | None = None):
        self.operation = operation
        self.returncode = returncode
        super().__init__(f"{operation}: {message}")


class TransientHostError(HostError):
    """Network, rate-limit or other retryable host failure."""


class OperationTimeout(CascadeError):
    """A merge, validation or promotion exceeded its timeout."""

    def __init__(self, operation: str, timeout: int | float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout}s")

    @property
    def reason(self) -> str:
        """Failure reason recorded on the affected record."""
        return f"timeout:{self.operation}"


class RetryExhausted(CascadeError):
    """Bounded retries ran out without a successful call."""

    def __init__(self, description: str, attempts: int, last_error: Exception):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{description} failed after {attempts} attempts: {last_error}"
        )


class IllegalTransition(CascadeError):
    """A trigger that is not legal from the record's current state."""

    def __init__(self, record_id: str, state: str, trigger: str, detail: str = ""):
        self.record_id = record_id
        self.state = state
        self.trigger = trigger
        message = f"record {record_id}: '{trigger}' is not legal from {state}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class RecordNotFound(CascadeError):
    """No record exists with the requested id."""


class RecordDecodeError(CascadeError):
    """A host issue could not be parsed into a SyncRecord."""

    def __init__(self, issue: int | str, message: str):
        self.issue = issue
        super().__init__(f"issue {issue}: {message}")


class MonitorDegradedError(CascadeError):
    """The health monitor could not read pipeline state."""
