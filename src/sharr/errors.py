"""
Custom exception classes for SHARR runbooks.

This module defines the exception hierarchy used by the control registry,
the runbook engine, and the ticketing bridge. Each exception carries a
``kind`` naming the failure mode reported in execution results and a
``retryable`` flag the runbook engine uses to decide whether another
attempt is worthwhile.

Exception Hierarchy:
    SharrError (base)
    ├── ConfigurationError (invalid settings, permanent)
    ├── DuplicateRegistrationError (registry precondition)
    ├── UnknownControlError (registry precondition)
    ├── InvalidControlIdError (registry precondition)
    ├── RegistryFrozenError (registration after composition)
    ├── UnresolvedBindingError (step input cannot be bound)
    ├── StepTimeoutError (attempt exceeded its timeout, transient)
    ├── StepRetryExhaustedError (retry budget spent)
    ├── FatalStepFailure (non-retryable step failure)
    ├── RemediationApiError (AWS API failures, often transient)
    ├── NotifyError (ticketing bridge failures)
    └── AuditStoreError (SQLite errors, usually permanent)

Propagation:
    - Registry errors are raised to the caller before any execution begins
    - Step errors are recorded in the ExecutionResult, never re-raised
    - NotifyError is reported as a warning next to the ExecutionResult
"""

from typing import ClassVar


class SharrError(Exception):
    """
    Base exception for all SHARR errors.

    Attributes:
        message: Human-readable error description
        retryable: Whether this error should be retried
        context: Additional context dictionary for structured logging
    """

    kind: ClassVar[str] = "SharrError"

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        context: dict[str, object] | None = None,
    ) -> None:
        """
        Initialize SHARR error.

        Args:
            message: Human-readable error description
            retryable: Whether this error should be retried
            context: Additional context for structured logging
        """
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.context = context or {}

    def __str__(self) -> str:
        """Return string representation of error."""
        return self.message


class ConfigurationError(SharrError):
    """
    Error in SHARR configuration.

    Raised during startup when required configuration is missing or invalid,
    or when a runbook factory produces an inconsistent document.

    Attributes:
        config_key: Configuration key that is invalid
        reason: Specific validation failure reason
    """

    kind: ClassVar[str] = "ConfigurationError"

    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        reason: str | None = None,
    ) -> None:
        context = {
            "config_key": config_key,
            "reason": reason,
        }
        super().__init__(message, retryable=False, context=context)
        self.config_key = config_key
        self.reason = reason


class DuplicateRegistrationError(SharrError):
    """
    A factory is already registered for the (standard, control) pair.

    The prior registration is left untouched.
    """

    kind: ClassVar[str] = "DuplicateRegistration"

    def __init__(self, standard_id: str, control_id: str) -> None:
        super().__init__(
            f"Control {standard_id}/{control_id} is already registered",
            retryable=False,
            context={"standard_id": standard_id, "control_id": control_id},
        )
        self.standard_id = standard_id
        self.control_id = control_id


class UnknownControlError(SharrError):
    """No runbook factory is registered for the (standard, control) pair."""

    kind: ClassVar[str] = "UnknownControl"

    def __init__(self, standard_id: str, control_id: str) -> None:
        super().__init__(
            f"No runbook registered for {standard_id}/{control_id}",
            retryable=False,
            context={"standard_id": standard_id, "control_id": control_id},
        )
        self.standard_id = standard_id
        self.control_id = control_id


class InvalidControlIdError(SharrError):
    """Control id does not follow the standard's numbering scheme."""

    kind: ClassVar[str] = "InvalidControlId"

    def __init__(self, standard_id: str, control_id: str, pattern: str) -> None:
        super().__init__(
            f"Control id '{control_id}' does not match pattern {pattern} for {standard_id}",
            retryable=False,
            context={
                "standard_id": standard_id,
                "control_id": control_id,
                "pattern": pattern,
            },
        )
        self.standard_id = standard_id
        self.control_id = control_id
        self.pattern = pattern


class RegistryFrozenError(SharrError):
    """Registration attempted after the registry was frozen."""

    kind: ClassVar[str] = "RegistryFrozen"

    def __init__(self, standard_id: str, control_id: str) -> None:
        super().__init__(
            f"Registry is frozen, cannot register {standard_id}/{control_id}",
            retryable=False,
            context={"standard_id": standard_id, "control_id": control_id},
        )


class UnresolvedBindingError(SharrError):
    """
    A step input binding could not be resolved.

    Raised when a referenced finding field is missing or when the upstream
    step that should provide a value did not succeed or did not produce it.

    Attributes:
        step_name: Step whose input could not be bound
        input_name: Name of the unresolved input
        reference: Human-readable description of the binding source
    """

    kind: ClassVar[str] = "UnresolvedBinding"

    def __init__(self, step_name: str, input_name: str, reference: str) -> None:
        super().__init__(
            f"Step '{step_name}' input '{input_name}' is unresolved ({reference})",
            retryable=False,
            context={
                "step_name": step_name,
                "input_name": input_name,
                "reference": reference,
            },
        )
        self.step_name = step_name
        self.input_name = input_name
        self.reference = reference


class StepTimeoutError(SharrError):
    """A step attempt did not complete within its timeout."""

    kind: ClassVar[str] = "StepTimeout"

    def __init__(self, step_name: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Step '{step_name}' timed out after {timeout_seconds}s",
            retryable=True,
            context={"step_name": step_name, "timeout_seconds": timeout_seconds},
        )
        self.step_name = step_name
        self.timeout_seconds = timeout_seconds


class StepRetryExhaustedError(SharrError):
    """
    A step used its whole retry budget without succeeding.

    Attributes:
        step_name: Step that exhausted its retries
        attempts: Number of attempts made
        last_error: Message of the final attempt's error
    """

    kind: ClassVar[str] = "StepRetryExhausted"

    def __init__(self, step_name: str, attempts: int, last_error: str) -> None:
        super().__init__(
            f"Step '{step_name}' failed after {attempts} attempt(s): {last_error}",
            retryable=False,
            context={
                "step_name": step_name,
                "attempts": attempts,
                "last_error": last_error,
            },
        )
        self.step_name = step_name
        self.attempts = attempts
        self.last_error = last_error


class FatalStepFailure(SharrError):
    """A step failed in a way that retrying cannot fix."""

    kind: ClassVar[str] = "FatalStepFailure"

    def __init__(self, message: str, step_name: str | None = None) -> None:
        super().__init__(message, retryable=False, context={"step_name": step_name})
        self.step_name = step_name


class RemediationApiError(SharrError):
    """
    Error calling an AWS API from a remediation step.

    Throttling and service-side failures are retryable; authorization
    failures and missing resources are permanent.

    Attributes:
        error_code: AWS error code
        operation: AWS operation name
    """

    kind: ClassVar[str] = "RemediationApiError"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        operation: str | None = None,
        retryable: bool = True,
    ) -> None:
        context = {
            "error_code": error_code,
            "operation": operation,
        }
        super().__init__(message, retryable=retryable, context=context)
        self.error_code = error_code
        self.operation = operation


class NotifyError(SharrError):
    """
    Error raising a ticket through the notifier bridge.

    Never changes the remediation outcome; surfaced as a warning.

    Attributes:
        status_code: HTTP status code from the ticketing system
        reason: Short failure category (auth, rate_limit, secret, http, network)
    """

    kind: ClassVar[str] = "NotifyError"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        reason: str | None = None,
        retryable: bool = False,
    ) -> None:
        context = {
            "status_code": status_code,
            "reason": reason,
        }
        super().__init__(message, retryable=retryable, context=context)
        self.status_code = status_code
        self.reason = reason


class AuditStoreError(SharrError):
    """
    Error accessing the SQLite audit store.

    Attributes:
        operation: Database operation that failed
        sqlite_error: Original SQLite error message
    """

    kind: ClassVar[str] = "AuditStoreError"

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        sqlite_error: str | None = None,
    ) -> None:
        context = {
            "operation": operation,
            "sqlite_error": sqlite_error,
        }
        super().__init__(message, retryable=False, context=context)
        self.operation = operation
        self.sqlite_error = sqlite_error
