"""
Remediation step contract.

A step is one atomic unit of work against the resource named by the
finding: an ``assess`` query, a ``remediate`` mutation or a ``verify``
confirmation. Steps are declarative descriptors; the runbook engine
resolves their input bindings, runs their action and interprets the
outcome.

An action receives the resolved inputs as a dict and returns one of:
    - Success(output): the step produced its declared outputs
    - Retryable(error): transient failure, the retry policy applies
    - Fatal(error): permanent failure, the document aborts

Actions may also raise. A SharrError with ``retryable=True`` counts as
Retryable; any other exception counts as Fatal.

Assess and verify actions report compliance through the ``compliant``
output key. Remediate actions must be idempotent: re-applying them to a
compliant resource returns Success with ``changed=False``.

Usage:
    from sharr.steps import assess_step, from_finding

    step = assess_step(
        "assess",
        check_group,
        inputs={"group_id": from_finding("resource_name")},
        outputs=("compliant", "open_rule_ids"),
    )
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sharr.models import ActionKind, OnFailure

# Output key assess and verify actions use to report compliance
COMPLIANT_KEY = "compliant"


@dataclass(frozen=True)
class Success:
    """Step produced its output."""

    output: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Retryable:
    """Transient step failure; the retry policy decides what happens next."""

    error: str
    error_kind: str = "Retryable"


@dataclass(frozen=True)
class Fatal:
    """Permanent step failure; the document aborts."""

    error: str


StepOutcome = Success | Retryable | Fatal
StepAction = Callable[[dict[str, Any]], StepOutcome]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration for a step.

    Attributes:
        max_attempts: Total attempts including the first one
        backoff_seconds: Delay before the second attempt
        backoff_multiplier: Growth factor applied to each further delay
        max_backoff_seconds: Upper bound for a single delay
    """

    max_attempts: int = 1
    backoff_seconds: float = 2.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0 or self.max_backoff_seconds < 0:
            raise ValueError("backoff delays must not be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """
        Delay to wait after the given failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed

        Returns:
            Seconds to sleep before the next attempt
        """
        delay = self.backoff_seconds * (self.backoff_multiplier ** (attempt - 1))
        return float(min(delay, self.max_backoff_seconds))


class BindingSource(str, Enum):
    """Where a step input value comes from."""

    FINDING = "finding"
    STEP = "step"
    LITERAL = "literal"


@dataclass(frozen=True)
class Binding:
    """
    Reference a step input is bound to.

    Attributes:
        source: Finding field, prior step output or literal value
        key: Finding attribute or step output key
        step: Name of the upstream step (STEP source only)
        value: Literal value (LITERAL source only)
        optional: Resolve to ``default`` instead of failing when missing
        default: Value used for a missing optional binding
    """

    source: BindingSource
    key: str = ""
    step: str | None = None
    value: Any = None
    optional: bool = False
    default: Any = None

    def describe(self) -> str:
        """Human-readable description for error messages."""
        if self.source is BindingSource.FINDING:
            return f"finding.{self.key}"
        if self.source is BindingSource.STEP:
            return f"{self.step}.{self.key}"
        return "literal"


def from_finding(key: str, optional: bool = False, default: Any = None) -> Binding:
    """Bind an input to a finding attribute (e.g. ``resource_id``)."""
    return Binding(BindingSource.FINDING, key=key, optional=optional, default=default)


def from_step(
    step: str,
    key: str,
    optional: bool = False,
    default: Any = None,
) -> Binding:
    """Bind an input to an output of an earlier, successful step."""
    return Binding(
        BindingSource.STEP,
        key=key,
        step=step,
        optional=optional,
        default=default,
    )


def literal(value: Any) -> Binding:
    """Bind an input to a constant."""
    return Binding(BindingSource.LITERAL, value=value)


@dataclass(frozen=True)
class Step:
    """
    Declarative remediation step.

    Attributes:
        name: Unique name within the runbook document
        kind: assess, remediate or verify
        action: Callable receiving resolved inputs and returning an outcome
        inputs: Input name to binding
        outputs: Keys a successful output must contain
        retry: Retry policy for retryable failures and timeouts
        timeout_seconds: Per-attempt timeout (None waits indefinitely)
        on_failure: Behavior once the step has failed for good
        description: Human-readable summary
    """

    name: str
    kind: ActionKind
    action: StepAction
    inputs: Mapping[str, Binding] = field(default_factory=dict)
    outputs: tuple[str, ...] = ()
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeout_seconds: float | None = None
    on_failure: OnFailure = OnFailure.ABORT
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Step name must not be empty")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"Step '{self.name}' timeout must be positive")

    def referenced_steps(self) -> set[str]:
        """Names of the upstream steps this step's inputs depend on."""
        return {
            binding.step
            for binding in self.inputs.values()
            if binding.source is BindingSource.STEP and binding.step
        }


def _make_step(
    kind: ActionKind,
    name: str,
    action: StepAction,
    inputs: Mapping[str, Binding] | None,
    outputs: tuple[str, ...],
    retry: RetryPolicy | None,
    timeout_seconds: float | None,
    on_failure: OnFailure,
    description: str,
) -> Step:
    return Step(
        name=name,
        kind=kind,
        action=action,
        inputs=dict(inputs or {}),
        outputs=outputs,
        retry=retry or RetryPolicy(),
        timeout_seconds=timeout_seconds,
        on_failure=on_failure,
        description=description,
    )


def assess_step(
    name: str,
    action: StepAction,
    *,
    inputs: Mapping[str, Binding] | None = None,
    outputs: tuple[str, ...] = (COMPLIANT_KEY,),
    retry: RetryPolicy | None = None,
    timeout_seconds: float | None = None,
    on_failure: OnFailure = OnFailure.ABORT,
    description: str = "",
) -> Step:
    """Build a read-only assessment step."""
    return _make_step(
        ActionKind.ASSESS,
        name,
        action,
        inputs,
        outputs,
        retry,
        timeout_seconds,
        on_failure,
        description,
    )


def remediate_step(
    name: str,
    action: StepAction,
    *,
    inputs: Mapping[str, Binding] | None = None,
    outputs: tuple[str, ...] = (),
    retry: RetryPolicy | None = None,
    timeout_seconds: float | None = None,
    on_failure: OnFailure = OnFailure.ABORT,
    description: str = "",
) -> Step:
    """Build a mutating remediation step."""
    return _make_step(
        ActionKind.REMEDIATE,
        name,
        action,
        inputs,
        outputs,
        retry,
        timeout_seconds,
        on_failure,
        description,
    )


def verify_step(
    name: str,
    action: StepAction,
    *,
    inputs: Mapping[str, Binding] | None = None,
    outputs: tuple[str, ...] = (COMPLIANT_KEY,),
    retry: RetryPolicy | None = None,
    timeout_seconds: float | None = None,
    on_failure: OnFailure = OnFailure.ABORT,
    description: str = "",
) -> Step:
    """Build a read-only verification step."""
    return _make_step(
        ActionKind.VERIFY,
        name,
        action,
        inputs,
        outputs,
        retry,
        timeout_seconds,
        on_failure,
        description,
    )
