"""
Runbook document execution engine.

A RunbookDocument is the ordered list of remediation steps for one control.
Executing it against a finding runs the steps strictly in order, resolving
each step's input bindings from the finding and from earlier step outputs,
applying the step's retry policy and timeout, and deciding what happens
when a step fails for good.

Control flow:
    - An assess step reporting ``compliant=True`` jumps to the verification
      step; the steps in between are recorded as Skipped.
    - Retryable failures and timeouts are retried with capped exponential
      backoff. Once the retry budget is spent the step's on_failure applies:
      abort, skip (the step is marked Degraded) or branchToVerify.
    - A step whose final attempt times out aborts the document.
    - Fatal failures abort the document immediately.
    - Cancellation is honored between steps only; nothing is rolled back.

Overall status:
    Failed            abort, fatal failure or cancellation
    Degraded          some step was skipped over after failing
    AlreadyCompliant  verification passed without every remediation running
    Remediated        every step succeeded

``execute`` never raises; every failure ends up in the ExecutionResult.

Usage:
    document = RunbookDocument("EC2.19", steps=[assess, remediate, verify])
    result = document.execute(finding)
    print(result.overall_status)
"""

import contextvars
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sharr.errors import (
    ConfigurationError,
    FatalStepFailure,
    SharrError,
    StepRetryExhaustedError,
    StepTimeoutError,
    UnresolvedBindingError,
)
from sharr.logging_config import generate_execution_id, get_execution_id, get_logger, log_with_context
from sharr.models import (
    ActionKind,
    ExecutionResult,
    Finding,
    OnFailure,
    OverallStatus,
    StepResult,
    StepStatus,
)
from sharr.steps import (
    COMPLIANT_KEY,
    BindingSource,
    Fatal,
    Retryable,
    Step,
    StepOutcome,
    Success,
)

logger = get_logger(__name__)

DEFAULT_INPUT_SCHEMA: tuple[str, ...] = (
    "standard_id",
    "control_id",
    "resource_id",
    "account_id",
)


class CancellationToken:
    """
    Cooperative cancellation flag for an in-flight execution.

    The engine checks the token before starting each step. A step that is
    already running is never interrupted.
    """

    def __init__(self) -> None:
        self._event: threading.Event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Whether cancellation was requested."""
        return self._event.is_set()


@dataclass
class _RunState:
    """Mutable bookkeeping for one execution."""

    records: list[StepResult] = field(default_factory=list)
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    final_status: dict[str, StepStatus] = field(default_factory=dict)
    bypassed: bool = False
    degraded: bool = False


@dataclass(frozen=True)
class _StepEnd:
    """How a step finished, as far as control flow is concerned."""

    succeeded: bool
    fatal: bool = False
    output: dict[str, Any] = field(default_factory=dict)


class RunbookDocument:
    """
    Remediation workflow for one control.

    Attributes:
        control_id: Control this document remediates
        steps: Ordered steps, owned exclusively by this document
        input_schema: Finding attributes that must be present
        output_schema: ``step.key`` references collected into the result
        requires_ticket: Whether a ticket is raised after execution
        description: Human-readable title
    """

    def __init__(
        self,
        control_id: str,
        steps: Sequence[Step],
        input_schema: Sequence[str] = DEFAULT_INPUT_SCHEMA,
        output_schema: Sequence[str] = (),
        requires_ticket: bool = False,
        description: str = "",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize and validate a runbook document.

        Args:
            control_id: Control identifier (e.g. EC2.19)
            steps: Ordered steps
            input_schema: Required finding attributes
            output_schema: ``step.key`` outputs exposed on the result
            requires_ticket: Raise a ticket after execution
            description: Human-readable title
            sleep: Function used for retry backoff

        Raises:
            ConfigurationError: If the steps do not form a valid document
        """
        self.control_id: str = control_id
        self.steps: tuple[Step, ...] = tuple(steps)
        self.input_schema: tuple[str, ...] = tuple(input_schema)
        self.output_schema: tuple[str, ...] = tuple(output_schema)
        self.requires_ticket: bool = requires_ticket
        self.description: str = description
        self._sleep: Callable[[float], None] = sleep
        self._index: dict[str, int] = {}

        self._validate()

    def _validate(self) -> None:
        if not self.steps:
            raise ConfigurationError(
                f"Runbook for {self.control_id} has no steps",
                config_key=self.control_id,
                reason="empty step list",
            )

        for position, step in enumerate(self.steps):
            if step.name in self._index:
                raise ConfigurationError(
                    f"Duplicate step name '{step.name}' in runbook for {self.control_id}",
                    config_key=self.control_id,
                    reason="duplicate step name",
                )
            for upstream in step.referenced_steps():
                if upstream not in self._index:
                    raise ConfigurationError(
                        f"Step '{step.name}' binds to '{upstream}', which does not run before it",
                        config_key=self.control_id,
                        reason="binding to a later or unknown step",
                    )
            self._index[step.name] = position

        needs_verify = any(
            step.kind is ActionKind.ASSESS or step.on_failure is OnFailure.BRANCH_TO_VERIFY
            for step in self.steps
        )
        if needs_verify and self.verification_index is None:
            raise ConfigurationError(
                f"Runbook for {self.control_id} needs a verify step",
                config_key=self.control_id,
                reason="assess steps and branchToVerify require a verification step",
            )

        for reference in self.output_schema:
            step_name, _, key = reference.partition(".")
            position = self._index.get(step_name)
            if position is None or key not in self.steps[position].outputs:
                raise ConfigurationError(
                    f"Output '{reference}' is not declared by any step",
                    config_key=self.control_id,
                    reason="unknown output reference",
                )

    @property
    def verification_index(self) -> int | None:
        """Position of the designated (last) verify step."""
        for position in range(len(self.steps) - 1, -1, -1):
            if self.steps[position].kind is ActionKind.VERIFY:
                return position
        return None

    @property
    def verification_step(self) -> str | None:
        """Name of the designated verify step."""
        position = self.verification_index
        return self.steps[position].name if position is not None else None

    def describe(self) -> dict[str, Any]:
        """Summary used by the CLI and audit labels."""
        return {
            "controlId": self.control_id,
            "description": self.description,
            "requiresTicket": self.requires_ticket,
            "steps": [
                {
                    "name": step.name,
                    "kind": step.kind.value,
                    "onFailure": step.on_failure.value,
                    "maxAttempts": step.retry.max_attempts,
                    "timeoutSeconds": step.timeout_seconds,
                }
                for step in self.steps
            ],
        }

    def execute(
        self,
        finding: Finding,
        cancel_token: CancellationToken | None = None,
    ) -> ExecutionResult:
        """
        Run the document against a finding.

        Args:
            finding: Finding naming the resource to remediate
            cancel_token: Optional token checked between steps

        Returns:
            Completed ExecutionResult; this method does not raise
        """
        execution_id = get_execution_id() or generate_execution_id()
        started_at = datetime.now(UTC).isoformat()
        state = _RunState()
        cancelled = False
        error: str | None = None

        log_with_context(
            logger,
            "info",
            "Starting runbook execution",
            control_id=self.control_id,
            standard_id=finding.standard_id,
            resource_id=finding.resource_id,
            step_count=len(self.steps),
        )

        try:
            error = self._check_finding(finding)
            if error is not None:
                # Rejected findings are charged to the first step, which never runs
                first = self.steps[0]
                self._record(
                    state,
                    StepResult(
                        name=first.name,
                        kind=first.kind,
                        status=StepStatus.FAILED,
                        attempt=0,
                        error=error,
                        error_kind=FatalStepFailure.kind,
                    ),
                )
                status = OverallStatus.FAILED
            else:
                status, cancelled = self._run(finding, state, cancel_token)
                if cancelled:
                    error = "Execution cancelled"
        except Exception as e:
            log_with_context(
                logger,
                "error",
                "Unexpected error in runbook engine",
                control_id=self.control_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            status = OverallStatus.FAILED
            error = f"{type(e).__name__}: {e}"

        result = ExecutionResult(
            execution_id=execution_id,
            standard_id=finding.standard_id,
            control_id=self.control_id,
            resource_id=finding.resource_id,
            overall_status=status,
            step_results=tuple(state.records),
            started_at=started_at,
            completed_at=datetime.now(UTC).isoformat(),
            cancelled=cancelled,
            outputs=self._collect_outputs(state),
            error=error,
        )

        log_with_context(
            logger,
            "info" if result.compliant else "warning",
            "Finished runbook execution",
            control_id=self.control_id,
            resource_id=finding.resource_id,
            overall_status=status.value,
            recorded_attempts=len(state.records),
            cancelled=cancelled,
        )
        return result

    def _check_finding(self, finding: Finding) -> str | None:
        if finding.control_id != self.control_id:
            return f"Finding control {finding.control_id} does not match runbook control {self.control_id}"
        missing = [name for name in self.input_schema if getattr(finding, name, None) in (None, "")]
        if missing:
            return f"Finding is missing required fields: {', '.join(missing)}"
        return None

    def _run(
        self,
        finding: Finding,
        state: _RunState,
        cancel_token: CancellationToken | None,
    ) -> tuple[OverallStatus, bool]:
        verify_at = self.verification_index
        position = 0

        while position < len(self.steps):
            if cancel_token is not None and cancel_token.cancelled:
                log_with_context(
                    logger,
                    "warning",
                    "Execution cancelled between steps",
                    control_id=self.control_id,
                    next_step=self.steps[position].name,
                )
                return OverallStatus.FAILED, True

            step = self.steps[position]
            end = self._run_step(step, finding, state)

            if end.succeeded:
                if (
                    step.kind is ActionKind.ASSESS
                    and end.output.get(COMPLIANT_KEY) is True
                    and verify_at is not None
                    and verify_at > position
                ):
                    log_with_context(
                        logger,
                        "info",
                        "Resource already compliant, skipping to verification",
                        control_id=self.control_id,
                        step=step.name,
                    )
                    self._skip_range(position + 1, verify_at, state)
                    state.bypassed = True
                    position = verify_at
                    continue
                position += 1
                continue

            if end.fatal:
                return OverallStatus.FAILED, False

            if step.on_failure is OnFailure.SKIP:
                state.degraded = True
                position += 1
            elif (
                step.on_failure is OnFailure.BRANCH_TO_VERIFY
                and verify_at is not None
                and verify_at > position
            ):
                log_with_context(
                    logger,
                    "info",
                    "Branching to verification after step failure",
                    control_id=self.control_id,
                    step=step.name,
                )
                self._skip_range(position + 1, verify_at, state)
                state.bypassed = True
                position = verify_at
            else:
                return OverallStatus.FAILED, False

        return self._final_status(state), False

    def _final_status(self, state: _RunState) -> OverallStatus:
        if state.degraded:
            return OverallStatus.DEGRADED
        remediations_ran = all(
            state.final_status.get(step.name) is StepStatus.SUCCEEDED
            for step in self.steps
            if step.kind is ActionKind.REMEDIATE
        )
        if state.bypassed or not remediations_ran:
            return OverallStatus.ALREADY_COMPLIANT
        return OverallStatus.REMEDIATED

    def _skip_range(self, start: int, stop: int, state: _RunState) -> None:
        for step in self.steps[start:stop]:
            state.records.append(
                StepResult(
                    name=step.name,
                    kind=step.kind,
                    status=StepStatus.SKIPPED,
                    attempt=0,
                )
            )
            state.final_status[step.name] = StepStatus.SKIPPED

    def _terminal_status(self, step: Step) -> StepStatus:
        return StepStatus.DEGRADED if step.on_failure is OnFailure.SKIP else StepStatus.FAILED

    def _record(self, state: _RunState, result: StepResult) -> None:
        state.records.append(result)
        if result.status is not StepStatus.RETRIED:
            state.final_status[result.name] = result.status

    def _run_step(self, step: Step, finding: Finding, state: _RunState) -> _StepEnd:
        try:
            inputs = self._resolve_inputs(step, finding, state)
        except UnresolvedBindingError as e:
            log_with_context(
                logger,
                "error",
                "Step input unresolved",
                step=step.name,
                input_name=e.input_name,
                reference=e.reference,
            )
            self._record(
                state,
                StepResult(
                    name=step.name,
                    kind=step.kind,
                    status=self._terminal_status(step),
                    attempt=0,
                    error=str(e),
                    error_kind=e.kind,
                ),
            )
            return _StepEnd(succeeded=False)

        max_attempts = step.retry.max_attempts

        for attempt in range(1, max_attempts + 1):
            started = time.monotonic()
            outcome, error_kind = self._attempt(step, inputs)
            duration_ms = (time.monotonic() - started) * 1000

            if isinstance(outcome, Success):
                self._record(
                    state,
                    StepResult(
                        name=step.name,
                        kind=step.kind,
                        status=StepStatus.SUCCEEDED,
                        attempt=attempt,
                        output=dict(outcome.output),
                        duration_ms=duration_ms,
                    ),
                )
                state.outputs[step.name] = dict(outcome.output)
                log_with_context(
                    logger,
                    "info",
                    "Step succeeded",
                    step=step.name,
                    kind=step.kind.value,
                    attempt=attempt,
                )
                return _StepEnd(succeeded=True, output=dict(outcome.output))

            if isinstance(outcome, Fatal):
                self._record(
                    state,
                    StepResult(
                        name=step.name,
                        kind=step.kind,
                        status=StepStatus.FAILED,
                        attempt=attempt,
                        error=outcome.error,
                        error_kind=FatalStepFailure.kind,
                        duration_ms=duration_ms,
                    ),
                )
                log_with_context(
                    logger,
                    "error",
                    "Step failed fatally",
                    step=step.name,
                    attempt=attempt,
                    error=outcome.error,
                )
                return _StepEnd(succeeded=False, fatal=True)

            if attempt < max_attempts:
                delay = step.retry.delay_for(attempt)
                self._record(
                    state,
                    StepResult(
                        name=step.name,
                        kind=step.kind,
                        status=StepStatus.RETRIED,
                        attempt=attempt,
                        error=outcome.error,
                        error_kind=error_kind,
                        duration_ms=duration_ms,
                    ),
                )
                log_with_context(
                    logger,
                    "warning",
                    "Transient step failure, retrying",
                    step=step.name,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    backoff_seconds=delay,
                    error=outcome.error,
                )
                self._sleep(delay)
                continue

            exhausted = StepRetryExhaustedError(step.name, attempt, outcome.error)
            timed_out = error_kind == StepTimeoutError.kind
            self._record(
                state,
                StepResult(
                    name=step.name,
                    kind=step.kind,
                    status=StepStatus.FAILED if timed_out else self._terminal_status(step),
                    attempt=attempt,
                    error=str(exhausted),
                    error_kind=exhausted.kind,
                    duration_ms=duration_ms,
                ),
            )
            log_with_context(
                logger,
                "error",
                "Step retries exhausted",
                step=step.name,
                attempts=attempt,
                timed_out=timed_out,
                on_failure=step.on_failure.value,
                error=outcome.error,
            )
            # A timeout on the last permitted attempt is fatal
            return _StepEnd(succeeded=False, fatal=timed_out)

        raise RuntimeError("Retry loop exited without an outcome")

    def _attempt(self, step: Step, inputs: dict[str, Any]) -> tuple[StepOutcome, str | None]:
        try:
            if step.timeout_seconds is None:
                outcome = step.action(dict(inputs))
            else:
                outcome = self._call_with_timeout(step, inputs)
        except SharrError as e:
            if e.retryable:
                return Retryable(str(e), e.kind), e.kind
            return Fatal(str(e)), FatalStepFailure.kind
        except Exception as e:
            return Fatal(f"{type(e).__name__}: {e}"), FatalStepFailure.kind

        if isinstance(outcome, Retryable):
            return outcome, outcome.error_kind
        if isinstance(outcome, Fatal):
            return outcome, FatalStepFailure.kind
        if not isinstance(outcome, Success):
            return Fatal(f"Step returned unsupported outcome {type(outcome).__name__}"), FatalStepFailure.kind

        missing = [key for key in step.outputs if key not in outcome.output]
        if missing:
            return (
                Fatal(f"Step output is missing declared keys: {', '.join(missing)}"),
                FatalStepFailure.kind,
            )
        if step.kind is ActionKind.VERIFY and outcome.output.get(COMPLIANT_KEY) is False:
            return Retryable("Resource is not compliant", "NotCompliant"), "NotCompliant"
        return outcome, None

    def _call_with_timeout(self, step: Step, inputs: dict[str, Any]) -> StepOutcome:
        timeout = step.timeout_seconds
        assert timeout is not None
        # Runs in a copy of the caller's context so log lines keep the execution ID
        context = contextvars.copy_context()
        finished = threading.Event()
        box: dict[str, Any] = {}

        def target() -> None:
            try:
                box["outcome"] = context.run(step.action, dict(inputs))
            except Exception as e:
                box["error"] = e
            finally:
                finished.set()

        # Daemon thread: a timed-out action is abandoned and does not block exit
        worker = threading.Thread(target=target, name=f"sharr-{step.name}", daemon=True)
        worker.start()
        if not finished.wait(timeout):
            raise StepTimeoutError(step.name, timeout)
        if "error" in box:
            raise box["error"]
        return box["outcome"]

    def _resolve_inputs(self, step: Step, finding: Finding, state: _RunState) -> dict[str, Any]:
        resolved: dict[str, Any] = {}
        for input_name, binding in step.inputs.items():
            if binding.source is BindingSource.LITERAL:
                resolved[input_name] = binding.value
                continue

            value: Any = None
            found = False
            if binding.source is BindingSource.FINDING:
                value = getattr(finding, binding.key, None)
                found = value is not None
            elif binding.step is not None:
                upstream_ok = state.final_status.get(binding.step) is StepStatus.SUCCEEDED
                upstream_output = state.outputs.get(binding.step, {})
                if upstream_ok and binding.key in upstream_output:
                    value = upstream_output[binding.key]
                    found = True

            if found:
                resolved[input_name] = value
            elif binding.optional:
                resolved[input_name] = binding.default
            else:
                raise UnresolvedBindingError(step.name, input_name, binding.describe())
        return resolved

    def _collect_outputs(self, state: _RunState) -> dict[str, Any]:
        collected: dict[str, Any] = {}
        for reference in self.output_schema:
            step_name, _, key = reference.partition(".")
            if state.final_status.get(step_name) is not StepStatus.SUCCEEDED:
                continue
            output = state.outputs.get(step_name, {})
            if key in output:
                collected[reference] = output[key]
        return collected

    def with_ticketing(self, requires_ticket: bool = True) -> "RunbookDocument":
        """Return a copy of this document with ticketing toggled."""
        return RunbookDocument(
            control_id=self.control_id,
            steps=self.steps,
            input_schema=self.input_schema,
            output_schema=self.output_schema,
            requires_ticket=requires_ticket,
            description=self.description,
            sleep=self._sleep,
        )
