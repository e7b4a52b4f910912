"""
Data model for findings, playbook properties and execution results.

A Finding arrives from intake in the normalized JSON shape
``{standardId, controlId, resourceId, accountId, region?}`` and is never
mutated after dispatch. PlaybookProperties are the shared, read-only inputs
every runbook in a registry session is bound to. ExecutionResult is the
immutable record a runbook run produces; it is what the ticketing bridge
consumes and what the audit store persists.

Usage:
    from sharr.models import Finding

    finding = Finding.model_validate(
        {
            "standardId": "NIST80053",
            "controlId": "EC2.19",
            "resourceId": "sg-123",
            "accountId": "111111111111",
        }
    )
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, override

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ActionKind(str, Enum):
    """
    Kind of work a remediation step performs.

    Attributes:
        ASSESS: Read-only query of the current resource configuration
        REMEDIATE: Mutation bringing the resource into compliance
        VERIFY: Read-only confirmation that the resource is compliant
    """

    ASSESS = "assess"
    REMEDIATE = "remediate"
    VERIFY = "verify"


class OnFailure(str, Enum):
    """
    What the engine does once a step has failed for good.

    Attributes:
        ABORT: Stop the document, overall status Failed
        SKIP: Mark the step Degraded and continue with the next step
        BRANCH_TO_VERIFY: Jump to the verification step
    """

    ABORT = "abort"
    SKIP = "skip"
    BRANCH_TO_VERIFY = "branchToVerify"


class StepStatus(str, Enum):
    """
    Status of one recorded step attempt.

    Attributes:
        SUCCEEDED: Attempt produced its output
        RETRIED: Attempt failed and the step will be attempted again
        FAILED: Final attempt failed
        DEGRADED: Final attempt failed and the document continued past it
        SKIPPED: Step was not run because verification short-circuited it
    """

    SUCCEEDED = "Succeeded"
    RETRIED = "Retried"
    FAILED = "Failed"
    DEGRADED = "Degraded"
    SKIPPED = "Skipped"


class OverallStatus(str, Enum):
    """Outcome of a complete runbook execution."""

    REMEDIATED = "Remediated"
    ALREADY_COMPLIANT = "AlreadyCompliant"
    FAILED = "Failed"
    DEGRADED = "Degraded"


class Finding(BaseModel):
    """
    Normalized security finding for one resource.

    Attributes:
        standard_id: Compliance standard (e.g. NIST80053, SC, AFSBP)
        control_id: Control identifier within the standard (e.g. EC2.19)
        resource_id: Resource identifier or ARN the finding is about
        account_id: AWS account owning the resource
        region: AWS region of the resource, if known
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    standard_id: str = Field(..., alias="standardId", min_length=1)
    control_id: str = Field(..., alias="controlId", min_length=1)
    resource_id: str = Field(..., alias="resourceId", min_length=1)
    account_id: str = Field(..., alias="accountId", min_length=1)
    region: str | None = Field(default=None, alias="region")

    @property
    def resource_name(self) -> str:
        """
        Trailing identifier of the resource.

        ``arn:aws:ec2:us-east-1:111111111111:security-group/sg-123`` and
        ``sg-123`` both give ``sg-123``; ``arn:aws:s3:::my-bucket`` gives
        ``my-bucket``.
        """
        resource = self.resource_id
        if resource.startswith("arn:"):
            parts = resource.split(":", 5)
            resource = parts[5] if len(parts) == 6 else parts[-1]
        return resource.rsplit("/", 1)[-1]

    def to_wire(self) -> dict[str, Any]:
        """Return the camelCase JSON representation."""
        return self.model_dump(by_alias=True)

    @override
    def __str__(self) -> str:
        return f"Finding({self.standard_id}/{self.control_id}, {self.resource_id})"


class PlaybookProperties(BaseModel):
    """
    Shared, read-only properties every runbook in a session is bound to.

    Attributes:
        remediation_role_arn: Role assumed for remediation actions. May
            contain an ``{account_id}`` placeholder that is expanded with
            the finding's account.
        secret_reference: Secret handle for the ticketing bridge credential
        solution_metadata: Versioning and naming labels for audit records
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    remediation_role_arn: str = Field(..., alias="remediationRoleArn")
    secret_reference: str | None = Field(default=None, alias="secretReference")
    solution_metadata: dict[str, str] = Field(
        default_factory=dict,
        alias="solutionMetadata",
    )

    @field_validator("remediation_role_arn")
    @classmethod
    def validate_role_arn(cls, v: str) -> str:
        """Require an IAM role ARN (placeholders allowed)."""
        v = v.strip()
        if not v.startswith("arn:") or ":role/" not in v:
            raise ValueError(f"remediationRoleArn '{v}' is not an IAM role ARN")
        return v

    def role_arn_for(self, account_id: str) -> str:
        """Expand the role ARN for the given account."""
        return self.remediation_role_arn.replace("{account_id}", account_id)


@dataclass(frozen=True)
class StepResult:
    """
    One recorded step attempt.

    Attributes:
        name: Step name
        kind: Step action kind
        status: Attempt status
        attempt: 1-based attempt number (0 for steps that never ran)
        output: Step output when the attempt succeeded (read-only view)
        error: Error message when the attempt failed
        error_kind: Error kind name (StepTimeout, StepRetryExhausted, ...)
        duration_ms: Wall time of the attempt
    """

    name: str
    kind: ActionKind
    status: StepStatus
    attempt: int = 1
    output: Mapping[str, Any] | None = None
    error: str | None = None
    error_kind: str | None = None
    duration_ms: float = 0.0

    def __post_init__(self) -> None:
        if self.output is not None:
            object.__setattr__(self, "output", MappingProxyType(dict(self.output)))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "status": self.status.value,
            "attempt": self.attempt,
            "durationMs": round(self.duration_ms, 3),
        }
        if self.output is not None:
            data["output"] = dict(self.output)
        if self.error is not None:
            data["error"] = self.error
            data["errorKind"] = self.error_kind
        return data


@dataclass(frozen=True)
class ExecutionResult:
    """
    Immutable record of a runbook execution.

    Output mappings are read-only views; values nested inside them are not
    copied.

    Attributes:
        execution_id: ID shared with the execution's log lines
        standard_id: Standard of the executed control
        control_id: Executed control
        resource_id: Resource the runbook acted on
        overall_status: Final outcome
        step_results: Every recorded step attempt, in execution order
        started_at: ISO 8601 start timestamp
        completed_at: ISO 8601 completion timestamp
        cancelled: Whether the run was cancelled between steps
        outputs: Values of the document's declared outputs that were produced
            (read-only view)
        error: Document-level error (input validation, cancellation)
    """

    execution_id: str
    standard_id: str
    control_id: str
    resource_id: str
    overall_status: OverallStatus
    step_results: tuple[StepResult, ...] = ()
    started_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    completed_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    cancelled: bool = False
    outputs: Mapping[str, Any] = field(default_factory=dict)
    error: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "outputs", MappingProxyType(dict(self.outputs)))

    @property
    def compliant(self) -> bool:
        """Whether the resource ended up compliant."""
        return self.overall_status in (
            OverallStatus.REMEDIATED,
            OverallStatus.ALREADY_COMPLIANT,
        )

    def attempts_for(self, step_name: str) -> list[StepResult]:
        """Return all recorded attempts of a step."""
        return [r for r in self.step_results if r.name == step_name]

    def final_result_for(self, step_name: str) -> StepResult | None:
        """Return the last recorded attempt of a step, if it ran."""
        attempts = self.attempts_for(step_name)
        return attempts[-1] if attempts else None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the external ExecutionResult JSON shape."""
        data: dict[str, Any] = {
            "executionId": self.execution_id,
            "standardId": self.standard_id,
            "controlId": self.control_id,
            "resourceId": self.resource_id,
            "overallStatus": self.overall_status.value,
            "stepResults": [r.to_dict() for r in self.step_results],
            "outputs": dict(self.outputs),
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "cancelled": self.cancelled,
        }
        if self.error is not None:
            data["error"] = self.error
        return data
