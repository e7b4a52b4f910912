"""
Unit tests for findings, playbook properties and execution results.
"""

import json

import pytest
from pydantic import ValidationError

from sharr.models import (
    ActionKind,
    ExecutionResult,
    Finding,
    OverallStatus,
    PlaybookProperties,
    StepResult,
    StepStatus,
)


class TestFinding:
    """Tests for the Finding model."""

    def test_parse_camel_case(self) -> None:
        """Test that the wire format is accepted and unknown keys ignored."""
        finding = Finding.model_validate(
            {
                "standardId": "NIST80053",
                "controlId": "EC2.19",
                "resourceId": "sg-123",
                "accountId": "111111111111",
                "region": "eu-west-1",
                "severity": "HIGH",
            }
        )

        assert finding.control_id == "EC2.19"
        assert finding.region == "eu-west-1"
        assert finding.to_wire()["resourceId"] == "sg-123"

    def test_missing_account_rejected(self) -> None:
        """Test that required fields are enforced."""
        with pytest.raises(ValidationError):
            _ = Finding.model_validate(
                {"standardId": "NIST80053", "controlId": "EC2.19", "resourceId": "sg-123"}
            )

    def test_finding_is_immutable(self, sg_finding: Finding) -> None:
        """Test that findings cannot be changed after dispatch."""
        with pytest.raises(ValidationError):
            sg_finding.resource_id = "sg-999"  # pyright: ignore[reportAttributeAccessIssue]

    @pytest.mark.parametrize(
        ("resource_id", "expected"),
        [
            ("sg-123", "sg-123"),
            ("arn:aws:ec2:us-east-1:111111111111:security-group/sg-123", "sg-123"),
            ("arn:aws:s3:::example-bucket", "example-bucket"),
        ],
    )
    def test_resource_name(self, resource_id: str, expected: str) -> None:
        """Test trailing identifier extraction."""
        finding = Finding(
            standard_id="AFSBP",
            control_id="EC2.19",
            resource_id=resource_id,
            account_id="111111111111",
        )

        assert finding.resource_name == expected


class TestPlaybookProperties:
    """Tests for PlaybookProperties."""

    def test_role_arn_expanded_per_account(self) -> None:
        """Test account placeholder expansion."""
        props = PlaybookProperties(remediation_role_arn="arn:aws:iam::{account_id}:role/Remediate")

        assert props.role_arn_for("222222222222") == "arn:aws:iam::222222222222:role/Remediate"

    def test_non_role_arn_rejected(self) -> None:
        """Test that a user ARN is not a valid remediation role."""
        with pytest.raises(ValidationError):
            _ = PlaybookProperties(remediation_role_arn="arn:aws:iam::111111111111:user/admin")


class TestExecutionResult:
    """Tests for ExecutionResult helpers."""

    def test_attempt_lookup_and_serialization(self) -> None:
        """Test per-step lookups and the external JSON shape."""
        result = ExecutionResult(
            execution_id="exec-1",
            standard_id="NIST80053",
            control_id="EC2.19",
            resource_id="sg-123",
            overall_status=OverallStatus.REMEDIATED,
            step_results=(
                StepResult("revoke", ActionKind.REMEDIATE, StepStatus.RETRIED, error="throttled", error_kind="Retryable"),
                StepResult("revoke", ActionKind.REMEDIATE, StepStatus.SUCCEEDED, attempt=2, output={"revoked": 1}),
            ),
        )

        assert result.compliant
        assert len(result.attempts_for("revoke")) == 2
        final = result.final_result_for("revoke")
        assert final is not None and final.attempt == 2
        assert result.final_result_for("verify") is None

        data = result.to_dict()
        assert data["overallStatus"] == "Remediated"
        assert data["stepResults"][0]["errorKind"] == "Retryable"
        assert data["stepResults"][1]["output"] == {"revoked": 1}
        assert "error" not in data

    def test_outputs_are_read_only(self) -> None:
        """Test that a completed result's output mappings cannot be changed."""
        produced = {"revoked": ["sgr-1"]}
        step = StepResult("revoke", ActionKind.REMEDIATE, StepStatus.SUCCEEDED, output=produced)
        result = ExecutionResult(
            "exec-1",
            "NIST80053",
            "EC2.19",
            "sg-123",
            OverallStatus.REMEDIATED,
            step_results=(step,),
            outputs={"revoke.revoked": ["sgr-1"]},
        )
        produced["revoked"] = []

        with pytest.raises(TypeError):
            result.outputs["revoke.revoked"] = []  # pyright: ignore[reportIndexIssue]
        assert step.output is not None
        with pytest.raises(TypeError):
            step.output["revoked"] = []  # pyright: ignore[reportIndexIssue]
        assert step.output == {"revoked": ["sgr-1"]}
        assert json.loads(json.dumps(result.to_dict()))["outputs"] == {"revoke.revoked": ["sgr-1"]}

    @pytest.mark.parametrize(
        ("status", "compliant"),
        [
            (OverallStatus.REMEDIATED, True),
            (OverallStatus.ALREADY_COMPLIANT, True),
            (OverallStatus.DEGRADED, False),
            (OverallStatus.FAILED, False),
        ],
    )
    def test_compliant(self, status: OverallStatus, compliant: bool) -> None:
        """Test which statuses count as compliant."""
        result = ExecutionResult("exec-1", "SC", "S3.8", "bucket", status)

        assert result.compliant is compliant
