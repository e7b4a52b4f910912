"""
Unit tests for finding dispatch.

Tests cover the resolve/execute/notify/record pipeline, NotifyError and
audit failures as warnings, synchronous registry errors and batch
dispatch with per-resource serialization.
"""

import time
from typing import Any
from unittest.mock import MagicMock

import pytest
import responses

from sharr.audit_store import AuditStore
from sharr.dispatcher import dispatch_batch, dispatch_finding
from sharr.errors import AuditStoreError, NotifyError, UnknownControlError
from sharr.models import Finding, OverallStatus, PlaybookProperties
from sharr.notifier import JiraTicketNotifier, Notifier
from sharr.registry import ControlRegistry
from sharr.runbook import RunbookDocument
from sharr.steps import StepOutcome, Success, from_finding, remediate_step, verify_step


def recording_registry(
    calls: list[tuple[str, str]],
    requires_ticket: bool = False,
    delay: float = 0.0,
) -> ControlRegistry:
    """Registry whose EC2.19 runbook records (resource, phase) pairs."""

    def factory(control_id: str, props: PlaybookProperties) -> RunbookDocument:
        _ = props

        def mark(phase: str) -> Any:
            def action(inputs: dict[str, Any]) -> StepOutcome:
                calls.append((inputs["resource_id"], phase))
                if delay:
                    time.sleep(delay)
                return Success({"compliant": True}) if phase == "verify" else Success()

            return action

        inputs = {"resource_id": from_finding("resource_id")}
        return RunbookDocument(
            control_id,
            steps=[
                remediate_step("remediate", mark("remediate"), inputs=inputs),
                verify_step("verify", mark("verify"), inputs=inputs),
            ],
            requires_ticket=requires_ticket,
            sleep=lambda _: None,
        )

    registry = ControlRegistry()
    registry.register("NIST80053", "EC2.19", factory)
    registry.freeze()
    return registry


def finding_for(resource_id: str, control_id: str = "EC2.19") -> Finding:
    return Finding(
        standard_id="NIST80053",
        control_id=control_id,
        resource_id=resource_id,
        account_id="111111111111",
    )


class TestDispatchFinding:
    """Tests for dispatch_finding."""

    def test_executes_and_records(
        self,
        sg_finding: Finding,
        props: PlaybookProperties,
        audit_store: AuditStore,
    ) -> None:
        """Test that the result is executed and stored."""
        calls: list[tuple[str, str]] = []

        outcome = dispatch_finding(sg_finding, recording_registry(calls), props, audit_store=audit_store)

        assert outcome.result is not None
        assert outcome.result.overall_status is OverallStatus.REMEDIATED
        assert outcome.warnings == []
        assert calls == [("sg-123", "remediate"), ("sg-123", "verify")]
        latest = audit_store.get_latest("sg-123", "EC2.19")
        assert latest is not None
        assert latest["execution_id"] == outcome.result.execution_id

    def test_unknown_control_raised_before_execution(
        self,
        props: PlaybookProperties,
        audit_store: AuditStore,
    ) -> None:
        """Test that registry errors reach the caller and nothing is recorded."""
        calls: list[tuple[str, str]] = []

        with pytest.raises(UnknownControlError):
            _ = dispatch_finding(
                finding_for("sg-123", control_id="EC2.2"),
                recording_registry(calls),
                props,
                audit_store=audit_store,
            )

        assert calls == []
        assert audit_store.get_statistics()["total"] == 0

    def test_ticket_raised_when_required(self, sg_finding: Finding, props: PlaybookProperties) -> None:
        """Test that ticketed documents call the notifier."""
        notifier = MagicMock(spec=Notifier)
        notifier.notify.return_value = "SEC-7"

        outcome = dispatch_finding(
            sg_finding,
            recording_registry([], requires_ticket=True),
            props,
            notifier=notifier,
        )

        assert outcome.ticket_reference == "SEC-7"
        notifier.notify.assert_called_once_with(outcome.result, sg_finding)

    def test_no_ticket_when_not_required(self, sg_finding: Finding, props: PlaybookProperties) -> None:
        """Test that the notifier is left alone for untracked controls."""
        notifier = MagicMock(spec=Notifier)

        outcome = dispatch_finding(sg_finding, recording_registry([]), props, notifier=notifier)

        assert outcome.ticket_reference is None
        notifier.notify.assert_not_called()

    def test_notify_error_is_a_warning(
        self,
        sg_finding: Finding,
        props: PlaybookProperties,
        audit_store: AuditStore,
    ) -> None:
        """Test that a ticketing failure leaves the overall status alone."""
        notifier = MagicMock(spec=Notifier)
        notifier.notify.side_effect = NotifyError("Jira rejected the credentials", status_code=401, reason="auth")

        outcome = dispatch_finding(
            sg_finding,
            recording_registry([], requires_ticket=True),
            props,
            notifier=notifier,
            audit_store=audit_store,
        )

        assert outcome.result is not None
        assert outcome.result.overall_status is OverallStatus.REMEDIATED
        assert outcome.ticket_reference is None
        assert outcome.warnings == ["NotifyError: Jira rejected the credentials"]
        assert audit_store.get_statistics()["Remediated"] == 1

    @responses.activate
    def test_unexpected_ticket_response_is_a_warning(
        self,
        sg_finding: Finding,
        props: PlaybookProperties,
        audit_store: AuditStore,
        mock_secret_resolver: MagicMock,
    ) -> None:
        """Test that a Jira 201 with a JSON list keeps the result and its audit row."""
        responses.add(
            responses.POST,
            "https://example.atlassian.net/rest/api/2/issue",
            json=[],
            status=201,
        )
        notifier = JiraTicketNotifier(
            instance_uri="https://example.atlassian.net",
            project_key="SEC",
            secret_reference="arn:aws:secretsmanager:us-east-1:111111111111:secret:jira",
            secret_resolver=mock_secret_resolver,
        )

        outcome = dispatch_finding(
            sg_finding,
            recording_registry([], requires_ticket=True),
            props,
            notifier=notifier,
            audit_store=audit_store,
        )

        assert outcome.result is not None
        assert outcome.status == "Remediated"
        assert outcome.ticket_reference is None
        assert len(outcome.warnings) == 1
        assert outcome.warnings[0].startswith("NotifyError:")
        latest = audit_store.get_latest("sg-123", "EC2.19")
        assert latest is not None
        assert latest["execution_id"] == outcome.result.execution_id

    def test_notifier_crash_is_a_warning(self, props: PlaybookProperties, audit_store: AuditStore) -> None:
        """Test that a non-NotifyError from the notifier does not sink the batch."""
        notifier = MagicMock(spec=Notifier)
        notifier.notify.side_effect = AttributeError("'list' object has no attribute 'get'")

        outcomes = dispatch_batch(
            [finding_for("sg-1"), finding_for("sg-2")],
            recording_registry([], requires_ticket=True),
            props,
            notifier=notifier,
            audit_store=audit_store,
            max_workers=2,
        )

        assert [o.status for o in outcomes] == ["Remediated", "Remediated"]
        assert all(o.warnings == ["NotifyError: AttributeError: 'list' object has no attribute 'get'"] for o in outcomes)
        assert audit_store.get_statistics()["total"] == 2

    def test_missing_notifier_is_a_warning(self, sg_finding: Finding, props: PlaybookProperties) -> None:
        """Test that a ticketed control without a notifier warns."""
        outcome = dispatch_finding(sg_finding, recording_registry([], requires_ticket=True), props)

        assert len(outcome.warnings) == 1
        assert not outcome.failed

    def test_audit_failure_is_a_warning(self, sg_finding: Finding, props: PlaybookProperties) -> None:
        """Test that audit store errors do not fail the dispatch."""
        store = MagicMock(spec=AuditStore)
        store.record.side_effect = AuditStoreError("disk full", operation="record")

        outcome = dispatch_finding(sg_finding, recording_registry([]), props, audit_store=store)

        assert outcome.warnings == ["AuditStoreError: disk full"]
        assert outcome.status == "Remediated"


class TestDispatchBatch:
    """Tests for dispatch_batch."""

    def test_outcomes_in_input_order_with_errors_captured(self, props: PlaybookProperties) -> None:
        """Test that one unknown control does not stop the batch."""
        findings = [
            finding_for("sg-1"),
            finding_for("sg-2", control_id="EC2.2"),
            finding_for("sg-3"),
        ]

        outcomes = dispatch_batch(findings, recording_registry([]), props, max_workers=2)

        assert [o.finding.resource_id for o in outcomes] == ["sg-1", "sg-2", "sg-3"]
        assert [o.status for o in outcomes] == ["Remediated", "UnknownControl", "Remediated"]
        assert outcomes[1].failed
        assert isinstance(outcomes[1].error, UnknownControlError)

    def test_same_resource_runs_serially(self, props: PlaybookProperties) -> None:
        """Test that findings for one resource never interleave."""
        calls: list[tuple[str, str]] = []
        findings = [finding_for("sg-a"), finding_for("sg-b"), finding_for("sg-a"), finding_for("sg-b")]

        outcomes = dispatch_batch(
            findings,
            recording_registry(calls, delay=0.01),
            props,
            max_workers=4,
        )

        assert all(o.status == "Remediated" for o in outcomes)
        for resource_id in ("sg-a", "sg-b"):
            phases = [phase for resource, phase in calls if resource == resource_id]
            assert phases == ["remediate", "verify", "remediate", "verify"]
