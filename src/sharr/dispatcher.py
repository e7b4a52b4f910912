"""
Finding dispatch: resolve, execute, notify, record.

``dispatch_finding`` is the per-finding pipeline. Registry errors
(UnknownControl and friends) surface to the caller before anything runs
against the resource. Once a runbook has run, its ExecutionResult is final:
ticketing and audit failures are attached to the outcome as warnings and
never change the overall status.

``dispatch_batch`` fans findings out over a thread pool. Findings for the
same resource are run one after another, in arrival order, on one worker;
different resources run concurrently.

Usage:
    from sharr.dispatcher import dispatch_batch

    outcomes = dispatch_batch(findings, registry, props, notifier=notifier)
    for outcome in outcomes:
        print(outcome.finding, outcome.status)
"""

from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from sharr.audit_store import AuditStore
from sharr.errors import AuditStoreError, NotifyError, SharrError
from sharr.logging_config import LogContext, get_logger, log_with_context
from sharr.models import ExecutionResult, Finding, PlaybookProperties
from sharr.notifier import Notifier
from sharr.registry import ControlRegistry
from sharr.runbook import CancellationToken

logger = get_logger(__name__)


@dataclass
class DispatchOutcome:
    """
    Result of dispatching one finding.

    Attributes:
        finding: Dispatched finding
        result: Execution result; None when the runbook could not be resolved
        ticket_reference: Ticket raised for the execution, if any
        warnings: Non-fatal problems (ticketing, audit) after execution
        error: Error that prevented execution (batch dispatch only)
    """

    finding: Finding
    result: ExecutionResult | None = None
    ticket_reference: str | None = None
    warnings: list[str] = field(default_factory=list)
    error: SharrError | None = None

    @property
    def status(self) -> str:
        """Overall status, or the error kind when nothing ran."""
        if self.result is not None:
            return self.result.overall_status.value
        return self.error.kind if self.error is not None else "Unknown"

    @property
    def failed(self) -> bool:
        return self.result is None or not self.result.compliant


def dispatch_finding(
    finding: Finding,
    registry: ControlRegistry,
    props: PlaybookProperties,
    notifier: Notifier | None = None,
    audit_store: AuditStore | None = None,
    cancel_token: CancellationToken | None = None,
) -> DispatchOutcome:
    """
    Run the registered runbook for a finding.

    Args:
        finding: Finding to remediate
        registry: Control registry to resolve the runbook from
        props: Playbook properties the runbook is bound to
        notifier: Ticketing bridge for documents that require a ticket
        audit_store: Store receiving the execution result
        cancel_token: Token checked between runbook steps

    Returns:
        DispatchOutcome with the execution result and any warnings

    Raises:
        UnknownControlError: If no runbook is registered for the finding
        ConfigurationError: If the registered factory is inconsistent
    """
    with LogContext() as execution_id:
        log_with_context(
            logger,
            "info",
            "Dispatching finding",
            standard_id=finding.standard_id,
            control_id=finding.control_id,
            resource_id=finding.resource_id,
            execution_id=execution_id,
        )

        document = registry.resolve(finding.standard_id, finding.control_id, props)
        result = document.execute(finding, cancel_token=cancel_token)
        outcome = DispatchOutcome(finding=finding, result=result)

        if document.requires_ticket:
            _raise_ticket(outcome, notifier)

        if audit_store is not None:
            try:
                audit_store.record(result, finding, ticket_reference=outcome.ticket_reference)
            except AuditStoreError as e:
                outcome.warnings.append(f"{e.kind}: {e}")

        log_with_context(
            logger,
            "info" if result.compliant else "warning",
            "Finished dispatching finding",
            resource_id=finding.resource_id,
            overall_status=result.overall_status.value,
            ticket_reference=outcome.ticket_reference,
            warnings=len(outcome.warnings),
        )
        return outcome


def _raise_ticket(outcome: DispatchOutcome, notifier: Notifier | None) -> None:
    assert outcome.result is not None
    if notifier is None:
        outcome.warnings.append("Ticket required but no ticketing system is configured")
        log_with_context(
            logger,
            "warning",
            "Ticket required but no notifier configured",
            control_id=outcome.result.control_id,
        )
        return

    try:
        outcome.ticket_reference = notifier.notify(outcome.result, outcome.finding)
    except NotifyError as e:
        outcome.warnings.append(f"{e.kind}: {e}")
        log_with_context(
            logger,
            "warning",
            "Ticket creation failed",
            control_id=outcome.result.control_id,
            reason=e.reason,
            status_code=e.status_code,
            error=str(e),
        )
    except Exception as e:
        # Ticketing never replaces the execution result
        outcome.warnings.append(f"{NotifyError.kind}: {type(e).__name__}: {e}")
        log_with_context(
            logger,
            "error",
            "Unexpected ticketing failure",
            control_id=outcome.result.control_id,
            error=str(e),
            error_type=type(e).__name__,
        )


def _dispatch_group(
    group: list[tuple[int, Finding]],
    registry: ControlRegistry,
    props: PlaybookProperties,
    notifier: Notifier | None,
    audit_store: AuditStore | None,
    cancel_token: CancellationToken | None,
) -> list[tuple[int, DispatchOutcome]]:
    outcomes: list[tuple[int, DispatchOutcome]] = []
    for index, finding in group:
        try:
            outcome = dispatch_finding(
                finding,
                registry,
                props,
                notifier=notifier,
                audit_store=audit_store,
                cancel_token=cancel_token,
            )
        except SharrError as e:
            log_with_context(
                logger,
                "error",
                "Finding could not be dispatched",
                standard_id=finding.standard_id,
                control_id=finding.control_id,
                resource_id=finding.resource_id,
                error_kind=e.kind,
                error=str(e),
            )
            outcome = DispatchOutcome(finding=finding, error=e)
        outcomes.append((index, outcome))
    return outcomes


def dispatch_batch(
    findings: Sequence[Finding],
    registry: ControlRegistry,
    props: PlaybookProperties,
    notifier: Notifier | None = None,
    audit_store: AuditStore | None = None,
    max_workers: int = 3,
    cancel_token: CancellationToken | None = None,
) -> list[DispatchOutcome]:
    """
    Dispatch findings concurrently, one worker per resource at a time.

    Args:
        findings: Findings in arrival order
        registry: Control registry
        props: Playbook properties
        notifier: Ticketing bridge
        audit_store: Store receiving execution results
        max_workers: Thread pool size
        cancel_token: Token shared by every execution in the batch

    Returns:
        One DispatchOutcome per finding, in input order
    """
    groups: dict[str, list[tuple[int, Finding]]] = {}
    for index, finding in enumerate(findings):
        groups.setdefault(finding.resource_id, []).append((index, finding))

    log_with_context(
        logger,
        "info",
        "Dispatching batch",
        finding_count=len(findings),
        resource_count=len(groups),
        max_workers=max_workers,
    )

    ordered: dict[int, DispatchOutcome] = {}
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sharr-dispatch") as executor:
        future_to_resource = {
            executor.submit(
                _dispatch_group,
                group,
                registry,
                props,
                notifier,
                audit_store,
                cancel_token,
            ): resource_id
            for resource_id, group in groups.items()
        }

        for future in as_completed(future_to_resource):
            for index, outcome in future.result():
                ordered[index] = outcome

    outcomes = [ordered[index] for index in range(len(findings))]
    log_with_context(
        logger,
        "info",
        "Finished batch",
        finding_count=len(outcomes),
        failed=sum(1 for outcome in outcomes if outcome.failed),
    )
    return outcomes
