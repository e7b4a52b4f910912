"""
CLI interface for SHARR.

Provides command-line interface for remediation runs and audit operations.

Usage:
    python -m sharr run --finding-json findings.json
    python -m sharr controls --standard NIST80053
    python -m sharr history --resource-id sg-123
    python -m sharr stats
    python -m sharr cleanup --retention-days 30
"""

import argparse
import json
import sys
from collections.abc import Sequence
from pathlib import Path

import boto3
from pydantic import ValidationError

from sharr.audit_store import AuditStore
from sharr.config import Settings, get_settings
from sharr.dispatcher import dispatch_batch
from sharr.logging_config import get_logger, log_with_context, setup_logging
from sharr.models import Finding
from sharr.notifier import (
    JiraTicketNotifier,
    Notifier,
    OrganizationsAccountNamer,
    SecretsManagerResolver,
    ServiceNowTicketNotifier,
)
from sharr.playbooks import build_default_registry
from sharr.rate_limiter import RateLimitConfig, TokenBucketRateLimiter

logger = get_logger(__name__)


def main(argv: Sequence[str] | None = None) -> int:
    """
    CLI main entry point.

    Returns:
        Exit code (0 for success, 1 for error or any Failed finding)
    """
    parser = argparse.ArgumentParser(
        description="SHARR CLI - Security Hub Automated Remediation Runbooks"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run_parser = subparsers.add_parser(
        "run",
        help="Remediate findings from a JSON file",
    )
    _ = run_parser.add_argument(
        "--finding-json",
        type=str,
        required=True,
        help="Path to JSON file containing a finding or a list of findings",
    )
    _ = run_parser.add_argument(
        "--json",
        action="store_true",
        help="Print execution results as JSON",
    )

    controls_parser = subparsers.add_parser(
        "controls",
        help="List registered controls",
    )
    _ = controls_parser.add_argument(
        "--standard",
        type=str,
        default=None,
        help="Only list controls of this standard",
    )

    history_parser = subparsers.add_parser(
        "history",
        help="Show audit history for a resource",
    )
    _ = history_parser.add_argument(
        "--resource-id",
        type=str,
        required=True,
        help="Resource identifier as it appears in findings",
    )
    _ = history_parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Maximum records to show (default: 20)",
    )

    _ = subparsers.add_parser(
        "stats",
        help="Show audit store statistics",
    )

    cleanup_parser = subparsers.add_parser(
        "cleanup",
        help="Cleanup old audit records",
    )
    _ = cleanup_parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Days to retain records (default: STATE_RETENTION_DAYS)",
    )

    args = parser.parse_args(argv)

    command: str | None = str(args.command) if args.command else None
    if not command:
        parser.print_help()
        return 1

    try:
        settings = get_settings()
    except Exception as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(settings.log_level)

    try:
        if command == "run":
            return cmd_run(args, settings)
        if command == "controls":
            return cmd_controls(args, settings)
        if command == "history":
            return cmd_history(args, settings)
        if command == "stats":
            return cmd_stats(args, settings)
        if command == "cleanup":
            return cmd_cleanup(args, settings)
        print(f"Unknown command: {command}", file=sys.stderr)
        return 1

    except Exception as e:
        log_with_context(
            logger,
            "error",
            "Command failed",
            command=command,
            error=str(e),
        )
        print(f"Error: {e}", file=sys.stderr)
        return 1


def build_notifier(settings: Settings) -> Notifier | None:
    """
    Build the ticketing bridge selected by TICKETING_SYSTEM.

    Returns:
        Notifier, or None when ticketing is disabled

    Raises:
        ConfigurationError: If the ticketing configuration is inconsistent
    """
    if settings.ticketing_system == "none":
        return None

    instance_uri = settings.ticketing_instance_uri or ""
    resolver = SecretsManagerResolver(region=settings.aws_region)
    limiter = TokenBucketRateLimiter(
        RateLimitConfig(requests_per_minute=settings.ticketing_requests_per_minute)
    )
    namer = OrganizationsAccountNamer(
        client=boto3.client("organizations", region_name=settings.aws_region)
    )

    if settings.ticketing_system == "jira":
        return JiraTicketNotifier(
            instance_uri=instance_uri,
            project_key=settings.jira_project_key,
            secret_reference=settings.ticket_secret_arn,
            secret_resolver=resolver,
            rate_limiter=limiter,
            account_namer=namer,
        )
    return ServiceNowTicketNotifier(
        instance_uri=instance_uri,
        secret_reference=settings.ticket_secret_arn,
        secret_resolver=resolver,
        table=settings.servicenow_table,
        rate_limiter=limiter,
        account_namer=namer,
    )


def load_findings(path: Path) -> list[Finding]:
    """
    Load one finding or a list of findings from a JSON file.

    Raises:
        ValueError: If the file does not hold findings
    """
    with open(path, "r") as f:
        data: object = json.load(f)

    items = data if isinstance(data, list) else [data]
    try:
        return [Finding.model_validate(item) for item in items]
    except ValidationError as e:
        raise ValueError(f"Invalid finding JSON: {e}") from e


def cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    """
    Remediate findings from a JSON file.

    Args:
        args: Command arguments
        settings: Application settings

    Returns:
        Exit code, 1 if any finding did not end compliant
    """
    finding_path = Path(str(args.finding_json))
    if not finding_path.exists():
        print(f"File not found: {finding_path}", file=sys.stderr)
        return 1

    try:
        findings = load_findings(finding_path)
    except (ValueError, json.JSONDecodeError) as e:
        print(f"Invalid finding JSON: {e}", file=sys.stderr)
        return 1

    registry = build_default_registry(ticketed_controls=settings.ticketed_controls)
    props = settings.playbook_properties()
    notifier = build_notifier(settings)

    log_with_context(
        logger,
        "info",
        "Processing findings",
        finding_count=len(findings),
        ticketing_system=settings.ticketing_system,
    )

    with AuditStore(db_path=settings.audit_db_path) as audit_store:
        audit_store.initialize_schema()
        outcomes = dispatch_batch(
            findings,
            registry,
            props,
            notifier=notifier,
            audit_store=audit_store,
            max_workers=settings.max_concurrent_workers,
        )

    if args.json:
        print(
            json.dumps(
                [
                    {
                        "finding": outcome.finding.to_wire(),
                        "result": outcome.result.to_dict() if outcome.result else None,
                        "ticketReference": outcome.ticket_reference,
                        "warnings": outcome.warnings,
                        "error": str(outcome.error) if outcome.error else None,
                    }
                    for outcome in outcomes
                ],
                indent=2,
            )
        )
    else:
        for outcome in outcomes:
            line = f"{outcome.finding}: {outcome.status}"
            if outcome.ticket_reference:
                line += f" (ticket {outcome.ticket_reference})"
            if outcome.error is not None:
                line += f" - {outcome.error}"
            elif outcome.result is not None and outcome.result.error:
                line += f" - {outcome.result.error}"
            print(line)
            for warning in outcome.warnings:
                print(f"  warning: {warning}")

    return 1 if any(outcome.failed for outcome in outcomes) else 0


def cmd_controls(args: argparse.Namespace, settings: Settings) -> int:
    """List registered (standard, control) pairs."""
    registry = build_default_registry(ticketed_controls=settings.ticketed_controls)
    standard: str | None = args.standard
    props = settings.playbook_properties()

    for standard_id, control_id in registry.controls(standard):
        document = registry.resolve(standard_id, control_id, props)
        ticket = " [ticket]" if document.requires_ticket else ""
        print(f"{standard_id:<10} {control_id:<8} {document.description}{ticket}")
    return 0


def cmd_history(args: argparse.Namespace, settings: Settings) -> int:
    """Show audit history for a resource."""
    with AuditStore(db_path=settings.audit_db_path) as audit_store:
        audit_store.initialize_schema()
        records = audit_store.get_history(str(args.resource_id), limit=int(args.limit))

    if not records:
        print(f"No audit records for {args.resource_id}")
        return 0

    for record in records:
        ticket = f" ticket={record['ticket_reference']}" if record["ticket_reference"] else ""
        print(
            f"{record['recorded_at']} {record['standard_id']}/{record['control_id']} "
            f"{record['overall_status']} execution={record['execution_id']}{ticket}"
        )
    return 0


def cmd_stats(args: argparse.Namespace, settings: Settings) -> int:
    """Show audit store statistics."""
    _ = args

    with AuditStore(db_path=settings.audit_db_path) as audit_store:
        audit_store.initialize_schema()
        stats = audit_store.get_statistics()

    print("Audit Store Statistics:")
    print(f"  Total records: {stats.get('total', 0)}")
    print(f"  Remediated: {stats.get('Remediated', 0)}")
    print(f"  Already compliant: {stats.get('AlreadyCompliant', 0)}")
    print(f"  Degraded: {stats.get('Degraded', 0)}")
    print(f"  Failed: {stats.get('Failed', 0)}")
    return 0


def cmd_cleanup(args: argparse.Namespace, settings: Settings) -> int:
    """Cleanup old audit records."""
    retention_days: int = args.retention_days or settings.state_retention_days

    with AuditStore(db_path=settings.audit_db_path) as audit_store:
        audit_store.initialize_schema()
        deleted = audit_store.cleanup_old_records(retention_days)

    print(f"Deleted {deleted} old records")
    return 0


if __name__ == "__main__":
    sys.exit(main())
