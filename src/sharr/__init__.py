"""
SHARR: Security Hub automated remediation runbooks.

SHARR takes normalized security findings, looks up the remediation runbook
registered for the finding's (standard, control) pair and executes it
against the offending resource: assess the current configuration,
remediate it, verify the result. Runbooks that need human follow-up raise
a Jira or ServiceNow ticket, and every execution is kept as an audit
record.

Key Components:
    - ControlRegistry: Maps (standard, control) pairs to runbook factories
    - RunbookDocument: Ordered assess/remediate/verify steps with retries,
      timeouts and failure routing
    - Notifier: Ticketing bridge (Jira Cloud, ServiceNow)
    - AuditStore: SQLite log of execution results
    - Dispatcher: Resolve, execute, notify and record per finding

Architecture:
    Finding → ControlRegistry → RunbookDocument → ExecutionResult
                                                        ↓
                                            Notifier / AuditStore

Environment Variables:
    AWS_REGION: Default AWS region (required)
    REMEDIATION_ROLE_ARN: Role assumed in member accounts (required)
    TICKETING_SYSTEM: none, jira or servicenow (default: none)
    TICKETED_CONTROLS: Controls that raise a ticket (optional)
    AUDIT_DB_PATH: Path to SQLite audit database (default: ./sharr.db)

Usage:
    # Remediate the findings in a JSON file
    python -m sharr run --finding-json findings.json

    # List registered controls
    python -m sharr controls

Author: SHARR Team
Version: 0.1.0
License: MIT
"""

__version__ = "0.1.0"
__author__ = "SHARR Team"

__all__ = [
    "__version__",
    "__author__",
]
