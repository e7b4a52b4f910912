"""
EC2 control runbooks.

Disable unrestricted access to high-risk ports (EC2.19): a security group
must not allow ingress from 0.0.0.0/0 or ::/0 to any of the ports below.
The runbook assesses the group's ingress rules, revokes the offending
rules by rule id and verifies that none remain.
"""

import time
from collections.abc import Callable
from typing import Any

from sharr.aws_clients import AssumeRoleClientProvider, call_aws
from sharr.errors import FatalStepFailure, RemediationApiError
from sharr.logging_config import get_logger, log_with_context
from sharr.models import OnFailure, PlaybookProperties
from sharr.runbook import RunbookDocument
from sharr.steps import (
    RetryPolicy,
    StepOutcome,
    Success,
    assess_step,
    from_finding,
    from_step,
    remediate_step,
    verify_step,
)

logger = get_logger(__name__)

HIGH_RISK_PORTS: tuple[int, ...] = (
    20, 21, 22, 23, 25, 110, 135, 143, 445, 1433, 1434, 3000, 3306, 3389,
    4333, 5000, 5432, 5500, 5601, 8080, 8088, 8888, 9200, 9300,
)

OPEN_CIDRS = frozenset({"0.0.0.0/0", "::/0"})

_PORT_PROTOCOLS = frozenset({"tcp", "udp", "6", "17"})
_ALL_PROTOCOLS = "-1"


def is_unrestricted_high_risk(rule: dict[str, Any]) -> bool:
    """
    Whether an ingress rule opens a high-risk port to the internet.

    Args:
        rule: Entry of DescribeSecurityGroupRules

    Returns:
        True for ingress rules from 0.0.0.0/0 or ::/0 covering a high-risk port
    """
    if rule.get("IsEgress"):
        return False
    if rule.get("CidrIpv4") not in OPEN_CIDRS and rule.get("CidrIpv6") not in OPEN_CIDRS:
        return False

    protocol = str(rule.get("IpProtocol", ""))
    if protocol == _ALL_PROTOCOLS:
        return True
    if protocol not in _PORT_PROTOCOLS:
        return False

    from_port = int(rule.get("FromPort", -1))
    to_port = int(rule.get("ToPort", -1))
    if from_port == -1 and to_port == -1:
        return True
    return any(from_port <= port <= to_port for port in HIGH_RISK_PORTS)


def security_group_id(resource_name: str) -> str:
    """Validate the security group id taken from the finding."""
    if not resource_name.startswith("sg-"):
        raise FatalStepFailure(f"'{resource_name}' is not a security group id")
    return resource_name


def find_unrestricted_rules(ec2: Any, group_id: str) -> list[dict[str, Any]]:
    """List the group's ingress rules that violate EC2.19."""
    offending: list[dict[str, Any]] = []
    next_token: str | None = None

    while True:
        kwargs: dict[str, Any] = {
            "Filters": [{"Name": "group-id", "Values": [group_id]}],
        }
        if next_token:
            kwargs["NextToken"] = next_token
        response = call_aws(ec2, "describe_security_group_rules", **kwargs)

        offending.extend(
            rule for rule in response.get("SecurityGroupRules", []) if is_unrestricted_high_risk(rule)
        )
        next_token = response.get("NextToken")
        if not next_token:
            return offending


def _describe(rules: list[dict[str, Any]]) -> list[str]:
    described: list[str] = []
    for rule in rules:
        cidr = rule.get("CidrIpv4") or rule.get("CidrIpv6")
        described.append(f"{rule.get('IpProtocol')}:{rule.get('FromPort')}-{rule.get('ToPort')} from {cidr}")
    return described


class HighRiskPortActions:
    """Step actions for EC2.19, bound to a client provider."""

    def __init__(self, clients: Any) -> None:
        self.clients: Any = clients

    def _ec2(self, inputs: dict[str, Any]) -> Any:
        return self.clients.client("ec2", inputs["account_id"], inputs.get("region"))

    def assess(self, inputs: dict[str, Any]) -> StepOutcome:
        group_id = security_group_id(inputs["group_id"])
        rules = find_unrestricted_rules(self._ec2(inputs), group_id)
        return Success(
            {
                "compliant": not rules,
                "open_rule_ids": [rule["SecurityGroupRuleId"] for rule in rules],
                "open_rules": _describe(rules),
            }
        )

    def remediate(self, inputs: dict[str, Any]) -> StepOutcome:
        group_id = security_group_id(inputs["group_id"])
        rule_ids: list[str] = list(inputs.get("open_rule_ids") or [])
        if not rule_ids:
            return Success({"changed": False, "revoked_rule_ids": []})

        ec2 = self._ec2(inputs)
        try:
            call_aws(
                ec2,
                "revoke_security_group_ingress",
                GroupId=group_id,
                SecurityGroupRuleIds=rule_ids,
            )
        except RemediationApiError as e:
            if e.error_code != "InvalidSecurityGroupRuleId.NotFound":
                raise
            # Some rules were removed out-of-band; revoke whatever is still open
            rule_ids = [rule["SecurityGroupRuleId"] for rule in find_unrestricted_rules(ec2, group_id)]
            if not rule_ids:
                return Success({"changed": False, "revoked_rule_ids": []})
            call_aws(
                ec2,
                "revoke_security_group_ingress",
                GroupId=group_id,
                SecurityGroupRuleIds=rule_ids,
            )

        log_with_context(
            logger,
            "info",
            "Revoked unrestricted ingress rules",
            group_id=group_id,
            rule_ids=rule_ids,
        )
        return Success({"changed": True, "revoked_rule_ids": rule_ids})

    def verify(self, inputs: dict[str, Any]) -> StepOutcome:
        group_id = security_group_id(inputs["group_id"])
        rules = find_unrestricted_rules(self._ec2(inputs), group_id)
        return Success(
            {
                "compliant": not rules,
                "open_rule_ids": [rule["SecurityGroupRuleId"] for rule in rules],
            }
        )


def high_risk_ports_runbook(
    control_id: str,
    props: PlaybookProperties,
    clients: Any = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RunbookDocument:
    """
    Build the "disable unrestricted access to high-risk ports" runbook.

    Args:
        control_id: Control the document is registered for
        props: Playbook properties (remediation role)
        clients: Client provider; defaults to assuming the remediation role
        sleep: Backoff sleep function

    Returns:
        RunbookDocument with assess, remediate and verify steps
    """
    actions = HighRiskPortActions(clients or AssumeRoleClientProvider(props))
    target = {
        "group_id": from_finding("resource_name"),
        "account_id": from_finding("account_id"),
        "region": from_finding("region", optional=True),
    }

    return RunbookDocument(
        control_id=control_id,
        description="Disable unrestricted access to high-risk ports",
        steps=[
            assess_step(
                "assess",
                actions.assess,
                inputs=target,
                outputs=("compliant", "open_rule_ids"),
                retry=RetryPolicy(max_attempts=3, backoff_seconds=2.0),
                timeout_seconds=30.0,
            ),
            remediate_step(
                "revoke-ingress",
                actions.remediate,
                inputs={**target, "open_rule_ids": from_step("assess", "open_rule_ids")},
                outputs=("changed", "revoked_rule_ids"),
                retry=RetryPolicy(max_attempts=3, backoff_seconds=2.0),
                timeout_seconds=60.0,
                on_failure=OnFailure.BRANCH_TO_VERIFY,
            ),
            verify_step(
                "verify",
                actions.verify,
                inputs=target,
                retry=RetryPolicy(max_attempts=3, backoff_seconds=5.0),
                timeout_seconds=30.0,
            ),
        ],
        output_schema=("revoke-ingress.revoked_rule_ids",),
        sleep=sleep,
    )
