"""
S3 control runbooks.

Configure bucket-level Block Public Access (S3.8): all four public access
block settings must be enabled on the bucket named by the finding.
"""

import time
from collections.abc import Callable
from typing import Any

from sharr.aws_clients import AssumeRoleClientProvider, call_aws
from sharr.errors import RemediationApiError
from sharr.logging_config import get_logger, log_with_context
from sharr.models import PlaybookProperties
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

BLOCK_ALL_PUBLIC_ACCESS: dict[str, bool] = {
    "BlockPublicAcls": True,
    "IgnorePublicAcls": True,
    "BlockPublicPolicy": True,
    "RestrictPublicBuckets": True,
}


def read_public_access_block(s3: Any, bucket: str, account_id: str) -> dict[str, bool]:
    """Current bucket-level settings; a bucket without a configuration has none enabled."""
    try:
        response = call_aws(
            s3,
            "get_public_access_block",
            Bucket=bucket,
            ExpectedBucketOwner=account_id,
        )
    except RemediationApiError as e:
        if e.error_code == "NoSuchPublicAccessBlockConfiguration":
            return {key: False for key in BLOCK_ALL_PUBLIC_ACCESS}
        raise
    configuration: dict[str, bool] = response.get("PublicAccessBlockConfiguration", {})
    return {key: bool(configuration.get(key, False)) for key in BLOCK_ALL_PUBLIC_ACCESS}


def _blocks_all(configuration: dict[str, bool]) -> bool:
    return all(configuration.get(key) for key in BLOCK_ALL_PUBLIC_ACCESS)


class BucketPublicAccessActions:
    """Step actions for S3.8, bound to a client provider."""

    def __init__(self, clients: Any) -> None:
        self.clients: Any = clients

    def _s3(self, inputs: dict[str, Any]) -> Any:
        return self.clients.client("s3", inputs["account_id"], inputs.get("region"))

    def assess(self, inputs: dict[str, Any]) -> StepOutcome:
        configuration = read_public_access_block(self._s3(inputs), inputs["bucket"], inputs["account_id"])
        return Success({"compliant": _blocks_all(configuration), "configuration": configuration})

    def remediate(self, inputs: dict[str, Any]) -> StepOutcome:
        current: dict[str, bool] = inputs.get("configuration") or {}
        if current and _blocks_all(current):
            return Success({"changed": False})

        call_aws(
            self._s3(inputs),
            "put_public_access_block",
            Bucket=inputs["bucket"],
            ExpectedBucketOwner=inputs["account_id"],
            PublicAccessBlockConfiguration=dict(BLOCK_ALL_PUBLIC_ACCESS),
        )
        log_with_context(
            logger,
            "info",
            "Enabled bucket-level Block Public Access",
            bucket=inputs["bucket"],
        )
        return Success({"changed": True})

    def verify(self, inputs: dict[str, Any]) -> StepOutcome:
        configuration = read_public_access_block(self._s3(inputs), inputs["bucket"], inputs["account_id"])
        return Success({"compliant": _blocks_all(configuration)})


def bucket_public_access_runbook(
    control_id: str,
    props: PlaybookProperties,
    clients: Any = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RunbookDocument:
    """Build the bucket-level Block Public Access runbook."""
    actions = BucketPublicAccessActions(clients or AssumeRoleClientProvider(props))
    target = {
        "bucket": from_finding("resource_name"),
        "account_id": from_finding("account_id"),
        "region": from_finding("region", optional=True),
    }

    return RunbookDocument(
        control_id=control_id,
        description="Configure bucket-level Block Public Access",
        steps=[
            assess_step(
                "assess",
                actions.assess,
                inputs=target,
                outputs=("compliant", "configuration"),
                retry=RetryPolicy(max_attempts=3, backoff_seconds=2.0),
                timeout_seconds=30.0,
            ),
            remediate_step(
                "block-public-access",
                actions.remediate,
                inputs={
                    **target,
                    "configuration": from_step("assess", "configuration", optional=True),
                },
                outputs=("changed",),
                retry=RetryPolicy(max_attempts=3, backoff_seconds=2.0),
                timeout_seconds=30.0,
            ),
            verify_step(
                "verify",
                actions.verify,
                inputs=target,
                retry=RetryPolicy(max_attempts=3, backoff_seconds=5.0),
                timeout_seconds=30.0,
            ),
        ],
        sleep=sleep,
    )
